"""
system.py
=========
Symbolic ODE systems.

An ``ODESystem`` holds a list of :class:`~sciml_tutorials.symbolics.Equation`
objects over SymPy symbols and compiles them into numerical functions.  The
pipeline from equations to a solvable model is:

1. **Flattening** — subsystems are merged into their parent, renaming every
   subsystem variable ``x`` to ``<subsystem name>.x``.
2. **Order lowering** — ``D(D(x)) ~ f`` becomes ``D(x) ~ x_t`` and
   ``D(x_t) ~ f``.
3. **Structural simplification** — implicit algebraic equations that are
   linear in one unknown are solved for it, then every observed equation
   ``y ~ g`` is resolved recursively (with cycle detection) and inlined into
   the differential equations.  The resolved observed equations are kept for
   solution lookups.
4. **Code generation** — right-hand side ``f(u, p, t)``, dense or sparse
   Jacobian, observed values and fixed-step update maps.

Equation strings in Brian2 syntax can be imported with
``ODESystem.from_equations`` and exported again with
``ODESystem.to_brian2_equations``.
"""

import copy

import sympy as sp

from sciml_tutorials.symbolics import (
    Derivative,
    Differential,
    Equation,
    build_function,
    build_sparse_function,
    calculate_jacobian,
    discretise,
    jacobian_sparsity,
    replace_functions,
)
from sciml_tutorials.utils import VerboseMixin, resolve_symbol, symbol_table


def namespace(prefix, symbol):
    """Return ``symbol`` renamed into the namespace ``prefix``."""
    return sp.Symbol(f"{prefix}.{symbol.name}")


def _unique(items):
    seen, out = set(), []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


class ODESystem(VerboseMixin):
    """A system of ordinary differential equations.

    Parameters
    ----------
    eqs : list of Equation or (lhs, rhs) tuples
        Differential, observed and algebraic equations at this level.
    iv : sympy.Symbol
        The independent variable (usually time ``t``).
    states : list of sympy.Symbol, optional
        Unknowns.  Defaults to the differentiated variables.  Unknowns of
        implicit algebraic equations must be listed explicitly.
    ps : list of sympy.Symbol, optional
        Parameters.  Defaults to every other free symbol, sorted by name.
    name : str
        Used to namespace this system's variables inside a parent.
    systems : list of ODESystem
        Subsystems, flattened on demand.
    defaults : dict, optional
        Default initial conditions and parameter values.
    verbose : bool
        Print a trace of flattening and simplification steps.

    Examples
    --------
    >>> t = sp.Symbol("t")
    >>> D = Differential(t)
    >>> x, y, z = variables("x y z")
    >>> sigma, rho, beta = parameters("sigma rho beta")
    >>> lorenz = ODESystem([
    ...     Equation(D(x), sigma * (y - x)),
    ...     Equation(D(y), x * (rho - z) - y),
    ...     Equation(D(z), x * y - beta * z),
    ... ], t, name="lorenz")
    """

    def __init__(self, eqs, iv, states=None, ps=None, name="system", systems=(),
                 defaults=None, verbose=False):
        self.eqs = [eq if isinstance(eq, Equation) else Equation(*eq) for eq in eqs]
        self.iv = iv
        self.name = name
        self.systems = list(systems)
        self.defaults = dict(defaults or {})
        self.verbose = verbose
        self.is_complete = False
        self.is_simplified = False
        self.metadata = {}

        self._explicit_states = None if states is None else list(states)
        self._explicit_ps = None if ps is None else list(ps)
        self._namespaces = list(self.systems)
        self._flat = None
        self._simplified_cache = None

        differential = [eq for eq in self.eqs if eq.is_differential]
        if states is None:
            states = _unique(eq.lhs.variable for eq in differential)
        self._states = list(states)

        if ps is None:
            excluded = set(self._states) | set(self.observed_symbols) | {iv}
            # Symbols that stand for derivatives are never parameters
            derivative_names = {
                Derivative(eq.lhs.variable, iv, k).lowered_name
                for eq in differential
                for k in range(1, eq.lhs.order + 1)
            }
            prefixes = tuple(f"{sub.name}." for sub in self.systems)
            free = set()
            for eq in self.eqs:
                free |= eq.free_symbols
            ps = sorted(
                (
                    s for s in free
                    if s not in excluded
                    and s.name not in derivative_names
                    and not s.name.startswith(prefixes)
                ),
                key=lambda s: s.name,
            )
        self._ps = list(ps)

    # ------------------------------------------------------------------
    # Variable access and namespacing
    # ------------------------------------------------------------------

    @property
    def observed_symbols(self):
        return [eq.lhs for eq in self.eqs if eq.is_observed]

    def _own_table(self):
        table = symbol_table(self._states + self._ps + self.observed_symbols)
        table[self.iv.name] = self.iv
        return table

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        for sub in self.__dict__.get("_namespaces", ()):
            if sub.name == name:
                if self.__dict__.get("is_complete"):
                    return sub
                return _Namespace(self.name, sub)

        if "_states" in self.__dict__:
            table = self._own_table()
            if name in table:
                sym = table[name]
                if sym == self.iv or self.is_complete:
                    return sym
                return namespace(self.name, sym)

        raise AttributeError(f"System '{self.__dict__.get('name')}' has no variable or subsystem '{name}'")

    def variable(self, key):
        """Look up a variable of the flattened system by symbol, name or derivative.

        Raises
        ------
        KeyError
            If no state, parameter or observed variable matches ``key``.
        """
        flat = self.flatten()
        return resolve_symbol(key, flat._own_table())

    @property
    def states(self):
        return list(self.flatten()._states)

    @property
    def parameters(self):
        flat = self.flatten()
        observed = set(flat.observed_symbols)
        return [p for p in flat._ps if p not in observed]

    @property
    def equations(self):
        return list(self.flatten().eqs)

    @property
    def differential_equations(self):
        return [eq for eq in self.flatten().eqs if eq.is_differential]

    @property
    def observed(self):
        return [eq for eq in self.flatten().eqs if eq.is_observed]

    @property
    def rhss(self):
        """Right-hand sides of the differential equations, in state order."""
        return [eq.rhs for eq in self.differential_equations]

    def complete(self):
        """Mark the system as top level: its own variables are accessed unprefixed."""
        new = copy.copy(self)
        new.is_complete = True
        new._flat = None
        new._simplified_cache = None
        return new

    # ------------------------------------------------------------------
    # Hierarchical composition
    # ------------------------------------------------------------------

    def flatten(self):
        """Return an equivalent system with all subsystems merged in."""
        if not self.systems:
            return self
        if self._flat is not None:
            return self._flat

        eqs = list(self.eqs)
        states = list(self._states)
        ps = list(self._ps)
        defaults = dict(self.defaults)

        for sub in self.systems:
            flat = sub.flatten()
            self.log(f"Flattening subsystem '{sub.name}' ({len(flat.eqs)} equations)")
            rename = {
                s: namespace(sub.name, s)
                for s in flat._states + flat._ps + flat.observed_symbols
            }
            eqs.extend(eq.subs(rename) for eq in flat.eqs)
            states.extend(rename[s] for s in flat._states)
            ps.extend(rename[s] for s in flat._ps)
            for key, value in flat.defaults.items():
                defaults[_rename_key(key, rename, sub.name)] = (
                    value.subs(rename, simultaneous=True) if isinstance(value, sp.Basic) else value
                )

        result = ODESystem(
            eqs, self.iv, states=_unique(states), ps=_unique(ps), name=self.name,
            defaults=defaults, verbose=self.verbose,
        )
        result.is_complete = self.is_complete
        result._namespaces = list(self.systems)
        self._flat = result
        return result

    def ode_order_lowering(self):
        """Rewrite higher-order differential equations as first-order ones.

        ``D(D(x)) ~ f`` becomes ``D(x) ~ x_t`` and ``D(x_t) ~ f`` with the
        new state ``x_t`` inserted after ``x``.  A right-hand side that
        refers to the highest derivative of a variable (e.g. ``x_t`` for a
        first-order ``x``) gets an observed equation for it.
        """
        flat = self.flatten()
        D = Differential(self.iv)

        eqs = []
        states = list(flat._states)
        lowered = set()
        highest = {}

        for eq in flat.eqs:
            if not eq.is_differential:
                eqs.append(eq)
                continue

            x, order = eq.lhs.variable, eq.lhs.order
            chain = [x] + [sp.Symbol(Derivative(x, self.iv, k).lowered_name) for k in range(1, order)]
            if x not in states:
                states.append(x)
            for lower, higher in zip(chain, chain[1:]):
                if higher not in states:
                    states.insert(states.index(lower) + 1, higher)
                if lower not in lowered:
                    eqs.append(Equation(D(lower), higher))
                    lowered.add(lower)
            if order > 1:
                self.log(f"Lowered order {order} equation for '{x}' via {chain[1:]}", 1)
            eqs.append(Equation(D(chain[-1]), eq.rhs))
            highest[sp.Symbol(Derivative(x, self.iv, order).lowered_name)] = eq.rhs

        referenced = set()
        for eq in eqs:
            referenced |= eq.rhs.free_symbols
        extra = [
            Equation(sym, rhs) for sym, rhs in highest.items()
            if sym in referenced and sym not in states
        ]
        if len(eqs) == len(flat.eqs) and not extra:
            return flat
        eqs.extend(extra)

        result = ODESystem(
            eqs, self.iv, states=states, ps=flat._ps, name=self.name,
            defaults=flat.defaults, verbose=self.verbose,
        )
        result.is_complete = flat.is_complete
        result._namespaces = flat._namespaces
        return result

    # ------------------------------------------------------------------
    # Structural simplification
    # ------------------------------------------------------------------

    def structural_simplify(self):
        """Reduce the system to explicit first-order ODEs plus observed equations.

        Returns
        -------
        ODESystem
            A completed system whose equations are ``D(x) ~ f(x, p, t)`` for
            every state plus fully resolved observed equations.

        Raises
        ------
        ValueError
            On cyclic observed equations, duplicate differential equations,
            algebraic equations that cannot be solved, or unknowns without a
            defining equation.
        """
        sys = self.ode_order_lowering()
        self.log(f"Simplifying '{self.name}' ({len(sys.eqs)} equations)")

        differential = [eq for eq in sys.eqs if eq.is_differential]
        observed = {eq.lhs: eq.rhs for eq in sys.eqs if eq.is_observed}
        algebraic = [eq for eq in sys.eqs if eq.is_algebraic]

        diff_states = [eq.lhs.variable for eq in differential]
        if len(set(diff_states)) != len(diff_states):
            raise ValueError(f"Duplicate differential equations in system '{self.name}'")

        unknowns = [s for s in sys._states if s not in diff_states and s not in observed]
        for eq in algebraic:
            observed.update(self._solve_algebraic(eq, unknowns))

        resolved = {}
        for lhs in observed:
            self._resolve_observed(lhs, observed, resolved, frozenset(), depth=1)

        new_eqs = [
            Equation(eq.lhs, eq.rhs.subs(resolved, simultaneous=True) if resolved else eq.rhs)
            for eq in differential
        ]

        used = set()
        for eq in new_eqs:
            used |= eq.rhs.free_symbols
        leftover = set(unknowns) & used
        if leftover:
            names = ", ".join(sorted(s.name for s in leftover))
            raise ValueError(f"Variable(s) {names} have no defining equation")

        ps = [p for p in sys._ps if p not in observed]
        new_eqs.extend(Equation(lhs, resolved[lhs]) for lhs in observed)

        result = ODESystem(
            new_eqs, sys.iv, states=diff_states, ps=ps, name=self.name,
            defaults=sys.defaults, verbose=self.verbose,
        )
        result.is_complete = True
        result.is_simplified = True
        result.metadata = dict(self.metadata)
        result._namespaces = list(self.systems) or list(sys._namespaces)
        self.log(f"-> {len(diff_states)} states, {len(ps)} parameters, {len(observed)} observed")
        return result

    def _solve_algebraic(self, eq, unknowns):
        """Solve ``0 ~ rhs`` for the first unknown it depends on linearly."""
        candidates = [u for u in unknowns if eq.rhs.has(u)]
        for u in candidates:
            if sp.diff(eq.rhs, u).has(u):
                continue
            solutions = sp.solve(eq.rhs, u)
            if len(solutions) == 1:
                unknowns.remove(u)
                self.log(f"Solved algebraic equation 0 ~ {eq.rhs} for '{u}'", 1)
                return {u: solutions[0]}
        raise ValueError(
            f"Cannot solve algebraic equation 0 ~ {eq.rhs} for any of "
            f"{[u.name for u in candidates]}"
        )

    def _resolve_observed(self, symbol, observed, resolved, visited, depth=0):
        """Recursively resolve an observed variable to an expression in states and parameters.

        ``visited`` holds the chain of observed variables currently being
        resolved; meeting one of them again means the equations are cyclic.
        Finished resolutions are memoised in ``resolved``.
        """
        if symbol in resolved:
            return resolved[symbol]
        if symbol in visited:
            raise ValueError(f"Cyclic observed equations involving '{symbol}'")

        rhs = observed[symbol]
        self.log(f"Resolving '{symbol}' ~ {rhs}", depth)
        subs = {
            atom: self._resolve_observed(atom, observed, resolved, visited | {symbol}, depth + 1)
            for atom in rhs.free_symbols
            if atom in observed
        }
        value = rhs.subs(subs, simultaneous=True) if subs else rhs
        resolved[symbol] = value
        return value

    def _simplified(self):
        if self.is_simplified:
            return self
        if self._simplified_cache is None:
            self._simplified_cache = self.structural_simplify()
        return self._simplified_cache

    # ------------------------------------------------------------------
    # Symbolic derivatives and code generation
    # ------------------------------------------------------------------

    def _signature(self, sys):
        return [sys.states, sys.parameters, sys.iv]

    def calculate_jacobian(self, sparse=False):
        """Symbolic Jacobian of the simplified right-hand side w.r.t. the states."""
        sys = self._simplified()
        return calculate_jacobian(sys.rhss, sys.states, sparse=sparse)

    def jacobian_sparsity(self):
        sys = self._simplified()
        return jacobian_sparsity(sys.rhss, sys.states)

    def generate_function(self, target="numpy", cse=False):
        """Compile the right-hand side as ``f(u, p, t)``.

        See :func:`~sciml_tutorials.symbolics.build_function` for targets.
        """
        sys = self._simplified()
        return build_function(
            sys.rhss, self._signature(sys), target=target, arg_names=("u", "p", "t"), cse=cse,
        )

    def generate_jacobian(self, sparse=False, cse=False):
        """Compile the Jacobian as ``J(u, p, t)`` (ndarray or ``csc_matrix``)."""
        sys = self._simplified()
        J = sys.calculate_jacobian(sparse=sparse)
        if sparse:
            return build_sparse_function(J, self._signature(sys), cse=cse)
        return build_function(J, self._signature(sys), cse=cse)

    def generate_observed(self):
        """Compile observed variables as ``g(u, p, t)``; returns ``(symbols, function)``."""
        sys = self._simplified()
        observed = sys.observed
        return [eq.lhs for eq in observed], build_function([eq.rhs for eq in observed], self._signature(sys))

    def generate_step(self, method, cse=False):
        """Compile a fixed-step update map ``step(u, p, t, dt)``."""
        sys = self._simplified()
        dt = sp.Dummy("dt")
        updates = discretise(sys.rhss, sys.states, method, dt, iv=sys.iv)
        return build_function(updates, [sys.states, sys.parameters, sys.iv, dt], cse=cse)

    # ------------------------------------------------------------------
    # Brian2 equation strings
    # ------------------------------------------------------------------

    @classmethod
    def from_equations(cls, text, name="system", function_map=None, verbose=False):
        """Build a system from a Brian2 equation string.

        Differential equations become states, subexpressions become
        observed equations and declared parameters become parameters.
        Opaque functions are expanded through ``function_map`` (name →
        SymPy-compatible callable).

        Example::

            ODESystem.from_equations('''
            dv/dt = (I - v) / tau : 1
            I = I0 * sin(w * t) : 1
            tau : second (constant)
            I0 : 1
            w : Hz
            ''', name="neuron")
        """
        from brian2 import Equations
        from brian2.parsing.sympytools import str_to_sympy

        parsed = Equations(text)
        t = sp.Symbol("t")
        D = Differential(t)

        def plain(code):
            expr = str_to_sympy(code)
            expr = expr.subs({s: sp.Symbol(s.name) for s in expr.free_symbols}, simultaneous=True)
            return replace_functions(expr, function_map)

        eqs, states, ps, metadata = [], [], [], {}
        for varname in parsed:
            single = parsed[varname]
            sym = sp.Symbol(varname)
            metadata[sym] = {
                "eq_type": single.type,
                "flags": set(single.flags),
                "dim": getattr(single, "dim", None),
            }
            if single.type == "differential equation":
                eqs.append(Equation(D(sym), plain(single.expr.code)))
                states.append(sym)
            elif single.type == "subexpression":
                eqs.append(Equation(sym, plain(single.expr.code)))
            else:
                ps.append(sym)

        system = cls(eqs, t, states=states, ps=ps, name=name, verbose=verbose)
        system.metadata = metadata
        system.log(f"Parsed {len(states)} states and {len(ps)} parameters from Brian2 equations")
        return system

    def to_brian2_equations(self, units=None):
        """Export the flattened system as a ``brian2.Equations`` object.

        ``units`` maps variable names to Brian2 unit strings (default ``1``).
        Namespaced names ``a.x`` are written as ``a_x``.
        """
        from brian2 import Equations

        sys = self.ode_order_lowering()
        units = units or {}

        def ident(sym):
            return sym.name.replace(".", "_")

        def code(expr):
            return build_function([expr], [], target="brian2")[0]

        lines = []
        for eq in sys.eqs:
            if eq.is_differential:
                var = eq.lhs.variable
                lines.append(f"d{ident(var)}/dt = {code(eq.rhs)} : {units.get(var.name, '1')}")
            elif eq.is_observed:
                lines.append(f"{ident(eq.lhs)} = {code(eq.rhs)} : {units.get(eq.lhs.name, '1')}")
        for p in sys.parameters:
            lines.append(f"{ident(p)} : {units.get(p.name, '1')}")
        return Equations("\n".join(lines))

    def __repr__(self):
        flat = self.flatten()
        lines = [f"Model {self.name} with {len(flat.differential_equations)} equations"]
        lines.append(f"States ({len(flat._states)}): " + ", ".join(map(str, flat._states)))
        params = self.parameters
        lines.append(f"Parameters ({len(params)}): " + ", ".join(map(str, params)))
        return "\n".join(lines)


def _rename_key(key, rename, prefix):
    if isinstance(key, str):
        return f"{prefix}.{key}"
    if isinstance(key, Derivative):
        return key.subs(rename)
    return rename.get(key, key)


class _Namespace:
    """Attribute view of a subsystem reached through an uncompleted parent."""

    def __init__(self, prefix, target):
        self._prefix = prefix
        self._target = target
        self.iv = target.iv
        self.name = f"{prefix}.{target.name}"

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        value = getattr(self._target, name)
        if isinstance(value, sp.Symbol):
            return value if value == self.iv else namespace(self._prefix, value)
        if isinstance(value, (ODESystem, _Namespace)):
            return _Namespace(self._prefix, value)
        return value


def compose(system, *subsystems):
    """Return ``system`` with ``subsystems`` added to its hierarchy."""
    return ODESystem(
        system.eqs, system.iv,
        states=system._explicit_states, ps=system._explicit_ps,
        name=system.name, systems=list(system.systems) + list(subsystems),
        defaults=system.defaults, verbose=system.verbose,
    )
