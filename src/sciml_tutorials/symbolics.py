"""
symbolics.py
============
Symbolic building blocks shared by every model type.

Models are written as plain SymPy expressions over ``Symbol`` objects.  This
module supplies the pieces SymPy itself does not have a convenient form for:

1. **Equations** — ``Differential(t)(x)`` terms and ``Equation(lhs, rhs)``
   objects that read like ``D(x) ~ -a*x``.
2. **Derivatives of the IR** — dense and sparse symbolic Jacobians, plus the
   structural sparsity pattern as a SciPy sparse matrix.
3. **Code generation** — ``build_function`` compiles expression lists into
   NumPy callables (out-of-place and in-place), or prints C or Brian2 code.
4. **Discretisation** — converts ``dx/dt = f(x)`` into a fixed-step update
   map (Euler, midpoint RK2, exponential Euler).

Key entry points
----------------
- ``Differential`` / ``Equation``
- ``calculate_jacobian()`` / ``jacobian_sparsity()``
- ``build_function()``
- ``discretise()``
"""

import inspect

import numpy as np
import scipy.sparse as sps
import sympy as sp

from sciml_tutorials.utils import warn


def variables(names):
    """Create state variables from a space or comma separated string.

    Always returns a tuple, even for a single name::

        x, y, z = variables("x y z")
        (u,) = variables("u")
    """
    return tuple(sp.symbols(names, seq=True))


def parameters(names):
    """Create model parameters.  Same rules as :func:`variables`."""
    return tuple(sp.symbols(names, seq=True))


# ======================================================================
# Equations
# ======================================================================

class Derivative:
    """The derivative ``d^order x / d iv^order`` of a state variable.

    On the left-hand side of an :class:`Equation` it marks a differential
    equation.  Inside expressions (``-c*D(x)``) it stands for the symbol
    ``x_t`` that order lowering introduces.
    """

    def __init__(self, variable, iv, order=1):
        self.variable = variable
        self.iv = iv
        self.order = order

    @property
    def lowered_name(self):
        """Name of the first-order state that stands in for this derivative."""
        return f"{self.variable.name}_{'t' * self.order}"

    def subs(self, mapping):
        new_var = mapping.get(self.variable, self.variable)
        if not isinstance(new_var, sp.Symbol):
            raise ValueError(
                f"Cannot substitute differentiated variable '{self.variable}' "
                f"with non-symbol '{new_var}'"
            )
        return Derivative(new_var, self.iv, self.order)

    def _sympy_(self):
        return sp.Symbol(self.lowered_name)

    def __neg__(self):
        return -self._sympy_()

    def __add__(self, other):
        return self._sympy_() + other

    def __radd__(self, other):
        return other + self._sympy_()

    def __sub__(self, other):
        return self._sympy_() - other

    def __rsub__(self, other):
        return other - self._sympy_()

    def __mul__(self, other):
        return self._sympy_() * other

    def __rmul__(self, other):
        return other * self._sympy_()

    def __truediv__(self, other):
        return self._sympy_() / other

    def __rtruediv__(self, other):
        return other / self._sympy_()

    def __pow__(self, other):
        return self._sympy_() ** other

    def __eq__(self, other):
        return (
            isinstance(other, Derivative)
            and (self.variable, self.iv, self.order) == (other.variable, other.iv, other.order)
        )

    def __hash__(self):
        return hash((self.variable, self.iv, self.order))

    def __repr__(self):
        text = str(self.variable)
        for _ in range(self.order):
            text = f"Differential({self.iv})({text})"
        return text


class Differential:
    """Differential operator with respect to an independent variable.

    >>> t = sp.Symbol("t")
    >>> D = Differential(t)
    >>> D(x)            # first derivative
    >>> D(D(x))         # second derivative, lowered by ODESystem.ode_order_lowering
    """

    def __init__(self, iv, order=1):
        self.iv = iv
        self.order = order

    def __call__(self, x):
        if isinstance(x, Derivative):
            if x.iv != self.iv:
                raise ValueError(
                    f"Cannot mix derivatives in '{x.iv}' and '{self.iv}'"
                )
            return Derivative(x.variable, self.iv, x.order + self.order)
        if not isinstance(x, sp.Symbol):
            raise ValueError(f"Can only differentiate variables, got '{x}'")
        return Derivative(x, self.iv, self.order)

    def __repr__(self):
        return f"Differential({self.iv})"


class Equation:
    """A single model equation ``lhs ~ rhs``.

    Three kinds are recognised from the left-hand side:

    - ``Derivative`` — differential equation ``D(x) ~ f``.
    - ``Symbol``     — observed (explicit algebraic) equation ``y ~ g``.
    - anything else  — implicit algebraic equation, normalised to
      ``0 ~ rhs - lhs``.
    """

    def __init__(self, lhs, rhs):
        rhs = sp.sympify(rhs)
        if not isinstance(lhs, Derivative):
            lhs = sp.sympify(lhs)
            if not isinstance(lhs, sp.Symbol) and lhs != 0:
                rhs = rhs - lhs
                lhs = sp.Integer(0)
        self.lhs = lhs
        self.rhs = rhs

    @property
    def is_differential(self):
        return isinstance(self.lhs, Derivative)

    @property
    def is_observed(self):
        return isinstance(self.lhs, sp.Symbol)

    @property
    def is_algebraic(self):
        return not self.is_differential and not self.is_observed

    @property
    def free_symbols(self):
        symbols = set(self.rhs.free_symbols)
        if self.is_differential:
            symbols.add(self.lhs.variable)
        elif self.is_observed:
            symbols.add(self.lhs)
        return symbols

    def subs(self, mapping):
        """Substitute on both sides.  ``mapping`` is a SymPy substitution dict."""
        return Equation(self.lhs.subs(mapping), self.rhs.subs(mapping, simultaneous=True))

    def __eq__(self, other):
        return isinstance(other, Equation) and self.lhs == other.lhs and self.rhs == other.rhs

    def __hash__(self):
        return hash((self.lhs, self.rhs))

    def __repr__(self):
        return f"{self.lhs} ~ {self.rhs}"


# ======================================================================
# Function mapping
# ======================================================================

def replace_functions(expr, function_map):
    """Recursively replace functions defined in ``function_map``.

    Walks the SymPy expression tree.  When a ``Function`` node is found
    whose name exists in ``function_map``, it is replaced by calling the
    mapped callable with the (recursively processed) arguments.

    Parameters
    ----------
    expr : sympy.Expr
        The expression to transform.
    function_map : dict
        Function name → callable accepting and returning SymPy expressions.

    Returns
    -------
    sympy.Expr
        The expression with all mapped functions expanded.
    """
    if not function_map:
        return expr

    if isinstance(expr, sp.Function):
        func_name = expr.func.__name__
        new_args = [replace_functions(arg, function_map) for arg in expr.args]

        if func_name in function_map:
            return function_map[func_name](*new_args)
        return expr.func(*new_args)

    # Traverse children for composite objects (Add, Mul, Pow, etc.)
    if isinstance(expr, sp.Basic) and expr.args:
        new_args = [replace_functions(arg, function_map) for arg in expr.args]
        if new_args != list(expr.args):
            return expr.func(*new_args)

    return expr


# ======================================================================
# Jacobians
# ======================================================================

def calculate_jacobian(exprs, wrt, sparse=False):
    r"""Compute the symbolic Jacobian matrix of a list of expressions.

    .. math::
        J_{ij} = \frac{\partial F_i}{\partial x_j}

    Parameters
    ----------
    exprs : list of sympy.Expr
        Expressions ``[F_1, F_2, ...]``.
    wrt : list of sympy.Symbol
        Variables ``[x_1, x_2, ...]``.
    sparse : bool
        Return a ``sympy.SparseMatrix`` holding only the structural
        non-zeros instead of a dense ``sympy.Matrix``.

    Returns
    -------
    sympy.Matrix or sympy.SparseMatrix
        Jacobian of shape ``(len(exprs), len(wrt))``.
    """
    exprs = [sp.sympify(e) for e in exprs]
    wrt = list(wrt)
    shape = (len(exprs), len(wrt))

    if sparse:
        entries = {}
        for i, expr in enumerate(exprs):
            free = expr.free_symbols
            for j, var in enumerate(wrt):
                if var in free:
                    d = sp.diff(expr, var)
                    if d != 0:
                        entries[(i, j)] = d
        return sp.SparseMatrix(shape[0], shape[1], entries)

    J = sp.zeros(*shape)
    for i, expr in enumerate(exprs):
        for j, var in enumerate(wrt):
            J[i, j] = sp.diff(expr, var)
    return J


def jacobian_sparsity(exprs, wrt):
    """Structural sparsity pattern of the Jacobian of ``exprs``.

    Entry ``(i, j)`` is set when ``wrt[j]`` appears in ``exprs[i]``.

    Returns
    -------
    scipy.sparse.csc_matrix
        Boolean matrix of shape ``(len(exprs), len(wrt))``.
    """
    exprs = [sp.sympify(e) for e in exprs]
    wrt = list(wrt)
    rows, cols = [], []
    for i, expr in enumerate(exprs):
        free = expr.free_symbols
        for j, var in enumerate(wrt):
            if var in free:
                rows.append(i)
                cols.append(j)
    data = np.ones(len(rows), dtype=bool)
    return sps.csc_matrix((data, (rows, cols)), shape=(len(exprs), len(wrt)))


# ======================================================================
# Code generation
# ======================================================================

class GeneratedFunction:
    """A compiled expression list.

    Attributes
    ----------
    oop : callable
        Out-of-place form, ``oop(*args) -> ndarray``.
    iip : callable
        In-place form, ``iip(out, *args)`` writes into ``out`` and returns it.
    source : str
        The Python source SymPy generated.
    """

    def __init__(self, oop, iip, source):
        self.oop = oop
        self.iip = iip
        self.source = source

    def __call__(self, *args):
        return self.oop(*args)

    def __repr__(self):
        return f"GeneratedFunction(\n{self.source})"


def _flatten_args(args):
    """Flatten ``[x, [y, z], t]`` into a symbol list plus the group sizes."""
    flat, layout = [], []
    for arg in args:
        if isinstance(arg, sp.Basic):
            flat.append(arg)
            layout.append(None)
        else:
            group = list(arg)
            flat.extend(group)
            layout.append(len(group))
    return flat, layout


def _flatten_values(values, layout):
    flat = []
    for value, size in zip(values, layout):
        if size is None:
            flat.append(value)
        else:
            if len(value) != size:
                raise ValueError(f"Expected {size} values, got {len(value)}")
            flat.extend(value)
    return flat


def _indexed_names(args, arg_names):
    """Substitution turning grouped arguments into ``name[i]`` symbols."""
    if arg_names is None:
        arg_names = [f"arg{k + 1}" for k in range(len(args))]
    subs = {}
    for arg, name in zip(args, arg_names):
        if isinstance(arg, sp.Basic):
            subs[arg] = sp.Symbol(name)
        else:
            for i, sym in enumerate(arg):
                subs[sym] = sp.Symbol(f"{name}[{i}]")
    return subs


def _brian2_safe(expr):
    """Rename symbols whose names are not valid identifiers (``a.x`` → ``a_x``)."""
    subs = {
        s: sp.Symbol(s.name.replace(".", "_"))
        for s in expr.free_symbols
        if not s.name.isidentifier()
    }
    return expr.subs(subs, simultaneous=True) if subs else expr


def build_function(exprs, args, target="numpy", arg_names=None, cse=False):
    """Generate code for a list (or matrix) of expressions.

    Parameters
    ----------
    exprs : list of sympy.Expr or sympy.Matrix
        The expressions to compile.  A matrix keeps its shape in the
        NumPy output.
    args : list
        Function arguments.  Each entry is a symbol or a list of symbols;
        a list becomes one array-valued argument.  ``[states, params, t]``
        gives the usual ``f(u, p, t)`` signature.
    target : str
        ``'numpy'`` (returns :class:`GeneratedFunction`), ``'c'`` (returns C
        source writing ``out[i]``) or ``'brian2'`` (returns a list of Brian2
        code strings).
    arg_names : list of str, optional
        Names used for array arguments in C output (default ``arg1``, ...).
    cse : bool
        Apply common-subexpression elimination in the NumPy backend.

    Raises
    ------
    ValueError
        If ``target`` is not recognised.
    """
    shape = None
    if isinstance(exprs, sp.MatrixBase):
        shape = exprs.shape
        exprs = list(exprs)
    exprs = [sp.sympify(e) for e in exprs]

    target = target.lower()

    if target == "numpy":
        flat_args, layout = _flatten_args(args)
        raw = sp.lambdify(flat_args, exprs, modules="numpy", cse=cse)

        def oop(*values):
            out = np.asarray(raw(*_flatten_values(values, layout)), dtype=float)
            return out.reshape(shape) if shape is not None else out

        def iip(out, *values):
            out[...] = oop(*values)
            return out

        return GeneratedFunction(oop, iip, inspect.getsource(raw))

    elif target == "c":
        subs = _indexed_names(args, arg_names)
        lines = [
            f"out[{i}] = {sp.ccode(expr.subs(subs, simultaneous=True))};"
            for i, expr in enumerate(exprs)
        ]
        return "\n".join(lines)

    elif target == "brian2":
        from brian2.parsing.sympytools import sympy_to_str
        return [sympy_to_str(_brian2_safe(expr)) for expr in exprs]

    else:
        raise ValueError(f"Unknown code generation target: {target}")


def build_sparse_function(matrix, args, cse=False):
    """Compile a sparse symbolic matrix into a function returning ``csc_matrix``.

    Only the structural non-zeros are evaluated; the pattern is fixed at
    compile time.
    """
    n_rows, n_cols = matrix.shape
    rows, cols, values = [], [], []
    for i in range(n_rows):
        for j in range(n_cols):
            entry = matrix[i, j]
            if entry != 0:
                rows.append(i)
                cols.append(j)
                values.append(entry)

    compiled = build_function(values, args, cse=cse)
    rows = np.array(rows, dtype=int)
    cols = np.array(cols, dtype=int)

    def oop(*vals):
        data = compiled.oop(*vals) if len(rows) else np.zeros(0)
        return sps.csc_matrix((data, (rows, cols)), shape=(n_rows, n_cols))

    def iip(out, *vals):
        out[...] = oop(*vals).toarray()
        return out

    return GeneratedFunction(oop, iip, compiled.source)


# ======================================================================
# Discretisation
# ======================================================================

def discretise(exprs, states, integration_method, dt, iv=None):
    """Convert a continuous ODE system into a discrete update map.

    Converts ``dx/dt = f(x)`` into ``x_{n+1} = G(x_n)`` using the
    specified numerical integration method.

    Parameters
    ----------
    exprs : sympy.Expr or list of sympy.Expr
        The right-hand sides ``f(x)``.
    states : sympy.Symbol or list of sympy.Symbol
        The state variables being evolved, in matching order.
    integration_method : str
        One of ``'euler'``, ``'rk2'`` (or ``'heun'``),
        ``'exponential_euler'``.
    dt : sympy.Symbol or float
        The timestep.
    iv : sympy.Symbol, optional
        Independent variable of time-dependent right-hand sides; the RK2
        midpoint stage evaluates them at ``iv + dt/2``.

    Returns
    -------
    sympy.Expr or list of sympy.Expr
        Updated states, in the same form as ``exprs``.

    Raises
    ------
    ValueError
        If ``integration_method`` is not recognised.
    """
    scalar = isinstance(exprs, sp.Basic)
    if scalar:
        exprs, states = [exprs], [states]
    exprs = [sp.sympify(e) for e in exprs]
    states = list(states)

    method = integration_method.lower()

    if method == 'euler':
        # Forward Euler: x_new = x + dt * f(x)
        updates = [x + dt * f for x, f in zip(states, exprs)]

    elif method in ('rk2', 'heun'):
        # Midpoint method (RK2):
        # k1 = f(x, t);  k2 = f(x + dt/2 * k1, t + dt/2);  x_new = x + dt * k2
        midpoint = {x: x + (dt / 2) * k1 for x, k1 in zip(states, exprs)}
        if iv is not None:
            midpoint[iv] = iv + dt / 2
        updates = [
            x + dt * f.subs(midpoint, simultaneous=True)
            for x, f in zip(states, exprs)
        ]

    elif method == 'exponential_euler':
        # For conditionally linear ODEs dx/dt = -A x + B (A, B free of x):
        # x_new = x * exp(-A*dt) + (B/A) * (1 - exp(-A*dt))
        updates = []
        for x, f in zip(states, exprs):
            linear_coeff = sp.diff(f, x)

            if linear_coeff.has(x):
                warn(
                    f"Exponential Euler requested for non-linear ODE "
                    f"'{f}'. Falling back to Euler."
                )
                updates.append(x + dt * f)
                continue

            A_decay = -linear_coeff
            B_input = f.subs(x, 0)

            if A_decay == 0:
                updates.append(x + dt * f)
                continue

            decay_factor = sp.exp(-A_decay * dt)
            updates.append(x * decay_factor + (B_input / A_decay) * (1 - decay_factor))

    else:
        raise ValueError(f"Unknown integration method: {integration_method}")

    return updates[0] if scalar else updates
