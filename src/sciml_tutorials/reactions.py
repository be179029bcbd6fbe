"""
reactions.py
============
Chemical reaction networks.

A ``ReactionSystem`` is a list of :class:`Reaction` objects over species and
parameter symbols.  From it this module derives:

1. **Stoichiometry** — substrate, product and net stoichiometry matrices
   (species × reactions) and a basis of conservation laws.
2. **Rate laws** — mass-action rate laws for the deterministic (ODE) and
   stochastic (jump) interpretations, optionally with combinatoric factors.
3. **Models** — ``convert_to_ode`` builds an
   :class:`~sciml_tutorials.system.ODESystem`; ``JumpProblem`` in
   :mod:`sciml_tutorials.jumps` simulates the stochastic model.
4. **Dependency graphs** — which species each rate depends on, and which
   rates must be recomputed after a reaction fires.

Networks can be written reaction by reaction (``add_reaction``) or with the
line-based DSL of :func:`reaction_network`::

    rn = reaction_network('''
        k1, S + E --> SE
        k2, SE --> S + E
        k3, SE --> P + E
    ''')
"""

import math
import re
from tokenize import TokenError

import numpy as np
import sympy as sp

from sciml_tutorials.symbolics import Differential, Equation
from sciml_tutorials.system import ODESystem
from sciml_tutorials.utils import VerboseMixin


def _factorial(n):
    return sp.Integer(math.factorial(n))


class Reaction:
    """A single reaction ``rate, substrates --> products``.

    Parameters
    ----------
    rate : sympy.Expr or number
        Rate constant, or full rate law when ``only_use_rate`` is set.
    substrates, products : list of sympy.Symbol
        Species consumed and produced.  Either side may be empty.
    substoich, prodstoich : list of int, optional
        Stoichiometric coefficients (default all 1).  Repeated species are
        merged.
    only_use_rate : bool
        Use ``rate`` as the complete rate law instead of multiplying in the
        mass-action terms.

    Raises
    ------
    ValueError
        If both sides are empty, coefficients do not match the species
        lists, or a coefficient is not a positive integer.
    """

    def __init__(self, rate, substrates, products, substoich=None, prodstoich=None,
                 only_use_rate=False):
        self.rate = sp.sympify(rate)
        self.substrates, self.substoich = self._merge(substrates, substoich, "substrate")
        self.products, self.prodstoich = self._merge(products, prodstoich, "product")
        self.only_use_rate = only_use_rate

        if not self.substrates and not self.products:
            raise ValueError("A reaction needs at least one substrate or product")

        net = {}
        for s, n in zip(self.substrates, self.substoich):
            net[s] = net.get(s, 0) - n
        for s, n in zip(self.products, self.prodstoich):
            net[s] = net.get(s, 0) + n
        self.netstoich = {s: n for s, n in net.items() if n != 0}

    @staticmethod
    def _merge(species, stoich, side):
        species = list(species or [])
        stoich = [1] * len(species) if stoich is None else list(stoich)
        if len(stoich) != len(species):
            raise ValueError(
                f"Got {len(stoich)} {side} coefficients for {len(species)} {side}s"
            )
        merged = {}
        for s, n in zip(species, stoich):
            if int(n) != n or n <= 0:
                raise ValueError(f"Stoichiometric coefficients must be positive integers, got {n}")
            merged[s] = merged.get(s, 0) + int(n)
        return list(merged), list(merged.values())

    @property
    def species(self):
        seen = list(self.substrates)
        seen.extend(s for s in self.products if s not in seen)
        return seen

    def _side(self, species, stoich):
        if not species:
            return "∅"
        return " + ".join(s.name if n == 1 else f"{n}{s.name}" for s, n in zip(species, stoich))

    def __repr__(self):
        arrow = "=>" if self.only_use_rate else "-->"
        return (
            f"{self.rate}, {self._side(self.substrates, self.substoich)} {arrow} "
            f"{self._side(self.products, self.prodstoich)}"
        )


def oderatelaw(rx, combinatoric_ratelaws=True):
    """Deterministic mass-action rate law, e.g. ``k*X**2/2`` for ``k, 2X --> Y``."""
    rl = rx.rate
    if rx.only_use_rate:
        return rl
    for s, n in zip(rx.substrates, rx.substoich):
        rl = rl * s ** n
        if combinatoric_ratelaws:
            rl = rl / _factorial(n)
    return rl


def jumpratelaw(rx, combinatoric_ratelaws=True):
    """Stochastic propensity, e.g. ``k*X*(X - 1)/2`` for ``k, 2X --> Y``."""
    rl = rx.rate
    if rx.only_use_rate:
        return rl
    for s, n in zip(rx.substrates, rx.substoich):
        for k in range(n):
            rl = rl * (s - k)
        if combinatoric_ratelaws:
            rl = rl / _factorial(n)
    return rl


class ReactionSystem(VerboseMixin):
    """A chemical reaction network.

    Parameters
    ----------
    reactions : list of Reaction
        Initial reactions; more can be added with :meth:`add_reaction`.
    iv : sympy.Symbol, optional
        Independent variable (default ``t``).
    species, ps : list of sympy.Symbol, optional
        Species and parameters declared up front.  Species referenced only
        inside rate expressions must be declared here, otherwise they are
        taken to be parameters.
    name : str
    defaults : dict, optional
        Default initial conditions and parameter values.
    combinatoric_ratelaws : bool
        Divide mass-action terms by ``n!`` for stoichiometry ``n``.
    verbose : bool
    """

    def __init__(self, reactions=(), iv=None, species=None, ps=None, name="rn",
                 defaults=None, combinatoric_ratelaws=True, verbose=False):
        self.iv = iv if iv is not None else sp.Symbol("t")
        self.name = name
        self.defaults = dict(defaults or {})
        self.combinatoric_ratelaws = combinatoric_ratelaws
        self.verbose = verbose
        self._species = []
        self._ps = []
        self._reactions = []
        for s in species or ():
            self.add_species(s)
        for p in ps or ():
            self.add_parameter(p)
        for rx in reactions:
            self.add_reaction(rx)

    @property
    def species(self):
        return list(self._species)

    @property
    def parameters(self):
        return list(self._ps)

    @property
    def reactions(self):
        return list(self._reactions)

    def add_species(self, s):
        """Add a species if not already present; returns its index."""
        if s not in self._species:
            if s in self._ps:
                raise ValueError(f"'{s}' is already a parameter of '{self.name}'")
            self._species.append(s)
        return self._species.index(s)

    def add_parameter(self, p):
        """Add a parameter if not already present; returns its index."""
        if p not in self._ps:
            if p in self._species:
                raise ValueError(f"'{p}' is already a species of '{self.name}'")
            self._ps.append(p)
        return self._ps.index(p)

    def add_reaction(self, rx):
        """Append a reaction, registering any new species and parameters.

        Returns the number of reactions in the system.
        """
        for s in rx.species:
            self.add_species(s)
        for sym in sorted(rx.rate.free_symbols, key=lambda s: s.name):
            if sym != self.iv and sym not in self._species:
                self.add_parameter(sym)
        self._reactions.append(rx)
        self.log(f"Added reaction {len(self._reactions)}: {rx}")
        return len(self._reactions)

    # ------------------------------------------------------------------
    # Stoichiometry
    # ------------------------------------------------------------------

    def _stoichmat(self, getter):
        M = np.zeros((len(self._species), len(self._reactions)), dtype=int)
        for j, rx in enumerate(self._reactions):
            for s, n in getter(rx):
                M[self._species.index(s), j] = n
        return M

    def substoichmat(self):
        """Substrate stoichiometry matrix, species × reactions."""
        return self._stoichmat(lambda rx: zip(rx.substrates, rx.substoich))

    def prodstoichmat(self):
        """Product stoichiometry matrix, species × reactions."""
        return self._stoichmat(lambda rx: zip(rx.products, rx.prodstoich))

    def netstoichmat(self):
        """Net stoichiometry matrix, species × reactions."""
        return self._stoichmat(lambda rx: rx.netstoich.items())

    def conservationlaws(self):
        """Integer basis of the conservation laws ``c @ N = 0``.

        Each row ``c`` (one entry per species) gives a linear combination of
        species that no reaction changes, e.g. ``E + SE`` for an enzyme.
        Every row is scaled to integers with its first non-zero entry
        positive.
        """
        N = sp.Matrix(self.netstoichmat())
        laws = []
        for vec in N.T.nullspace():
            denominators = [sp.fraction(sp.nsimplify(v))[1] for v in vec]
            scale = math.lcm(*(int(d) for d in denominators))
            row = [int(v * scale) for v in vec]
            first = next(v for v in row if v != 0)
            if first < 0:
                row = [-v for v in row]
            laws.append(row)
        return np.array(laws, dtype=int).reshape(len(laws), len(self._species))

    # ------------------------------------------------------------------
    # Rate laws and dependency graphs
    # ------------------------------------------------------------------

    def oderatelaws(self):
        return [oderatelaw(rx, self.combinatoric_ratelaws) for rx in self._reactions]

    def jumpratelaws(self):
        return [jumpratelaw(rx, self.combinatoric_ratelaws) for rx in self._reactions]

    def species_dependency_graph(self):
        """For each reaction, the indices of species its propensity depends on."""
        graph = []
        for law in self.jumpratelaws():
            free = law.free_symbols
            graph.append([i for i, s in enumerate(self._species) if s in free])
        return graph

    def species_to_reactions(self):
        """For each species, the indices of reactions whose propensity depends on it."""
        graph = [[] for _ in self._species]
        for j, deps in enumerate(self.species_dependency_graph()):
            for i in deps:
                graph[i].append(j)
        return graph

    def reaction_dependency_graph(self):
        """For each reaction, the reactions to update after it fires.

        Reaction ``j`` depends on reaction ``i`` when ``i`` changes a species
        that ``j``'s propensity depends on.  Every reaction depends on itself.
        """
        spec_to_rx = self.species_to_reactions()
        graph = []
        for i, rx in enumerate(self._reactions):
            deps = {i}
            for s in rx.netstoich:
                deps.update(spec_to_rx[self._species.index(s)])
            graph.append(sorted(deps))
        return graph

    def __repr__(self):
        lines = [f"Model {self.name}"]
        lines.append(f"Species ({len(self._species)}): " + ", ".join(map(str, self._species)))
        lines.append(f"Parameters ({len(self._ps)}): " + ", ".join(map(str, self._ps)))
        lines.append(f"Reactions ({len(self._reactions)}):")
        lines.extend(f"  {rx}" for rx in self._reactions)
        return "\n".join(lines)


def convert_to_ode(rs, name=None):
    """Build the mass-action :class:`~sciml_tutorials.system.ODESystem` of a network.

    ``D(X) ~ sum_j N[X, j] * ratelaw_j`` for every species ``X``.
    """
    D = Differential(rs.iv)
    N = rs.netstoichmat()
    rates = rs.oderatelaws()
    eqs = []
    for i, s in enumerate(rs.species):
        rhs = sum((int(N[i, j]) * rates[j] for j in range(len(rates)) if N[i, j] != 0), sp.Integer(0))
        eqs.append(Equation(D(s), rhs))
    rs.log(f"Converted '{rs.name}' to {len(eqs)} ODEs")
    return ODESystem(
        eqs, rs.iv, states=rs.species, ps=rs.parameters, name=name or rs.name,
        defaults=rs.defaults, verbose=rs.verbose,
    )


# ======================================================================
# Reaction DSL
# ======================================================================

_ARROW = re.compile(r"(<-->|-->|<--|=>)")
_TERM = re.compile(r"^\s*(\d+)?\s*\*?\s*([A-Za-z_][A-Za-z0-9_]*)\s*$")
_IDENT = re.compile(r"(?<![\w.])[A-Za-z_][A-Za-z0-9_]*")
_EMPTY = ("", "0", "∅")


def hill(x, v, k, n):
    """Hill function ``v * x^n / (k^n + x^n)``."""
    return v * x ** n / (k ** n + x ** n)


def mm(x, v, k):
    """Michaelis–Menten function ``v * x / (k + x)``."""
    return v * x / (k + x)


RATE_FUNCTIONS = {
    "hill": hill,
    "mm": mm,
    "exp": sp.exp,
    "log": sp.log,
    "sqrt": sp.sqrt,
    "sin": sp.sin,
    "cos": sp.cos,
    "tanh": sp.tanh,
}


def _split_top_level(text, sep):
    """Split ``text`` on ``sep`` outside of parentheses."""
    parts, depth, current = [], 0, []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


def _parse_side(text, lineno):
    text = text.strip()
    if text in _EMPTY:
        return [], []
    names, stoich = [], []
    for term in text.split("+"):
        match = _TERM.match(term)
        if match is None:
            raise ValueError(f"Line {lineno}: cannot parse species term '{term.strip()}'")
        stoich.append(int(match.group(1) or 1))
        names.append(match.group(2))
    return names, stoich


def _parse_rate(text, symbols, lineno):
    local = dict(RATE_FUNCTIONS)
    for name in _IDENT.findall(text):
        if name not in RATE_FUNCTIONS:
            local[name] = symbols.setdefault(name, sp.Symbol(name))
    try:
        return sp.parse_expr(text, local_dict=local)
    except (SyntaxError, TypeError, TokenError, sp.SympifyError) as exc:
        raise ValueError(f"Line {lineno}: cannot parse rate '{text.strip()}': {exc}") from exc


def reaction_network(text, name="rn", iv=None, combinatoric_ratelaws=True, verbose=False):
    """Build a :class:`ReactionSystem` from one reaction per line.

    Syntax::

        k, A + B --> C          # mass action
        (kf, kb), A <--> B      # reversible pair: kf forward, kb backward
        k, C <-- A              # written right to left
        hill(X, v, K, n), 0 => X  # rate used as the full rate law
        d, X --> ∅              # degradation; 0 and ∅ both mean "nothing"
        k, 2X --> X2            # integer stoichiometry

    Species and parameters are ordered by first appearance.  Lines
    starting with ``#`` and blank lines are ignored.

    Raises
    ------
    ValueError
        If a line has no arrow, no rate, or an unparseable side or rate.
    """
    iv = iv if iv is not None else sp.Symbol("t")
    parsed = []
    species_names = []

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        pieces = _ARROW.split(line, maxsplit=1)
        if len(pieces) != 3:
            raise ValueError(f"Line {lineno}: no reaction arrow in '{line}'")
        left, arrow, right = pieces

        head = _split_top_level(left, ",")
        if len(head) < 2:
            raise ValueError(f"Line {lineno}: expected 'rate, reactants {arrow} products'")
        rate_text = ",".join(head[:-1])
        lhs_names, lhs_stoich = _parse_side(head[-1], lineno)
        rhs_names, rhs_stoich = _parse_side(right, lineno)

        for n in lhs_names + rhs_names:
            if n not in species_names:
                species_names.append(n)
        parsed.append((lineno, rate_text, arrow, lhs_names, lhs_stoich, rhs_names, rhs_stoich))

    symbols = {n: sp.Symbol(n) for n in species_names}
    symbols[iv.name] = iv
    species = [symbols[n] for n in species_names]
    param_names = []

    reactions = []
    for lineno, rate_text, arrow, lhs_names, lhs_stoich, rhs_names, rhs_stoich in parsed:
        for n in _IDENT.findall(rate_text):
            if n not in RATE_FUNCTIONS and n not in species_names and n != iv.name \
                    and n not in param_names:
                param_names.append(n)

        lhs = [symbols[n] for n in lhs_names]
        rhs = [symbols[n] for n in rhs_names]

        if arrow == "<-->":
            rate_text = rate_text.strip()
            if not (rate_text.startswith("(") and rate_text.endswith(")")):
                raise ValueError(f"Line {lineno}: reversible reactions need '(kf, kb)' rates")
            rates = _split_top_level(rate_text[1:-1], ",")
            if len(rates) != 2:
                raise ValueError(f"Line {lineno}: reversible reactions need exactly two rates")
            reactions.append(Reaction(_parse_rate(rates[0], symbols, lineno), lhs, rhs, lhs_stoich, rhs_stoich))
            reactions.append(Reaction(_parse_rate(rates[1], symbols, lineno), rhs, lhs, rhs_stoich, lhs_stoich))
        elif arrow == "<--":
            reactions.append(Reaction(_parse_rate(rate_text, symbols, lineno), rhs, lhs, rhs_stoich, lhs_stoich))
        else:
            reactions.append(Reaction(
                _parse_rate(rate_text, symbols, lineno), lhs, rhs, lhs_stoich, rhs_stoich,
                only_use_rate=(arrow == "=>"),
            ))

    ps = [symbols[n] for n in param_names]
    return ReactionSystem(
        reactions, iv=iv, species=species, ps=ps, name=name,
        combinatoric_ratelaws=combinatoric_ratelaws, verbose=verbose,
    )
