"""
jumps.py
========
Stochastic simulation of reaction networks (Gillespie's direct method).

Species are integer copy numbers.  Each reaction fires with its mass-action
propensity (:func:`~sciml_tutorials.reactions.jumpratelaw`).  After a firing
only the propensities listed in the network's reaction dependency graph are
recomputed.
"""

import numpy as np

from sciml_tutorials.problem import TimeSeriesSolution, evaluate_values
from sciml_tutorials.symbolics import build_function
from sciml_tutorials.utils import VerboseMixin, resolve_value_map, symbol_table, warn


class JumpSolution(TimeSeriesSolution):
    """Piecewise-constant trajectory: one column per event, plus the final time."""

    def __init__(self, prob, t, u, retcode="Success", message=""):
        super().__init__(prob.rs.species, t, u, retcode=retcode, message=message)
        self.prob = prob
        self.n_events = 0

    def __call__(self, t):
        """State at time(s) ``t`` (the last event at or before ``t``)."""
        t = np.asarray(t, dtype=float)
        index = np.searchsorted(self.t, t, side="right") - 1
        return self.u[:, np.clip(index, 0, len(self.t) - 1)]


class JumpProblem(VerboseMixin):
    """A stochastic (jump) problem for a :class:`~sciml_tutorials.reactions.ReactionSystem`.

    Parameters
    ----------
    rs : ReactionSystem
    u0 : dict
        Initial copy numbers, keyed by species symbol or name.
    tspan : tuple of float
    p : dict, optional
        Rate constants, keyed by symbol or name.
    seed : int, optional
        Seed for ``numpy.random.default_rng``.
    verbose : bool

    Raises
    ------
    ValueError
        On missing values, non-integer copy numbers, or rates that depend
        explicitly on time.
    """

    def __init__(self, rs, u0, tspan, p=None, seed=None, verbose=False):
        self.rs = rs
        self.verbose = verbose
        self.tspan = (float(tspan[0]), float(tspan[1]))
        self.seed = seed

        table = symbol_table(rs.species + rs.parameters)
        values = {}
        values.update(resolve_value_map(
            {k: v for k, v in rs.defaults.items() if _named(k, table)}, table,
        ))
        values.update(resolve_value_map(u0, table))
        values.update(resolve_value_map(p, table))

        u0_values = evaluate_values(rs.species, values, "initial copy number")
        if not np.allclose(u0_values, np.round(u0_values)):
            raise ValueError("Initial copy numbers of a jump problem must be integers")
        self.u0 = np.round(u0_values).astype(np.int64)
        self.p = evaluate_values(rs.parameters, values, "parameter value")

        laws = rs.jumpratelaws()
        for rx, law in zip(rs.reactions, laws):
            if rs.iv in law.free_symbols:
                raise ValueError(f"Time-dependent rate in reaction '{rx}' is not supported")

        args = [rs.species, rs.parameters]
        self._propensities = [build_function([law], args) for law in laws]
        self._net = rs.netstoichmat()
        self._dependencies = rs.reaction_dependency_graph()
        self.log(f"Compiled {len(laws)} propensities for '{rs.name}'")

    def _propensity(self, j, u):
        return max(float(self._propensities[j].oop(u, self.p)[0]), 0.0)

    def solve(self, max_events=1_000_000, seed=None):
        """Run one SSA trajectory.

        Parameters
        ----------
        max_events : int
            Stop (with retcode ``'Failure'``) after this many firings.
        seed : int, optional
            Overrides the problem seed for this trajectory.

        Returns
        -------
        JumpSolution
        """
        rng = np.random.default_rng(self.seed if seed is None else seed)
        t, tf = self.tspan
        u = self.u0.copy()
        n_rx = len(self._propensities)
        a = np.array([self._propensity(j, u) for j in range(n_rx)])

        times, states = [t], [u.copy()]
        retcode, message = "Success", "Reached end of time span"
        events = 0
        while True:
            a0 = a.sum()
            if a0 <= 0:
                message = "No reaction can fire"
                break
            tau = rng.exponential(1.0 / a0)
            if t + tau > tf:
                break
            t += tau
            j = min(int(np.searchsorted(np.cumsum(a), rng.random() * a0, side="right")), n_rx - 1)
            u += self._net[:, j]
            for k in self._dependencies[j]:
                a[k] = self._propensity(k, u)
            times.append(t)
            states.append(u.copy())
            events += 1
            if events >= max_events:
                warn(f"Stopped after {max_events} events at t={t}")
                retcode, message = "Failure", f"Exceeded max_events={max_events}"
                break

        if retcode == "Success":
            times.append(tf)
            states.append(u.copy())
        self.log(f"SSA finished with {events} events: {message}")
        sol = JumpSolution(self, times, np.array(states).T, retcode=retcode, message=message)
        sol.n_events = events
        return sol

    def __repr__(self):
        return f"JumpProblem({self.rs.name!r}, tspan={self.tspan}, u0={self.u0.tolist()})"


def _named(key, table):
    name = getattr(key, "name", key)
    return name in table
