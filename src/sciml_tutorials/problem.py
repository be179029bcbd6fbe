"""
problem.py
==========
Numerical ODE problems built from symbolic systems.

``ODEProblem`` binds an :class:`~sciml_tutorials.system.ODESystem` to initial
conditions, parameter values and a time span, compiles the right-hand side
(and optionally a dense or sparse Jacobian) and integrates it with
``scipy.integrate.solve_ivp`` or with one of the fixed-step maps produced by
:func:`~sciml_tutorials.symbolics.discretise`.

Key entry points
----------------
- ``ODEProblem``    — problem definition, ``remake`` and ``solve``
- ``ODESolution``   — time series indexed by symbol or name
- ``solve()``       — dispatches to ``problem.solve``
"""

import copy

import numpy as np
import sympy as sp
from scipy.integrate import solve_ivp

from sciml_tutorials.utils import (
    VerboseMixin,
    resolve_symbol,
    resolve_value_map,
    symbol_table,
)

SCIPY_METHODS = ("RK45", "RK23", "DOP853", "Radau", "BDF", "LSODA")
IMPLICIT_METHODS = ("Radau", "BDF", "LSODA")
FIXED_STEP_METHODS = ("euler", "rk2", "heun", "exponential_euler")


def evaluate_values(symbols, values, what):
    """Evaluate ``values[s]`` for each symbol, resolving symbolic defaults.

    Defaults may be expressions of other known values (e.g. ``y0 = 2*x0``).

    Raises
    ------
    ValueError
        If a symbol has no value, or an expression cannot be reduced to a
        number.
    """
    numeric = {k: v for k, v in values.items() if not isinstance(v, sp.Basic) or v.is_number}
    out = []
    for s in symbols:
        if s not in values:
            raise ValueError(f"Missing {what} for '{s}'")
        value = values[s]
        if isinstance(value, sp.Basic) and not value.is_number:
            value = value.subs(numeric)
            if not value.is_number:
                raise ValueError(f"Cannot evaluate {what} for '{s}': {values[s]}")
        out.append(float(value))
    return np.array(out, dtype=float)


class TimeSeriesSolution:
    """A trajectory of states over time.

    Attributes
    ----------
    t : ndarray, shape (n_t,)
        Save times.
    u : ndarray, shape (n_states, n_t)
        State values, one row per state.
    retcode : str
        ``'Success'`` or ``'Failure'``.
    message : str
        Solver message.
    """

    def __init__(self, states, t, u, retcode="Success", message=""):
        self.states = list(states)
        self.t = np.asarray(t, dtype=float)
        self.u = np.asarray(u, dtype=float).reshape(len(self.states), len(self.t))
        self.retcode = retcode
        self.message = message
        self._table = symbol_table(self.states)

    @property
    def success(self):
        return self.retcode == "Success"

    def _lookup(self, key):
        return resolve_symbol(key, self._table)

    def __getitem__(self, key):
        """Time series of a state (by symbol, name or derivative term)."""
        sym = self._lookup(key)
        return self.u[self.states.index(sym)]

    def __call__(self, t):
        """Linearly interpolate all states at time(s) ``t``."""
        t = np.asarray(t, dtype=float)
        rows = [np.interp(t, self.t, row) for row in self.u]
        return np.array(rows)

    def __len__(self):
        return len(self.t)

    def to_dict(self):
        out = {"t": self.t}
        out.update({s.name: row for s, row in zip(self.states, self.u)})
        return out

    def __repr__(self):
        return (
            f"{type(self).__name__}(retcode={self.retcode!r}, "
            f"{len(self.states)} states, {len(self.t)} time points)"
        )


class ODESolution(TimeSeriesSolution):
    """Solution of an :class:`ODEProblem`; observed variables are also indexable."""

    def __init__(self, prob, t, u, retcode="Success", message=""):
        super().__init__(prob.sys.states, t, u, retcode=retcode, message=message)
        self.prob = prob
        self._observed_symbols, self._observed_fn = prob.observed
        self._table.update(symbol_table(self._observed_symbols))
        self._table.update(symbol_table(prob.sys.parameters))

    def __getitem__(self, key):
        sym = self._lookup(key)
        if sym in self.states:
            return self.u[self.states.index(sym)]
        if sym in self._observed_symbols:
            index = self._observed_symbols.index(sym)
            return np.array([
                self._observed_fn.oop(self.u[:, k], self.prob.p, tk)[index]
                for k, tk in enumerate(self.t)
            ])
        # Parameters are constant over the trajectory
        return np.full(len(self.t), self.prob.p[self.prob.sys.parameters.index(sym)])


class ODEProblem(VerboseMixin):
    """An ODE system with initial conditions, parameters and a time span.

    Parameters
    ----------
    sys : ODESystem
        The model.  Simplified automatically if needed.
    u0 : dict
        Initial conditions, keyed by state symbol or name.  Merged over the
        system defaults.
    tspan : tuple of float
        ``(t0, tf)``.
    p : dict, optional
        Parameter values, keyed by symbol or name.  Merged over the system
        defaults.
    jac : bool
        Compile the symbolic Jacobian and hand it to implicit solvers.
    sparse : bool
        Compile the Jacobian as a ``scipy.sparse.csc_matrix``.
    verbose : bool
        Print compilation and solver steps.

    Raises
    ------
    ValueError
        If a state or parameter has no value.
    """

    def __init__(self, sys, u0, tspan, p=None, jac=False, sparse=False, verbose=False):
        self.verbose = verbose
        if not sys.is_simplified:
            sys = sys.structural_simplify()
        self.sys = sys
        self.tspan = (float(tspan[0]), float(tspan[1]))
        self.jac_enabled = jac
        self.sparse = sparse

        table = symbol_table(sys.states + sys.parameters)
        self._values = dict(resolve_value_map(
            {k: v for k, v in sys.defaults.items() if _known(k, table)}, table,
        ))
        self._values.update(resolve_value_map(u0, table))
        self._values.update(resolve_value_map(p, table))
        self.u0 = evaluate_values(sys.states, self._values, "initial condition")
        self.p = evaluate_values(sys.parameters, self._values, "parameter value")

        self.log(f"Compiling '{sys.name}': {len(sys.states)} states, {len(sys.parameters)} parameters")
        self.f = sys.generate_function()
        self.jac = sys.generate_jacobian(sparse=sparse) if jac else None
        self.observed = sys.generate_observed()
        self._steppers = {}

    def remake(self, u0=None, p=None, tspan=None):
        """Copy of the problem with some values replaced; compiled code is reused."""
        table = symbol_table(self.sys.states + self.sys.parameters)
        new = copy.copy(self)
        new._values = dict(self._values)
        new._values.update(resolve_value_map(u0, table))
        new._values.update(resolve_value_map(p, table))
        if tspan is not None:
            new.tspan = (float(tspan[0]), float(tspan[1]))
        new.u0 = evaluate_values(self.sys.states, new._values, "initial condition")
        new.p = evaluate_values(self.sys.parameters, new._values, "parameter value")
        return new

    def observable_symbols(self, observables=None):
        """Resolve states or observed variables by symbol or name (default: all states)."""
        if observables is None:
            return list(self.sys.states)
        table = symbol_table(self.sys.states + [eq.lhs for eq in self.sys.observed])
        return [resolve_symbol(o, table) for o in observables]

    def _save_times(self, saveat):
        if saveat is None:
            return None
        t0, tf = self.tspan
        if np.ndim(saveat) == 0:
            step = float(saveat)
            times = np.arange(t0, tf, step)
            if times.size == 0 or not np.isclose(times[-1], tf):
                times = np.append(times, tf)
            return times
        times = np.asarray(saveat, dtype=float)
        if times.min() < min(t0, tf) or times.max() > max(t0, tf):
            raise ValueError(f"saveat times must lie within tspan {self.tspan}")
        return times

    def solve(self, method="LSODA", saveat=None, rtol=1e-6, atol=1e-8, dt=None, **kwargs):
        """Integrate the problem.

        Parameters
        ----------
        method : str
            A ``solve_ivp`` method (``'RK45'``, ``'RK23'``, ``'DOP853'``,
            ``'Radau'``, ``'BDF'``, ``'LSODA'``) or a fixed-step method
            (``'euler'``, ``'rk2'``/``'heun'``, ``'exponential_euler'``).
        saveat : float or array_like, optional
            Save interval, or explicit save times.  Defaults to the solver's
            own steps (every step for fixed-step methods).
        rtol, atol : float
            Tolerances for adaptive methods.
        dt : float, optional
            Step size, required by fixed-step methods.
        **kwargs
            Passed through to ``solve_ivp``.

        Returns
        -------
        ODESolution

        Raises
        ------
        ValueError
            If ``method`` is not recognised or ``dt`` is missing.
        """
        if method.lower() in FIXED_STEP_METHODS:
            return self._solve_fixed_step(method.lower(), dt, saveat)
        if method not in SCIPY_METHODS:
            raise ValueError(f"Unknown integration method: {method}")

        p = self.p

        def rhs(t, u):
            return self.f.oop(u, p, t)

        options = {"rtol": rtol, "atol": atol}
        t_eval = self._save_times(saveat)
        if t_eval is not None:
            options["t_eval"] = t_eval

        if self.jac is not None and method in IMPLICIT_METHODS:
            dense = method == "LSODA"

            def jacobian(t, u):
                J = self.jac.oop(u, p, t)
                return J.toarray() if dense and self.sparse else J

            options["jac"] = jacobian
        elif self.sparse and method in ("Radau", "BDF"):
            options["jac_sparsity"] = self.sys.jacobian_sparsity()

        options.update(kwargs)
        self.log(f"Solving with {method} over {self.tspan}")
        result = solve_ivp(rhs, self.tspan, self.u0, method=method, **options)
        retcode = "Success" if result.success else "Failure"
        self.log(f"-> {retcode}: {result.message} ({result.nfev} evaluations)", 1)
        return ODESolution(self, result.t, result.y, retcode=retcode, message=result.message)

    def _solve_fixed_step(self, method, dt, saveat):
        if dt is None or dt <= 0:
            raise ValueError(f"Fixed-step method '{method}' requires a positive dt")
        if method not in self._steppers:
            self._steppers[method] = self.sys.generate_step(method)
        step = self._steppers[method]

        t0, tf = self.tspan
        n_steps = int(np.ceil((tf - t0) / dt - 1e-9))
        times = np.empty(n_steps + 1)
        states = np.empty((len(self.u0), n_steps + 1))
        times[0], states[:, 0] = t0, self.u0

        u, t = self.u0.copy(), t0
        for k in range(1, n_steps + 1):
            h = min(dt, tf - t)
            u = step.oop(u, self.p, t, h)
            t = t + h
            times[k], states[:, k] = t, u

        retcode = "Success" if np.all(np.isfinite(states)) else "Failure"
        self.log(f"Solved with fixed-step {method}, {n_steps} steps -> {retcode}")
        sol = ODESolution(self, times, states, retcode=retcode, message=f"{n_steps} {method} steps")
        save = self._save_times(saveat)
        if save is not None:
            sol = ODESolution(self, save, sol(save), retcode=retcode, message=sol.message)
        return sol

    def __repr__(self):
        return (
            f"ODEProblem({self.sys.name!r}, tspan={self.tspan}, "
            f"u0={self.u0.tolist()}, p={self.p.tolist()})"
        )


def _known(key, table):
    try:
        resolve_symbol(key, table)
    except KeyError:
        return False
    return True


def solve(prob, *args, **kwargs):
    """Solve any problem type: ``solve(prob, ...)`` is ``prob.solve(...)``."""
    return prob.solve(*args, **kwargs)
