"""
optimization.py
===============
Symbolic optimization problems and ODE parameter estimation.

An ``OptimizationSystem`` is a scalar loss expression over decision
variables and parameters, with optional equality and inequality
constraints.  ``OptimizationProblem`` compiles the loss together with its
symbolic gradient, Hessian and constraint Jacobians and hands them to
``scipy.optimize.minimize``.

For ODE models, :func:`build_loss_objective` turns an
:class:`~sciml_tutorials.problem.ODEProblem` and data into an L2 loss over
selected parameters, and :func:`fit_parameters` minimises it.
"""

import numpy as np
import sympy as sp
from scipy.optimize import minimize

from sciml_tutorials.problem import evaluate_values
from sciml_tutorials.symbolics import Equation, build_function, calculate_jacobian
from sciml_tutorials.utils import (
    LOG_PREFIX,
    VerboseMixin,
    resolve_symbol,
    resolve_value_map,
    symbol_table,
)

GRADIENT_METHODS = (
    "BFGS", "L-BFGS-B", "CG", "Newton-CG", "TNC", "SLSQP",
    "trust-constr", "trust-ncg", "trust-exact", "trust-krylov", "dogleg",
)
HESSIAN_METHODS = ("Newton-CG", "trust-constr", "trust-ncg", "trust-exact", "trust-krylov", "dogleg")
DERIVATIVE_FREE_METHODS = ("Nelder-Mead", "Powell", "COBYLA")
CONSTRAINED_METHODS = ("SLSQP", "trust-constr", "COBYLA")
METHODS = GRADIENT_METHODS + DERIVATIVE_FREE_METHODS


class OptimizationResult:
    """Outcome of a minimisation.

    Attributes
    ----------
    u : ndarray
        Minimiser.
    minimum : float
        Loss at ``u``.
    retcode : str
        ``'Success'`` or ``'Failure'``.
    nfev : int
        Loss evaluations.
    message : str
    original : scipy.optimize.OptimizeResult
    """

    def __init__(self, u, minimum, retcode, nfev, message, original=None, names=None):
        self.u = np.asarray(u, dtype=float)
        self.minimum = float(minimum)
        self.retcode = retcode
        self.nfev = nfev
        self.message = message
        self.original = original
        self.names = list(names or [])

    @classmethod
    def from_scipy(cls, res, names=None):
        return cls(
            res.x, res.fun, "Success" if res.success else "Failure",
            int(getattr(res, "nfev", 0)), str(res.message), original=res, names=names,
        )

    def __getitem__(self, key):
        if isinstance(key, (int, np.integer)):
            return self.u[key]
        name = getattr(key, "name", key)
        return self.u[self.names.index(name)]

    def to_dict(self):
        return dict(zip(self.names, self.u))

    def __repr__(self):
        return (
            f"OptimizationResult(retcode={self.retcode!r}, u={self.u.tolist()}, "
            f"minimum={self.minimum:.6g})"
        )


def _constraint_parts(constraint):
    """Return ``(kind, expr)`` with scipy's conventions ``expr == 0`` / ``expr >= 0``."""
    if isinstance(constraint, Equation):
        return "eq", constraint.rhs - constraint.lhs
    if isinstance(constraint, sp.Equality):
        return "eq", constraint.lhs - constraint.rhs
    if isinstance(constraint, (sp.GreaterThan, sp.StrictGreaterThan)):
        return "ineq", constraint.lhs - constraint.rhs
    if isinstance(constraint, (sp.LessThan, sp.StrictLessThan)):
        return "ineq", constraint.rhs - constraint.lhs
    raise ValueError(f"Unsupported constraint: {constraint!r}")


class OptimizationSystem(VerboseMixin):
    """A symbolic loss ``loss(u, p)`` with optional constraints.

    Parameters
    ----------
    loss : sympy.Expr
    states : list of sympy.Symbol
        Decision variables.
    ps : list of sympy.Symbol, optional
        Parameters held fixed during optimisation.  Defaults to every other
        free symbol of the loss and constraints, sorted by name.
    constraints : list
        ``Equation(lhs, rhs)`` or ``sympy.Eq`` for equalities; ``<=``/``>=``
        relations for inequalities.
    name : str
    defaults : dict, optional
    verbose : bool

    Examples
    --------
    >>> x, y = variables("x y")
    >>> a, b = parameters("a b")
    >>> rosenbrock = OptimizationSystem((a - x)**2 + b*(y - x**2)**2, [x, y], [a, b])
    """

    def __init__(self, loss, states, ps=None, constraints=(), name="opt", defaults=None,
                 verbose=False):
        self.loss = sp.sympify(loss)
        self.states = list(states)
        self.constraints = [_constraint_parts(c) for c in constraints]
        self.name = name
        self.defaults = dict(defaults or {})
        self.verbose = verbose

        if ps is None:
            free = set(self.loss.free_symbols)
            for _, expr in self.constraints:
                free |= expr.free_symbols
            ps = sorted(free - set(self.states), key=lambda s: s.name)
        self.parameters = list(ps)

    def calculate_gradient(self):
        return [sp.diff(self.loss, x) for x in self.states]

    def calculate_hessian(self, sparse=False):
        return calculate_jacobian(self.calculate_gradient(), self.states, sparse=sparse)

    def __repr__(self):
        return (
            f"OptimizationSystem {self.name}: minimise {self.loss} over "
            f"{', '.join(map(str, self.states))} ({len(self.constraints)} constraints)"
        )


class OptimizationProblem(VerboseMixin):
    """A compiled :class:`OptimizationSystem` with a starting point.

    Parameters
    ----------
    sys : OptimizationSystem
    u0 : dict
        Starting point, keyed by variable symbol or name.
    p : dict, optional
        Parameter values.
    grad, hess : bool
        Compile the symbolic gradient / Hessian.
    lb, ub : sequence of float, optional
        Box bounds per decision variable.
    verbose : bool
    """

    def __init__(self, sys, u0, p=None, grad=True, hess=False, lb=None, ub=None, verbose=False):
        self.sys = sys
        self.verbose = verbose

        table = symbol_table(sys.states + sys.parameters)
        values = dict(resolve_value_map(sys.defaults, table))
        values.update(resolve_value_map(u0, table))
        values.update(resolve_value_map(p, table))
        self.u0 = evaluate_values(sys.states, values, "starting value")
        self.p = evaluate_values(sys.parameters, values, "parameter value")

        n = len(sys.states)
        self.bounds = None
        if lb is not None or ub is not None:
            lb = [-np.inf] * n if lb is None else list(lb)
            ub = [np.inf] * n if ub is None else list(ub)
            if len(lb) != n or len(ub) != n:
                raise ValueError(f"Bounds must have one entry per variable ({n})")
            self.bounds = list(zip(lb, ub))

        args = [sys.states, sys.parameters]
        self.f = build_function([sys.loss], args)
        self.grad = build_function(sys.calculate_gradient(), args) if grad else None
        self.hess = build_function(sys.calculate_hessian(), args) if hess else None
        self.cons = []
        for kind, expr in sys.constraints:
            fun = build_function([expr], args)
            jac = build_function(calculate_jacobian([expr], sys.states), args)
            self.cons.append((kind, fun, jac))
        self.log(
            f"Compiled '{sys.name}': grad={grad}, hess={hess}, {len(self.cons)} constraints"
        )

    def _scipy_constraints(self):
        p = self.p
        return [
            {
                "type": kind,
                "fun": (lambda u, fun=fun: fun.oop(u, p)[0]),
                "jac": (lambda u, jac=jac: jac.oop(u, p)[0]),
            }
            for kind, fun, jac in self.cons
        ]

    def solve(self, method="BFGS", maxiters=None, tol=None, **kwargs):
        """Minimise the loss.

        Parameters
        ----------
        method : str
            Any ``scipy.optimize.minimize`` method.  Gradient and Hessian are
            passed only to methods that use them.  Problems with constraints
            require ``'SLSQP'``, ``'trust-constr'`` or ``'COBYLA'``.
        maxiters : int, optional
        tol : float, optional

        Returns
        -------
        OptimizationResult

        Raises
        ------
        ValueError
            If the method is unknown or cannot handle the constraints.
        """
        if method not in METHODS:
            raise ValueError(f"Unknown optimization method: {method}")
        if self.cons and method not in CONSTRAINED_METHODS:
            raise ValueError(
                f"Method '{method}' does not support constraints; "
                f"use one of {', '.join(CONSTRAINED_METHODS)}"
            )

        p = self.p
        options = dict(kwargs.pop("options", {}))
        if maxiters is not None:
            options["maxiter"] = maxiters

        call = {"method": method, "tol": tol, "options": options}
        if method in GRADIENT_METHODS and self.grad is not None:
            call["jac"] = lambda u: self.grad.oop(u, p)
        if method in HESSIAN_METHODS and self.hess is not None:
            call["hess"] = lambda u: self.hess.oop(u, p)
        if self.bounds is not None:
            call["bounds"] = self.bounds
        if self.cons:
            call["constraints"] = self._scipy_constraints()
        call.update(kwargs)

        self.log(f"Minimising with {method} from {self.u0.tolist()}")
        res = minimize(lambda u: self.f.oop(u, p)[0], self.u0, **call)
        result = OptimizationResult.from_scipy(res, names=[s.name for s in self.sys.states])
        self.log(f"-> {result.retcode}: {result.message}", 1)
        return result

    def __repr__(self):
        return f"OptimizationProblem({self.sys.name!r}, u0={self.u0.tolist()}, p={self.p.tolist()})"


# ======================================================================
# ODE parameter estimation
# ======================================================================

def build_loss_objective(prob, t, data, params, observables=None, solver="LSODA", **solve_kwargs):
    """L2 loss of an ODE model against data, as a function of selected parameters.

    Parameters
    ----------
    prob : ODEProblem
    t : array_like
        Observation times.
    data : array_like, shape (n_observables, len(t))
        Observations, one row per observable.
    params : list
        Parameters to estimate (symbols or names), in the order of the
        loss argument.
    observables : list, optional
        States or observed variables compared with ``data`` (default: all
        states).
    solver : str
        Integration method.

    Returns
    -------
    callable
        ``loss(theta) -> float``; ``inf`` when the solver fails.
    """
    t = np.asarray(t, dtype=float)
    obs = prob.observable_symbols(observables)
    data = np.asarray(data, dtype=float).reshape(len(obs), len(t))
    table = symbol_table(prob.sys.parameters)
    params = [resolve_symbol(p, table) for p in params]

    def loss(theta):
        sol = prob.remake(p=dict(zip(params, theta))).solve(solver, saveat=t, **solve_kwargs)
        if not sol.success or len(sol.t) != len(t):
            return np.inf
        prediction = np.vstack([sol[o] for o in obs])
        return float(np.sum((prediction - data) ** 2))

    return loss


def fit_parameters(prob, t, data, params, p0, observables=None, method="Nelder-Mead",
                   bounds=None, maxiters=None, solver="LSODA", verbose=False, **solve_kwargs):
    """Estimate ODE parameters by minimising :func:`build_loss_objective`.

    Returns
    -------
    OptimizationResult
        ``u`` holds the estimates in the order of ``params``.
    """
    loss = build_loss_objective(prob, t, data, params, observables=observables, solver=solver,
                                **solve_kwargs)
    options = {"maxiter": maxiters} if maxiters is not None else {}
    if verbose:
        print(f"{LOG_PREFIX} Fitting {list(map(str, params))} with {method}")
    res = minimize(loss, np.asarray(p0, dtype=float), method=method, bounds=bounds, options=options)
    names = [getattr(p, "name", p) for p in params]
    return OptimizationResult.from_scipy(res, names=names)
