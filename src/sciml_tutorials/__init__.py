"""
sciml-tutorials — Symbolic modeling, simulation and inference tutorials.

Write models as SymPy equations, compile them to NumPy, simulate them with
SciPy, build chemical reaction networks, fit parameters and sample
posteriors with PyMC.

Quick start::

    import sympy as sp
    from sciml_tutorials import (
        Differential, Equation, ODESystem, ODEProblem, parameters, variables,
    )

    t = sp.Symbol("t")
    D = Differential(t)
    x, y = variables("x y")
    a, b, c, d = parameters("a b c d")

    lv = ODESystem([
        Equation(D(x), a*x - b*x*y),
        Equation(D(y), -c*y + d*x*y),
    ], t, name="lotka_volterra").complete()

    prob = ODEProblem(lv, {x: 1.0, y: 1.0}, (0.0, 10.0),
                      {a: 1.5, b: 1.0, c: 3.0, d: 1.0})
    sol = prob.solve(saveat=0.1)

"""

from sciml_tutorials.symbolics import (
    Differential,
    Equation,
    build_function,
    calculate_jacobian,
    discretise,
    jacobian_sparsity,
    parameters,
    variables,
)
from sciml_tutorials.system import ODESystem, compose
from sciml_tutorials.problem import ODEProblem, ODESolution, solve
from sciml_tutorials.reactions import (
    Reaction,
    ReactionSystem,
    convert_to_ode,
    reaction_network,
)
from sciml_tutorials.jumps import JumpProblem, JumpSolution
from sciml_tutorials.optimization import (
    OptimizationProblem,
    OptimizationResult,
    OptimizationSystem,
    build_loss_objective,
    fit_parameters,
)
from sciml_tutorials.inference import InferenceResult, bayesian_inference

__version__ = "0.1.0"

__all__ = [
    "variables",
    "parameters",
    "Differential",
    "Equation",
    "calculate_jacobian",
    "jacobian_sparsity",
    "build_function",
    "discretise",
    "ODESystem",
    "compose",
    "ODEProblem",
    "ODESolution",
    "solve",
    "Reaction",
    "ReactionSystem",
    "reaction_network",
    "convert_to_ode",
    "JumpProblem",
    "JumpSolution",
    "OptimizationSystem",
    "OptimizationProblem",
    "OptimizationResult",
    "build_loss_objective",
    "fit_parameters",
    "bayesian_inference",
    "InferenceResult",
]
