"""
Symbolic basics and code generation.

Builds the Lorenz system from SymPy symbols, inspects its Jacobian and
sparsity, and generates NumPy, C and Brian2 code from the same expressions.

Run with ``python examples/01_symbolic_basics.py``.
"""

import numpy as np
import sympy as sp

from sciml_tutorials import (
    Differential,
    Equation,
    ODESystem,
    build_function,
    calculate_jacobian,
    discretise,
    jacobian_sparsity,
    parameters,
    variables,
)


def main():
    t = sp.Symbol("t")
    D = Differential(t)
    x, y, z = variables("x y z")
    sigma, rho, beta = parameters("sigma rho beta")

    # ------------------------------------------------------------------
    # Equations are plain SymPy expressions
    # ------------------------------------------------------------------
    eqs = [
        Equation(D(x), sigma * (y - x)),
        Equation(D(y), x * (rho - z) - y),
        Equation(D(z), x * y - beta * z),
    ]
    lorenz = ODESystem(eqs, t, name="lorenz").complete()
    print(lorenz)
    for eq in lorenz.equations:
        print("  ", eq)

    # ------------------------------------------------------------------
    # Symbolic Jacobian and its sparsity pattern
    # ------------------------------------------------------------------
    J = calculate_jacobian(lorenz.rhss, lorenz.states)
    print("\nJacobian:")
    sp.pprint(J)
    print("\nSparsity pattern:")
    print(jacobian_sparsity(lorenz.rhss, lorenz.states).toarray().astype(int))

    # ------------------------------------------------------------------
    # Code generation: one IR, several targets
    # ------------------------------------------------------------------
    f = lorenz.generate_function()
    print("\nGenerated Python source:")
    print(f.source)

    u = np.array([1.0, 0.0, 0.0])
    p = np.array([8.0 / 3.0, 28.0, 10.0])  # beta, rho, sigma
    print("f(u, p, 0) =", f(u, p, 0.0))

    du = np.empty(3)
    f.iip(du, u, p, 0.0)
    print("in-place   =", du)

    print("\nC code:")
    print(lorenz.generate_function(target="c"))

    print("\nBrian2 code strings:")
    for line in build_function(lorenz.rhss, [], target="brian2"):
        print("  ", line)

    # ------------------------------------------------------------------
    # Discretisation: turn the ODE into an update map
    # ------------------------------------------------------------------
    dt = sp.Symbol("dt")
    print("\nEuler step:")
    for state, update in zip(lorenz.states, discretise(lorenz.rhss, lorenz.states, "euler", dt)):
        print(f"  {state}_next = {update}")

    (tau,) = parameters("tau")
    print("\nExponential Euler for dx/dt = -x/tau:")
    print("  x_next =", discretise(-x / tau, x, "exponential_euler", dt))


if __name__ == "__main__":
    main()
