"""
Optimization: symbolic problems and ODE parameter estimation.

1. The Rosenbrock function is minimised with gradient-free, gradient and
   Hessian based methods, then inside the unit disc.
2. The Lotka–Volterra parameters are recovered from noisy data by
   minimising an L2 loss over ODE solutions.

Run with ``python examples/04_optimization.py``; figures are written next to
this script.
"""

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import sympy as sp

from sciml_tutorials import (
    Differential,
    Equation,
    ODEProblem,
    ODESystem,
    OptimizationProblem,
    OptimizationSystem,
    build_loss_objective,
    fit_parameters,
    parameters,
    variables,
)

HERE = Path(__file__).parent


def rosenbrock():
    x, y = variables("x y")
    a, b = parameters("a b")
    loss = (a - x) ** 2 + b * (y - x ** 2) ** 2
    opt = OptimizationSystem(loss, [x, y], [a, b], name="rosenbrock")
    print(opt)
    print("Gradient:", opt.calculate_gradient())
    print("Hessian: ", opt.calculate_hessian())

    u0 = {x: 0.0, y: 0.0}
    p = {a: 1.0, b: 100.0}
    prob = OptimizationProblem(opt, u0, p, grad=True, hess=True)
    for method in ("Nelder-Mead", "BFGS", "Newton-CG", "trust-exact"):
        res = prob.solve(method)
        print(f"  {method:12s} -> {res.u}, loss {res.minimum:.2e}, {res.nfev} evaluations")

    disc = OptimizationSystem(loss, [x, y], [a, b], constraints=[x ** 2 + y ** 2 <= 1])
    res = OptimizationProblem(disc, u0, p).solve("SLSQP")
    print(f"  inside the unit disc -> {res.u}")

    box = OptimizationProblem(opt, u0, p, lb=[-1.0, -1.0], ub=[0.8, 0.8])
    print(f"  inside [-1, 0.8]^2   -> {box.solve('L-BFGS-B').u}")


def lotka_volterra_fit():
    t = sp.Symbol("t")
    D = Differential(t)
    x, y = variables("x y")
    a, b, c, d = parameters("a b c d")
    lv = ODESystem(
        [Equation(D(x), a * x - b * x * y), Equation(D(y), -c * y + d * x * y)],
        t, name="lotka_volterra",
    ).complete()
    prob = ODEProblem(lv, {x: 1.0, y: 1.0}, (0.0, 10.0), {a: 1.5, b: 1.0, c: 3.0, d: 1.0})

    times = np.linspace(0.0, 10.0, 51)
    truth = prob.solve(saveat=times)
    rng = np.random.default_rng(0)
    data = np.vstack([truth["x"], truth["y"]]) + rng.normal(0.0, 0.1, size=(2, times.size))

    loss = build_loss_objective(prob, times, data, [a, b, c, d])
    print("\nLoss at the true parameters:", loss([1.5, 1.0, 3.0, 1.0]))
    print("Loss at a poor guess:       ", loss([1.0, 1.0, 2.0, 1.5]))

    res = fit_parameters(prob, times, data, [a, b, c, d], [1.2, 0.8, 2.5, 1.2],
                         method="L-BFGS-B", bounds=[(0.1, 5.0)] * 4)
    print("Fitted:", res.to_dict())

    fitted = prob.remake(p=res.to_dict()).solve(saveat=0.05)
    fig, ax = plt.subplots()
    for row, name in enumerate(("x", "y")):
        ax.plot(times, data[row], "o", ms=3, label=f"{name} data")
        ax.plot(fitted.t, fitted[name], label=f"{name} fit")
    ax.set_xlabel("t")
    ax.legend()
    fig.savefig(HERE / "lotka_volterra_fit.png")


def main():
    rosenbrock()
    lotka_volterra_fit()


if __name__ == "__main__":
    main()
