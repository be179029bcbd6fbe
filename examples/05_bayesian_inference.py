"""
Bayesian inference of ODE parameters with PyMC.

Noisy observations of the Lotka–Volterra prey and predator populations are
used to infer ``a`` and ``c``.  The ODE is solved by SciPy inside the PyMC
model, so a gradient-free slice sampler explores the posterior.

Run with ``python examples/05_bayesian_inference.py`` (takes a minute or
two); figures are written next to this script.
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
    bayesian_inference,
    parameters,
    variables,
)

HERE = Path(__file__).parent


def main():
    t = sp.Symbol("t")
    D = Differential(t)
    x, y = variables("x y")
    a, b, c, d = parameters("a b c d")
    lv = ODESystem(
        [Equation(D(x), a * x - b * x * y), Equation(D(y), -c * y + d * x * y)],
        t, name="lotka_volterra",
    ).complete()
    prob = ODEProblem(lv, {x: 1.0, y: 1.0}, (0.0, 10.0), {a: 1.5, b: 1.0, c: 3.0, d: 1.0})

    times = np.linspace(0.0, 10.0, 21)
    truth = prob.solve(saveat=times)
    rng = np.random.default_rng(1)
    data = np.vstack([truth["x"], truth["y"]]) + rng.normal(0.0, 0.25, size=(2, times.size))

    priors = {
        "a": ("TruncatedNormal", {"mu": 1.5, "sigma": 0.5, "lower": 0.5, "upper": 2.5}),
        "c": ("TruncatedNormal", {"mu": 3.0, "sigma": 0.5, "lower": 1.0, "upper": 4.0}),
    }
    result = bayesian_inference(
        prob, times, data, priors,
        draws=1000, tune=1000, chains=2, seed=0, progressbar=True, verbose=True,
    )
    print(result)

    # Posterior predictive: solutions for a sample of posterior draws
    posterior = result.trace.posterior
    a_draws = posterior["a"].values.ravel()
    c_draws = posterior["c"].values.ravel()
    picks = rng.choice(a_draws.size, size=100, replace=False)

    fig, ax = plt.subplots()
    for i in picks:
        sol = prob.remake(p={"a": a_draws[i], "c": c_draws[i]}).solve(saveat=0.1)
        ax.plot(sol.t, sol["x"], color="tab:blue", alpha=0.05)
        ax.plot(sol.t, sol["y"], color="tab:orange", alpha=0.05)
    ax.plot(times, data[0], "o", color="tab:blue", label="prey")
    ax.plot(times, data[1], "o", color="tab:orange", label="predator")
    ax.set_xlabel("t")
    ax.legend()
    fig.savefig(HERE / "posterior_predictive.png")

    fig, axes = plt.subplots(1, 2)
    axes[0].hist(a_draws, bins=40)
    axes[0].set_title("a")
    axes[1].hist(c_draws, bins=40)
    axes[1].set_title("c")
    fig.savefig(HERE / "posterior.png")


if __name__ == "__main__":
    main()
