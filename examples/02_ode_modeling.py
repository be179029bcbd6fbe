"""
ODE modeling: composition, simplification and sparse Jacobians.

1. Two decay components are wired in series and simulated.
2. A damped oscillator is written with a second derivative and lowered to
   first order automatically.
3. A chain of diffusing cells shows how a sparse symbolic Jacobian is fed
   to an implicit solver.
4. A model is round-tripped through a Brian2 equation string.

Run with ``python examples/02_ode_modeling.py``; figures are written next to
this script.
"""

import time
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import sympy as sp

from sciml_tutorials import (
    Differential,
    Equation,
    ODEProblem,
    ODESystem,
    compose,
    parameters,
    variables,
)

HERE = Path(__file__).parent
t = sp.Symbol("t")
D = Differential(t)


def decay(name):
    x, f = variables("x f")
    (a,) = parameters("a")
    return ODESystem([Equation(D(x), f - a * x)], t, states=[x, f], ps=[a], name=name)


def composed_decay():
    decay1 = decay("decay1")
    decay2 = decay("decay2")
    # decay1.x feeds decay2, decay1's own input is held constant
    connected = compose(
        ODESystem([Equation(decay2.f, decay1.x), Equation(D(decay1.f), 0)], t, name="connected"),
        decay1,
        decay2,
    )
    print(connected)

    simple = connected.structural_simplify()
    print("\nAfter structural_simplify:")
    for eq in simple.equations:
        print("  ", eq)

    prob = ODEProblem(
        simple,
        {simple.decay1.f: 1.0, simple.decay1.x: 0.0, simple.decay2.x: 0.0},
        (0.0, 10.0),
        {simple.decay1.a: 1.0, simple.decay2.a: 2.0},
    )
    sol = prob.solve(saveat=0.1)

    fig, ax = plt.subplots()
    for name in ("decay1.x", "decay2.x", "decay2.f"):
        ax.plot(sol.t, sol[name], label=name)
    ax.set_xlabel("t")
    ax.legend()
    fig.savefig(HERE / "decay.png")


def damped_oscillator():
    (x,) = variables("x")
    k, c = parameters("k c")
    osc = ODESystem([Equation(D(D(x)), -k * x - c * D(x))], t, name="osc")
    lowered = osc.ode_order_lowering()
    print("\nLowered oscillator:")
    for eq in lowered.equations:
        print("  ", eq)

    prob = ODEProblem(osc, {x: 1.0, D(x): 0.0}, (0.0, 20.0), {k: 1.0, c: 0.2})
    sol = prob.solve(saveat=0.05)

    fig, ax = plt.subplots()
    ax.plot(sol["x"], sol[D(x)])
    ax.set_xlabel("x")
    ax.set_ylabel("dx/dt")
    fig.savefig(HERE / "oscillator_phase.png")


def diffusion_chain(n=100):
    """Linear diffusion along ``n`` cells with a fixed left boundary."""
    u = variables(" ".join(f"u{i}" for i in range(n)))
    (kappa,) = parameters("kappa")
    eqs = []
    for i in range(n):
        left = u[i - 1] if i > 0 else sp.Integer(1)
        right = u[i + 1] if i < n - 1 else u[i]
        eqs.append(Equation(D(u[i]), kappa * (left - 2 * u[i] + right)))
    sys = ODESystem(eqs, t, name="chain").complete()

    pattern = sys.jacobian_sparsity()
    print(f"\nDiffusion chain: {pattern.nnz} of {n * n} Jacobian entries are non-zero")

    u0 = {ui: 0.0 for ui in u}
    for sparse in (False, True):
        prob = ODEProblem(sys, u0, (0.0, 50.0), {kappa: 50.0}, jac=True, sparse=sparse)
        start = time.perf_counter()
        sol = prob.solve("BDF", saveat=[50.0])
        elapsed = time.perf_counter() - start
        kind = "sparse" if sparse else "dense"
        print(f"  BDF with {kind} Jacobian: {elapsed:.3f} s, u[n/2] = {sol.u[n // 2, -1]:.4f}")

    fig, ax = plt.subplots()
    ax.spy(pattern, markersize=1)
    ax.set_title("Jacobian sparsity")
    fig.savefig(HERE / "chain_sparsity.png")


def brian2_round_trip():
    neuron = ODESystem.from_equations(
        """
        dv/dt = (inp - v) / tau : 1
        inp = amp * sin(w * t) : 1
        tau : second
        amp : 1
        w : Hz
        """,
        name="neuron",
    )
    print("\nImported from Brian2:")
    print(neuron)
    print("Exported again:")
    print(neuron.to_brian2_equations(units={"tau": "second", "w": "Hz"}))


def main():
    composed_decay()
    damped_oscillator()
    diffusion_chain()
    brian2_round_trip()


if __name__ == "__main__":
    main()
