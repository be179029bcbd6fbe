"""
Chemical reaction networks: deterministic and stochastic simulation.

1. A Michaelis–Menten network is built with the reaction DSL, inspected
   (stoichiometry, conservation laws, rate laws) and simulated as ODEs.
2. The same network is built reaction by reaction.
3. A birth–death process and a repressilator are simulated with Gillespie's
   direct method and compared with their mean-field ODEs.

Run with ``python examples/03_reaction_networks.py``; figures are written
next to this script.
"""

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import sympy as sp

from sciml_tutorials import (
    JumpProblem,
    ODEProblem,
    Reaction,
    ReactionSystem,
    convert_to_ode,
    reaction_network,
)

HERE = Path(__file__).parent


def michaelis_menten():
    rn = reaction_network(
        """
        (k1, k2), S + E <--> SE
        k3, SE --> P + E
        """,
        name="michaelis_menten",
    )
    print(rn)
    print("\nNet stoichiometry (species x reactions):")
    print(rn.netstoichmat())
    print("Conservation laws:")
    for law in rn.conservationlaws():
        print("  ", " + ".join(f"{c}*{s}" for c, s in zip(law, rn.species) if c))
    print("ODE rate laws: ", rn.oderatelaws())

    odesys = convert_to_ode(rn)
    for eq in odesys.equations:
        print("  ", eq)

    u0 = {"S": 50.0, "E": 10.0, "SE": 0.0, "P": 0.0}
    p = {"k1": 0.1, "k2": 0.1, "k3": 0.5}
    sol = ODEProblem(odesys, u0, (0.0, 50.0), p).solve(saveat=0.5)

    fig, ax = plt.subplots()
    for s in rn.species:
        ax.plot(sol.t, sol[s], label=s.name)
    ax.set_xlabel("t")
    ax.legend()
    fig.savefig(HERE / "michaelis_menten.png")


def incremental_construction():
    S, E, SE, P = sp.symbols("S E SE P")
    k1, k2, k3 = sp.symbols("k1 k2 k3")
    rs = ReactionSystem(name="mm_incremental")
    rs.add_reaction(Reaction(k1, [S, E], [SE]))
    rs.add_reaction(Reaction(k2, [SE], [S, E]))
    n = rs.add_reaction(Reaction(k3, [SE], [P, E]))
    print(f"\nBuilt {n} reactions one at a time:")
    print(rs)
    print("Reaction dependency graph:", rs.reaction_dependency_graph())


def birth_death():
    rn = reaction_network(
        """
        b, 0 --> X
        d, X --> 0
        """,
        name="birth_death",
    )
    p = {"b": 10.0, "d": 0.1}
    jump = JumpProblem(rn, {"X": 0}, (0.0, 200.0), p, seed=1)
    mean_field = ODEProblem(convert_to_ode(rn), {"X": 0.0}, (0.0, 200.0), p).solve(saveat=1.0)

    fig, ax = plt.subplots()
    for seed in range(5):
        sol = jump.solve(seed=seed)
        ax.step(sol.t, sol["X"], where="post", alpha=0.6)
    ax.plot(mean_field.t, mean_field["X"], "k--", label="ODE")
    ax.set_xlabel("t")
    ax.set_ylabel("X")
    ax.legend()
    fig.savefig(HERE / "birth_death.png")


def repressilator():
    rn = reaction_network(
        """
        hill(P3, alpha, K, n), 0 --> m1
        hill(P1, alpha, K, n), 0 --> m2
        hill(P2, alpha, K, n), 0 --> m3
        (delta, gamma), m1 <--> 0
        (delta, gamma), m2 <--> 0
        (delta, gamma), m3 <--> 0
        beta, m1 --> m1 + P1
        beta, m2 --> m2 + P2
        beta, m3 --> m3 + P3
        mu, P1 --> 0
        mu, P2 --> 0
        mu, P3 --> 0
        """,
        name="repressilator",
    )
    print(f"\nRepressilator: {len(rn.species)} species, {len(rn.reactions)} reactions")
    p = {"alpha": 0.5, "K": 40.0, "n": 2, "delta": np.log(2) / 120,
         "gamma": 5e-3, "beta": 20 * np.log(2) / 120, "mu": np.log(2) / 60}
    u0 = {"m1": 0, "m2": 0, "m3": 0, "P1": 20, "P2": 0, "P3": 0}

    ode = ODEProblem(convert_to_ode(rn), u0, (0.0, 10000.0), p).solve(saveat=10.0)
    ssa = JumpProblem(rn, u0, (0.0, 10000.0), p, seed=7).solve()
    print(f"  SSA: {ssa.n_events} events")

    fig, axes = plt.subplots(2, 1, sharex=True)
    for name in ("P1", "P2", "P3"):
        axes[0].plot(ode.t, ode[name], label=name)
        axes[1].step(ssa.t, ssa[name], where="post", label=name)
    axes[0].set_title("ODE")
    axes[1].set_title("SSA")
    axes[1].set_xlabel("t")
    axes[0].legend()
    fig.savefig(HERE / "repressilator.png")


def main():
    michaelis_menten()
    incremental_construction()
    birth_death()
    repressilator()


if __name__ == "__main__":
    main()
