"""
Shared test fixtures for sciml-tutorials.

Provides:
- ``t``: the independent variable.
- ``lorenz``: the Lorenz system with default initial conditions and
  parameters.
- ``decay_component`` / ``connected_decay``: a first-order decay with an
  external input, and two of them wired in series through a parent system.
- ``michaelis_menten``: the enzyme kinetics network written with the
  reaction DSL.
- ``lotka_volterra``: an ``ODEProblem`` for the predator-prey model.
- ``rosenbrock``: the Rosenbrock loss as an ``OptimizationSystem``.
"""

import pytest
import sympy as sp

from sciml_tutorials import (
    Differential,
    Equation,
    ODEProblem,
    ODESystem,
    OptimizationSystem,
    compose,
    parameters,
    reaction_network,
    variables,
)


@pytest.fixture
def t():
    return sp.Symbol("t")


# =====================================================================
# ODE systems
# =====================================================================

@pytest.fixture
def lorenz(t):
    """The Lorenz system, uncompleted, named ``lorenz``."""
    D = Differential(t)
    x, y, z = variables("x y z")
    sigma, rho, beta = parameters("sigma rho beta")
    return ODESystem(
        [
            Equation(D(x), sigma * (y - x)),
            Equation(D(y), x * (rho - z) - y),
            Equation(D(z), x * y - beta * z),
        ],
        t,
        name="lorenz",
        defaults={x: 1.0, y: 0.0, z: 0.0, sigma: 10.0, rho: 28.0, beta: sp.Rational(8, 3)},
    )


@pytest.fixture
def decay_component(t):
    """Factory for ``D(x) ~ f - a*x`` where the input ``f`` is left open."""
    D = Differential(t)

    def build(name):
        x, f = variables("x f")
        (a,) = parameters("a")
        return ODESystem([Equation(D(x), f - a * x)], t, states=[x, f], ps=[a], name=name)

    return build


@pytest.fixture
def connected_decay(t, decay_component):
    """Two decays in series: ``decay1.f`` is constant, ``decay2.f ~ decay1.x``."""
    D = Differential(t)
    decay1 = decay_component("decay1")
    decay2 = decay_component("decay2")
    parent = ODESystem(
        [
            Equation(decay2.f, decay1.x),
            Equation(D(decay1.f), 0),
        ],
        t,
        name="connected",
    )
    return compose(parent, decay1, decay2)


@pytest.fixture
def lotka_volterra(t):
    """Predator-prey problem with a=1.5, b=1, c=3, d=1 from (1, 1) over [0, 10]."""
    D = Differential(t)
    x, y = variables("x y")
    a, b, c, d = parameters("a b c d")
    sys = ODESystem(
        [
            Equation(D(x), a * x - b * x * y),
            Equation(D(y), -c * y + d * x * y),
        ],
        t,
        name="lotka_volterra",
    ).complete()
    return ODEProblem(sys, {x: 1.0, y: 1.0}, (0.0, 10.0), {a: 1.5, b: 1.0, c: 3.0, d: 1.0})


# =====================================================================
# Reaction networks
# =====================================================================

@pytest.fixture
def michaelis_menten():
    """``S + E <-> SE -> P + E`` with rate constants k1, k2, k3."""
    return reaction_network(
        """
        k1, S + E --> SE
        k2, SE --> S + E
        k3, SE --> P + E
        """,
        name="mm",
    )


# =====================================================================
# Optimization
# =====================================================================

@pytest.fixture
def rosenbrock():
    """``(a - x)^2 + b*(y - x^2)^2``, minimum at (a, a^2)."""
    x, y = variables("x y")
    a, b = parameters("a b")
    return OptimizationSystem(
        (a - x) ** 2 + b * (y - x ** 2) ** 2, [x, y], [a, b],
        defaults={a: 1.0, b: 100.0}, name="rosenbrock",
    )
