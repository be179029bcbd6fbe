"""
Tests for sciml_tutorials.problem.

Decay models are checked against their closed-form solutions; the Lorenz
system is used to compare Jacobian-aware implicit solvers.
"""

import numpy as np
import pytest

from sciml_tutorials import (
    Differential,
    Equation,
    ODEProblem,
    ODESystem,
    parameters,
    solve,
    variables,
)


@pytest.fixture
def decay(t):
    """``D(x) ~ -a*x`` with x(0) = 1 and a = 1 by default."""
    D = Differential(t)
    (x,) = variables("x")
    (a,) = parameters("a")
    return ODESystem([Equation(D(x), -a * x)], t, name="decay", defaults={x: 1.0, a: 1.0})


# ======================================================================
# 1. Problem construction
# ======================================================================

class TestConstruction:
    """Tests for value merging and validation in ODEProblem."""

    def test_defaults_used(self, decay):
        """Missing values are taken from the system defaults."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        np.testing.assert_allclose(prob.u0, [1.0])
        np.testing.assert_allclose(prob.p, [1.0])
        assert prob.sys.is_simplified

    def test_values_override_defaults(self, decay):
        """u0 and p win over defaults and accept names or symbols."""
        (a,) = parameters("a")
        prob = ODEProblem(decay, {"x": 3.0}, (0.0, 1.0), {a: 0.5})
        np.testing.assert_allclose(prob.u0, [3.0])
        np.testing.assert_allclose(prob.p, [0.5])

    def test_symbolic_defaults_evaluated(self, t):
        """A default may be an expression of other values."""
        D = Differential(t)
        x, y = variables("x y")
        sys = ODESystem([Equation(D(x), -x), Equation(D(y), -y)], t, defaults={y: 2 * x})
        prob = ODEProblem(sys, {x: 1.5}, (0.0, 1.0))
        np.testing.assert_allclose(prob.u0, [1.5, 3.0])

    def test_missing_value_raises(self, t):
        """Every state needs an initial condition."""
        D = Differential(t)
        (x,) = variables("x")
        sys = ODESystem([Equation(D(x), -x)], t)
        with pytest.raises(ValueError, match="Missing initial condition for 'x'"):
            ODEProblem(sys, {}, (0.0, 1.0))

    def test_unknown_key_raises(self, decay):
        """Keys must name a state or parameter."""
        with pytest.raises(KeyError, match="Unknown variable 'q'"):
            ODEProblem(decay, {"q": 1.0}, (0.0, 1.0))

    def test_remake_reuses_compiled_code(self, decay):
        """remake() changes values but keeps the compiled functions."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        new = prob.remake(p={"a": 2.0}, tspan=(0.0, 2.0))
        assert new.f is prob.f
        np.testing.assert_allclose(new.p, [2.0])
        np.testing.assert_allclose(prob.p, [1.0])
        assert new.tspan == (0.0, 2.0)

    def test_verbose_output(self, decay, capsys):
        """verbose=True traces compilation and solving."""
        ODEProblem(decay, {}, (0.0, 1.0), verbose=True).solve()
        out = capsys.readouterr().out
        assert "[sciml-tutorials] Compiling 'decay'" in out
        assert "Solving with LSODA" in out


# ======================================================================
# 2. Adaptive solvers
# ======================================================================

class TestSolve:
    """Tests for ODEProblem.solve() with SciPy methods."""

    @pytest.mark.parametrize("method", ["RK45", "DOP853", "Radau", "BDF", "LSODA"])
    def test_decay_matches_exponential(self, decay, method):
        """Every method reproduces exp(-t)."""
        prob = ODEProblem(decay, {}, (0.0, 2.0))
        sol = prob.solve(method, saveat=0.5, rtol=1e-8, atol=1e-10)
        assert sol.success
        np.testing.assert_allclose(sol.t, [0.0, 0.5, 1.0, 1.5, 2.0])
        np.testing.assert_allclose(sol["x"], np.exp(-sol.t), rtol=1e-5)

    def test_solution_lookup(self, lotka_volterra):
        """States are indexed by name or symbol; parameters are constant rows."""
        sol = lotka_volterra.solve(saveat=0.1)
        (x,) = variables("x")
        assert len(sol) == 101
        np.testing.assert_array_equal(sol["x"], sol[x])
        np.testing.assert_allclose(sol["a"], 1.5)
        assert set(sol.to_dict()) == {"t", "x", "y"}
        with pytest.raises(KeyError):
            sol["nope"]

    def test_interpolation(self, lotka_volterra):
        """sol(t) interpolates every state."""
        sol = lotka_volterra.solve(saveat=0.01)
        values = sol(5.0)
        assert values.shape == (2,)
        np.testing.assert_allclose(values, sol.u[:, 500], rtol=1e-6)

    def test_lotka_volterra_invariant(self, lotka_volterra):
        """d*x - c*log(x) + b*y - a*log(y) is conserved."""
        sol = lotka_volterra.solve(saveat=0.5, rtol=1e-10, atol=1e-12)
        x, y = sol["x"], sol["y"]
        invariant = 1.0 * x - 3.0 * np.log(x) + 1.0 * y - 1.5 * np.log(y)
        np.testing.assert_allclose(invariant, invariant[0], rtol=1e-6)

    def test_observed_lookup(self, connected_decay):
        """Observed variables are evaluated along the trajectory."""
        prob = ODEProblem(
            connected_decay,
            {"decay1.f": 1.0, "decay1.x": 1.0, "decay2.x": 1.0},
            (0.0, 3.0),
            {"decay1.a": 1.0, "decay2.a": 2.0},
        )
        sol = prob.solve(saveat=1.0, rtol=1e-9, atol=1e-12)
        np.testing.assert_allclose(sol["decay2.f"], sol["decay1.x"])
        # decay1.x stays at its fixed point 1, decay2.x relaxes to 1/2
        expected = 0.5 + 0.5 * np.exp(-2.0 * sol.t)
        np.testing.assert_allclose(sol[prob.sys.decay2.x], expected, rtol=1e-6)

    def test_second_order_system(self, t):
        """An undamped oscillator x'' = -k x gives cos(t)."""
        D = Differential(t)
        (x,) = variables("x")
        k, c = parameters("k c")
        osc = ODESystem([Equation(D(D(x)), -k * x - c * D(x))], t, name="osc")
        prob = ODEProblem(osc, {x: 1.0, D(x): 0.0}, (0.0, np.pi), {k: 1.0, c: 0.0})
        sol = prob.solve(saveat=np.pi / 4, rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(sol["x"], np.cos(sol.t), atol=1e-7)
        np.testing.assert_allclose(sol[D(x)], -np.sin(sol.t), atol=1e-7)

    def test_module_level_solve(self, decay):
        """solve(prob, ...) is prob.solve(...)."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        sol = solve(prob, "RK45", saveat=[0.5, 1.0])
        np.testing.assert_allclose(sol.t, [0.5, 1.0])

    def test_saveat_outside_tspan_raises(self, decay):
        """Save times must lie inside the time span."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        with pytest.raises(ValueError, match="saveat times must lie within tspan"):
            prob.solve(saveat=[0.5, 2.0])

    def test_unknown_method_raises(self, decay):
        """Unknown methods raise ValueError."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        with pytest.raises(ValueError, match="Unknown integration method"):
            prob.solve("Tsit5")

    def test_failure_is_reported_not_raised(self, t):
        """A blow-up ends with retcode 'Failure' instead of an exception."""
        D = Differential(t)
        (x,) = variables("x")
        sys = ODESystem([Equation(D(x), x ** 2)], t)
        sol = ODEProblem(sys, {x: 1.0}, (0.0, 2.0)).solve("RK45")
        assert sol.retcode == "Failure"
        assert not sol.success


# ======================================================================
# 3. Jacobians
# ======================================================================

class TestJacobianSolvers:
    """Tests for symbolic and sparse Jacobians passed to implicit solvers."""

    def reference(self, lorenz):
        prob = ODEProblem(lorenz, {}, (0.0, 1.0))
        return prob.solve("LSODA", saveat=[0.5, 1.0], rtol=1e-10, atol=1e-12)

    @pytest.mark.parametrize("method", ["Radau", "BDF", "LSODA"])
    def test_dense_jacobian(self, lorenz, method):
        """Implicit solvers with the symbolic Jacobian agree with the reference."""
        prob = ODEProblem(lorenz, {}, (0.0, 1.0), jac=True)
        sol = prob.solve(method, saveat=[0.5, 1.0], rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(sol.u, self.reference(lorenz).u, rtol=1e-4, atol=1e-6)

    @pytest.mark.parametrize("method", ["Radau", "BDF", "LSODA"])
    def test_sparse_jacobian(self, lorenz, method):
        """Sparse Jacobians are accepted by every implicit method."""
        prob = ODEProblem(lorenz, {}, (0.0, 1.0), jac=True, sparse=True)
        sol = prob.solve(method, saveat=[0.5, 1.0], rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(sol.u, self.reference(lorenz).u, rtol=1e-4, atol=1e-6)

    def test_sparsity_without_jacobian(self, lorenz):
        """sparse=True without jac passes only the sparsity pattern."""
        prob = ODEProblem(lorenz, {}, (0.0, 1.0), sparse=True)
        assert prob.jac is None
        sol = prob.solve("BDF", saveat=[0.5, 1.0], rtol=1e-10, atol=1e-12)
        np.testing.assert_allclose(sol.u, self.reference(lorenz).u, rtol=1e-4, atol=1e-6)


# ======================================================================
# 4. Fixed-step methods
# ======================================================================

class TestFixedStep:
    """Tests for the discretised fixed-step solvers."""

    def test_euler_converges(self, decay):
        """Forward Euler is first-order accurate."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        sol = prob.solve("euler", dt=1e-3)
        assert len(sol) == 1001
        np.testing.assert_allclose(sol["x"][-1], np.exp(-1.0), rtol=1e-3)

    def test_rk2_more_accurate_than_euler(self, decay):
        """The midpoint method beats Euler at the same step."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        exact = np.exp(-1.0)
        err_euler = abs(prob.solve("euler", dt=0.05)["x"][-1] - exact)
        err_rk2 = abs(prob.solve("rk2", dt=0.05)["x"][-1] - exact)
        assert err_rk2 < err_euler / 10

    def test_exponential_euler_exact_for_linear(self, decay):
        """Exponential Euler is exact for linear decay at any step."""
        prob = ODEProblem(decay, {}, (0.0, 2.0))
        sol = prob.solve("exponential_euler", dt=0.5)
        np.testing.assert_allclose(sol["x"], np.exp(-sol.t), rtol=1e-12)

    def test_rk2_exact_for_linear_in_time(self, t):
        """Midpoint RK2 integrates D(x) ~ t exactly, even in one step."""
        D = Differential(t)
        (x,) = variables("x")
        sys = ODESystem([Equation(D(x), t)], t, name="ramp")
        prob = ODEProblem(sys, {x: 0.0}, (0.0, 1.0))
        np.testing.assert_allclose(prob.solve("rk2", dt=1.0)["x"], [0.0, 0.5])
        sol = prob.solve("rk2", dt=0.25)
        np.testing.assert_allclose(sol["x"], sol.t ** 2 / 2, atol=1e-12)

    def test_last_step_hits_end_time(self, decay):
        """A step that does not divide the span is shortened at the end."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        sol = prob.solve("euler", dt=0.3)
        np.testing.assert_allclose(sol.t, [0.0, 0.3, 0.6, 0.9, 1.0])

    def test_saveat_interpolates(self, decay):
        """saveat resamples the fixed-step trajectory."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        sol = prob.solve("rk2", dt=0.01, saveat=0.25)
        np.testing.assert_allclose(sol.t, [0.0, 0.25, 0.5, 0.75, 1.0])

    def test_missing_dt_raises(self, decay):
        """Fixed-step methods need a positive dt."""
        prob = ODEProblem(decay, {}, (0.0, 1.0))
        with pytest.raises(ValueError, match="requires a positive dt"):
            prob.solve("euler")
