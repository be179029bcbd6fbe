"""
Tests for sciml_tutorials.system.

Uses the Lorenz system and the two-decay composition from conftest.py.
"""

import numpy as np
import pytest
import sympy as sp

from sciml_tutorials import Differential, Equation, ODEProblem, ODESystem, parameters, variables


# ======================================================================
# 1. States, parameters and namespacing
# ======================================================================

class TestVariables:
    """Tests for inferred states/parameters and attribute access."""

    def test_inferred_states_and_parameters(self, lorenz):
        """States come from D(.) terms, parameters are the rest sorted by name."""
        assert [s.name for s in lorenz.states] == ["x", "y", "z"]
        assert [p.name for p in lorenz.parameters] == ["beta", "rho", "sigma"]

    def test_uncompleted_access_is_namespaced(self, lorenz):
        """Attributes of an uncompleted system carry its name."""
        assert lorenz.x == sp.Symbol("lorenz.x")
        assert lorenz.sigma == sp.Symbol("lorenz.sigma")

    def test_completed_access_is_plain(self, lorenz):
        """complete() makes the system's own variables unprefixed."""
        done = lorenz.complete()
        assert done.is_complete and not lorenz.is_complete
        assert done.x == sp.Symbol("x")

    def test_independent_variable_never_prefixed(self, lorenz, t):
        """The independent variable is shared by every system."""
        assert lorenz.t == t

    def test_unknown_attribute_raises(self, lorenz):
        """Missing names raise AttributeError."""
        with pytest.raises(AttributeError, match="no variable or subsystem 'w'"):
            lorenz.w

    def test_variable_lookup(self, lorenz):
        """variable() resolves names against the flattened system."""
        assert lorenz.variable("rho") == sp.Symbol("rho")
        with pytest.raises(KeyError, match="Unknown variable"):
            lorenz.variable("nope")

    def test_repr_lists_states(self, lorenz):
        """The summary names the model, states and parameters."""
        text = repr(lorenz)
        assert "Model lorenz with 3 equations" in text
        assert "States (3): x, y, z" in text


# ======================================================================
# 2. Composition
# ======================================================================

class TestComposition:
    """Tests for compose() and flattening."""

    def test_subsystem_namespaces(self, connected_decay):
        """Nested access prefixes every level until the system is completed."""
        assert connected_decay.decay1.x == sp.Symbol("connected.decay1.x")
        done = connected_decay.complete()
        assert done.decay1.x == sp.Symbol("decay1.x")

    def test_flattened_states_and_parameters(self, connected_decay):
        """Flattening renames subsystem variables to sub.var."""
        names = [s.name for s in connected_decay.states]
        assert names == ["decay1.f", "decay1.x", "decay2.x", "decay2.f"]
        assert [p.name for p in connected_decay.parameters] == ["decay1.a", "decay2.a"]

    def test_connection_is_observed(self, connected_decay):
        """The wiring equation becomes an observed equation."""
        observed = connected_decay.observed
        assert len(observed) == 1
        assert observed[0].lhs == sp.Symbol("decay2.f")
        assert observed[0].rhs == sp.Symbol("decay1.x")

    def test_defaults_are_namespaced(self, t, decay_component):
        """Subsystem defaults follow the renamed variables."""
        (x,) = variables("x")
        inner = decay_component("inner")
        inner.defaults = {x: 2.0, "a": 0.5}
        outer = ODESystem([], t, name="outer", systems=[inner])
        defaults = outer.flatten().defaults
        assert defaults[sp.Symbol("inner.x")] == 2.0
        assert defaults["inner.a"] == 0.5

    def test_two_level_nesting(self, t, connected_decay):
        """A composed system can itself be a subsystem."""
        top = ODESystem([], t, name="top", systems=[connected_decay])
        names = {s.name for s in top.states}
        assert "connected.decay2.x" in names
        assert top.complete().connected.decay2.x == sp.Symbol("connected.decay2.x")


# ======================================================================
# 3. Order lowering and structural simplification
# ======================================================================

class TestSimplification:
    """Tests for ode_order_lowering() and structural_simplify()."""

    def test_second_order_lowered(self, t):
        """D(D(x)) ~ f introduces the state x_t."""
        D = Differential(t)
        (x,) = variables("x")
        k, c = parameters("k c")
        osc = ODESystem([Equation(D(D(x)), -k * x - c * D(x))], t, name="osc")
        assert [p.name for p in osc.parameters] == ["c", "k"]

        lowered = osc.ode_order_lowering()
        x_t = sp.Symbol("x_t")
        assert lowered.states == [x, x_t]
        rhs = {eq.lhs.variable: eq.rhs for eq in lowered.differential_equations}
        assert rhs[x] == x_t
        assert rhs[x_t] == -k * x - c * x_t

    def test_first_order_system_unchanged(self, lorenz):
        """Lowering a first-order system is a no-op."""
        assert lorenz.ode_order_lowering() is lorenz

    def test_highest_derivative_becomes_observed(self, t):
        """Referring to D(x) of a first-order x adds an observed x_t."""
        D = Differential(t)
        x, y = variables("x y")
        sys = ODESystem([Equation(D(x), -x), Equation(D(y), D(x) - y)], t)
        simple = sys.structural_simplify()
        assert simple.states == [x, y]
        assert simple.rhss[1] == -x - y

    def test_observed_inlined(self, connected_decay):
        """Observed variables are substituted into the right-hand sides."""
        simple = connected_decay.structural_simplify()
        assert simple.is_simplified and simple.is_complete
        assert [s.name for s in simple.states] == ["decay1.f", "decay1.x", "decay2.x"]
        rhs = {eq.lhs.variable.name: eq.rhs for eq in simple.differential_equations}
        x1, x2, a2 = sp.symbols("decay1.x decay2.x decay2.a")
        assert rhs["decay2.x"] == x1 - a2 * x2
        assert [eq.lhs.name for eq in simple.observed] == ["decay2.f"]

    def test_nested_observed_resolved(self, t):
        """Observed equations referring to each other are fully resolved."""
        D = Differential(t)
        x, u, v = variables("x u v")
        (a,) = parameters("a")
        sys = ODESystem(
            [Equation(D(x), -v), Equation(v, 2 * u), Equation(u, a * x)], t,
        )
        simple = sys.structural_simplify()
        assert simple.rhss == [-2 * a * x]
        resolved = {eq.lhs: eq.rhs for eq in simple.observed}
        assert resolved[v] == 2 * a * x

    def test_algebraic_equation_solved(self, t):
        """0 ~ y - a*x is solved for the non-differential unknown y."""
        D = Differential(t)
        x, y = variables("x y")
        (a,) = parameters("a")
        sys = ODESystem([Equation(D(x), -x + y), Equation(0, y - a * x)], t, states=[x, y])
        simple = sys.structural_simplify()
        assert simple.states == [x]
        assert sp.expand(simple.rhss[0] - (a * x - x)) == 0
        assert simple.parameters == [a]

    def test_unsolvable_algebraic_equation_raises(self, t):
        """Equations non-linear in every unknown cannot be solved."""
        D = Differential(t)
        x, y = variables("x y")
        sys = ODESystem([Equation(D(x), y), Equation(0, y ** 2 - x)], t, states=[x, y])
        with pytest.raises(ValueError, match="Cannot solve algebraic equation"):
            sys.structural_simplify()

    def test_cycle_raises(self, t):
        """Cyclic observed equations are rejected."""
        D = Differential(t)
        x, u, v = variables("x u v")
        sys = ODESystem([Equation(D(x), -u), Equation(u, v + x), Equation(v, u)], t)
        with pytest.raises(ValueError, match="Cyclic observed equations"):
            sys.structural_simplify()

    def test_undefined_unknown_raises(self, t):
        """An unknown used by the dynamics needs a defining equation."""
        D = Differential(t)
        x, y = variables("x y")
        sys = ODESystem([Equation(D(x), y)], t, states=[x, y])
        with pytest.raises(ValueError, match="no defining equation"):
            sys.structural_simplify()

    def test_duplicate_differential_equation_raises(self, t):
        """A state may have only one differential equation."""
        D = Differential(t)
        (x,) = variables("x")
        sys = ODESystem([Equation(D(x), -x), Equation(D(x), x)], t)
        with pytest.raises(ValueError, match="Duplicate differential equations"):
            sys.structural_simplify()

    def test_verbose_trace(self, connected_decay, capsys):
        """verbose=True prints the simplification steps with the package prefix."""
        connected_decay.verbose = True
        connected_decay.structural_simplify()
        out = capsys.readouterr().out
        assert "[sciml-tutorials]" in out
        assert "Resolving" in out


# ======================================================================
# 4. Code generation
# ======================================================================

class TestGeneration:
    """Tests for generate_function(), generate_jacobian() and friends."""

    def test_generate_function_lorenz(self, lorenz):
        """f(u, p, t) evaluates the Lorenz right-hand side."""
        f = lorenz.generate_function()
        # parameters are ordered beta, rho, sigma
        du = f.oop([1.0, 0.0, 0.0], [8.0 / 3.0, 28.0, 10.0], 0.0)
        np.testing.assert_allclose(du, [-10.0, 28.0, 0.0])

    def test_generate_function_c(self, lorenz):
        """The C target writes one output per state."""
        code = lorenz.generate_function(target="c")
        assert "out[2] = " in code
        assert "p[2]" in code and "u[0]" in code

    def test_generate_jacobian_dense_and_sparse(self, lorenz):
        """Dense and sparse Jacobians agree."""
        u, p = [1.0, 2.0, 3.0], [8.0 / 3.0, 28.0, 10.0]
        dense = lorenz.generate_jacobian().oop(u, p, 0.0)
        sparse = lorenz.generate_jacobian(sparse=True).oop(u, p, 0.0)
        assert dense.shape == (3, 3)
        np.testing.assert_allclose(sparse.toarray(), dense)
        np.testing.assert_allclose(dense[0], [-10.0, 10.0, 0.0])

    def test_jacobian_sparsity(self, lorenz):
        """The system-level sparsity pattern has 8 structural non-zeros."""
        assert lorenz.jacobian_sparsity().nnz == 8
        assert lorenz.calculate_jacobian().shape == (3, 3)

    def test_generate_observed(self, connected_decay):
        """Observed values are computed from states and parameters."""
        symbols, g = connected_decay.generate_observed()
        assert symbols == [sp.Symbol("decay2.f")]
        np.testing.assert_allclose(g.oop([1.0, 0.25, 3.0], [1.0, 2.0], 0.0), [0.25])


# ======================================================================
# 5. Brian2 equation strings
# ======================================================================

NEURON_EQS = """
dv/dt = (inp - v) / tau : 1
inp = amp * sin(w * t) : 1
tau : second
amp : 1
w : Hz
"""


class TestBrian2Equations:
    """Tests for from_equations() and to_brian2_equations()."""

    def test_from_equations_structure(self):
        """Differential equations, subexpressions and parameters are split."""
        sys = ODESystem.from_equations(NEURON_EQS, name="neuron")
        v, inp, tau, amp, w, t = sp.symbols("v inp tau amp w t")
        assert sys.states == [v]
        assert set(sys.parameters) == {tau, amp, w}
        assert sys.observed[0].lhs == inp
        assert sys.observed[0].rhs == amp * sp.sin(w * t)
        assert sys.metadata[tau]["eq_type"] == "parameter"
        assert sys.metadata[v]["eq_type"] == "differential equation"

    def test_from_equations_solves(self):
        """An imported model simulates like a hand-written one."""
        sys = ODESystem.from_equations(NEURON_EQS, name="neuron")
        prob = ODEProblem(sys, {"v": 0.0}, (0.0, 5.0), {"tau": 1.0, "amp": 0.0, "w": 1.0})
        sol = prob.solve()
        assert sol.success
        np.testing.assert_allclose(sol["v"][-1], 0.0, atol=1e-12)

    def test_function_map(self):
        """Opaque functions are expanded with function_map."""
        sys = ODESystem.from_equations(
            """
            dv/dt = -v + r : 1
            r = f(v) : 1
            """,
            function_map={"f": sp.tanh},
        )
        v = sp.Symbol("v")
        assert sys.observed[0].rhs == sp.tanh(v)
        assert sys.structural_simplify().rhss == [-v + sp.tanh(v)]

    def test_export_composed_system(self, connected_decay):
        """Namespaced names are exported as valid Brian2 identifiers."""
        exported = connected_decay.to_brian2_equations()
        assert set(exported.diff_eq_names) == {"decay1_f", "decay1_x", "decay2_x"}
        assert "decay2_f" in exported.subexpr_names
        assert "decay1_a" in exported.parameter_names
