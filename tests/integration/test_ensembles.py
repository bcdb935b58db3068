"""
Integration tests for ensembles of identical atoms.

Key Test Coverage:
    - Tavis-Cummings laser: scale and evaluate agree for a concrete N
    - Two ensembles coupled to one cavity: scaling all or one subspace
"""

import numpy as np
import pytest
import sympy as sp
from scipy.integrate import solve_ivp

from qcumulants import (
    Create,
    Destroy,
    FockSpace,
    Index,
    IndexedSum,
    NLevelSpace,
    Transition,
    average,
    build_ode,
    cnumbers,
    complete,
    evaluate,
    initial_values,
    meanfield,
    rnumbers,
    scale,
    Σ,
)
from qcumulants.core.operators import flat_factors


def phase_invariant(avg) -> bool:
    total = 0
    for op in flat_factors(avg.ops):
        if isinstance(op, Destroy):
            total += 1
        elif isinstance(op, Create):
            total -= 1
        elif isinstance(op, Transition):
            total += op.levels[1] - op.levels[0]
    return total == 0


@pytest.fixture
def pumped_tavis_cummings(ensemble, ensemble_ops):
    """N pumped atoms in a lossy cavity, completed at second order"""
    h, N, k, l = ensemble
    a, σ = ensemble_ops
    Δ, g = cnumbers("Δ g")
    κ, γ, ν = rnumbers("κ γ ν")
    H = Δ * a.dag() * a + g * Σ(a.dag() * σ(1, 2, k) + a * σ(2, 1, k), k)
    eqs = meanfield([a.dag() * a], H, [a, σ(1, 2, k), σ(2, 1, k)], [κ, γ, ν], order=2)
    eqs = complete(eqs, extra_indices=[k, l], filter_func=phase_invariant)
    return eqs, {Δ: 0.0, g: 0.8, κ: 1.0, γ: 0.25, ν: 2.0}


@pytest.fixture
def two_ensembles():
    """Cavity coupled to two ensembles A and B of different size"""
    NA = sp.Symbol("N_A", integer=True, positive=True)
    NB = sp.Symbol("N_B", integer=True, positive=True)
    h = FockSpace("cavity") * NLevelSpace("A", 2) * NLevelSpace("B", 2)
    i = Index(h, "i", NA, 2)
    j = Index(h, "j", NB, 3)
    a = Destroy(h, "a")

    def σ(m, n, index):
        return Transition(h, "σ", m, n, 2)[index]

    def τ(m, n, index):
        return Transition(h, "τ", m, n, 3)[index]

    return h, a, σ, τ, i, j, NA, NB


def photon_number(eqs, values, cavity_op, t_eval):
    f = build_ode(eqs)
    u0 = initial_values(eqs)
    solution = solve_ivp(f.ivp(values), (0.0, t_eval[-1]), u0, t_eval=t_eval, rtol=1e-9, atol=1e-11)
    assert solution.success
    return solution.y[eqs.state_index()[average(cavity_op)]]


@pytest.mark.integration
@pytest.mark.numerical
class TestTavisCummings:
    """Test the reduced and the expanded ensemble against each other"""

    def test_scaled_state_count(self, pumped_tavis_cummings):
        eqs, values = pumped_tavis_cummings
        scaled = scale(eqs)
        assert len(scaled) == 4
        for r in scaled.rhs:
            assert not r.has(IndexedSum)

    def test_evaluated_state_count(self, ensemble, pumped_tavis_cummings):
        h, N, k, l = ensemble
        eqs, values = pumped_tavis_cummings
        # ⟨a†a⟩, two ⟨a†σ12⟩, two ⟨σ22⟩, one pair correlation
        assert len(evaluate(eqs, limits={N: 2})) == 6

    def test_scale_matches_evaluate(self, ensemble, ensemble_ops, pumped_tavis_cummings, drop_external):
        """Identical members started alike stay alike, so both reductions agree"""
        h, N, k, l = ensemble
        a, σ = ensemble_ops
        eqs, values = pumped_tavis_cummings
        t_eval = np.linspace(0.0, 5.0, 11)

        scaled = drop_external(scale(eqs).substitute({N: 2}))
        evaluated = drop_external(evaluate(eqs, limits={N: 2}))

        n_scaled = photon_number(scaled, values, a.dag() * a, t_eval)
        n_evaluated = photon_number(evaluated, values, a.dag() * a, t_eval)

        assert n_scaled.real[-1] > 0.0
        assert np.allclose(n_scaled, n_evaluated, rtol=1e-6, atol=1e-9)


@pytest.mark.integration
class TestTwoEnsembles:
    """Test ensembles on different subspaces"""

    def test_scale_all(self, two_ensembles):
        h, a, σ, τ, i, j, NA, NB = two_ensembles
        gA, gB = cnumbers("g_A g_B")
        H = gA * Σ(a.dag() * σ(1, 2, i) + a * σ(2, 1, i), i) + gB * Σ(a.dag() * τ(1, 2, j) + a * τ(2, 1, j), j)
        eqs = meanfield([a], H)
        scaled = scale(eqs)

        expected = -sp.I * gA * NA * average(σ(1, 2, 1)) - sp.I * gB * NB * average(τ(1, 2, 1))
        assert sp.expand(scaled.rhs[0] - expected) == 0
        assert scaled.scaled_aons == (2, 3)

    def test_scale_one_subspace(self, two_ensembles):
        h, a, σ, τ, i, j, NA, NB = two_ensembles
        gA, gB = cnumbers("g_A g_B")
        H = gA * Σ(a.dag() * σ(1, 2, i) + a * σ(2, 1, i), i) + gB * Σ(a.dag() * τ(1, 2, j) + a * τ(2, 1, j), j)
        eqs = meanfield([a], H)
        scaled = scale(eqs, 2)

        assert scaled.scaled_aons == (2,)
        remaining = sp.expand(scaled.rhs[0] + sp.I * gA * NA * average(σ(1, 2, 1)))
        assert sp.expand(remaining + sp.I * gB * IndexedSum.of(average(τ(1, 2, j)), j)) == 0

    def test_evaluate_both(self, two_ensembles):
        h, a, σ, τ, i, j, NA, NB = two_ensembles
        gA, gB = cnumbers("g_A g_B")
        H = gA * Σ(a.dag() * σ(1, 2, i) + a * σ(2, 1, i), i) + gB * Σ(a.dag() * τ(1, 2, j) + a * τ(2, 1, j), j)
        eqs = evaluate(meanfield([a], H), limits={NA: 2, NB: 1})

        expected = -sp.I * gA * (average(σ(1, 2, 1)) + average(σ(1, 2, 2))) - sp.I * gB * average(τ(1, 2, 1))
        assert sp.expand(eqs.rhs[0] - expected) == 0


@pytest.fixture
def mode_and_atom_ensembles():
    """N2 indexed cavity modes coupled to N atoms, completed at second order"""
    N = sp.Symbol("N", integer=True, positive=True)
    N2 = sp.Symbol("N2", integer=True, positive=True)
    Δ, g = cnumbers("Δ g")
    κ, Γ, R, ν = rnumbers("κ Γ R ν")
    hc = FockSpace("cavity")
    ha = NLevelSpace("atom", 2)
    h = hc * ha
    k, l = Index(h, "k", N, ha), Index(h, "l", N, ha)
    m, n = Index(h, "m", N2, hc), Index(h, "n", N2, hc)

    def σ(i, j, index):
        return Transition(h, "σ", i, j)[index]

    def a(index):
        return Destroy(h, "a")[index]

    H = -Δ * Σ(a(m).dag() * a(m), m) + g * (
        Σ(Σ(a(m).dag() * σ(1, 2, k), k), m) + Σ(Σ(a(m) * σ(2, 1, k), k), m)
    )
    J = [a(m), σ(1, 2, k), σ(2, 1, k), σ(2, 2, k)]
    eqs = meanfield([a(n).dag() * a(n), σ(2, 2, l)], H, J, [κ, Γ, R, ν], order=2)
    return eqs, h, hc, (N, N2), (Index(h, "q", N, ha), Index(h, "r", N2, hc))


@pytest.mark.integration
class TestModeAndAtomEnsembles:
    """Test scaling per subspace with ensembles on both subspaces"""

    def test_completion_indices(self, mode_and_atom_ensembles):
        eqs, h, hc, (N, N2), extra = mode_and_atom_ensembles
        named = complete(eqs, extra_indices=list(extra))
        with pytest.warns(UserWarning, match="exhausted"):
            generated = complete(eqs)
        assert len(named) == 15
        assert len(generated) == 15
        assert named.states[:2] == eqs.states

    def test_scale_selection(self, mode_and_atom_ensembles):
        eqs, h, hc, (N, N2), extra = mode_and_atom_ensembles
        completed = complete(eqs, extra_indices=list(extra))

        modes_only = scale(completed, 1)
        atoms_only = scale(completed, 2)
        assert modes_only.states != atoms_only.states
        assert {index.aon for index in modes_only.indices()} == {2}
        assert {index.aon for index in atoms_only.indices()} == {1}

        assert scale(completed, [hc]).rhs == scale(completed, [1]).rhs
        both = scale(completed, [1, 2])
        assert both.states == scale(completed).states
        assert both.indices() == []

    def test_scale_and_evaluate_commute(self, mode_and_atom_ensembles):
        eqs, h, hc, (N, N2), extra = mode_and_atom_ensembles
        completed = complete(eqs, extra_indices=list(extra))

        scaled_first = evaluate(scale(completed, [1]), [2], limits={N: 2})
        evaluated_first = scale(evaluate(completed, [2], limits={N: 2}), [1])

        assert len(scaled_first) == len(evaluated_first)
        assert set(scaled_first.states) == set(evaluated_first.states)
        expected = dict(zip(evaluated_first.states, evaluated_first.rhs, strict=True))
        for state, rhs in zip(scaled_first.states, scaled_first.rhs, strict=True):
            assert sp.expand(rhs - expected[state]) == 0

    def test_mode_sum(self, mode_and_atom_ensembles):
        """Σ_m ⟨a_m⟩ = N2 ⟨a_1⟩"""
        eqs, h, hc, (N, N2), extra = mode_and_atom_ensembles
        m = Index(h, "m", N2, hc)
        a = Destroy(h, "a")
        x = IndexedSum.of(average(a[m]), m)
        assert sp.expand(scale(x) - N2 * average(a[1])) == 0
        assert scale(x, [2]) == x
