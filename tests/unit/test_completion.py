"""
Unit tests for closing equation sets
"""

import warnings

import pytest

from qcumulants import (
    DerivationParameters,
    Index,
    NonTerminatingClosureError,
    QSum,
    average,
    cnumbers,
    complete,
    find_missing,
    meanfield,
    rnumbers,
)
from qcumulants.core.operators import Create, Destroy, Transition, flat_factors
from qcumulants.equations.completion import IndexPool, family_key, is_closed


def phase(avg) -> int:
    """Net number of excitations removed by the averaged product"""
    total = 0
    for op in flat_factors(avg.ops):
        if isinstance(op, Destroy):
            total += 1
        elif isinstance(op, Create):
            total -= 1
        elif isinstance(op, Transition):
            total += op.levels[1] - op.levels[0]
    return total


def phase_invariant(avg) -> bool:
    return phase(avg) == 0


@pytest.fixture
def tavis_cummings(ensemble, ensemble_ops):
    """Cavity coupled to N atoms with cavity loss and atomic decay"""
    h, N, k, l = ensemble
    a, σ = ensemble_ops
    Δ, g = cnumbers("Δ g")
    κ, γ = rnumbers("κ γ")
    H = Δ * a.dag() * a + g * QSum(a.dag() * σ(1, 2, k) + a * σ(2, 1, k), k)
    return meanfield([a.dag() * a], H, [a, σ(1, 2, k)], [κ, γ], order=2)


@pytest.mark.unit
class TestFindMissing:
    """Test detection of averages without an equation"""

    def test_laser_missing(self, a, s, laser_model):
        eqs = meanfield([a.dag() * a], order=2, **laser_model)
        missing = find_missing(eqs)
        assert len(missing) == 1
        assert missing[0] in (average(a.dag() * s(1, 2)), average(a * s(2, 1)))
        assert len(find_missing(eqs, adjoints=False)) == 2

    def test_filter(self, a, s, laser_model):
        eqs = meanfield([a.dag() * a], order=2, **laser_model)
        assert find_missing(eqs, filter_func=lambda avg: False) == []

    def test_family_key(self, ensemble, ensemble_ops):
        """Averages that differ by an order-keeping renaming of indices share a key"""
        h, N, k, l = ensemble
        a, σ = ensemble_ops
        m = Index(h, "m", N, 2)
        first = average(σ(2, 1, k) * σ(1, 2, l))
        second = average(σ(2, 1, l) * σ(1, 2, m))
        assert family_key(first) == family_key(second)
        assert family_key(first) != family_key(average(σ(1, 2, k) * σ(2, 1, l)))
        assert family_key(average(σ(2, 1, k) * σ(2, 2, l))) != family_key(average(σ(2, 2, k) * σ(2, 1, l)))
        assert family_key(average(σ(2, 2, k))) != family_key(first)
        assert family_key(average(σ(2, 2, k))) == family_key(average(σ(2, 2, m)))


@pytest.mark.unit
class TestComplete:
    """Test the completion worklist"""

    def test_laser_closes_with_filter(self, a, s, laser_model):
        eqs = meanfield([a.dag() * a], order=2, **laser_model)
        completed = complete(eqs, filter_func=phase_invariant)

        assert len(completed) == 3
        assert completed.states[0] == average(a.dag() * a)
        assert average(s(2, 2)) in completed.states
        assert is_closed(completed, filter_func=phase_invariant)
        assert not is_closed(completed)

    def test_fixed_point(self, a, s, laser_model):
        """Completing a closed set adds nothing"""
        eqs = complete(meanfield([a.dag() * a], order=2, **laser_model), filter_func=phase_invariant)
        again = complete(eqs, filter_func=phase_invariant)
        assert again.states == eqs.states

    def test_keeps_input_first(self, a, s, laser_model):
        eqs = meanfield([a.dag() * a, s(2, 2)], order=2, **laser_model)
        completed = complete(eqs, filter_func=phase_invariant)
        assert completed.states[:2] == eqs.states
        assert completed.rhs[:2] == eqs.rhs

    def test_pass_cap(self, a):
        """An untruncated Kerr hierarchy never closes"""
        (χ,) = rnumbers("χ")
        eqs = meanfield([a], χ * a.dag() * a.dag() * a * a)
        settings = DerivationParameters(max_iterations=3)
        with pytest.raises(NonTerminatingClosureError, match="3 passes"):
            complete(eqs, settings=settings)

    def test_equation_cap(self, a):
        (χ,) = rnumbers("χ")
        eqs = meanfield([a], χ * a.dag() * a.dag() * a * a)
        settings = DerivationParameters(max_equations=2)
        with pytest.raises(NonTerminatingClosureError, match="equations"):
            complete(eqs, settings=settings)


@pytest.mark.unit
class TestIndexedCompletion:
    """Test completion with ensemble indices"""

    def test_named_indices(self, ensemble, ensemble_ops, tavis_cummings):
        """Two extra indices suffice for second-order Tavis-Cummings"""
        h, N, k, l = ensemble
        a, σ = ensemble_ops
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            eqs = complete(tavis_cummings, extra_indices=[k, l], filter_func=phase_invariant)

        assert not any("exhausted" in str(w.message) for w in caught)

        assert len(eqs) == 4
        names = {index.name for state in eqs.states for index in state.indices}
        assert names <= {"k", "l"}
        assert is_closed(eqs, filter_func=phase_invariant)

    def test_generated_indices(self, tavis_cummings):
        """Without extra indices new ones are generated with a warning"""
        with pytest.warns(UserWarning, match="exhausted"):
            eqs = complete(tavis_cummings, filter_func=phase_invariant)
        assert len(eqs) == 4

    def test_index_pool(self, ensemble, ensemble_ops):
        h, N, k, l = ensemble
        a, σ = ensemble_ops
        pool = IndexPool([average(σ(2, 2, k))])
        assert pool.take((2, N), k, 1, set()) == [k]
        with pytest.warns(UserWarning):
            taken = pool.take((2, N), k, 2, set())
        assert taken[0] == k
        assert taken[1].name == "k_1"

    def test_extra_indices_type(self, tavis_cummings):
        with pytest.raises(TypeError):
            complete(tavis_cummings, extra_indices=["k"])
