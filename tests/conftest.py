"""
Pytest configuration and fixtures for the test suite
"""

import pytest
import sympy as sp

from qcumulants import (
    Destroy,
    FockSpace,
    Index,
    NLevelSpace,
    Transition,
    cnumbers,
    rnumbers,
)
from qcumulants.equations import find_averages


@pytest.fixture
def cavity_atom():
    """Single cavity mode coupled to a two-level atom"""
    return FockSpace("cavity") * NLevelSpace("atom", 2)


@pytest.fixture
def a(cavity_atom) -> Destroy:
    """Cavity annihilation operator"""
    return Destroy(cavity_atom, "a")


@pytest.fixture
def s(cavity_atom):
    """Atomic transition operators σ(i, j)"""
    return lambda i, j: Transition(cavity_atom, "σ", i, j)


@pytest.fixture
def laser_parameters() -> tuple:
    """Detuning, coupling, cavity loss, atomic decay and pump rate"""
    Δ, g = cnumbers("Δ g")
    κ, γ, ν = rnumbers("κ γ ν")
    return Δ, g, κ, γ, ν


@pytest.fixture
def laser_model(a, s, laser_parameters) -> dict:
    """Single-atom laser with cavity loss, atomic decay and incoherent pump"""
    Δ, g, κ, γ, ν = laser_parameters
    H = Δ * a.dag() * a + g * (a.dag() * s(1, 2) + a * s(2, 1))
    return {
        "H": H,
        "J": [a, s(1, 2), s(2, 1)],
        "rates": [κ, γ, ν],
    }


@pytest.fixture
def ensemble():
    """Cavity mode coupled to an ensemble of N two-level atoms"""
    N = sp.Symbol("N", integer=True, positive=True)
    ha = NLevelSpace("atom", 2)
    h = FockSpace("cavity") * ha
    k = Index(h, "k", N, ha)
    l = Index(h, "l", N, ha)
    return h, N, k, l


@pytest.fixture
def ensemble_ops(ensemble) -> tuple:
    """Cavity operator and indexed transitions σ(i, j)_k of the ensemble"""
    h, N, k, l = ensemble
    a = Destroy(h, "a")

    def σ(i, j, index):
        return Transition(h, "σ", i, j)[index]

    return a, σ


@pytest.fixture
def drop_external():
    """Set averages without an equation (and not conjugate to a state) to zero"""

    def drop(eqs):
        covered = set(eqs.states) | {sp.conjugate(state) for state in eqs.states}
        rules = {avg: 0 for expr in eqs.rhs for avg in find_averages(expr) if avg not in covered}
        return eqs.substitute(rules)

    return drop


@pytest.fixture
def numerical_tolerance() -> float:
    """Standard numerical tolerance for floating point comparisons"""
    return 1e-10


# Marks for test categorization
def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "physics: Physics validation tests")
    config.addinivalue_line("markers", "numerical: Numerical accuracy tests")
    config.addinivalue_line("markers", "slow: Slow tests")


# Skip slow tests by default
def pytest_collection_modifyitems(config, items):
    """Modify test collection to handle slow tests"""
    if config.getoption("--run-slow"):
        return  # Don't skip anything if explicitly requested

    skip_slow = pytest.mark.skip(reason="need --run-slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


def pytest_addoption(parser):
    """Add command line options"""
    parser.addoption("--run-slow", action="store_true", default=False, help="run slow tests")
