"""
End-to-end tests of single-atom and two-atom lasers.

Derivation, completion at second order, compilation and integration with
scipy. Averages that are not phase invariant vanish for a laser started
from the vacuum and are dropped from the right-hand sides.
"""

import numpy as np
import pytest
import sympy as sp
from scipy.integrate import solve_ivp

from qcumulants import (
    FockSpace,
    NLevelSpace,
    average,
    build_ode,
    cnumbers,
    complete,
    initial_values,
    meanfield,
    rnumbers,
)
from qcumulants.core.operators import Create, Destroy, Transition, flat_factors


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
def laser_equations(a, laser_model, drop_external):
    eqs = meanfield([a.dag() * a], order=2, **laser_model)
    return drop_external(complete(eqs, filter_func=phase_invariant))


@pytest.fixture
def laser_values(laser_parameters) -> dict:
    Δ, g, κ, γ, ν = laser_parameters
    return {Δ: 0.0, g: 1.5, κ: 1.0, γ: 0.25, ν: 4.0}


@pytest.mark.integration
@pytest.mark.numerical
class TestLaserPipeline:
    """Test the laser from Hamiltonian to time evolution"""

    def test_closed_set(self, a, s, laser_equations):
        assert len(laser_equations) == 3
        assert average(s(2, 2)) in laser_equations.states
        f = build_ode(laser_equations)
        assert len(f.parameters) == 5

    def test_time_evolution(self, a, s, laser_equations, laser_values):
        f = build_ode(laser_equations)
        u0 = initial_values(laser_equations)
        solution = solve_ivp(f.ivp(laser_values), (0.0, 10.0), u0, rtol=1e-8, atol=1e-10)
        assert solution.success

        slots = laser_equations.state_index()
        n = solution.y[slots[average(a.dag() * a)]]
        p = solution.y[slots[average(s(2, 2))]]

        assert np.allclose(n.imag, 0.0, atol=1e-8)
        assert np.allclose(p.imag, 0.0, atol=1e-8)
        assert np.all(p.real > -1e-8)
        assert np.all(p.real < 1.0 + 1e-8)
        assert n.real[-1] > 0.0

    def test_population_without_coupling(self, s, laser_equations, laser_parameters, laser_values):
        """With g = 0 the population relaxes to ν / (γ + ν)"""
        Δ, g, κ, γ, ν = laser_parameters
        values = dict(laser_values)
        values[g] = 0.0
        f = build_ode(laser_equations)
        u0 = initial_values(laser_equations)
        solution = solve_ivp(f.ivp(values), (0.0, 20.0), u0, rtol=1e-8, atol=1e-10)

        p = solution.y[laser_equations.state_index()[average(s(2, 2))], -1]
        assert abs(p - 4.0 / 4.25) < 1e-6


@pytest.fixture
def three_level_laser():
    """Cavity coupled on the 1-2 transition of two 3-level atoms pumped via level 3"""
    h = FockSpace("cavity") * NLevelSpace("atom1", 3) * NLevelSpace("atom2", 3)
    a = Destroy(h, "a")

    def σ(i, j, k):
        return Transition(h, "σ", i, j, k + 1)

    Δ, g = cnumbers("Δ g")
    κ, Γ12, Γ13, Γ23, ν = rnumbers("κ Γ12 Γ13 Γ23 ν")
    H = Δ * a.dag() * a + sum(g * (a.dag() * σ(1, 2, k) + a * σ(2, 1, k)) for k in (1, 2))
    J = [a]
    rates = [κ]
    for k in (1, 2):
        J += [σ(1, 2, k), σ(1, 3, k), σ(2, 3, k), σ(3, 1, k)]
        rates += [Γ12, Γ13, Γ23, ν]
    return a, σ, H, J, rates, (g, κ, Γ12, Γ13, Γ23, ν)


@pytest.mark.integration
@pytest.mark.physics
class TestThreeLevelLaser:
    """Test the closed-form equations of a laser with two 3-level atoms"""

    def test_first_equations(self, three_level_laser):
        a, σ, H, J, rates, (g, κ, Γ12, Γ13, Γ23, ν) = three_level_laser
        eqs = meanfield([a.dag() * a, σ(2, 2, 1), σ(3, 3, 1)], H, J, rates, order=2)
        completed = complete(eqs)
        assert completed.states[:3] == eqs.states

        photons = -κ * average(a.dag() * a) + sum(
            -sp.I * g * average(a.dag() * σ(1, 2, k)) + sp.I * g * average(a * σ(2, 1, k)) for k in (1, 2)
        )
        excited = (
            -Γ12 * average(σ(2, 2, 1))
            + Γ23 * average(σ(3, 3, 1))
            + sp.I * g * average(a.dag() * σ(1, 2, 1))
            - sp.I * g * average(a * σ(2, 1, 1))
        )
        pumped = ν - ν * average(σ(2, 2, 1)) - (Γ13 + Γ23 + ν) * average(σ(3, 3, 1))

        for rhs, expected in zip(completed.rhs[:3], (photons, excited, pumped), strict=True):
            assert sp.expand(rhs - expected) == 0
