"""
Integration tests for correlation functions of a single cavity mode.

The first-order correlation ⟨a†(τ) a(0)⟩ of a damped cavity decays as
exp((iΔ − κ/2) τ). A coherent drive adds the constant ⟨a⟩ of the spectator
copy, which enters the spectrum through the Laplace transform.
"""

import numpy as np
import pytest
from scipy.integrate import solve_ivp

from qcumulants import (
    CorrelationFunction,
    Spectrum,
    average,
    build_ode,
    cnumbers,
    correlation_initial_values,
    meanfield,
    rnumbers,
)


@pytest.fixture
def cavity_parameters():
    (Δ,) = cnumbers("Δ")
    κ, η = rnumbers("κ η")
    return Δ, κ, η


@pytest.mark.integration
@pytest.mark.numerical
class TestCavityCorrelation:
    """Test correlation functions in the time and frequency domain"""

    def test_exponential_decay(self, a, cavity_parameters):
        Δ, κ, η = cavity_parameters
        de0 = meanfield([a.dag() * a], Δ * a.dag() * a, [a], [κ])
        corr = CorrelationFunction(a.dag(), a, de0, steady_state=True)

        values = {average(a.dag() * a): 0.7}
        x0 = correlation_initial_values(corr, values)
        f = build_ode(corr.de, [Δ, κ])
        taus = np.linspace(0.0, 4.0, 9)
        solution = solve_ivp(f.ivp([1.5, 0.6]), (0.0, 4.0), x0, t_eval=taus, rtol=1e-10, atol=1e-12)

        expected = 0.7 * np.exp((1.5j - 0.3) * taus)
        assert np.allclose(solution.y[0], expected, atol=1e-7)

    def test_driven_cavity_spectrum(self, a, cavity_parameters):
        """A coherent amplitude ⟨a⟩ contributes through the spectator average ⟨a_0⟩"""
        Δ, κ, η = cavity_parameters
        H = Δ * a.dag() * a + η * (a + a.dag())
        de0 = meanfield([a, a.dag() * a], H, [a], [κ])
        corr = CorrelationFunction(a.dag(), a, de0, steady_state=True)
        assert len(corr) == 2

        n, alpha = 0.4, 0.3 - 0.2j
        values = {average(a.dag() * a): n, average(a): alpha}
        spectrum = Spectrum(corr)
        omegas = np.array([0.5, 2.0, -1.0])
        result = spectrum(omegas, values, {Δ: 1.0, κ: 0.8, η: 0.5})

        s = 1j * omegas
        expected = 2 * np.real((n + 1j * 0.5 * alpha / s) / (s - 1j * 1.0 + 0.4))
        assert np.allclose(result, expected)

    def test_singular_at_zero_frequency(self, a, cavity_parameters):
        Δ, κ, η = cavity_parameters
        de0 = meanfield([a, a.dag() * a], Δ * a.dag() * a + η * (a + a.dag()), [a], [κ])
        spectrum = Spectrum(CorrelationFunction(a.dag(), a, de0, steady_state=True))
        values = {average(a.dag() * a): 0.4, average(a): 0.3}
        # the frozen ⟨a_0⟩ makes the system singular at ω = 0
        with pytest.raises(np.linalg.LinAlgError):
            spectrum(0.0, values, {Δ: 1.0, κ: 0.8, η: 0.5})
