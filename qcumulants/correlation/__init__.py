"""Two-time correlation functions and their spectra"""

from .correlation import CorrelationFunction, correlation_initial_values
from .spectrum import Spectrum, linear_system

__all__ = [
    "CorrelationFunction",
    "correlation_initial_values",
    "Spectrum",
    "linear_system",
]
