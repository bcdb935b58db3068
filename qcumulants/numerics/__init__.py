"""Numeric export of equation sets for external ODE solvers"""

from .ode import OdeFunction, build_ode, initial_values

__all__ = ["OdeFunction", "build_ode", "initial_values"]
