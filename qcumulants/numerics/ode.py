"""
Numeric right-hand sides for external ODE solvers.

build_ode maps each state of an equation set to one slot of a complex state
vector u. Averages that are conjugates of states read conj(u[i]). The
right-hand sides are compiled with sympy.lambdify for numpy.

Usage:
    >>> f = build_ode(eqs, [g, κ, γ])
    >>> u0 = initial_values(eqs, {average(a.dag() * a): 1.0})
    >>> solution = scipy.integrate.solve_ivp(f.ivp([1.0, 0.5, 0.1]), (0, 10), u0)
"""

from typing import Any

import numpy as np
import sympy as sp

from ..core.errors import MissingAverageError
from ..equations.averages import Average, IndexedSum
from ..equations.meanfield import MeanfieldEquations


class OdeFunction:
    """
    Compiled right-hand side f(du, u, p, t).

    Attributes:
        states: Averages in state-vector order
        parameters: Parameters in the order numeric values are passed
    """

    def __init__(self, states, parameters, func) -> None:
        self.states = tuple(states)
        self.parameters = tuple(parameters)
        self._func = func

    def parameter_values(self, p: Any) -> list:
        if isinstance(p, dict):
            p = {sp.sympify(k): v for k, v in p.items()}
            missing = [s for s in self.parameters if s not in p]
            if missing:
                raise ValueError(f"Missing parameter values for {missing}")
            return [p[s] for s in self.parameters]
        p = list(p) if p is not None else []
        if len(p) != len(self.parameters):
            raise ValueError(f"Expected {len(self.parameters)} parameter values, got {len(p)}")
        return p

    def rhs(self, u: np.ndarray, p: Any) -> np.ndarray:
        values = self._func(*np.asarray(u), *self.parameter_values(p))
        return np.asarray(values, dtype=complex).reshape(len(self.states))

    def __call__(self, du: np.ndarray, u: np.ndarray, p: Any, t: float) -> np.ndarray:
        du[:] = self.rhs(u, p)
        return du

    def ivp(self, p: Any):
        """fun(t, u) for scipy.integrate.solve_ivp with fixed parameters."""
        values = self.parameter_values(p)

        def fun(t: float, u: np.ndarray) -> np.ndarray:
            return np.asarray(self._func(*np.asarray(u), *values), dtype=complex).reshape(len(self.states))

        return fun


def state_rules(states) -> tuple[list[sp.Symbol], dict]:
    """State symbols u_i and substitution rules for states and their conjugates."""
    u = [sp.Dummy(f"u{n}") for n in range(len(states))]
    rules: dict = {}
    for state, symbol in zip(states, u, strict=True):
        rules[state] = symbol
    for state, symbol in zip(states, u, strict=True):
        conj = sp.conjugate(state)
        if isinstance(conj, Average) and conj not in rules:
            rules[conj] = sp.conjugate(symbol)
    return u, rules


def build_ode(eqs: MeanfieldEquations, parameters=None) -> OdeFunction:
    """
    Compile an equation set into a numeric right-hand side.

    Args:
        eqs: Equation set whose right-hand sides only reference states
        parameters: Parameter order; defaults to eqs.parameters()

    Returns:
        OdeFunction

    Raises:
        MissingAverageError: If a right-hand side references an average that is not a state
        ValueError: If sums are left unevaluated or parameters are missing
    """
    u, rules = state_rules(eqs.states)
    parameters = list(eqs.parameters() if parameters is None else parameters)

    rhs = []
    for state, expr in zip(eqs.states, eqs.rhs, strict=True):
        expr = sp.sympify(expr)
        if expr.has(IndexedSum):
            raise ValueError(f"Right-hand side of {state} contains unevaluated sums; use scale or evaluate first")
        expr = expr.xreplace(rules)
        leftover = expr.atoms(Average)
        if leftover:
            names = ", ".join(sorted(str(a) for a in leftover))
            raise MissingAverageError(f"Right-hand side of {state} references non-state averages: {names}")
        rhs.append(expr)

    allowed = set(u) | set(parameters)
    undeclared = set()
    for expr in rhs:
        undeclared |= {s for s in expr.free_symbols if s not in allowed and not isinstance(s, sp.IndexedBase)}
    if undeclared:
        raise ValueError(f"Undeclared parameters: {sorted(str(s) for s in undeclared)}")

    func = sp.lambdify(u + parameters, rhs, modules="numpy")
    return OdeFunction(eqs.states, parameters, func)


def initial_values(eqs: MeanfieldEquations, values: dict | None = None, default: complex = 0.0) -> np.ndarray:
    """
    State vector from a mapping of averages to numbers.

    States missing from values are filled from the value of their conjugate
    or with the default.
    """
    values = {sp.sympify(k): v for k, v in (values or {}).items()}
    result = []
    for state in eqs.states:
        if state in values:
            result.append(values[state])
            continue
        conj = sp.conjugate(state)
        if conj in values:
            result.append(np.conj(values[conj]))
        else:
            result.append(default)
    return np.asarray(result, dtype=complex)
