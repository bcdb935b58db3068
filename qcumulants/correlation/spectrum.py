"""
Spectra from the Laplace transform of correlation equations.

The correlation equations are linear in their states, dx/dτ = M x + c. With
x(0) = x0 the Laplace transform at s = iω gives

    (iω·1 − M) x(ω) = x0 + c / (iω),

which is solved per frequency. The spectrum is 2·Re of the first component,
the transform of ⟨op1(τ) op2(0)⟩.
"""

import warnings
from typing import Any

import numpy as np
import sympy as sp

from ..core.errors import MissingAverageError
from ..equations.averages import Average, IndexedSum
from .correlation import CorrelationFunction, correlation_initial_values


def linear_system(corr: CorrelationFunction) -> tuple[sp.Matrix, sp.Matrix]:
    """
    Split correlation equations into dx/dτ = M x + c.

    Raises:
        ValueError: If a right-hand side is not linear in the states
    """
    states = corr.de.states
    slots = {state: n for n, state in enumerate(states)}
    size = len(states)
    M = sp.zeros(size, size)
    c = sp.zeros(size, 1)
    for i, rhs in enumerate(corr.de.rhs):
        rhs = sp.expand(rhs)
        if rhs.has(IndexedSum):
            raise ValueError("Evaluate or scale the correlation equations before building a spectrum")
        for term in sp.Add.make_args(rhs):
            found = []
            rest = []
            for factor in sp.Mul.make_args(term):
                base, exp = factor.as_base_exp()
                if base in slots:
                    found.extend([base] * int(exp) if exp.is_Integer and exp > 0 else [None])
                else:
                    rest.append(factor)
            if not found:
                c[i] += term
            elif len(found) == 1 and found[0] is not None:
                M[i, slots[found[0]]] += sp.Mul(*rest)
            else:
                raise ValueError(f"Correlation equation for {states[i]} is not linear in the states: {term}")
    return M, c


class Spectrum:
    """
    Spectrum of a correlation function.

    Attributes:
        corr: Correlation function the spectrum belongs to
        M, c: Linear system dx/dτ = M x + c
        parameters: Scalar parameters, in the order numeric values are passed
        externals: Averages of de0 entering M and c
    """

    def __init__(self, corr: CorrelationFunction, parameters=None) -> None:
        if not corr.steady_state:
            warnings.warn(
                "Spectrum of a correlation function outside steady state; de0 inputs are held constant",
                UserWarning,
                stacklevel=2,
            )
        self.corr = corr
        self.M, self.c = linear_system(corr)

        externals: dict[str, Average] = {}
        for expr in list(self.M) + list(self.c):
            for avg in sp.sympify(expr).atoms(Average):
                externals.setdefault(avg._key, avg)
        self.externals = [externals[key] for key in sorted(externals)]
        self._external_symbols = [sp.Dummy(f"x{n}") for n in range(len(self.externals))]
        rules = dict(zip(self.externals, self._external_symbols, strict=True))
        M = self.M.xreplace(rules)
        c = self.c.xreplace(rules)

        if parameters is None:
            found = (M.free_symbols | c.free_symbols) - set(self._external_symbols)
            parameters = sorted(found, key=sp.default_sort_key)
        self.parameters = list(parameters)
        missing = (M.free_symbols | c.free_symbols) - set(self._external_symbols) - set(self.parameters)
        if missing:
            raise ValueError(f"Spectrum depends on undeclared parameters: {sorted(map(str, missing))}")

        args = self._external_symbols + self.parameters
        self._M = sp.lambdify(args, M, modules="numpy")
        self._c = sp.lambdify(args, c, modules="numpy")

    def _external_values(self, values: dict) -> list[complex]:
        result = []
        for avg in self.externals:
            if avg in values:
                result.append(complex(values[avg]))
                continue
            conj = sp.conjugate(avg)
            if conj in values:
                result.append(complex(np.conj(values[conj])))
                continue
            raise MissingAverageError(f"No steady-state value given for {avg}")
        return result

    def _parameter_values(self, p: Any) -> list:
        if p is None:
            p = {}
        if isinstance(p, dict):
            p = {sp.sympify(k): v for k, v in p.items()}
            missing = [s for s in self.parameters if s not in p]
            if missing:
                raise ValueError(f"Missing parameter values for {missing}")
            return [p[s] for s in self.parameters]
        p = list(p)
        if len(p) != len(self.parameters):
            raise ValueError(f"Expected {len(self.parameters)} parameter values, got {len(p)}")
        return p

    def __call__(self, omega: Any, values: dict, p: Any = None) -> np.ndarray:
        """
        Evaluate the spectrum.

        Args:
            omega: Frequency or array of frequencies (non-zero when c ≠ 0)
            values: Mapping from averages of de0 to numbers
            p: Parameter values, as a mapping or in the order of self.parameters

        Returns:
            Array of spectral values, one per frequency
        """
        ext = self._external_values(values)
        pv = self._parameter_values(p)
        M = np.asarray(self._M(*ext, *pv), dtype=complex)
        c = np.asarray(self._c(*ext, *pv), dtype=complex).reshape(-1)
        param_map = dict(zip(self.parameters, pv, strict=True))
        x0 = correlation_initial_values(self.corr, values, param_map)
        identity = np.eye(len(x0), dtype=complex)

        omegas = np.atleast_1d(np.asarray(omega, dtype=float))
        result = np.empty(len(omegas))
        for n, w in enumerate(omegas):
            if w == 0 and np.any(c != 0):
                raise ValueError("The spectrum is singular at ω = 0 for a non-zero inhomogeneity")
            b = x0 + (c / (1j * w) if np.any(c != 0) else 0)
            x = np.linalg.solve(1j * w * identity - M, b)
            result[n] = 2 * np.real(x[0])
        return result
