"""
Two-time correlation functions ⟨op1(t0 + τ) op2(t0)⟩.

The operator op2 is frozen at t0. It is copied onto an additional subspace
appended to the Hilbert space (the spectator), so it commutes with every
other operator and neither the Hamiltonian nor the jump operators act on it.
The equation of motion in τ for ⟨op1 op2_0⟩ then follows from the ordinary
meanfield machinery, and completion only derives equations for averages
containing the spectator. Averages without it are inputs taken from the
equations of the system at t0.
"""

import dataclasses
from typing import Any, Callable

import numpy as np
import sympy as sp

from ..core.errors import MissingAverageError
from ..core.expressions import QExpr, as_qexpr
from ..core.hilbert import ProductSpace, copy_subspace
from ..core.indices import Index
from ..core.operators import NonIdenticalProduct, flat_factors
from ..core.parameters import DerivationParameters
from ..equations.averages import Average, average_of_ops, find_averages
from ..equations.completion import complete
from ..equations.cumulants import cumulant_expansion
from ..equations.meanfield import MeanfieldEquations, meanfield


def _single_product(x: Any) -> tuple:
    expr = as_qexpr(x)
    if len(expr.terms) != 1:
        raise ValueError(f"Expected a single operator product, got {expr}")
    ((term, coeff),) = expr.terms.items()
    if term.sums or not term.ops or coeff != 1:
        raise ValueError(f"Expected a single operator product without sums or prefactor, got {expr}")
    return term.ops


def spectator_copy(ops, suffix: str = "0") -> tuple[tuple, ProductSpace, dict[int, int]]:
    """
    Copy operators onto new subspaces appended to their Hilbert space.

    Returns:
        Copied operators, the enlarged space and the map old aon -> new aon
    """
    hilbert = flat_factors(ops)[0].hilbert
    spaces = list(hilbert.spaces)
    aon_map: dict[int, int] = {}
    for op in flat_factors(ops):
        if op.aon not in aon_map:
            spaces.append(copy_subspace(hilbert.subspace(op.aon), suffix))
            aon_map[op.aon] = len(spaces)
    new_hilbert = ProductSpace(tuple(spaces))

    def copy(op: Any) -> Any:
        if isinstance(op, NonIdenticalProduct):
            return NonIdenticalProduct.of(copy(e) for e in op.elements)
        index = op.index
        if isinstance(index, Index):
            index = Index(new_hilbert, index.name, index.range, aon_map[op.aon])
        return dataclasses.replace(
            op, hilbert=new_hilbert, name=f"{op.name}_{suffix}", aon=aon_map[op.aon], index=index
        )

    return tuple(copy(op) for op in ops), new_hilbert, aon_map


def numeric_value(expr: Any, values: dict, parameters: dict | None = None) -> complex:
    """Evaluate a scalar expression given values of averages (conjugates looked up as needed)."""
    expr = sp.sympify(expr)
    values = {sp.sympify(k): v for k, v in values.items()}
    rules: dict = {}
    for avg in find_averages(expr):
        if avg in values:
            rules[avg] = values[avg]
        else:
            conj = sp.conjugate(avg)
            if conj in values:
                rules[avg] = np.conj(values[conj])
            else:
                raise MissingAverageError(f"No value given for {avg}")
    expr = expr.xreplace({k: sp.sympify(v) for k, v in rules.items()})
    if parameters:
        expr = expr.xreplace({sp.sympify(k): sp.sympify(v) for k, v in parameters.items()})
    return complex(sp.N(expr))


class CorrelationFunction:
    """
    Equations of motion in τ for ⟨op1(t0 + τ) op2(t0)⟩.

    The averages of de0 enter corr.de as inputs taken at t0. With
    steady_state=True they are constants, which is what Spectrum needs.
    Otherwise integrate full_system(), where de0 evolves along with the
    correlation equations; steady_state only changes whether Spectrum warns.

    Attributes:
        op1, op2: Operators at t0 + τ and at t0
        op2_0: Spectator copy of op2
        de0: Equation set of the system the correlation is taken in
        de: Completed equations for the spectator averages
        steady_state: Whether the inputs from de0 are steady-state values
    """

    def __init__(
        self,
        op1: Any,
        op2: Any,
        de0: MeanfieldEquations,
        steady_state: bool = False,
        filter_func: Callable[[Average], bool] | None = None,
        extra_indices=(),
        settings: DerivationParameters | None = None,
    ) -> None:
        self.op1 = as_qexpr(op1)
        self.op2 = as_qexpr(op2)
        self.de0 = de0
        self.steady_state = steady_state

        ops2 = _single_product(self.op2)
        self._original_ops = ops2
        spectator_ops, self.hilbert, aon_map = spectator_copy(ops2)
        self.spectator_aons = frozenset(aon_map.values())
        self.op2_0 = QExpr.from_ops(spectator_ops)

        settings = settings or de0.settings
        lhs = self.op1 * self.op2_0
        initial = meanfield(
            [lhs],
            de0.hamiltonian,
            de0.jumps,
            de0.rates,
            Jdagger=de0.jumps_dagger,
            settings=settings.with_order(de0.order),
        )

        def keep(avg: Average) -> bool:
            if not avg.aons & self.spectator_aons:
                return False
            return filter_func is None or filter_func(avg)

        self.de = complete(initial, extra_indices=extra_indices, filter_func=keep, adjoints=False, settings=settings)

    def is_spectator_average(self, avg: Average) -> bool:
        return bool(avg.aons & self.spectator_aons)

    def external_averages(self) -> list[Average]:
        """Averages on the right-hand sides that come from de0."""
        found: dict[str, Average] = {}
        for expr in self.de.rhs:
            for avg in find_averages(expr):
                if not self.is_spectator_average(avg):
                    found.setdefault(avg._key, avg)
        return [found[key] for key in sorted(found)]

    def full_system(self) -> MeanfieldEquations:
        """de0 followed by the correlation equations, for integration in τ."""
        return self.de0.extended(self.de)

    def __len__(self) -> int:
        return len(self.de)


def correlation_initial_values(corr: CorrelationFunction, values: dict, parameters: dict | None = None) -> np.ndarray:
    """
    States of a correlation function at τ = 0.

    At τ = 0 the spectator equals op2 again, so each state becomes an
    ordinary average of the system at t0, expanded to the order of de0.

    Args:
        corr: Correlation function
        values: Mapping from averages of de0 to numbers
        parameters: Values of scalar parameters, if any appear

    Returns:
        Complex vector in the order of corr.de.states
    """
    result = []
    for state in corr.de.states:
        ops = tuple(op for op in state.ops if op.aon not in corr.spectator_aons)
        expr = average_of_ops(ops + corr._original_ops)
        if corr.de0.order is not None:
            expr = cumulant_expansion(expr, corr.de0.order)
        result.append(numeric_value(expr, values, parameters))
    return np.asarray(result, dtype=complex)
