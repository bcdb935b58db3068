"""
Heisenberg and meanfield equations of motion.

For an operator O, a Hamiltonian H and jump operators J_k with rates r_k,

    dO/dt = i[H, O] + Σ_k r_k/2 (2 J_k† O J_k − J_k† J_k O − O J_k† J_k).

Averaging both sides gives the meanfield equations for ⟨O⟩, which are then
truncated by cumulant expansion. A jump operator with a free ensemble index,
e.g. σ12_k, stands for one jump per member; its dissipator is summed over
the index. The members coinciding with an index of O are split off before
operators are multiplied, so every term is ordered exactly once.

Usage:
    >>> eqs = meanfield([a.dag() * a, s(2, 2)], H, [a, s(1, 2)], rates=[κ, γ], order=2)
    >>> eqs.states
    (⟨a†*a⟩, ⟨σ22⟩)
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any

import sympy as sp

from ..core.expressions import QExpr, QSum, as_qexpr, substitute_scalar
from ..core.indices import Index, fresh_index
from ..core.parameters import DerivationParameters, resolve_settings
from .averages import Average, average, find_indices


def _as_list(x: Any) -> list:
    if x is None:
        return []
    if isinstance(x, list | tuple):
        return list(x)
    return [x]


def _dissipator(O: QExpr, J: QExpr, Jd: QExpr, rate: Any) -> QExpr:
    rate = sp.sympify(rate)
    return rate / 2 * (2 * (Jd * O * J) - Jd * J * O - O * Jd * J)


def _names(*exprs: QExpr) -> set[str]:
    names: set[str] = set()
    for expr in exprs:
        names.update(i.name for i in expr.indices())
    return names


def _indexed_dissipator(O: QExpr, J: QExpr, Jd: QExpr, rate: Any, free: list[Index]) -> QExpr:
    """Dissipator summed over the free indices of a jump operator."""
    if not free:
        return _dissipator(O, J, Jd, rate)
    index, rest = free[0], free[1:]

    used = _names(O, J, Jd) | {i.name for i in rest}
    used |= {str(s) for s in sp.sympify(rate).free_symbols}
    if index.name in _names(O):
        new = fresh_index(index, used)
        J = J.substitute_index(index, new)
        Jd = Jd.substitute_index(index, new)
        rate = substitute_scalar(rate, index, new)
        index = new

    members = [value for value, aon in O.index_values() if aon == index.aon]
    result = QSum(_indexed_dissipator(O, J, Jd, rate, rest), index, non_equal=members)
    for value in members:
        result = result + _indexed_dissipator(
            O,
            J.substitute_index(index, value),
            Jd.substitute_index(index, value),
            substitute_scalar(rate, index, value),
            rest,
        )
    return result


def _jump_indices(J: QExpr, Jd: QExpr) -> list[Index]:
    free = J.free_indices() | Jd.free_indices()
    return sorted(free)


@dataclass(frozen=True)
class HeisenbergEquations:
    """Operator-valued equations of motion dO/dt = rhs."""

    operators: tuple
    rhs: tuple
    hamiltonian: Any
    jumps: tuple = ()
    jumps_dagger: tuple = ()
    rates: tuple = ()

    def __len__(self) -> int:
        return len(self.operators)

    def __iter__(self):
        return iter(zip(self.operators, self.rhs, strict=True))


def heisenberg(ops, H: Any, J=(), rates=(), Jdagger=None) -> HeisenbergEquations:
    """
    Derive operator equations of motion.

    Args:
        ops: Operator or list of operators O
        H: Hamiltonian
        J: Jump operators
        rates: One rate per jump operator
        Jdagger: Adjoint jump operators; computed from J when omitted

    Returns:
        HeisenbergEquations with one right-hand side per operator

    Raises:
        ValueError: If the numbers of jumps, adjoint jumps and rates differ
    """
    operators = tuple(as_qexpr(op) for op in _as_list(ops))
    H = as_qexpr(H)
    jumps = tuple(as_qexpr(j) for j in _as_list(J))
    rates = tuple(sp.sympify(r) for r in _as_list(rates))
    if Jdagger is None:
        jumps_dagger = tuple(j.adjoint() for j in jumps)
    else:
        jumps_dagger = tuple(as_qexpr(j) for j in _as_list(Jdagger))
    if len(rates) != len(jumps):
        raise ValueError(f"Got {len(jumps)} jump operators but {len(rates)} rates")
    if len(jumps_dagger) != len(jumps):
        raise ValueError(f"Got {len(jumps)} jump operators but {len(jumps_dagger)} adjoints")

    rhs = []
    for O in operators:
        result = sp.I * (H * O - O * H)
        for Jk, Jdk, rate in zip(jumps, jumps_dagger, rates, strict=True):
            result = result + _indexed_dissipator(O, Jk, Jdk, rate, _jump_indices(Jk, Jdk))
        rhs.append(result)
    return HeisenbergEquations(operators, tuple(rhs), H, jumps, jumps_dagger, rates)


@dataclass(frozen=True)
class MeanfieldEquations:
    """
    Ordered set of equations d⟨O_i⟩/dt = rhs_i.

    The position of a state in `states` is its slot in the numeric state
    vector. Equation sets are never modified; transformations return new
    sets.

    Attributes:
        states: Left-hand side averages, unique
        rhs: Right-hand sides, scalar sympy expressions
        operators: Operators whose averages are the states
        operator_equations: Operator-valued right-hand sides, when derived
        hamiltonian, jumps, jumps_dagger, rates: Model the set was derived from
        order: Cumulant truncation order, or None
        settings: DerivationParameters used for the derivation
    """

    states: tuple
    rhs: tuple
    operators: tuple = ()
    operator_equations: tuple = ()
    hamiltonian: Any = None
    jumps: tuple = ()
    jumps_dagger: tuple = ()
    rates: tuple = ()
    order: int | None = None
    settings: DerivationParameters = field(default_factory=DerivationParameters, repr=False)

    def __post_init__(self) -> None:
        if len(self.states) != len(self.rhs):
            raise ValueError(f"{len(self.states)} states but {len(self.rhs)} right-hand sides")
        keys = [s._key for s in self.states]
        if len(set(keys)) != len(keys):
            raise ValueError("States of an equation set must be unique")

    @property
    def equations(self) -> list[sp.Eq]:
        return [sp.Eq(lhs, rhs, evaluate=False) for lhs, rhs in zip(self.states, self.rhs, strict=True)]

    def __len__(self) -> int:
        return len(self.states)

    def __iter__(self):
        return iter(self.equations)

    def __getitem__(self, n: int) -> sp.Eq:
        return sp.Eq(self.states[n], self.rhs[n], evaluate=False)

    def replaced(self, **changes: Any) -> "MeanfieldEquations":
        return dataclasses.replace(self, **changes)

    def extended(self, other: "MeanfieldEquations") -> "MeanfieldEquations":
        """Equation set with the equations of `other` appended."""
        return self.replaced(
            states=self.states + other.states,
            rhs=self.rhs + other.rhs,
            operators=self.operators + other.operators,
            operator_equations=self.operator_equations + other.operator_equations,
        )

    def state_index(self) -> dict[Average, int]:
        """Slot of every state in the numeric state vector."""
        return {state: n for n, state in enumerate(self.states)}

    def indices(self) -> list[Index]:
        """All ensemble indices occurring in states and right-hand sides."""
        found = set()
        for expr in self.states + self.rhs:
            found |= find_indices(expr)
        return sorted(found)

    def parameters(self) -> list[sp.Expr]:
        """Scalar parameters of the right-hand sides, in a deterministic order."""
        index_symbols = {i.symbol for i in self.indices()}
        found = set()
        for expr in self.rhs:
            for s in sp.sympify(expr).free_symbols:
                if isinstance(s, sp.Symbol) and s not in index_symbols:
                    found.add(s)
                elif isinstance(s, sp.Indexed) and not (s.free_symbols & index_symbols):
                    found.add(s)
        return sorted(found, key=sp.default_sort_key)

    def substitute(self, mapping: dict) -> "MeanfieldEquations":
        """Replace parameters or averages on the right-hand sides."""
        rules = {sp.sympify(k): sp.sympify(v) for k, v in mapping.items()}
        rhs = tuple(sp.sympify(r).xreplace(rules) for r in self.rhs)
        return self.replaced(rhs=rhs)

    def __str__(self) -> str:
        return "\n".join(f"d/dt {lhs} = {rhs}" for lhs, rhs in zip(self.states, self.rhs, strict=True))


@dataclass(frozen=True)
class ScaledMeanfieldEquations(MeanfieldEquations):
    """
    Equation set reduced by permutation symmetry.

    Attributes:
        scaled_aons: Subspaces whose ensembles were replaced by representatives
        source: Indexed equation set the reduction started from
    """

    scaled_aons: tuple = ()
    source: MeanfieldEquations | None = field(default=None, repr=False)


def _lhs_average(op: QExpr) -> Average:
    lhs = average(op)
    if not isinstance(lhs, Average):
        raise ValueError(f"Left-hand sides must be single operator products, got {op}")
    return lhs


def average_equations(
    he: HeisenbergEquations, order: int | None = None, settings: DerivationParameters | None = None
) -> MeanfieldEquations:
    """Average Heisenberg equations and truncate them at the given order."""
    from .cumulants import cumulant_expansion

    settings = resolve_settings(settings, order)
    states = tuple(_lhs_average(op) for op in he.operators)
    rhs = []
    for r in he.rhs:
        value = average(r)
        if settings.order is not None:
            value = cumulant_expansion(value, settings.order, settings.simplify)
        elif settings.simplify:
            value = sp.expand(value)
        rhs.append(value)
    return MeanfieldEquations(
        states=states,
        rhs=tuple(rhs),
        operators=he.operators,
        operator_equations=he.rhs,
        hamiltonian=he.hamiltonian,
        jumps=he.jumps,
        jumps_dagger=he.jumps_dagger,
        rates=he.rates,
        order=settings.order,
        settings=settings,
    )


def meanfield(
    ops,
    H: Any,
    J=(),
    rates=(),
    order: int | None = None,
    Jdagger=None,
    settings: DerivationParameters | None = None,
) -> MeanfieldEquations:
    """
    Derive equations of motion for operator averages.

    Args:
        ops: Operators whose averages become the states
        H: Hamiltonian
        J: Jump operators
        rates: One rate per jump operator
        order: Cumulant truncation order; None keeps the exact averages
        Jdagger: Adjoint jump operators
        settings: Derivation settings; an explicit order takes precedence

    Returns:
        MeanfieldEquations with one equation per operator
    """
    he = heisenberg(ops, H, J, rates, Jdagger)
    return average_equations(he, order, settings)


def unique_states(states, adjoints: bool = True) -> list[int]:
    """Positions of the first occurrence of each state (up to conjugation)."""
    seen: set[str] = set()
    keep = []
    for n, state in enumerate(states):
        if state._key in seen:
            continue
        keep.append(n)
        seen.add(state._key)
        if adjoints:
            conj = sp.conjugate(state)
            if isinstance(conj, Average):
                seen.add(conj._key)
    return keep


__all__ = [
    "HeisenbergEquations",
    "MeanfieldEquations",
    "ScaledMeanfieldEquations",
    "average_equations",
    "heisenberg",
    "meanfield",
    "unique_states",
]
