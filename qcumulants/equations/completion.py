"""
Closure of equation sets.

complete() derives equations for every average that appears on a right-hand
side without being a state, until no new averages turn up. Averages count as
the same state if they agree after the symbolic indices of each ensemble are
renamed in order of first appearance in the canonical product (and, with
adjoints=True, up to conjugation). ⟨σ21_k σ22_l⟩ and ⟨σ22_k σ21_l⟩ therefore
stay apart. New states
are written with indices from a pool: first the indices already used by the
states, then the extra_indices supplied by the caller, and finally generated
indices over the same ensemble.
"""

import warnings
from collections.abc import Callable

import sympy as sp

from ..core.algebra import normal_order, replace_index
from ..core.errors import NonTerminatingClosureError
from ..core.expressions import QExpr
from ..core.indices import Index, fresh_index
from ..core.parameters import DerivationParameters
from .averages import Average, average_key, find_averages
from .meanfield import MeanfieldEquations, meanfield

FilterFunc = Callable[[Average], bool]


def _ensembles(indices) -> dict[tuple, list[Index]]:
    groups: dict[tuple, list[Index]] = {}
    for index in indices:
        groups.setdefault((index.aon, index.range), []).append(index)
    return groups


def _relabelled(ops, mapping: dict) -> tuple | None:
    """Canonical ops after renaming indices; None if the renaming is not a single product."""
    renamed = []
    for op in ops:
        for old, new in mapping.items():
            op = replace_index(op, old, new)
        renamed.append(op)
    result = normal_order(renamed)
    if len(result) != 1 or result[0][0] != 1:
        return None
    return result[0][1]


def _placeholders(avg: Average) -> dict[tuple, list[Index]]:
    return {
        key: [indices[0].renamed(f"#{n:03d}") for n in range(len(indices))]
        for key, indices in _ensembles(avg.indices).items()
    }


def _relabel_in_order(avg: Average, targets: dict[tuple, list[Index]]) -> tuple:
    """
    Rename the indices of each ensemble onto targets, sorted by name, in order
    of first appearance in the canonical product.

    Averages that only differ by a swap of indices, e.g. ⟨σ21_k σ22_l⟩ and
    ⟨σ22_k σ21_l⟩, keep distinct relabelled forms.
    """
    mapping: dict = {}
    for key, indices in _ensembles(avg.indices).items():
        ordered = sorted(targets[key], key=lambda index: index.name)
        mapping.update(zip(indices, ordered[: len(indices)], strict=True))
    # two-step renaming so targets that reuse source names do not collide
    staged = {old: old.renamed(f"\x00{old.name}") for old in mapping}
    ops = _relabelled(avg.ops, staged)
    if ops is not None:
        ops = _relabelled(ops, {staged[old]: new for old, new in mapping.items()})
    return avg.ops if ops is None else ops


def family_key(avg: Average) -> str:
    """Key shared by all averages with the same pattern of indices in canonical order."""
    if not avg.indices:
        return avg._key
    return average_key(_relabel_in_order(avg, _placeholders(avg)))


def _covered_keys(states, adjoints: bool) -> set[str]:
    keys = set()
    for state in states:
        keys.add(family_key(state))
        if adjoints:
            conj = sp.conjugate(state)
            if isinstance(conj, Average):
                keys.add(family_key(conj))
    return keys


def _missing_in(rhs, covered: set[str], filter_func: FilterFunc | None, adjoints: bool) -> list[Average]:
    missing = []
    for expr in rhs:
        for avg in find_averages(expr):
            key = family_key(avg)
            if key in covered:
                continue
            if filter_func is not None and not filter_func(avg):
                continue
            missing.append(avg)
            covered.add(key)
            if adjoints:
                conj = sp.conjugate(avg)
                if isinstance(conj, Average):
                    covered.add(family_key(conj))
    return missing


def find_missing(
    eqs: MeanfieldEquations, filter_func: FilterFunc | None = None, adjoints: bool = True
) -> list[Average]:
    """
    Averages on the right-hand sides that are not states.

    Args:
        eqs: Equation set to inspect
        filter_func: Predicate; averages for which it returns False are ignored
        adjoints: Treat conjugates of states as covered

    Returns:
        One representative per missing family, in order of appearance
    """
    covered = _covered_keys(eqs.states, adjoints)
    return _missing_in(eqs.rhs, covered, filter_func, adjoints)


class IndexPool:
    """Indices available for new states, grouped by ensemble."""

    def __init__(self, states, extra_indices=()) -> None:
        self.groups: dict[tuple, list[Index]] = {}
        for state in states:
            for index in state.indices:
                self.add(index)
        for index in extra_indices:
            if not isinstance(index, Index):
                raise TypeError(f"extra_indices must contain Index objects, got {index!r}")
            self.add(index)

    def add(self, index: Index) -> None:
        group = self.groups.setdefault((index.aon, index.range), [])
        if index not in group:
            group.append(index)

    def names(self) -> set[str]:
        return {index.name for group in self.groups.values() for index in group}

    def take(self, key: tuple, template: Index, count: int, avoid: set[str]) -> list[Index]:
        """First `count` indices of an ensemble, generating new ones when the pool runs out."""
        group = self.groups.setdefault(key, [])
        while len(group) < count:
            new = fresh_index(template, avoid | self.names())
            warnings.warn(
                f"Index pool for {template.name} exhausted; generated {new.name}. "
                "Pass extra_indices to control the names of new indices.",
                UserWarning,
                stacklevel=3,
            )
            group.append(new)
        return group[:count]


def _onto_pool(avg: Average, pool: IndexPool, avoid: set[str]) -> tuple:
    targets = {}
    for key, indices in _ensembles(avg.indices).items():
        targets[key] = pool.take(key, indices[0], len(indices), avoid)
    return _relabel_in_order(avg, targets)


def complete(
    eqs: MeanfieldEquations,
    extra_indices=(),
    filter_func: FilterFunc | None = None,
    adjoints: bool = True,
    settings: DerivationParameters | None = None,
) -> MeanfieldEquations:
    """
    Extend an equation set until every referenced average is a state.

    Args:
        eqs: Equation set from meanfield
        extra_indices: Indices to use for new states once the state indices are used up
        filter_func: Predicate on averages; False excludes an average from derivation.
            Excluded averages stay on the right-hand sides.
        adjoints: Treat conjugates of states as covered
        settings: Caps on passes and equations; defaults to the settings of eqs

    Returns:
        New MeanfieldEquations containing the input equations first

    Raises:
        NonTerminatingClosureError: If the pass or equation cap is exceeded
    """
    settings = settings or eqs.settings
    pool = IndexPool(eqs.states, extra_indices)
    avoid = {index.name for index in eqs.indices()}
    covered = _covered_keys(eqs.states, adjoints)
    result = eqs
    pending = _missing_in(eqs.rhs, covered, filter_func, adjoints)

    passes = 0
    while pending:
        passes += 1
        if passes > settings.max_iterations:
            raise NonTerminatingClosureError(
                f"Completion did not close after {settings.max_iterations} passes "
                f"({len(result)} equations, {len(pending)} pending)"
            )
        if len(result) + len(pending) > settings.max_equations:
            raise NonTerminatingClosureError(
                f"Completion exceeded {settings.max_equations} equations"
            )

        operators = []
        for avg in pending:
            ops = _onto_pool(avg, pool, avoid)
            operators.append(QExpr.from_ops(ops))
        new = meanfield(
            operators,
            result.hamiltonian,
            result.jumps,
            result.rates,
            Jdagger=result.jumps_dagger,
            settings=settings.with_order(result.order),
        )
        avoid |= {index.name for index in new.indices()}
        result = result.extended(new)
        pending = _missing_in(new.rhs, covered, filter_func, adjoints)
    return result


def is_closed(eqs: MeanfieldEquations, filter_func: FilterFunc | None = None, adjoints: bool = True) -> bool:
    """True if no right-hand side references an average outside the states."""
    return not find_missing(eqs, filter_func, adjoints)
