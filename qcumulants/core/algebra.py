"""
Commutation rules and canonical ordering of operator products.

A product of operators is rewritten until no rule applies. The result is a
sum of canonical products, each with a scalar sympy coefficient.

Rule Table:
    Different subspaces      commute; ordered by aon
    Fock, same mode          a_i a_j† = a_j† a_i + δ(i,j)
    Fock, otherwise          creators left of annihilators, then by index
    N-level, same member     σ(i,j) σ(k,l) = δ(j,k) σ(i,l)
    N-level, ground state    σ(g,g) = 1 - Σ_{k≠g} σ(k,k)
    N-level, possibly equal  σ_x σ_y = δ(x,y) σ_xσ_x + nip(σ_x, σ_y)
    N-level, distinct        commute; ordered by index
    nip with transition      merge into the matching element or split per
                             possibly-equal element

Index comparisons follow index_relation: equal indices merge, different
declared indices are distinct members, and a symbolic index against a
concrete member gives a KroneckerDelta branch.
"""

import dataclasses
from typing import Any

import sympy as sp

from .indices import Index, IndexValue, index_relation, index_symbol
from .operators import (
    BasicOperator,
    Create,
    Destroy,
    NonIdenticalProduct,
    Transition,
)

Rewrite = list[tuple[sp.Expr, tuple]]


def kronecker(a: IndexValue, b: IndexValue) -> sp.Expr:
    """Kronecker delta between two index values."""
    if a == b:
        return sp.S.One
    return sp.KroneckerDelta(index_symbol(a), index_symbol(b))


def merge_transitions(left: Transition, right: Transition) -> Transition | None:
    """
    Product of two transitions of the same member.

    Returns:
        σ(i,l) for σ(i,j)·σ(j,l), or None when the product vanishes
    """
    if left.j != right.i:
        return None
    index = left.index
    if isinstance(index, Index) and not isinstance(right.index, Index):
        index = right.index
    return dataclasses.replace(left, j=right.j, index=index)


def replace_index(op: Any, old: IndexValue, new: IndexValue) -> Any:
    """Operator with every occurrence of index `old` replaced by `new`."""
    if isinstance(op, NonIdenticalProduct):
        return NonIdenticalProduct.of(replace_index(e, old, new) for e in op.elements)
    if op.index == old:
        return dataclasses.replace(op, index=new)
    return op


def _is_fock(op: Any) -> bool:
    return isinstance(op, Destroy | Create)


def _relations(elements, x: Transition, distinct: frozenset) -> list[str]:
    return [index_relation(e.index, x.index, distinct) for e in elements]


def _resolve_nip(op: NonIdenticalProduct, distinct: frozenset) -> Rewrite | None:
    elements = op.elements
    if len(elements) < 2:
        return [(sp.S.One, elements)]
    relations = [
        index_relation(a.index, b.index, distinct)
        for n, a in enumerate(elements)
        for b in elements[n + 1 :]
    ]
    if "equal" in relations:
        return []
    if all(r == "distinct" for r in relations):
        return [(sp.S.One, elements)]
    return None


def _ground_state_rewrite(op: Transition) -> Rewrite:
    space = op.space
    out: Rewrite = [(sp.S.One, ())]
    for level in space.levels:
        if level != space.ground_state:
            out.append((sp.S.NegativeOne, (dataclasses.replace(op, i=level, j=level),)))
    return out


def _single_rewrite(op: Any, distinct: frozenset) -> Rewrite | None:
    if isinstance(op, Transition) and op.is_ground_projector:
        return _ground_state_rewrite(op)
    if isinstance(op, NonIdenticalProduct):
        return _resolve_nip(op, distinct)
    return None


def _absorb(nip_: NonIdenticalProduct, x: Transition, distinct: frozenset, left: bool) -> Rewrite:
    """Multiply a nip by a transition from the left (x·nip) or the right (nip·x)."""
    elements = list(nip_.elements)

    def merge(e: Transition) -> Transition | None:
        return merge_transitions(x, e) if left else merge_transitions(e, x)

    relations = _relations(elements, x, distinct)
    if "equal" in relations:
        n = relations.index("equal")
        merged = merge(elements[n])
        if merged is None:
            return []
        elements[n] = merged
        return [(sp.S.One, (NonIdenticalProduct.of(elements),))]

    out: Rewrite = []
    for n, (e, relation) in enumerate(zip(elements, relations, strict=True)):
        if relation != "possible":
            continue
        merged = merge(e)
        if merged is not None:
            branch = elements[:n] + [merged] + elements[n + 1 :]
            out.append((kronecker(e.index, x.index), (NonIdenticalProduct.of(branch),)))
    out.append((sp.S.One, (NonIdenticalProduct.of(elements + [x]),)))
    return out


def _element_pairs(op: NonIdenticalProduct) -> frozenset:
    indices = op.indices
    return frozenset(
        frozenset((a, b)) for n, a in enumerate(indices) for b in indices[n + 1 :] if a != b
    )


def _pair_rewrite(y: Any, x: Any, distinct: frozenset) -> Rewrite | None:
    swap: Rewrite = [(sp.S.One, (x, y))]
    if y.aon != x.aon:
        return swap if y.sort_key() > x.sort_key() else None

    if _is_fock(y) and _is_fock(x):
        if y.name == x.name and isinstance(y, Destroy) and isinstance(x, Create):
            relation = index_relation(y.index, x.index, distinct)
            if relation == "distinct":
                return swap
            return swap + [(kronecker(y.index, x.index), ())]
        return swap if y.sort_key() > x.sort_key() else None

    if isinstance(y, Transition) and isinstance(x, Transition):
        relation = index_relation(y.index, x.index, distinct)
        if relation == "equal":
            merged = merge_transitions(y, x)
            return [] if merged is None else [(sp.S.One, (merged,))]
        if relation == "distinct":
            return swap if y.sort_key() > x.sort_key() else None
        out: Rewrite = [(sp.S.One, (NonIdenticalProduct.of((y, x)),))]
        merged = merge_transitions(y, x)
        if merged is not None:
            out.append((kronecker(y.index, x.index), (merged,)))
        return out

    if isinstance(y, Transition) and isinstance(x, NonIdenticalProduct):
        if all(r == "distinct" for r in _relations(x.elements, y, distinct)):
            return None
        return _absorb(x, y, distinct, left=True)

    if isinstance(y, NonIdenticalProduct) and isinstance(x, Transition):
        if all(r == "distinct" for r in _relations(y.elements, x, distinct)):
            return swap
        return _absorb(y, x, distinct, left=False)

    if isinstance(y, NonIdenticalProduct) and isinstance(x, NonIdenticalProduct):
        context = distinct | _element_pairs(x) | _element_pairs(y)
        return normal_order((y,) + x.elements, context)

    raise TypeError(f"No commutation rule for {type(y).__name__} and {type(x).__name__}")


def _first_rewrite(seq: tuple, distinct: frozenset) -> tuple[int, int, Rewrite] | None:
    for p, op in enumerate(seq):
        rewrite = _single_rewrite(op, distinct)
        if rewrite is not None:
            return p, 1, rewrite
    for p in range(len(seq) - 1):
        rewrite = _pair_rewrite(seq[p], seq[p + 1], distinct)
        if rewrite is not None:
            return p, 2, rewrite
    return None


def normal_order(ops, distinct: frozenset = frozenset()) -> Rewrite:
    """
    Rewrite a product of operators into canonical products.

    Args:
        ops: Sequence of BasicOperator or NonIdenticalProduct factors
        distinct: Pairs of index values known to differ (from sum constraints)

    Returns:
        List of (coefficient, canonical product) pairs with non-zero coefficients
    """
    results: dict[tuple, sp.Expr] = {}
    stack: list[tuple[sp.Expr, tuple]] = [(sp.S.One, tuple(ops))]
    while stack:
        coeff, seq = stack.pop()
        rewrite = _first_rewrite(seq, distinct)
        if rewrite is None:
            results[seq] = results.get(seq, sp.S.Zero) + coeff
            continue
        p, width, replacements = rewrite
        for c, replacement in replacements:
            stack.append((coeff * c, seq[:p] + tuple(replacement) + seq[p + width :]))

    out = []
    for seq, coeff in results.items():
        coeff = sp.expand(coeff)
        if coeff != 0:
            out.append((coeff, seq))
    return out


def is_canonical(ops, distinct: frozenset = frozenset()) -> bool:
    """True if no rewrite rule applies to the product."""
    return _first_rewrite(tuple(ops), distinct) is None


def op_index_pairs(ops) -> list[tuple[IndexValue, int]]:
    """(index, aon) for every elementary factor carrying an index."""
    pairs = []
    for op in ops:
        elements = op.elements if isinstance(op, NonIdenticalProduct) else (op,)
        for e in elements:
            if e.index is not None:
                pairs.append((e.index, e.aon))
    return pairs


def adjoint_ops(ops) -> tuple:
    """Reversed product of adjoint factors (not yet reordered)."""
    return tuple(op.adjoint() for op in reversed(tuple(ops)))


__all__ = [
    "BasicOperator",
    "adjoint_ops",
    "is_canonical",
    "kronecker",
    "merge_transitions",
    "normal_order",
    "op_index_pairs",
    "replace_index",
]
