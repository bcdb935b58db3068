"""
Moment-cumulant relations and cumulant truncation.

The average of a product X_1 ... X_m is the sum over all set partitions π of
{1..m} of the products of joint cumulants of the blocks,

    ⟨X_1 ... X_m⟩ = Σ_π Π_{B∈π} κ(B),

    κ(B) = Σ_σ (-1)^{|σ|-1} (|σ|-1)! Π_{C∈σ} ⟨X_C⟩,

where σ runs over the set partitions of B. Truncation at order n drops every
partition with a block larger than n. Sub-products keep the original
operator order; elements of a nip that end up in the same block form a
smaller nip again.
"""

import math
from functools import lru_cache
from typing import Any

import sympy as sp
from sympy.utilities.iterables import multiset_partitions

from ..core.operators import NonIdenticalProduct
from .averages import Average, IndexedSum, average, average_of_ops, map_averages


def _elements(avg: Average) -> list[tuple[Any, int | None]]:
    """Elementary factors with the position of the nip they belong to."""
    elements = []
    for pos, op in enumerate(avg.ops):
        if isinstance(op, NonIdenticalProduct):
            elements.extend((e, pos) for e in op.elements)
        else:
            elements.append((op, None))
    return elements


def _subproduct(elements, block) -> tuple:
    ops: list = []
    groups: dict[int, list] = {}
    for n in sorted(block):
        op, group = elements[n]
        if group is None:
            ops.append(op)
        elif group in groups:
            groups[group].append(op)
        else:
            groups[group] = [op]
            ops.append(groups[group])
    return tuple(
        (NonIdenticalProduct.of(op) if len(op) > 1 else op[0]) if isinstance(op, list) else op
        for op in ops
    )


@lru_cache(maxsize=None)
def _set_partitions(m: int) -> tuple:
    if m == 0:
        return ((),)
    return tuple(tuple(tuple(b) for b in p) for p in multiset_partitions(list(range(m))))


def get_order(x: Any) -> int:
    """Number of elementary operators in an average or operator monomial."""
    if isinstance(x, Average):
        return x.order
    x = average(x)
    if isinstance(x, Average):
        return x.order
    return max((a.order for a in sp.sympify(x).atoms(Average)), default=0)


def _moment(elements, block) -> sp.Expr:
    return average_of_ops(_subproduct(elements, block))


def _cumulant(elements, block: tuple) -> sp.Expr:
    result = sp.S.Zero
    for sigma in _set_partitions(len(block)):
        k = len(sigma)
        term = sp.Integer((-1) ** (k - 1) * math.factorial(k - 1))
        for part in sigma:
            term *= _moment(elements, tuple(block[i] for i in part))
        result += term
    return result


def cumulant(x: Any, n: int | None = None) -> sp.Expr:
    """
    Joint cumulant of an operator product, written through moments.

    Args:
        x: Operator monomial or Average
        n: Expected order; must match the number of elementary operators

    Returns:
        Scalar expression in averages
    """
    avg = x if isinstance(x, Average) else average(x)
    if not isinstance(avg, Average):
        raise ValueError(f"Cumulants are defined for single operator products, got {x}")
    elements = _elements(avg)
    if n is not None and n != len(elements):
        raise ValueError(f"Requested cumulant of order {n} for a product of {len(elements)} operators")
    return sp.expand(_cumulant(elements, tuple(range(len(elements)))))


def _expand_average(avg: Average, order: int) -> sp.Expr:
    elements = _elements(avg)
    m = len(elements)
    if m <= order:
        return avg
    cache: dict[tuple, sp.Expr] = {}
    result = sp.S.Zero
    for partition in _set_partitions(m):
        if any(len(block) > order for block in partition):
            continue
        term = sp.S.One
        for block in partition:
            if block not in cache:
                cache[block] = _cumulant(elements, block)
            term *= cache[block]
        result += term
    return sp.expand(result)


def _check_order(order: Any) -> int:
    if not isinstance(order, int) or isinstance(order, bool) or order < 1:
        raise ValueError(f"Cumulant order must be a positive integer, got {order!r}")
    return order


def cumulant_expansion(x: Any, order: int, simplify: bool = True) -> Any:
    """
    Truncate averages of more than `order` operators.

    Args:
        x: Average, scalar expression or MeanfieldEquations
        order: Positive truncation order
        simplify: Expand the result into a sum of monomials

    Returns:
        Object of the same kind with every long average replaced by its
        cumulant expansion
    """
    from .meanfield import MeanfieldEquations

    order = _check_order(order)
    if isinstance(x, MeanfieldEquations):
        rhs = tuple(cumulant_expansion(r, order, simplify) for r in x.rhs)
        return x.replaced(rhs=rhs, order=order)

    result = map_averages(x, lambda avg: _expand_average(avg, order))
    if simplify and not isinstance(result, Average | IndexedSum):
        result = sp.expand(result)
    return result
