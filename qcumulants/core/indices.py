"""
Symbolic indices labelling members of identical subsystems.

An Index stands for an arbitrary member of an ensemble, e.g. one of N atoms.
It carries the ensemble size (a sympy expression) and the subspace it runs
over. Two indices are the same only if name, range and subspace agree;
indices with different names are treated as different ensemble members.

Scalar expressions refer to an index through Index.symbol, an integer sympy
symbol derived from the name. Concrete members are plain Python integers.
"""

from dataclasses import dataclass, field
from typing import Any, Union

import sympy as sp

from .hilbert import HilbertSpace


@dataclass(frozen=True)
class Index:
    """
    Ensemble index.

    Attributes:
        hilbert: Space the index is declared on (not part of equality)
        name: Label of the index, used for printing and ordering
        range: Ensemble size, e.g. the symbol N
        aon: Subspace the index runs over, given as object or 1-based position

    Examples:
        >>> N = sp.Symbol("N")
        >>> k = Index(h, "k", N, ha)
        >>> k.symbol
        k
    """

    hilbert: HilbertSpace | None = field(compare=False, repr=False)
    name: str
    range: Any
    aon: Any

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Index name cannot be empty")
        object.__setattr__(self, "range", sp.sympify(self.range))
        aon = self.aon
        if not isinstance(aon, int):
            if self.hilbert is None:
                raise ValueError("A subspace aon needs the enclosing Hilbert space")
            aon = self.hilbert.position(aon)
        elif self.hilbert is not None:
            self.hilbert.subspace(aon)
        object.__setattr__(self, "aon", aon)

    @property
    def symbol(self) -> sp.Symbol:
        """Integer symbol representing the index in scalar expressions."""
        return sp.Symbol(self.name, integer=True)

    def renamed(self, name: str) -> "Index":
        """Index over the same ensemble with a different name."""
        return Index(self.hilbert, name, self.range, self.aon)

    def __str__(self) -> str:
        return self.name

    def __lt__(self, other: "Index") -> bool:
        return (self.aon, self.name) < (other.aon, other.name)


IndexValue = Union[Index, int, None]


def index_symbol(value: IndexValue) -> sp.Expr:
    """Scalar representation of an index value."""
    if isinstance(value, Index):
        return value.symbol
    if value is None:
        raise ValueError("Operator carries no index")
    return sp.Integer(value)


def index_sort_key(value: IndexValue) -> tuple:
    """Ordering key: unindexed, then concrete members, then symbolic indices."""
    if value is None:
        return (0, 0, "")
    if isinstance(value, Index):
        return (2, 0, value.name)
    return (1, int(value), "")


def index_relation(a: IndexValue, b: IndexValue, distinct: frozenset = frozenset()) -> str:
    """
    Decide whether two index values label the same member.

    Args:
        a, b: Index values of two operators on the same subspace
        distinct: Pairs (frozensets) of index values known to differ

    Returns:
        "equal", "distinct" or "possible"
    """
    if a == b:
        return "equal"
    if a is None or b is None:
        return "distinct"
    if isinstance(a, Index) and isinstance(b, Index):
        return "distinct"
    if not isinstance(a, Index) and not isinstance(b, Index):
        return "distinct"
    if frozenset((a, b)) in distinct:
        return "distinct"
    return "possible"


def fresh_index(template: Index, used: set) -> Index:
    """
    Generate an index over the same ensemble whose name is not in use.

    Args:
        template: Index providing range and subspace
        used: Names (or Index objects) that must be avoided

    Returns:
        New Index named template.name + "_n"
    """
    names = {u.name if isinstance(u, Index) else str(u) for u in used}
    n = 1
    while f"{template.name}_{n}" in names:
        n += 1
    return template.renamed(f"{template.name}_{n}")
