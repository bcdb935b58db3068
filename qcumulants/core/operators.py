"""
Elementary quantum operators.

The operator kinds form a closed set. Destroy and Create act on Fock spaces,
Transition(i, j) = |i⟩⟨j| acts on an N-level space. Each kind may carry an
ensemble index, in which case it denotes the operator of one member of a
family of identical subsystems.

NonIdenticalProduct ("nip") is the deferred product of transitions whose
indices must differ but cannot yet be proven to. It vanishes as soon as two
of its indices coincide and becomes an ordinary product once all of them are
known to differ.

Operators are immutable values compared structurally. Arithmetic on them
produces operator expressions (QExpr) in canonical order.

Usage:
    >>> h = FockSpace("cavity") * NLevelSpace("atom", 2)
    >>> a = Destroy(h, "a")
    >>> s = lambda i, j: Transition(h, "σ", i, j)
    >>> a.dag() * a
    a†*a
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidSpaceError
from .hilbert import FockSpace, HilbertSpace, NLevelSpace
from .indices import Index, IndexValue, index_sort_key


class QSymbol:
    """Arithmetic shared by operators; results are operator expressions."""

    def _expr(self):
        from .expressions import as_qexpr

        return as_qexpr(self)

    def __mul__(self, other: Any):
        return self._expr() * other

    def __rmul__(self, other: Any):
        return other * self._expr()

    def __add__(self, other: Any):
        return self._expr() + other

    def __radd__(self, other: Any):
        return other + self._expr()

    def __sub__(self, other: Any):
        return self._expr() - other

    def __rsub__(self, other: Any):
        return other - self._expr()

    def __neg__(self):
        return -self._expr()

    def __pow__(self, n: int):
        return self._expr() ** n

    def dag(self):
        """Hermitian adjoint."""
        return self.adjoint()


class BasicOperator(QSymbol):
    """Marker base for the elementary operator kinds."""

    kind_rank = 0

    @property
    def space(self) -> HilbertSpace:
        """Elementary subspace the operator acts on."""
        return self.hilbert.subspace(self.aon)

    def __getitem__(self, index: IndexValue) -> "BasicOperator":
        if not isinstance(index, Index | int) or isinstance(index, bool):
            raise TypeError(f"Operators are indexed by Index or int, got {index!r}")
        if isinstance(index, Index) and index.aon != self.aon:
            raise InvalidSpaceError(
                f"Index {index} runs over subspace {index.aon}, operator {self} acts on {self.aon}"
            )
        return dataclasses.replace(self, index=index)

    def _index_suffix(self) -> str:
        return "" if self.index is None else f"_{self.index}"


@dataclass(frozen=True, repr=False)
class Destroy(BasicOperator):
    """Bosonic annihilation operator."""

    hilbert: HilbertSpace = field(compare=False)
    name: str
    aon: Any = None
    index: IndexValue = None

    kind_rank = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "aon", self.hilbert.resolve(FockSpace, self.aon))

    def adjoint(self) -> "Create":
        return Create(self.hilbert, self.name, self.aon, self.index)

    def sort_key(self) -> tuple:
        return (self.aon, self.name, self.kind_rank, index_sort_key(self.index), ())

    def __repr__(self) -> str:
        return f"{self.name}{self._index_suffix()}"


@dataclass(frozen=True, repr=False)
class Create(BasicOperator):
    """Bosonic creation operator."""

    hilbert: HilbertSpace = field(compare=False)
    name: str
    aon: Any = None
    index: IndexValue = None

    kind_rank = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "aon", self.hilbert.resolve(FockSpace, self.aon))

    def adjoint(self) -> Destroy:
        return Destroy(self.hilbert, self.name, self.aon, self.index)

    def sort_key(self) -> tuple:
        return (self.aon, self.name, self.kind_rank, index_sort_key(self.index), ())

    def __repr__(self) -> str:
        return f"{self.name}†{self._index_suffix()}"


@dataclass(frozen=True, repr=False)
class Transition(BasicOperator):
    """
    Projector-type operator |i⟩⟨j| on an N-level space.

    Raises:
        InvalidSpaceError: If the target subspace is not an N-level space
        InvalidLevelError: If i or j is not a declared level
    """

    hilbert: HilbertSpace = field(compare=False)
    name: str
    i: Any
    j: Any
    aon: Any = None
    index: IndexValue = None

    kind_rank = 2

    def __post_init__(self) -> None:
        object.__setattr__(self, "aon", self.hilbert.resolve(NLevelSpace, self.aon))
        space = self.space
        space.level_position(self.i)
        space.level_position(self.j)

    @property
    def levels(self) -> tuple[int, int]:
        """Positions of the two levels in the declared level order."""
        space = self.space
        return (space.level_position(self.i), space.level_position(self.j))

    @property
    def is_ground_projector(self) -> bool:
        return self.i == self.j == self.space.ground_state

    def adjoint(self) -> "Transition":
        return dataclasses.replace(self, i=self.j, j=self.i)

    def sort_key(self) -> tuple:
        return (self.aon, self.name, self.kind_rank, index_sort_key(self.index), self.levels)

    def __repr__(self) -> str:
        if all(isinstance(x, int) and 0 <= x < 10 for x in (self.i, self.j)):
            label = f"{self.i}{self.j}"
        else:
            label = f"{{{self.i},{self.j}}}"
        return f"{self.name}{label}{self._index_suffix()}"


@dataclass(frozen=True, repr=False)
class NonIdenticalProduct(QSymbol):
    """
    Product of transitions on one subspace with pairwise different indices.

    Elements are kept sorted, since transitions of different members commute.
    Use NonIdenticalProduct.of to build one from unsorted elements.
    """

    elements: tuple[Transition, ...]

    kind_rank = 3

    @classmethod
    def of(cls, elements) -> "NonIdenticalProduct":
        elements = tuple(sorted(elements, key=lambda e: e.sort_key()))
        if len({e.aon for e in elements}) > 1:
            raise InvalidSpaceError("A nip groups operators of a single subspace")
        return cls(elements)

    @property
    def aon(self) -> int:
        return self.elements[0].aon

    @property
    def name(self) -> str:
        return self.elements[0].name

    @property
    def indices(self) -> tuple[IndexValue, ...]:
        return tuple(e.index for e in self.elements)

    def adjoint(self) -> "NonIdenticalProduct":
        return NonIdenticalProduct.of(e.adjoint() for e in self.elements)

    def sort_key(self) -> tuple:
        return (
            self.aon,
            self.name,
            self.kind_rank,
            (3, 0, ""),
            tuple(e.sort_key() for e in self.elements),
        )

    def __repr__(self) -> str:
        return "nip(" + ", ".join(repr(e) for e in self.elements) + ")"


nip = NonIdenticalProduct.of


def flat_factors(ops) -> list[BasicOperator]:
    """Elementary operators of a product, with nips opened up."""
    flat: list[BasicOperator] = []
    for op in ops:
        if isinstance(op, NonIdenticalProduct):
            flat.extend(op.elements)
        else:
            flat.append(op)
    return flat
