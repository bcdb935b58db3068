"""
Hilbert space declarations for operator algebra.

A model is declared on a product of elementary subspaces. Each elementary
subspace is addressed by its acts-on identifier (aon), the 1-based position
of the subspace inside the product. Operators and indices store the aon and
use it to decide which algebra rules apply to them.

Space Kinds:
    - FockSpace: a single bosonic mode, operators Destroy and Create
    - NLevelSpace: a finite level system, operators Transition(i, j)
    - ProductSpace: ordered tensor product of elementary spaces

Usage:
    >>> hc = FockSpace("cavity")
    >>> ha = NLevelSpace("atom", 3)
    >>> h = hc * ha
    >>> h.position(ha)
    2
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import InvalidLevelError, InvalidSpaceError


class HilbertSpace:
    """Common interface of elementary and product spaces."""

    @property
    def spaces(self) -> tuple["HilbertSpace", ...]:
        """Elementary subspaces in aon order."""
        return (self,)

    def __mul__(self, other: "HilbertSpace") -> "ProductSpace":
        if not isinstance(other, HilbertSpace):
            return NotImplemented
        return ProductSpace(self.spaces + other.spaces)

    def __len__(self) -> int:
        return len(self.spaces)

    def subspace(self, aon: int) -> "HilbertSpace":
        """Return the elementary subspace with the given acts-on identifier."""
        spaces = self.spaces
        if not isinstance(aon, int) or not 1 <= aon <= len(spaces):
            raise InvalidSpaceError(f"No subspace with aon={aon} in {self}")
        return spaces[aon - 1]

    def position(self, subspace: "HilbertSpace | int") -> int:
        """
        Acts-on identifier of a subspace.

        Args:
            subspace: Elementary subspace object, or an aon that is validated

        Returns:
            1-based position of the subspace
        """
        if isinstance(subspace, int):
            self.subspace(subspace)
            return subspace
        matches = [n + 1 for n, s in enumerate(self.spaces) if s == subspace]
        if len(matches) != 1:
            raise InvalidSpaceError(f"{subspace} is not a unique subspace of {self}")
        return matches[0]

    def resolve(self, kind: type, aon: "int | HilbertSpace | None" = None) -> int:
        """
        Find the aon an operator of the given space kind acts on.

        Args:
            kind: Required elementary space class (FockSpace or NLevelSpace)
            aon: Explicit position or subspace; inferred when the kind is unique

        Returns:
            Validated acts-on identifier

        Raises:
            InvalidSpaceError: If the subspace is missing, ambiguous or of the wrong kind
        """
        if aon is None:
            candidates = [n + 1 for n, s in enumerate(self.spaces) if isinstance(s, kind)]
            if len(candidates) != 1:
                raise InvalidSpaceError(
                    f"Cannot infer a unique {kind.__name__} in {self}; pass aon explicitly"
                )
            return candidates[0]
        position = self.position(aon)
        if not isinstance(self.subspace(position), kind):
            raise InvalidSpaceError(f"Subspace {position} of {self} is not a {kind.__name__}")
        return position


@dataclass(frozen=True)
class FockSpace(HilbertSpace):
    """Bosonic mode space."""

    name: str

    def __str__(self) -> str:
        return f"ℋ({self.name})"


@dataclass(frozen=True)
class NLevelSpace(HilbertSpace):
    """
    Finite level system.

    Levels are given either as a count n (levels 1..n) or as an explicit
    sequence of labels. The ground state is eliminated from canonical
    products through completeness, σ(g,g) = 1 - Σ_{k≠g} σ(k,k).
    """

    name: str
    levels: Any
    ground_state: Any = None

    def __post_init__(self) -> None:
        levels = self.levels
        if isinstance(levels, int):
            if levels < 1:
                raise ValueError("An N-level space needs at least one level")
            levels = tuple(range(1, levels + 1))
        elif isinstance(levels, Sequence) and not isinstance(levels, str):
            levels = tuple(levels)
        else:
            raise TypeError(f"Levels must be a count or a sequence, got {levels!r}")
        if len(set(levels)) != len(levels):
            raise ValueError(f"Duplicate levels in {levels}")
        object.__setattr__(self, "levels", levels)

        ground_state = levels[0] if self.ground_state is None else self.ground_state
        if ground_state not in levels:
            raise InvalidLevelError(f"Ground state {ground_state!r} is not a level of {self.name}")
        object.__setattr__(self, "ground_state", ground_state)

    def level_position(self, level: Any) -> int:
        """Position of a level label in the declared level order."""
        try:
            return self.levels.index(level)
        except ValueError:
            raise InvalidLevelError(f"Level {level!r} is not declared on {self.name}") from None

    def __str__(self) -> str:
        return f"ℋ({self.name})"


@dataclass(frozen=True)
class ProductSpace(HilbertSpace):
    """Ordered tensor product of elementary spaces."""

    factors: tuple[HilbertSpace, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        flat: list[HilbertSpace] = []
        for space in self.factors:
            if not isinstance(space, HilbertSpace):
                raise TypeError(f"Expected a Hilbert space, got {type(space).__name__}")
            flat.extend(space.spaces)
        if not flat:
            raise ValueError("A product space needs at least one factor")
        object.__setattr__(self, "factors", tuple(flat))

    @property
    def spaces(self) -> tuple[HilbertSpace, ...]:
        return self.factors

    def __str__(self) -> str:
        return " ⊗ ".join(str(s) for s in self.factors)


def tensor(*spaces: HilbertSpace) -> ProductSpace:
    """Tensor product of the given spaces, in order."""
    return ProductSpace(tuple(spaces))


def copy_subspace(space: HilbertSpace, suffix: str) -> HilbertSpace:
    """Elementary space of the same kind with a renamed label."""
    if isinstance(space, FockSpace):
        return FockSpace(f"{space.name}{suffix}")
    if isinstance(space, NLevelSpace):
        return NLevelSpace(f"{space.name}{suffix}", space.levels, space.ground_state)
    raise InvalidSpaceError(f"Cannot copy {space}")
