"""
Scalar parameters and derivation settings.

Scalar parameters are plain sympy symbols and stay opaque to the operator
algebra: they are only combined by commutative algebra. Indexed parameters,
e.g. a coupling g_k that differs per atom, are sympy Indexed objects whose
indices are the integer symbols of ensemble indices.

Derivation Settings:
    DerivationParameters bundles the knobs shared by meanfield, completion and
    correlation functions:
        - order: cumulant truncation order (None means no truncation)
        - max_iterations: cap on completion passes
        - max_equations: cap on the number of states of a completed set
        - simplify: expand right-hand sides after derivation

Usage:
    >>> g, Δ = cnumbers("g Δ")
    >>> κ, γ = rnumbers("κ γ")
    >>> settings = DerivationParameters(order=2)
"""

import warnings
from dataclasses import dataclass, field

import sympy as sp

from .indices import Index, index_symbol


def cnumbers(names: str) -> tuple[sp.Symbol, ...]:
    """Declare complex scalar parameters from a whitespace-separated string."""
    symbols = sp.symbols(names, seq=True)
    return tuple(symbols)


def rnumbers(names: str) -> tuple[sp.Symbol, ...]:
    """Declare real scalar parameters from a whitespace-separated string."""
    symbols = sp.symbols(names, real=True, seq=True)
    return tuple(symbols)


def IndexedParameter(name: str, *indices: Index | int, real: bool = False) -> sp.Expr:
    """
    Parameter that depends on ensemble indices.

    Args:
        name: Base name of the parameter
        indices: Ensemble indices or concrete members
        real: Declare the parameter real

    Returns:
        sympy Indexed expression, e.g. g[k]
    """
    if not indices:
        raise ValueError("IndexedParameter needs at least one index")
    base = sp.IndexedBase(name, real=real)
    return base[tuple(index_symbol(i) for i in indices)]


@dataclass
class DerivationParameters:
    """
    Settings of a symbolic derivation.

    Attributes:
        order: Cumulant truncation order, a positive integer or None
        max_iterations: Maximum number of completion passes
        max_equations: Maximum number of states of a completed set
        simplify: Expand right-hand sides into sums of monomials

    Raises:
        ValueError: If order or one of the caps is not a positive integer
    """

    order: int | None = None
    max_iterations: int = 100
    max_equations: int = 10000
    simplify: bool = True

    _warnings: list = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> bool:
        """Check value ranges; warn about legal but unusual settings."""
        errors = []
        warnings_list = []

        if self.order is not None:
            if not isinstance(self.order, int) or isinstance(self.order, bool) or self.order < 1:
                errors.append(f"order must be a positive integer, got {self.order!r}")
            elif self.order > 4:
                warnings_list.append(
                    f"Cumulant order {self.order} produces very large equation sets"
                )

        for name in ("max_iterations", "max_equations"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                errors.append(f"{name} must be a positive integer, got {value!r}")

        if not errors and self.max_equations > 100000:
            warnings_list.append("max_equations above 100000 may exhaust memory before failing")

        self._warnings = warnings_list
        for warning_msg in warnings_list:
            warnings.warn(warning_msg, UserWarning, stacklevel=2)

        if errors:
            raise ValueError(
                "Parameter validation failed:\n" + "\n".join(f"  - {err}" for err in errors)
            )
        return True

    def with_order(self, order: int | None) -> "DerivationParameters":
        """Copy with a different truncation order."""
        return DerivationParameters(
            order=order,
            max_iterations=self.max_iterations,
            max_equations=self.max_equations,
            simplify=self.simplify,
        )


def resolve_settings(
    settings: DerivationParameters | None, order: int | None = None
) -> DerivationParameters:
    """Settings object for a derivation, with an explicit order taking precedence."""
    if settings is None:
        return DerivationParameters(order=order)
    if order is not None and order != settings.order:
        return settings.with_order(order)
    return settings
