"""
Quantum Cumulants: Symbolic Meanfield Equations for Open Quantum Systems
========================================================================

Symbolic derivation of equations of motion for expectation values of
operators in open quantum systems, closed by cumulant expansion.

Workflow:
    A model is declared on a product of Hilbert spaces (bosonic modes and
    N-level systems). Operators, possibly indexed over ensembles of identical
    subsystems, are combined into a Hamiltonian and jump operators. From
    there the package

    - derives Heisenberg equations of motion with the Lindblad dissipator
    - averages them and truncates by cumulant expansion at a given order
    - completes the equation set until it is closed
    - reduces ensembles to representative members (scale) or expands them
      for a concrete size (evaluate)
    - builds two-time correlation functions and spectra
    - compiles the result into a numeric right-hand side f(du, u, p, t)

Mathematical Infrastructure:
    Scalars are sympy expressions; expectation values are sympy atoms, so
    parameters and averages mix freely in right-hand sides. Operator
    products are kept in a canonical order fixed by subspace, operator name,
    kind and index.

Example:
    >>> h = FockSpace("cavity") * NLevelSpace("atom", 2)
    >>> a = Destroy(h, "a")
    >>> s = lambda i, j: Transition(h, "σ", i, j)
    >>> Δ, g, κ, γ = cnumbers("Δ g κ γ")
    >>> H = Δ * a.dag() * a + g * (a.dag() * s(1, 2) + a * s(2, 1))
    >>> eqs = meanfield([a.dag() * a], H, [a, s(1, 2)], rates=[κ, γ], order=2)
    >>> eqs = complete(eqs)

    Ensembles of identical atoms are summed over a symbolic index:

    >>> N = sp.Symbol("N", integer=True, positive=True)
    >>> k = Index(h, "k", N, 2)
    >>> H = Δ * a.dag() * a + g * Σ(a.dag() * s(1, 2)[k] + a * s(2, 1)[k], k)
    >>> eqs = scale(complete(meanfield([a.dag() * a], H, [a], rates=[κ], order=2)))

References:
    - Plankensteiner, D., Hotter, C. & Ritsch, H. Quantum 6, 617 (2022)
    - Kubo, R. J. Phys. Soc. Jpn. 17, 1100 (1962)
"""

__version__ = "0.1.0"

from . import core, correlation, equations, numerics
from .core import (
    Create,
    DerivationParameters,
    Destroy,
    FockSpace,
    Index,
    IndexedParameter,
    InvalidLevelError,
    InvalidSpaceError,
    MissingAverageError,
    NLevelSpace,
    NonIdenticalProduct,
    NonTerminatingClosureError,
    ProductSpace,
    QCumulantsError,
    QExpr,
    QSum,
    Transition,
    UnresolvableIndexEqualityError,
    adjoint,
    cnumbers,
    commutator,
    nip,
    rnumbers,
    tensor,
)
from .correlation import CorrelationFunction, Spectrum, correlation_initial_values
from .equations import (
    Average,
    HeisenbergEquations,
    IndexedSum,
    MeanfieldEquations,
    ScaledMeanfieldEquations,
    average,
    complete,
    cumulant,
    cumulant_expansion,
    evaluate,
    find_missing,
    get_order,
    heisenberg,
    indexed_sum,
    insert_index,
    meanfield,
    scale,
    Σ,
)
from .numerics import OdeFunction, build_ode, initial_values

__all__ = [
    "core",
    "equations",
    "correlation",
    "numerics",
    "FockSpace",
    "NLevelSpace",
    "ProductSpace",
    "tensor",
    "Index",
    "Destroy",
    "Create",
    "Transition",
    "NonIdenticalProduct",
    "nip",
    "QExpr",
    "QSum",
    "adjoint",
    "commutator",
    "cnumbers",
    "rnumbers",
    "IndexedParameter",
    "DerivationParameters",
    "Average",
    "IndexedSum",
    "average",
    "indexed_sum",
    "Σ",
    "insert_index",
    "cumulant",
    "cumulant_expansion",
    "get_order",
    "HeisenbergEquations",
    "MeanfieldEquations",
    "ScaledMeanfieldEquations",
    "heisenberg",
    "meanfield",
    "complete",
    "find_missing",
    "scale",
    "evaluate",
    "CorrelationFunction",
    "Spectrum",
    "correlation_initial_values",
    "OdeFunction",
    "build_ode",
    "initial_values",
    "QCumulantsError",
    "InvalidSpaceError",
    "InvalidLevelError",
    "NonTerminatingClosureError",
    "UnresolvableIndexEqualityError",
    "MissingAverageError",
]
