"""Core operator algebra: spaces, indices, operators and operator expressions"""

from .algebra import normal_order
from .errors import (
    InvalidLevelError,
    InvalidSpaceError,
    MissingAverageError,
    NonTerminatingClosureError,
    QCumulantsError,
    UnresolvableIndexEqualityError,
)
from .expressions import QExpr, QSum, SumSpec, Term, adjoint, as_qexpr, commutator
from .hilbert import FockSpace, HilbertSpace, NLevelSpace, ProductSpace, copy_subspace, tensor
from .indices import Index, fresh_index
from .operators import Create, Destroy, NonIdenticalProduct, Transition, nip
from .parameters import DerivationParameters, IndexedParameter, cnumbers, rnumbers

__all__ = [
    "FockSpace",
    "NLevelSpace",
    "ProductSpace",
    "HilbertSpace",
    "tensor",
    "copy_subspace",
    "Index",
    "fresh_index",
    "Destroy",
    "Create",
    "Transition",
    "NonIdenticalProduct",
    "nip",
    "QExpr",
    "QSum",
    "SumSpec",
    "Term",
    "as_qexpr",
    "adjoint",
    "commutator",
    "normal_order",
    "cnumbers",
    "rnumbers",
    "IndexedParameter",
    "DerivationParameters",
    "QCumulantsError",
    "InvalidSpaceError",
    "InvalidLevelError",
    "NonTerminatingClosureError",
    "UnresolvableIndexEqualityError",
    "MissingAverageError",
]
