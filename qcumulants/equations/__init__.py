"""Averages, cumulant expansion and equation sets: derive, complete, scale, evaluate"""

from .averages import Average, IndexedSum, average, find_averages, indexed_sum, insert_index, Σ
from .completion import complete, find_missing, is_closed
from .cumulants import cumulant, cumulant_expansion, get_order
from .meanfield import (
    HeisenbergEquations,
    MeanfieldEquations,
    ScaledMeanfieldEquations,
    heisenberg,
    meanfield,
)
from .scaling import evaluate, scale

__all__ = [
    "Average",
    "IndexedSum",
    "average",
    "find_averages",
    "indexed_sum",
    "insert_index",
    "Σ",
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
    "is_closed",
    "scale",
    "evaluate",
]
