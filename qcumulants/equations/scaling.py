"""
Permutation-symmetry reduction (scale) and expansion to concrete ensembles (evaluate).

Members of an ensemble of identical subsystems are interchangeable, so every
average only depends on which of its operators act on the same member. Scaling
replaces sums over an ensemble index by multiplicities,

    Σ_{k ∉ S} f(k) = Σ_{x ∈ F} f(x) + (range − |S| − |F|) f(k*),

where F lists the other members f already refers to and k* is a new member
distinct from all of them. Afterwards every average is relabelled so that its
members are the representatives 1, 2, ...; among all relabellings the one
with the smallest canonical key is kept, so equivalent averages coincide.

Evaluation goes the other way: free indices of each state are expanded to
all pairwise different members 1..n, and sums become explicit additions.
"""

import itertools
from typing import Any

import sympy as sp

from ..core.algebra import normal_order, replace_index
from ..core.errors import UnresolvableIndexEqualityError
from ..core.expressions import QExpr
from ..core.hilbert import HilbertSpace
from ..core.indices import Index, fresh_index, index_sort_key
from ..core.operators import flat_factors
from .averages import Average, IndexedSum, find_averages, find_indices, insert_index, map_averages
from .meanfield import MeanfieldEquations, ScaledMeanfieldEquations, unique_states


def _hilbert_of(exprs) -> HilbertSpace | None:
    for expr in exprs:
        for avg in find_averages(expr):
            return flat_factors(avg.ops)[0].hilbert
    return None


def _index_aons(exprs) -> set[int]:
    aons: set[int] = set()
    for expr in exprs:
        aons.update(index.aon for index in find_indices(expr))
        for avg in find_averages(expr):
            aons.update(op.aon for op in flat_factors(avg.ops) if op.index is not None)
    return aons


def resolve_aons(h: Any, exprs) -> set[int]:
    """
    Subspaces selected by h.

    Args:
        h: None (every indexed subspace), a position, a subspace, or a list of those
        exprs: Expressions the selection applies to

    Returns:
        Set of 1-based subspace positions
    """
    exprs = list(exprs)
    if h is None:
        return _index_aons(exprs)
    if not isinstance(h, list | tuple | set):
        h = [h]
    aons = set()
    for item in h:
        if isinstance(item, bool):
            raise TypeError("Subspace selections are positions or subspaces")
        if isinstance(item, int):
            aons.add(item)
            continue
        if not isinstance(item, HilbertSpace):
            raise TypeError(f"Cannot select a subspace with {item!r}")
        hilbert = _hilbert_of(exprs)
        if hilbert is None:
            raise ValueError("Selecting subspaces by object needs operators declared on the full space")
        aons.add(hilbert.position(item))
    return aons


def _known_indices(exprs) -> dict[str, Index]:
    known: dict[str, Index] = {}
    for expr in exprs:
        for index in find_indices(expr):
            known.setdefault(index.name, index)
    return known


def _free_members(expr: sp.Expr, aon: int, known: dict[str, Index]) -> list:
    """Members of an ensemble referenced by expr and not bound by a sum inside it."""
    found: list = []

    def add(value: Any) -> None:
        if value not in found:
            found.append(value)

    def walk(e: sp.Expr, bound: frozenset) -> None:
        if isinstance(e, Average):
            for op in flat_factors(e.ops):
                if op.aon == aon and op.index is not None and op.index not in bound:
                    add(op.index)
            return
        if isinstance(e, IndexedSum):
            inner = bound | {e.index}
            walk(e.summand, inner)
            if e.index.aon == aon:
                for v in e.non_equal:
                    if v not in bound:
                        add(v)
            return
        if e.is_Symbol:
            index = known.get(e.name)
            if index is not None and index.aon == aon and index not in bound:
                add(index)
            return
        for arg in e.args:
            walk(arg, bound)

    walk(expr, frozenset())
    return found


def _expand_sum(node: IndexedSum, known: dict[str, Index], used: set[str]) -> sp.Expr:
    d = node.index
    excluded = node.non_equal
    members = [
        v for v in _free_members(node.summand, d.aon, known) if v != d and v not in excluded
    ]
    result = sp.S.Zero
    for value in members:
        result += insert_index(node.summand, d, value)
    rep = fresh_index(d, used)
    used.add(rep.name)
    known[rep.name] = rep
    multiplicity = d.range - len(excluded) - len(members)
    return result + multiplicity * insert_index(node.summand, d, rep)


def _scale_sums(expr: sp.Expr, aons: set[int], known: dict, used: set[str]) -> sp.Expr:
    if not expr.has(IndexedSum):
        return expr
    if isinstance(expr, IndexedSum):
        if int(expr.args[3]) in aons:
            return _scale_sums(_expand_sum(expr, known, used), aons, known, used)
        return IndexedSum(_scale_sums(expr.summand, aons, known, used), *expr.args[1:])
    return expr.func(*[_scale_sums(arg, aons, known, used) for arg in expr.args])


def _relabel_key(ops) -> tuple:
    key = []
    for op in flat_factors(ops):
        levels = tuple(-x for x in getattr(op, "levels", ()))
        key.append((op.aon, op.name, index_sort_key(op.index), op.kind_rank, levels))
    return tuple(key)


def _members_by_aon(avg: Average, aons: set[int]) -> dict[int, list]:
    members: dict[int, list] = {}
    for op in flat_factors(avg.ops):
        if op.aon in aons and op.index is not None:
            group = members.setdefault(op.aon, [])
            if op.index not in group:
                group.append(op.index)
    return members


def relabel_average(avg: Average, aons: set[int]) -> sp.Expr:
    """Average with the members of the selected ensembles renamed to 1, 2, ... canonically."""
    members = _members_by_aon(avg, aons)
    if not members:
        return avg
    staged = {}
    for aon, values in members.items():
        template = next((v for v in values if isinstance(v, Index)), None) or Index(None, "#", 1, aon)
        for n, value in enumerate(values):
            staged[value] = template.renamed(f"\x00{n}")

    def apply(ops, mapping):
        out = []
        for op in ops:
            for old, new in mapping.items():
                op = replace_index(op, old, new)
            out.append(op)
        return out

    base = apply(avg.ops, staged)
    choices = []
    for aon, values in members.items():
        targets = range(1, len(values) + 1)
        choices.append(
            [dict(zip((staged[v] for v in values), perm, strict=True)) for perm in itertools.permutations(targets)]
        )

    best = None
    for combination in itertools.product(*choices):
        mapping: dict = {}
        for part in combination:
            mapping.update(part)
        result = normal_order(apply(base, mapping))
        if len(result) != 1 or result[0][0] != 1:
            raise UnresolvableIndexEqualityError(f"Cannot relabel {avg} to distinct members")
        ops = result[0][1]
        if best is None or _relabel_key(ops) < _relabel_key(best):
            best = ops
    return Average(best)


def _check_deltas(expr: sp.Expr, names: set[str]) -> None:
    for delta in expr.atoms(sp.KroneckerDelta):
        if any(str(s) in names for s in delta.free_symbols):
            raise UnresolvableIndexEqualityError(f"Cannot decide {delta} for symmetric members")


def _scale_expr(expr: Any, aons: set[int], known: dict, used: set[str]) -> sp.Expr:
    expr = _scale_sums(sp.sympify(expr), aons, known, used)
    scaled_names = {name for name, index in known.items() if index.aon in aons}
    _check_deltas(expr, scaled_names)
    expr = map_averages(expr, lambda avg: relabel_average(avg, aons))
    leftovers = {
        s: sp.S.One
        for s in expr.free_symbols
        if isinstance(s, sp.Symbol) and s.name in scaled_names
    }
    if leftovers:
        expr = expr.xreplace(leftovers)
    return sp.expand(expr)


def scale(x: Any, h: Any = None) -> Any:
    """
    Reduce ensembles to representative members.

    Args:
        x: MeanfieldEquations or scalar expression
        h: Subspaces to scale (positions or subspace objects); None scales every indexed one

    Returns:
        ScaledMeanfieldEquations for equation sets, otherwise the scaled expression

    Raises:
        UnresolvableIndexEqualityError: If an index equality cannot be decided
    """
    if isinstance(x, MeanfieldEquations):
        exprs = list(x.states) + list(x.rhs)
        aons = resolve_aons(h, exprs)
        known = _known_indices(exprs)
        used = set(known)
        states = [_scale_expr(s, aons, known, used) for s in x.states]
        rhs = [_scale_expr(r, aons, known, used) for r in x.rhs]
        for state in states:
            if not isinstance(state, Average):
                raise UnresolvableIndexEqualityError(f"State {state} does not reduce to a single average")
        keep = unique_states(states)
        states = tuple(states[n] for n in keep)
        previous = getattr(x, "scaled_aons", ())
        return ScaledMeanfieldEquations(
            states=states,
            rhs=tuple(rhs[n] for n in keep),
            operators=tuple(QExpr.from_ops(s.ops) for s in states),
            operator_equations=(),
            hamiltonian=x.hamiltonian,
            jumps=x.jumps,
            jumps_dagger=x.jumps_dagger,
            rates=x.rates,
            order=x.order,
            settings=x.settings,
            scaled_aons=tuple(sorted(set(previous) | aons)),
            source=x,
        )
    exprs = [x]
    aons = resolve_aons(h, exprs)
    known = _known_indices(exprs)
    return _scale_expr(x, aons, known, set(known))


def _range_value(index: Index, limits: dict) -> int:
    value = sp.sympify(index.range).xreplace(limits)
    if not value.is_Integer:
        raise ValueError(f"No concrete size for ensemble {index.name} (range {index.range}); add it to limits")
    return int(value)


def _expand_sums(expr: sp.Expr, aons: set[int], limits: dict) -> sp.Expr:
    if not expr.has(IndexedSum):
        return expr
    if isinstance(expr, IndexedSum):
        if int(expr.args[3]) not in aons:
            return IndexedSum(_expand_sums(expr.summand, aons, limits), *expr.args[1:])
        d = expr.index
        excluded = expr.non_equal
        if any(isinstance(v, Index) for v in excluded):
            raise UnresolvableIndexEqualityError(
                f"Sum over {d.name} excludes symbolic members {excluded}"
            )
        result = sp.S.Zero
        for value in range(1, _range_value(d, limits) + 1):
            if value not in excluded:
                result += _expand_sums(insert_index(expr.summand, d, value), aons, limits)
        return result
    return expr.func(*[_expand_sums(arg, aons, limits) for arg in expr.args])


def _evaluate_expr(expr: Any, aons: set[int], limits: dict) -> sp.Expr:
    expr = _expand_sums(sp.sympify(expr), aons, limits)
    if limits:
        expr = expr.xreplace(limits)
    return sp.expand(expr)


def _state_assignments(state: Average, aons: set[int], limits: dict):
    groups: dict[int, list[Index]] = {}
    taken: dict[int, set[int]] = {}
    for op in flat_factors(state.ops):
        if op.aon not in aons or op.index is None:
            continue
        if isinstance(op.index, Index):
            group = groups.setdefault(op.aon, [])
            if op.index not in group:
                group.append(op.index)
        else:
            taken.setdefault(op.aon, set()).add(op.index)
    choices = []
    for aon, indices in groups.items():
        n = _range_value(indices[0], limits)
        values = [v for v in range(1, n + 1) if v not in taken.get(aon, set())]
        choices.append([list(zip(indices, perm, strict=True)) for perm in itertools.permutations(values, len(indices))])
    for combination in itertools.product(*choices):
        yield [pair for part in combination for pair in part]


def evaluate(x: Any, h: Any = None, limits: dict | None = None) -> Any:
    """
    Expand ensembles into their concrete members.

    Args:
        x: MeanfieldEquations or scalar expression
        h: Subspaces to expand; None expands every indexed one
        limits: Values of ensemble sizes (and other parameters), e.g. {N: 3}

    Returns:
        Equation set with one equation per concrete state, or the expanded expression
    """
    limits = {sp.sympify(k): sp.sympify(v) for k, v in (limits or {}).items()}
    if not isinstance(x, MeanfieldEquations):
        aons = resolve_aons(h, [x])
        return _evaluate_expr(x, aons, limits)

    aons = resolve_aons(h, list(x.states) + list(x.rhs))
    states, rhs = [], []
    for state, r in zip(x.states, x.rhs, strict=True):
        for assignment in _state_assignments(state, aons, limits):
            lhs, value = state, r
            for index, member in assignment:
                lhs = insert_index(lhs, index, member)
                value = insert_index(value, index, member)
            if lhs == 0:
                continue
            if not isinstance(lhs, Average):
                raise UnresolvableIndexEqualityError(f"State {state} does not evaluate to a single average")
            states.append(lhs)
            rhs.append(_evaluate_expr(value, aons, limits))
    keep = unique_states(states)
    states = tuple(states[n] for n in keep)
    return x.replaced(
        states=states,
        rhs=tuple(rhs[n] for n in keep),
        operators=tuple(QExpr.from_ops(s.ops) for s in states),
        operator_equations=(),
    )
