"""
Operator expressions: sums of canonical operator products.

A QExpr maps terms to scalar sympy coefficients. A term is a canonical
operator product, optionally under indexed sums Σ_{k ∉ S}, where S lists the
index values the summation index is known to differ from.

Sum Semantics:
    Summing over k a product that also contains another member l of the same
    ensemble separates the coincident case,

        Σ_k f(k, l) = Σ_{k≠l} f(k, l) + f(l, l),

    and the coincident product is multiplied out again, so merges and
    commutators of the member l are applied. The split happens before factors
    are multiplied, which keeps operator order intact for the coincident term.

Usage:
    >>> k = Index(h, "k", N, ha)
    >>> H = g * QSum(a.dag() * s(1, 2)[k] + a * s(2, 1)[k], k)
    >>> commutator(H, a)
"""

from typing import Any

import sympy as sp

from .algebra import adjoint_ops, normal_order, op_index_pairs, replace_index
from .indices import Index, IndexValue, fresh_index, index_symbol
from .operators import BasicOperator, NonIdenticalProduct


class SumSpec:
    """Summation index together with the index values it must differ from."""

    __slots__ = ("index", "non_equal")

    def __init__(self, index: Index, non_equal=()) -> None:
        if not isinstance(index, Index):
            raise TypeError(f"Sums run over an Index, got {index!r}")
        self.index = index
        self.non_equal = frozenset(v for v in non_equal if v != index)

    def _key(self) -> tuple:
        return (self.index, self.non_equal)

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, SumSpec) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def sort_key(self) -> tuple:
        return (self.index.aon, self.index.name)

    def replaced(self, old: IndexValue, new: IndexValue) -> "SumSpec":
        index = new if self.index == old else self.index
        non_equal = {new if v == old else v for v in self.non_equal}
        return SumSpec(index, non_equal)

    def __repr__(self) -> str:
        if not self.non_equal:
            return f"Σ({self.index})"
        others = ",".join(sorted(str(v) for v in self.non_equal))
        return f"Σ({self.index}≠{others})"


class Term:
    """Canonical operator product under zero or more indexed sums."""

    __slots__ = ("sums", "ops")

    def __init__(self, sums=(), ops=()) -> None:
        self.sums = tuple(sorted(sums, key=lambda s: s.sort_key()))
        self.ops = tuple(ops)

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Term) and self.sums == other.sums and self.ops == other.ops

    def __hash__(self) -> int:
        return hash((self.sums, self.ops))

    def __repr__(self) -> str:
        sums = "".join(repr(s) for s in self.sums)
        ops = "*".join(repr(op) for op in self.ops) or "𝟙"
        return f"{sums}{ops}"

    @property
    def summed(self) -> tuple[Index, ...]:
        return tuple(s.index for s in self.sums)

    def index_values(self) -> set:
        """All index values appearing in operators and sum constraints."""
        values = {v for v, _ in op_index_pairs(self.ops)}
        for s in self.sums:
            values.add(s.index)
            values.update(s.non_equal)
        return values


def distinct_pairs(sums) -> frozenset:
    """Pairs of index values that the sum constraints declare different."""
    return frozenset(frozenset((s.index, v)) for s in sums for v in s.non_equal)


def substitute_scalar(expr: sp.Expr, old: IndexValue, new: IndexValue) -> sp.Expr:
    """Replace an index symbol inside a scalar coefficient."""
    if not isinstance(old, Index):
        return expr
    return sp.sympify(expr).xreplace({old.symbol: index_symbol(new)})


def _names(term: Term, coeff: sp.Expr) -> set[str]:
    names = {v.name for v in term.index_values() if isinstance(v, Index)}
    names.update(str(s) for s in sp.sympify(coeff).free_symbols)
    return names


def _accumulate(out: dict, term: Term, coeff: sp.Expr) -> None:
    out[term] = out.get(term, sp.S.Zero) + coeff


def _merge(out: dict, other: dict) -> dict:
    for term, coeff in other.items():
        _accumulate(out, term, coeff)
    return out


def expand_sums(sums: tuple, ops: tuple, coeff: sp.Expr) -> dict:
    """
    Split sums over coincident members, then normal order the product.

    Args:
        sums: SumSpec constraints of the term
        ops: Operator factors in multiplication order (not necessarily canonical)
        coeff: Scalar coefficient

    Returns:
        Dictionary Term -> coefficient
    """
    sums = tuple(sums)
    for pos, spec in enumerate(sums):
        d = spec.index
        for value, aon in op_index_pairs(ops):
            if value == d or aon != d.aon or value in spec.non_equal:
                continue
            if any(o.index == value and d in o.non_equal for o in sums):
                continue
            rest = sums[:pos] + sums[pos + 1 :]
            distinct = rest + (SumSpec(d, spec.non_equal | {value}),)
            coincident = tuple(o.replaced(d, value) for o in rest)
            out = expand_sums(distinct, ops, coeff)
            return _merge(
                out,
                expand_sums(
                    coincident,
                    tuple(replace_index(op, d, value) for op in ops),
                    substitute_scalar(coeff, d, value),
                ),
            )

    out: dict = {}
    context = distinct_pairs(sums)
    for c, seq in normal_order(ops, context):
        _accumulate(out, Term(sums, seq), coeff * c)
    return out


def _lookup_value(term: Term, symbol: sp.Expr, template: Index) -> IndexValue:
    if symbol.is_Integer:
        return int(symbol)
    for value in term.index_values():
        if isinstance(value, Index) and value.symbol == symbol:
            return value
    return template.renamed(str(symbol))


def _summed_delta(part: sp.Expr, symbol: sp.Symbol) -> sp.KroneckerDelta | None:
    for factor in sp.Mul.make_args(part):
        base = factor.base if factor.is_Pow else factor
        if isinstance(base, sp.KroneckerDelta) and symbol in base.args:
            return base
    return None


def _collapse_deltas(term: Term, coeff: sp.Expr) -> dict | None:
    """Σ_k δ(k,x) f(k) -> f(x), or None if no summed delta is present."""
    for spec in term.sums:
        d = spec.index
        parts = sp.Add.make_args(sp.expand(coeff))
        if all(_summed_delta(part, d.symbol) is None for part in parts):
            continue
        out: dict = {}
        rest = tuple(s for s in term.sums if s is not spec)
        for part in parts:
            delta = _summed_delta(part, d.symbol)
            if delta is None:
                _accumulate(out, term, part)
                continue
            other = delta.args[1] if delta.args[0] == d.symbol else delta.args[0]
            value = _lookup_value(term, other, d)
            if value in spec.non_equal:
                continue
            new_coeff = substitute_scalar(part, d, value)
            ops = tuple(replace_index(op, d, value) for op in term.ops)
            new_sums = tuple(s.replaced(d, value) for s in rest)
            _merge(out, expand_sums(new_sums, ops, new_coeff))
        return out
    return None


def _drop_free_sums(term: Term, coeff: sp.Expr) -> tuple[Term, sp.Expr]:
    """Σ_{k∉S} c = (range - |S|) c when nothing depends on k."""
    sums = list(term.sums)
    changed = True
    while changed:
        changed = False
        for spec in sums:
            d = spec.index
            used = {v for v, _ in op_index_pairs(term.ops)}
            if d in used or d.symbol in sp.sympify(coeff).free_symbols:
                continue
            if any(d in o.non_equal for o in sums if o is not spec):
                continue
            coeff = coeff * (d.range - len(spec.non_equal))
            sums.remove(spec)
            changed = True
            break
    return Term(sums, term.ops), coeff


def simplify_terms(terms: dict) -> dict:
    """Expand coefficients, collapse summed deltas and drop vanishing terms."""
    pending = list(terms.items())
    out: dict = {}
    while pending:
        term, coeff = pending.pop()
        coeff = sp.expand(coeff)
        if coeff == 0:
            continue
        collapsed = _collapse_deltas(term, coeff)
        if collapsed is not None:
            pending.extend(collapsed.items())
            continue
        term, coeff = _drop_free_sums(term, coeff)
        _accumulate(out, term, coeff)
    cleaned = {}
    for term, coeff in out.items():
        coeff = sp.expand(coeff)
        if coeff != 0:
            cleaned[term] = coeff
    return cleaned


def _rename_dummies(term: Term, coeff: sp.Expr, clash: set, avoid: set) -> tuple[Term, sp.Expr]:
    sums = list(term.sums)
    ops = term.ops
    avoid = set(avoid)
    for spec in term.sums:
        d = spec.index
        if d.name not in clash:
            continue
        new = fresh_index(d, avoid)
        avoid.add(new.name)
        sums = [s.replaced(d, new) for s in sums]
        ops = tuple(replace_index(op, d, new) for op in ops)
        coeff = substitute_scalar(coeff, d, new)
    return Term(sums, ops), coeff


def multiply_terms(t1: Term, c1: sp.Expr, t2: Term, c2: sp.Expr) -> dict:
    """Product of two terms, renaming clashing summation indices."""
    names1 = _names(t1, c1)
    names2 = _names(t2, c2)
    t2, c2 = _rename_dummies(t2, c2, names1, names1 | names2)
    names2 = _names(t2, c2)
    t1, c1 = _rename_dummies(t1, c1, names2, names1 | names2)
    return expand_sums(t1.sums + t2.sums, t1.ops + t2.ops, c1 * c2)


class QExpr:
    """
    Sum of canonical operator products with scalar coefficients.

    QExpr values are never modified in place; arithmetic returns new
    expressions. Equality is mathematical equality of canonical forms.
    """

    __slots__ = ("terms",)

    def __init__(self, terms: dict | None = None) -> None:
        self.terms = simplify_terms(terms or {})

    @classmethod
    def from_ops(cls, ops, coeff: Any = 1) -> "QExpr":
        out: dict = {}
        for c, seq in normal_order(ops):
            _accumulate(out, Term((), seq), c * sp.sympify(coeff))
        return cls(out)

    # Arithmetic

    def __add__(self, other: Any) -> "QExpr":
        other = as_qexpr(other)
        return QExpr(_merge(dict(self.terms), other.terms))

    def __radd__(self, other: Any) -> "QExpr":
        return as_qexpr(other) + self

    def __neg__(self) -> "QExpr":
        return QExpr({t: -c for t, c in self.terms.items()})

    def __sub__(self, other: Any) -> "QExpr":
        return self + (-as_qexpr(other))

    def __rsub__(self, other: Any) -> "QExpr":
        return as_qexpr(other) - self

    def __mul__(self, other: Any) -> "QExpr":
        if not isinstance(other, QExpr | BasicOperator | NonIdenticalProduct):
            factor = sp.sympify(other)
            return QExpr({t: c * factor for t, c in self.terms.items()})
        other = as_qexpr(other)
        out: dict = {}
        for t1, c1 in self.terms.items():
            for t2, c2 in other.terms.items():
                _merge(out, multiply_terms(t1, c1, t2, c2))
        return QExpr(out)

    def __rmul__(self, other: Any) -> "QExpr":
        if isinstance(other, QExpr | BasicOperator | NonIdenticalProduct):
            return as_qexpr(other) * self
        factor = sp.sympify(other)
        return QExpr({t: factor * c for t, c in self.terms.items()})

    def __truediv__(self, other: Any) -> "QExpr":
        return self * (sp.S.One / sp.sympify(other))

    def __pow__(self, n: int) -> "QExpr":
        if not isinstance(n, int) or n < 0:
            raise ValueError("Operator powers must be non-negative integers")
        result = as_qexpr(1)
        for _ in range(n):
            result = result * self
        return result

    def __eq__(self, other: Any) -> bool:
        try:
            difference = self - as_qexpr(other)
        except (TypeError, sp.SympifyError):
            return False
        return not difference.terms

    __hash__ = None  # type: ignore[assignment]

    # Structure

    def adjoint(self) -> "QExpr":
        """Hermitian adjoint, reordered into canonical form."""
        out: dict = {}
        for term, coeff in self.terms.items():
            conj = sp.conjugate(coeff)
            for c, seq in normal_order(adjoint_ops(term.ops), distinct_pairs(term.sums)):
                _accumulate(out, Term(term.sums, seq), conj * c)
        return QExpr(out)

    def dag(self) -> "QExpr":
        return self.adjoint()

    def substitute_index(self, old: Index, new: IndexValue) -> "QExpr":
        """Replace a free index by another index or a concrete member."""
        out: dict = {}
        for term, coeff in self.terms.items():
            if old in term.summed:
                _accumulate(out, term, coeff)
                continue
            sums = tuple(s.replaced(old, new) for s in term.sums)
            ops = tuple(replace_index(op, old, new) for op in term.ops)
            _merge(out, expand_sums(sums, ops, substitute_scalar(coeff, old, new)))
        return QExpr(out)

    def index_values(self) -> list[tuple[IndexValue, int]]:
        """Distinct (value, aon) pairs of indices not bound by a sum, in order of appearance."""
        seen: list[tuple[IndexValue, int]] = []
        for term in self.terms:
            summed = set(term.summed)
            for pair in op_index_pairs(term.ops):
                if pair[0] not in summed and pair not in seen:
                    seen.append(pair)
        return seen

    def is_zero(self) -> bool:
        return not self.terms

    def indices(self) -> set[Index]:
        """All Index objects in operators and sums."""
        found = set()
        for term in self.terms:
            found.update(v for v in term.index_values() if isinstance(v, Index))
        return found

    def free_indices(self) -> set[Index]:
        """Indices not bound by a sum."""
        found = set()
        for term in self.terms:
            summed = set(term.summed)
            found.update(
                v for v, _ in op_index_pairs(term.ops) if isinstance(v, Index) and v not in summed
            )
        return found

    def items(self):
        return self.terms.items()

    def __iter__(self):
        return iter(self.terms.items())

    def __len__(self) -> int:
        return len(self.terms)

    def __repr__(self) -> str:
        if not self.terms:
            return "0"
        parts = []
        for term, coeff in sorted(self.terms.items(), key=lambda tc: repr(tc[0])):
            if not term.ops and not term.sums:
                parts.append(f"{coeff}")
            elif coeff == 1:
                parts.append(repr(term))
            else:
                parts.append(f"({coeff})*{term!r}")
        return " + ".join(parts)


def as_qexpr(x: Any) -> QExpr:
    """Convert operators and scalars to operator expressions."""
    if isinstance(x, QExpr):
        return x
    if isinstance(x, BasicOperator | NonIdenticalProduct):
        return QExpr.from_ops((x,))
    value = sp.sympify(x)
    if value == 0:
        return QExpr()
    return QExpr({Term((), ()): value})


def QSum(expr: Any, *indices: Index, non_equal=()) -> QExpr:
    """
    Indexed sum of an operator expression.

    Operator-level constructor behind indexed_sum and its alias Σ, which are
    the public spelling and also accept scalar expressions.

    Args:
        expr: Summand; may depend on the indices
        indices: Summation indices, summed from the last to the first
        non_equal: Index values every summation index must differ from

    Returns:
        QExpr with coincident members split off
    """
    result = as_qexpr(expr)
    for index in reversed(indices):
        out: dict = {}
        for term, coeff in result.terms.items():
            if index in term.summed:
                raise ValueError(f"Index {index} is already summed in {term}")
            sums = term.sums + (SumSpec(index, non_equal),)
            _merge(out, expand_sums(sums, term.ops, coeff))
        result = QExpr(out)
    return result


def commutator(a: Any, b: Any) -> QExpr:
    """[a, b] = a·b - b·a."""
    a = as_qexpr(a)
    b = as_qexpr(b)
    return a * b - b * a


def adjoint(x: Any) -> Any:
    """Hermitian adjoint of an operator, an operator expression or a scalar."""
    if isinstance(x, QExpr | BasicOperator | NonIdenticalProduct):
        return x.adjoint()
    return sp.conjugate(sp.sympify(x))
