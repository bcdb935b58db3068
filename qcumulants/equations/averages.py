"""
Expectation values of operator products as sympy scalars.

Average wraps a canonical operator monomial. It is a commutative sympy atom,
so averages combine with parameters through ordinary sympy arithmetic, while
the operator content stays accessible through Average.ops.

IndexedSum is the scalar counterpart of an operator sum over an ensemble
index, Σ_{k ∉ S} f(k). Its constructor keeps it in a normal form:
    - sums distribute over additions
    - factors that do not depend on k move in front of the sum
    - terms without k are multiplied by range - |S|
    - Σ_k δ(k, x) f(k) collapses to f(x), or to 0 when x ∈ S

Sympy substitution does not reach into Average atoms, so index values are
replaced with insert_index, which rebuilds averages in canonical order.
"""

from typing import Any, Callable

import sympy as sp

from ..core.algebra import adjoint_ops, normal_order, replace_index
from ..core.expressions import QExpr, as_qexpr
from ..core.indices import Index, IndexValue, index_symbol
from ..core.operators import BasicOperator, NonIdenticalProduct, flat_factors


def average_key(ops) -> str:
    """Orderable string identifying a canonical operator monomial."""
    return repr(tuple(op.sort_key() for op in ops))


class Average(sp.AtomicExpr):
    """
    Expectation value ⟨op_1 op_2 ... op_n⟩ of a canonical operator product.

    Averages are compared by operator content. Conjugation yields the
    average of the adjoint product, brought back into canonical order.
    """

    __slots__ = ("ops", "_key")

    is_commutative = True
    is_number = False

    def __new__(cls, ops) -> "Average":
        ops = tuple(ops)
        if not ops:
            raise ValueError("Average of the identity is 1, not an Average")
        obj = sp.AtomicExpr.__new__(cls)
        obj.ops = ops
        obj._key = average_key(ops)
        return obj

    def _hashable_content(self) -> tuple:
        return (self._key,)

    def __getnewargs__(self) -> tuple:
        return (self.ops,)

    @property
    def free_symbols(self) -> set:
        return {index_symbol(op.index) for op in flat_factors(self.ops) if isinstance(op.index, Index)}

    @property
    def order(self) -> int:
        """Number of elementary operators in the product."""
        return len(flat_factors(self.ops))

    @property
    def indices(self) -> list[Index]:
        found: list[Index] = []
        for op in flat_factors(self.ops):
            if isinstance(op.index, Index) and op.index not in found:
                found.append(op.index)
        return found

    @property
    def aons(self) -> set[int]:
        return {op.aon for op in self.ops}

    def operator(self) -> QExpr:
        """The averaged operator product as an operator expression."""
        return QExpr.from_ops(self.ops)

    def _eval_conjugate(self) -> sp.Expr:
        return average_of_ops(adjoint_ops(self.ops))

    def _sympystr(self, printer: Any) -> str:
        return "⟨" + "*".join(repr(op) for op in self.ops) + "⟩"

    def _latex(self, printer: Any) -> str:
        return r"\langle " + " ".join(repr(op) for op in self.ops) + r" \rangle"


def average_of_ops(ops, distinct: frozenset = frozenset()) -> sp.Expr:
    """Average of an operator product that may not be canonical yet."""
    result = sp.S.Zero
    for coeff, seq in normal_order(ops, distinct):
        result += coeff * (Average(seq) if seq else sp.S.One)
    return result


def _to_value(value: Any, template: Index) -> IndexValue:
    if isinstance(value, Index | int):
        return value
    value = sp.sympify(value)
    if value.is_Integer:
        return int(value)
    if value.is_Symbol:
        return template.renamed(value.name)
    raise ValueError(f"Cannot use {value} as an index value")


def _sum_index(symbol: sp.Symbol, range_: sp.Expr, aon: sp.Integer) -> Index:
    return Index(None, symbol.name, range_, int(aon))


class IndexedSum(sp.Expr):
    """
    Scalar sum Σ_{k ∉ S} f(k) over an ensemble index.

    Args are (summand, index symbol, range, aon, non_equal), where non_equal
    holds the symbols or integers k must differ from. Use IndexedSum.of to
    build one from an Index.
    """

    is_commutative = True

    def __new__(cls, summand, symbol, range_, aon, non_equal=sp.Tuple()):
        summand = sp.sympify(summand)
        symbol = sp.sympify(symbol)
        range_ = sp.sympify(range_)
        aon = sp.Integer(aon)
        non_equal = sp.Tuple(*sorted(set(sp.sympify(v) for v in non_equal), key=sp.default_sort_key))
        index = _sum_index(symbol, range_, aon)
        excluded = {_to_value(v, index) for v in non_equal}

        result = sp.S.Zero
        for term in sp.Add.make_args(sp.expand(summand)):
            delta = _find_delta(term, symbol)
            if delta is not None:
                other = delta.args[1] if delta.args[0] == symbol else delta.args[0]
                target = _to_value(other, index)
                if target not in excluded:
                    result += insert_index(term, index, target)
                continue

            inner, outer = [], []
            for factor in sp.Mul.make_args(term):
                (inner if symbol in factor.free_symbols else outer).append(factor)
            if not inner:
                result += term * (range_ - len(non_equal))
                continue
            body = sp.Mul(*inner)
            node = sp.Expr.__new__(cls, body, symbol, range_, aon, non_equal)
            result += sp.Mul(*outer) * node
        return result

    @classmethod
    def of(cls, summand: Any, index: Index, non_equal=()) -> sp.Expr:
        values = [index_symbol(v) for v in non_equal if v != index]
        return cls(summand, index.symbol, index.range, index.aon, values)

    @property
    def summand(self) -> sp.Expr:
        return self.args[0]

    @property
    def index(self) -> Index:
        return _sum_index(self.args[1], self.args[2], self.args[3])

    @property
    def non_equal(self) -> list[IndexValue]:
        index = self.index
        return [_to_value(v, index) for v in self.args[4]]

    @property
    def free_symbols(self) -> set:
        symbols = set(self.summand.free_symbols) - {self.args[1]}
        symbols |= self.args[2].free_symbols
        for v in self.args[4]:
            symbols |= v.free_symbols
        return symbols

    def _eval_conjugate(self) -> sp.Expr:
        return IndexedSum(sp.conjugate(self.summand), *self.args[1:])

    def _sympystr(self, printer: Any) -> str:
        label = printer._print(self.args[1])
        if self.args[4]:
            label += "≠" + ",".join(printer._print(v) for v in self.args[4])
        return f"Σ({label})({printer._print(self.summand)})"


def _find_delta(term: sp.Expr, symbol: sp.Symbol) -> sp.KroneckerDelta | None:
    for factor in sp.Mul.make_args(term):
        base = factor.base if factor.is_Pow else factor
        if isinstance(base, sp.KroneckerDelta) and symbol in base.args:
            return base
    return None


def map_averages(expr: Any, func: Callable[[Average], Any]) -> sp.Expr:
    """Apply func to every Average in a scalar expression, rebuilding the tree."""
    expr = sp.sympify(expr)
    if isinstance(expr, Average):
        return sp.sympify(func(expr))
    if not expr.args or not expr.has(Average):
        return expr
    if isinstance(expr, IndexedSum):
        return IndexedSum(map_averages(expr.summand, func), *expr.args[1:])
    return expr.func(*[map_averages(arg, func) for arg in expr.args])


def substitute_average_index(avg: Average, old: Index, new: IndexValue) -> sp.Expr:
    """Average with one index replaced, re-ordered into canonical form."""
    if old not in avg.indices:
        return avg
    return average_of_ops(tuple(replace_index(op, old, new) for op in avg.ops))


def insert_index(expr: Any, index: Index, value: Any) -> Any:
    """
    Substitute an index value everywhere in an expression.

    Args:
        expr: Scalar expression, operator expression or operator
        index: Index to replace
        value: Index, integer or sympy integer/symbol

    Returns:
        Expression of the same kind with the index replaced
    """
    value = _to_value(value, index)
    if isinstance(expr, QExpr | BasicOperator | NonIdenticalProduct):
        return as_qexpr(expr).substitute_index(index, value)

    old = index.symbol
    new = index_symbol(value)

    def walk(e: sp.Expr) -> sp.Expr:
        if isinstance(e, Average):
            return substitute_average_index(e, index, value)
        if isinstance(e, IndexedSum):
            if e.args[1] == old:
                return e
            non_equal = [new if v == old else v for v in e.args[4]]
            return IndexedSum(walk(e.summand), e.args[1], e.args[2], e.args[3], non_equal)
        if not e.args:
            return new if e == old else e
        if old not in e.free_symbols:
            return e
        return e.func(*[walk(arg) for arg in e.args])

    return walk(sp.sympify(expr))


def find_averages(expr: Any) -> list[Average]:
    """Averages in an expression, sorted by their canonical key."""
    found = sp.sympify(expr).atoms(Average)
    return sorted(found, key=lambda a: a._key)


def find_indices(expr: Any) -> set[Index]:
    """Indices of averages and indexed sums in an expression."""
    expr = sp.sympify(expr)
    found: set[Index] = set()
    for avg in expr.atoms(Average):
        found.update(avg.indices)
    for node in expr.atoms(IndexedSum):
        found.add(node.index)
    return found


def average(x: Any) -> Any:
    """
    Expectation value of operators, operator expressions and equations.

    Args:
        x: Operator, QExpr, scalar, or HeisenbergEquations

    Returns:
        sympy expression built from Average atoms and IndexedSums, or
        MeanfieldEquations for Heisenberg equations
    """
    from .meanfield import HeisenbergEquations, average_equations

    if isinstance(x, HeisenbergEquations):
        return average_equations(x)
    if isinstance(x, BasicOperator | NonIdenticalProduct):
        x = as_qexpr(x)
    if not isinstance(x, QExpr):
        return sp.sympify(x)

    result = sp.S.Zero
    for term, coeff in x.terms.items():
        body = coeff * (Average(term.ops) if term.ops else sp.S.One)
        for spec in _nesting_order(term.sums):
            body = IndexedSum.of(body, spec.index, spec.non_equal)
        result += body
    return result


def _nesting_order(sums) -> list:
    """Sums ordered innermost first; a sum excluding another summed index sits inside it."""
    remaining = list(sums)
    ordered = []
    while remaining:
        for spec in remaining:
            if not any(spec.index in other.non_equal for other in remaining if other is not spec):
                break
        else:
            spec = remaining[0]
        ordered.append(spec)
        remaining.remove(spec)
    return ordered


def indexed_sum(x: Any, *indices: Index, non_equal=()) -> Any:
    """
    Sum over ensemble indices, for operator or scalar expressions.

    Operator input yields a QExpr (see QSum); scalar input an IndexedSum.
    """
    from ..core.expressions import QSum

    if isinstance(x, QExpr | BasicOperator | NonIdenticalProduct):
        return QSum(x, *indices, non_equal=non_equal)
    result = sp.sympify(x)
    for index in reversed(indices):
        result = IndexedSum.of(result, index, non_equal)
    return result


Σ = indexed_sum
