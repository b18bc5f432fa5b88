"""Row-filter expressions.

Unbound predicates refer to columns by name and carry Python literals.
`bind` resolves names against a schema into field ids and converts the
literals to internal values; evaluators only ever see bound expressions.

    >>> expr = And(GreaterThanOrEqual("id", 1), LessThan("id", 5))
    >>> bound = bind(schema, expr)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from typing import FrozenSet
from typing import Iterable
from typing import Optional
from typing import Union

from ..exceptions import ValidationError
from .conversions import to_internal
from .schema import Schema
from .types import NestedField
from .types import PrimitiveType


class BooleanExpression:
    def __and__(self, other: "BooleanExpression") -> "BooleanExpression":
        return And(self, other)

    def __or__(self, other: "BooleanExpression") -> "BooleanExpression":
        return Or(self, other)

    def __invert__(self) -> "BooleanExpression":
        return Not(self)

    def negate(self) -> "BooleanExpression":
        raise NotImplementedError()


class AlwaysTrue(BooleanExpression):
    def negate(self) -> BooleanExpression:
        return AlwaysFalse()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AlwaysTrue)

    def __hash__(self) -> int:
        return hash("true")

    def __repr__(self) -> str:
        return "AlwaysTrue()"


class AlwaysFalse(BooleanExpression):
    def negate(self) -> BooleanExpression:
        return AlwaysTrue()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, AlwaysFalse)

    def __hash__(self) -> int:
        return hash("false")

    def __repr__(self) -> str:
        return "AlwaysFalse()"


@dataclass(frozen=True)
class And(BooleanExpression):
    left: BooleanExpression
    right: BooleanExpression

    def negate(self) -> BooleanExpression:
        return Or(self.left.negate(), self.right.negate())


@dataclass(frozen=True)
class Or(BooleanExpression):
    left: BooleanExpression
    right: BooleanExpression

    def negate(self) -> BooleanExpression:
        return And(self.left.negate(), self.right.negate())


@dataclass(frozen=True)
class Not(BooleanExpression):
    child: BooleanExpression

    def negate(self) -> BooleanExpression:
        return self.child


def and_(*expressions: BooleanExpression) -> BooleanExpression:
    """Fold `expressions` with AND, dropping AlwaysTrue and short-circuiting AlwaysFalse."""
    result: BooleanExpression = AlwaysTrue()
    for expr in expressions:
        if isinstance(expr, AlwaysFalse):
            return AlwaysFalse()
        if isinstance(expr, AlwaysTrue):
            continue
        result = expr if isinstance(result, AlwaysTrue) else And(result, expr)
    return result


def or_(*expressions: BooleanExpression) -> BooleanExpression:
    result: BooleanExpression = AlwaysFalse()
    for expr in expressions:
        if isinstance(expr, AlwaysTrue):
            return AlwaysTrue()
        if isinstance(expr, AlwaysFalse):
            continue
        result = expr if isinstance(result, AlwaysFalse) else Or(result, expr)
    return result


@dataclass(frozen=True)
class Reference:
    name: str


@dataclass(frozen=True)
class BoundReference:
    field: NestedField

    @property
    def field_id(self) -> int:
        return self.field.field_id


def _name(term: Union[str, Reference]) -> str:
    return term.name if isinstance(term, Reference) else term


# Operators and their negations
NEGATIONS = {
    "eq": "ne",
    "ne": "eq",
    "lt": "gt_eq",
    "gt_eq": "lt",
    "lt_eq": "gt",
    "gt": "lt_eq",
    "in": "not_in",
    "not_in": "in",
    "is_null": "not_null",
    "not_null": "is_null",
}


class UnboundPredicate(BooleanExpression):
    op: str = ""

    def __init__(self, term: Union[str, Reference]):
        self.term = Reference(term) if isinstance(term, str) else term

    @property
    def name(self) -> str:
        return self.term.name

    def _key(self) -> tuple:
        return (self.op, self.term)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, UnboundPredicate) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def negate(self) -> BooleanExpression:
        return _UNBOUND_BY_OP[NEGATIONS[self.op]]._rebuild(self)

    @classmethod
    def _rebuild(cls, source: "UnboundPredicate") -> "UnboundPredicate":
        return cls(source.term)


class UnaryPredicate(UnboundPredicate):
    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class IsNull(UnaryPredicate):
    op = "is_null"


class NotNull(UnaryPredicate):
    op = "not_null"


class LiteralPredicate(UnboundPredicate):
    def __init__(self, term: Union[str, Reference], literal: Any):
        super().__init__(term)
        if literal is None:
            raise ValidationError(f"{type(self).__name__} needs a non-null literal; use IsNull")
        self.literal = literal

    def _key(self) -> tuple:
        return (self.op, self.term, self.literal)

    @classmethod
    def _rebuild(cls, source: "UnboundPredicate") -> "UnboundPredicate":
        return cls(source.term, source.literal)  # type: ignore[attr-defined]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.literal!r})"


class EqualTo(LiteralPredicate):
    op = "eq"


class NotEqualTo(LiteralPredicate):
    op = "ne"


class LessThan(LiteralPredicate):
    op = "lt"


class LessThanOrEqual(LiteralPredicate):
    op = "lt_eq"


class GreaterThan(LiteralPredicate):
    op = "gt"


class GreaterThanOrEqual(LiteralPredicate):
    op = "gt_eq"


class SetPredicate(UnboundPredicate):
    def __init__(self, term: Union[str, Reference], literals: Iterable[Any]):
        super().__init__(term)
        self.literals: FrozenSet[Any] = frozenset(literals)
        if None in self.literals:
            raise ValidationError(f"{type(self).__name__} cannot contain null; use IsNull")

    def _key(self) -> tuple:
        return (self.op, self.term, self.literals)

    @classmethod
    def _rebuild(cls, source: "UnboundPredicate") -> "UnboundPredicate":
        return cls(source.term, source.literals)  # type: ignore[attr-defined]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {set(self.literals)!r})"


class In(SetPredicate):
    op = "in"


class NotIn(SetPredicate):
    op = "not_in"


_UNBOUND_BY_OP = {
    cls.op: cls
    for cls in (
        IsNull,
        NotNull,
        EqualTo,
        NotEqualTo,
        LessThan,
        LessThanOrEqual,
        GreaterThan,
        GreaterThanOrEqual,
        In,
        NotIn,
    )
}


def predicate(op: str, name: str, value: Any = None) -> UnboundPredicate:
    """Build an unbound predicate from an operator name ('eq', 'lt_eq', 'in', ...)."""
    cls = _UNBOUND_BY_OP.get(op)
    if cls is None:
        raise ValidationError(f"Unknown operator: {op}")
    if issubclass(cls, UnaryPredicate):
        return cls(name)
    return cls(name, value)  # type: ignore[call-arg]


@dataclass(frozen=True)
class BoundPredicate(BooleanExpression):
    """A predicate whose term is a resolved field and whose literals are internal values."""

    op: str
    term: BoundReference
    literal: Any = None
    literals: Optional[FrozenSet[Any]] = None

    @property
    def field_id(self) -> int:
        return self.term.field_id

    def negate(self) -> BooleanExpression:
        return BoundPredicate(NEGATIONS[self.op], self.term, self.literal, self.literals)

    def as_unbound(self, name: str) -> UnboundPredicate:
        """Rebuild as an unbound predicate on `name` (used for partition projection)."""
        cls = _UNBOUND_BY_OP[self.op]
        if issubclass(cls, UnaryPredicate):
            return cls(name)
        if issubclass(cls, SetPredicate):
            return cls(name, self.literals or ())
        return cls(name, self.literal)  # type: ignore[call-arg]


def _bind_predicate(schema: Schema, pred: UnboundPredicate, case_sensitive: bool) -> BooleanExpression:
    try:
        field = schema.find_field(pred.name, case_sensitive)
    except ValueError as err:
        raise ValidationError(f"Cannot bind {pred!r}: {err}") from err
    if not isinstance(field.field_type, PrimitiveType):
        raise ValidationError(f"Cannot filter on non-primitive column {pred.name}")
    ref = BoundReference(field)

    if isinstance(pred, UnaryPredicate):
        if pred.op == "is_null" and field.required:
            return AlwaysFalse()
        if pred.op == "not_null" and field.required:
            return AlwaysTrue()
        return BoundPredicate(pred.op, ref)

    try:
        if isinstance(pred, SetPredicate):
            values = frozenset(to_internal(field.field_type, v) for v in pred.literals)
            if not values:
                return AlwaysFalse() if pred.op == "in" else AlwaysTrue()
            if len(values) == 1:
                (only,) = values
                return BoundPredicate("eq" if pred.op == "in" else "ne", ref, only)
            return BoundPredicate(pred.op, ref, literals=values)
        value = to_internal(field.field_type, pred.literal)  # type: ignore[attr-defined]
    except (TypeError, ValueError) as err:
        raise ValidationError(f"Invalid literal for {field.name} ({field.field_type}): {err}") from err
    return BoundPredicate(pred.op, ref, value)


def bind(schema: Schema, expr: BooleanExpression, case_sensitive: bool = True) -> BooleanExpression:
    """Resolve every predicate in `expr` against `schema`."""
    if isinstance(expr, (AlwaysTrue, AlwaysFalse, BoundPredicate)):
        return expr
    if isinstance(expr, And):
        return and_(bind(schema, expr.left, case_sensitive), bind(schema, expr.right, case_sensitive))
    if isinstance(expr, Or):
        return or_(bind(schema, expr.left, case_sensitive), bind(schema, expr.right, case_sensitive))
    if isinstance(expr, Not):
        child = bind(schema, expr.child, case_sensitive)
        if isinstance(child, (AlwaysTrue, AlwaysFalse)):
            return child.negate()
        return Not(child)
    if isinstance(expr, UnboundPredicate):
        return _bind_predicate(schema, expr, case_sensitive)
    raise ValidationError(f"Cannot bind expression: {expr!r}")


def rewrite_not(expr: BooleanExpression) -> BooleanExpression:
    """Push every NOT down to the predicates, leaving a NOT-free tree."""
    if isinstance(expr, Not):
        return rewrite_not(expr.child.negate())
    if isinstance(expr, And):
        return and_(rewrite_not(expr.left), rewrite_not(expr.right))
    if isinstance(expr, Or):
        return or_(rewrite_not(expr.left), rewrite_not(expr.right))
    return expr


class BoundExpressionVisitor:
    """Bottom-up visitor over a NOT-free bound expression."""

    def visit_true(self) -> Any:
        raise NotImplementedError()

    def visit_false(self) -> Any:
        raise NotImplementedError()

    def visit_and(self, left: Any, right: Any) -> Any:
        raise NotImplementedError()

    def visit_or(self, left: Any, right: Any) -> Any:
        raise NotImplementedError()

    def visit_predicate(self, pred: BoundPredicate) -> Any:
        raise NotImplementedError()


def visit(expr: BooleanExpression, visitor: BoundExpressionVisitor) -> Any:
    if isinstance(expr, AlwaysTrue):
        return visitor.visit_true()
    if isinstance(expr, AlwaysFalse):
        return visitor.visit_false()
    if isinstance(expr, And):
        return visitor.visit_and(visit(expr.left, visitor), visit(expr.right, visitor))
    if isinstance(expr, Or):
        return visitor.visit_or(visit(expr.left, visitor), visit(expr.right, visitor))
    if isinstance(expr, BoundPredicate):
        return visitor.visit_predicate(expr)
    if isinstance(expr, Not):
        raise ValidationError("NOT must be rewritten before evaluation (see rewrite_not)")
    raise ValidationError(f"Cannot visit unbound expression: {expr!r}")


def referenced_field_ids(expr: BooleanExpression) -> set:
    if isinstance(expr, (And, Or)):
        return referenced_field_ids(expr.left) | referenced_field_ids(expr.right)
    if isinstance(expr, Not):
        return referenced_field_ids(expr.child)
    if isinstance(expr, BoundPredicate):
        return {expr.field_id}
    return set()
