"""Rule engine: predicate matching, blocking and field transforms.

A rule is a list of predicate objects (all must match) plus one action:

- ``BLOCK``: the transaction is never written.
- ``SET_FIELD``: overwrite ``category``, ``merchant`` or
  ``transaction_type`` with ``action_value``.

Predicates are JSON objects stored on the rule row and validated with
:class:`RuleCondition`::

    {"field": "merchant", "operator": "contains", "value": "amazon"}
    {"field": "amount", "operator": "between", "value": 100, "upper": 500}
    {"field": "category", "operator": "equals", "value": "Shopping"}
    {"field": "source_text", "operator": "regex", "value": "OTP|declined"}

Precedence
----------
Rules are considered in ascending ``(priority, id)`` order. A matching
``BLOCK`` rule wins over every transform no matter where it sits in that
order. Transforms are all matched against the same input draft and applied
cumulatively in order, so when two of them write the same field the one with
the larger priority value is the one persisted.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

from db.models.ledger import Rule, RuleApplication
from pydantic import BaseModel, ConfigDict, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .errors import ValidationError
from .logging_setup import get_logger
from .models import RuleActionType, TransactionDraft, TransactionType
from .normalizers import merchant_key, utcnow

_logger = get_logger("ledger_pipeline.rules")

ConditionField = Literal["merchant", "amount", "category", "source_text"]
ConditionOperator = Literal["equals", "contains", "gt", "lt", "eq", "between", "regex"]

_ALLOWED_OPERATORS: dict[str, frozenset[str]] = {
    "merchant": frozenset({"equals", "contains"}),
    "amount": frozenset({"gt", "lt", "eq", "between"}),
    "category": frozenset({"equals"}),
    "source_text": frozenset({"regex", "contains"}),
}

TRANSFORMABLE_FIELDS: frozenset[str] = frozenset({"category", "merchant", "transaction_type"})


class RuleCondition(BaseModel):
    """One predicate of a rule."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    field: ConditionField
    operator: ConditionOperator
    value: str | int | float | Decimal
    upper: int | float | Decimal | None = None

    @model_validator(mode="after")
    def _check_combination(self) -> RuleCondition:
        allowed = _ALLOWED_OPERATORS[self.field]
        if self.operator not in allowed:
            raise ValueError(
                f"operator {self.operator!r} is not valid for field {self.field!r}; "
                f"allowed: {sorted(allowed)}"
            )
        if self.field == "amount":
            low = _as_decimal(self.value)
            if low is None:
                raise ValueError(f"amount predicate needs a numeric value, got {self.value!r}")
            if self.operator == "between":
                high = _as_decimal(self.upper)
                if high is None:
                    raise ValueError("'between' needs a numeric 'upper' bound")
                if high < low:
                    raise ValueError("'between' upper bound must be >= value")
        elif not str(self.value).strip():
            raise ValueError(f"{self.field} predicate needs a non-empty value")
        return self

    def low(self) -> Decimal:
        d = _as_decimal(self.value)
        assert d is not None  # checked by the validator
        return d

    def high(self) -> Decimal:
        d = _as_decimal(self.upper)
        assert d is not None  # checked by the validator
        return d


@dataclass(frozen=True, slots=True)
class AppliedRule:
    """A transform that fired, as recorded in ``rule_applications``."""

    rule_id: int | None
    rule_name: str
    fields_modified: dict[str, Any]


def _as_decimal(raw: Any) -> Decimal | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        d = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


# ---------------------------------------------------------------------------
# Predicate evaluation
# ---------------------------------------------------------------------------


def parse_conditions(raw: Iterable[dict[str, Any]] | None) -> list[RuleCondition]:
    """Validate stored predicate objects; raises :class:`ValidationError`."""

    try:
        return [RuleCondition.model_validate(c) for c in (raw or [])]
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid rule condition: {exc}") from exc


def _condition_matches(cond: RuleCondition, draft: TransactionDraft, source_text: str) -> bool:
    match cond.field:
        case "merchant":
            have = merchant_key(draft.merchant)
            want = merchant_key(str(cond.value))
            return have == want if cond.operator == "equals" else want in have
        case "category":
            return draft.category.strip().casefold() == str(cond.value).strip().casefold()
        case "amount":
            amount = draft.amount
            if cond.operator == "gt":
                return amount > cond.low()
            if cond.operator == "lt":
                return amount < cond.low()
            if cond.operator == "eq":
                return amount == cond.low()
            return cond.low() <= amount <= cond.high()
        case "source_text":
            if cond.operator == "contains":
                return str(cond.value).casefold() in source_text.casefold()
            try:
                return re.search(str(cond.value), source_text, flags=re.IGNORECASE) is not None
            except re.error as exc:
                _logger.warning("Ignoring invalid rule pattern %r: %s", cond.value, exc)
                return False
    return False


def matches(draft: TransactionDraft, source_text: str | None, rule: Rule) -> bool:
    """Return True when every predicate of ``rule`` holds for ``draft``.

    Rules restricted to another transaction type, rules without predicates
    and rules with malformed predicates never match.
    """

    if rule.transaction_type and rule.transaction_type != draft.transaction_type.value:
        return False
    try:
        conds = parse_conditions(rule.conditions)
    except ValidationError as exc:
        _logger.warning("Skipping rule %r with invalid conditions: %s", rule.name, exc)
        return False
    if not conds:
        return False
    text = source_text or ""
    return all(_condition_matches(c, draft, text) for c in conds)


def apply(draft: TransactionDraft, rule: Rule) -> tuple[TransactionDraft, dict[str, Any]]:
    """Apply the transform of ``rule`` to ``draft``.

    Returns the new draft and a ``{field: {"old": ..., "new": ...}}`` map of
    what changed (empty when the rule is a block rule or a no-op).
    """

    if rule.action_type != RuleActionType.SET_FIELD.value:
        return draft, {}
    transform = _transform(rule)
    if transform is None:
        return draft, {}
    return _set_field(draft, *transform)


def _transform(rule: Rule) -> tuple[str, Any] | None:
    target = rule.action_field
    value = (rule.action_value or "").strip()
    if target not in TRANSFORMABLE_FIELDS or not value:
        _logger.warning("Rule %r has an unusable transform (%r=%r)", rule.name, target, value)
        return None
    if target == "transaction_type":
        try:
            return target, TransactionType(value.upper())
        except ValueError:
            _logger.warning("Rule %r sets unknown transaction type %r", rule.name, value)
            return None
    return target, value


def _set_field(
    draft: TransactionDraft, target: str, new_value: Any
) -> tuple[TransactionDraft, dict[str, Any]]:
    old_value = getattr(draft, target)
    if old_value == new_value:
        return draft, {}
    changed = {target: {"old": str(old_value), "new": str(new_value)}}
    return draft.with_changes(**{target: new_value}), changed


def _ordered(rules: Iterable[Rule]) -> list[Rule]:
    return sorted(rules, key=lambda r: (r.priority if r.priority is not None else 0, r.id or 0))


def find_blocking_rule(
    draft: TransactionDraft, source_text: str | None, rules: Iterable[Rule]
) -> Rule | None:
    """Return the first matching ``BLOCK`` rule in priority order, if any."""

    for rule in _ordered(rules):
        if rule.action_type == RuleActionType.BLOCK.value and matches(draft, source_text, rule):
            return rule
    return None


def evaluate_rules(
    draft: TransactionDraft, source_text: str | None, rules: Iterable[Rule]
) -> tuple[TransactionDraft, list[AppliedRule]]:
    """Apply every matching transform rule in ascending priority order.

    Every matching rule with a usable transform is reported, including one
    whose value the field already holds (its ``fields_modified`` is empty).
    """

    current = draft
    applied: list[AppliedRule] = []
    for rule in _ordered(rules):
        if rule.action_type != RuleActionType.SET_FIELD.value:
            continue
        if not matches(draft, source_text, rule):
            continue
        transform = _transform(rule)
        if transform is None:
            continue
        current, changed = _set_field(current, *transform)
        applied.append(AppliedRule(rule.id, rule.name, changed))
        _logger.debug("Rule %r fired, changed %s", rule.name, sorted(changed))
    return current, applied


# ---------------------------------------------------------------------------
# Storage helpers
# ---------------------------------------------------------------------------


def load_active_rules(
    session: Session, transaction_type: TransactionType | None = None
) -> list[Rule]:
    """Active rules (optionally only those applicable to a type), by priority."""

    stmt = select(Rule).where(Rule.is_active.is_(True))
    if transaction_type is not None:
        stmt = stmt.where(
            or_(Rule.transaction_type.is_(None), Rule.transaction_type == transaction_type.value)
        )
    stmt = stmt.order_by(Rule.priority, Rule.id)
    return list(session.execute(stmt).scalars().all())


def create_rule(
    session: Session,
    *,
    name: str,
    conditions: Sequence[dict[str, Any]],
    action_type: RuleActionType | str,
    action_field: str | None = None,
    action_value: str | None = None,
    priority: int = 100,
    transaction_type: TransactionType | None = None,
    description: str | None = None,
    is_active: bool = True,
) -> Rule:
    """Validate and insert a rule. The caller owns the transaction."""

    name_n = " ".join(name.split())
    if not name_n:
        raise ValidationError("rule name must be non-empty")
    parsed = parse_conditions(conditions)
    if not parsed:
        raise ValidationError("a rule needs at least one condition")
    try:
        action = RuleActionType(str(action_type).upper())
    except ValueError as exc:
        raise ValidationError(f"unknown rule action: {action_type!r}") from exc
    if action is RuleActionType.SET_FIELD:
        if action_field not in TRANSFORMABLE_FIELDS:
            raise ValidationError(
                f"action_field must be one of {sorted(TRANSFORMABLE_FIELDS)}, got {action_field!r}"
            )
        if not (action_value or "").strip():
            raise ValidationError("SET_FIELD rules need an action_value")
    else:
        action_field = None
        action_value = None

    now = utcnow()
    row = Rule(
        name=name_n,
        description=description,
        priority=priority,
        conditions=[c.model_dump(mode="json", exclude_none=True) for c in parsed],
        action_type=action.value,
        action_field=action_field,
        action_value=action_value,
        transaction_type=transaction_type.value if transaction_type is not None else None,
        is_active=is_active,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    session.flush()
    return row


def record_applications(
    session: Session,
    transaction_id: int,
    applications: Iterable[AppliedRule],
    *,
    applied_at: datetime | None = None,
) -> int:
    """Persist which rules fired for ``transaction_id``; returns the count."""

    ts = applied_at or utcnow()
    rows = [
        RuleApplication(
            rule_id=a.rule_id,
            rule_name=a.rule_name,
            transaction_id=transaction_id,
            fields_modified=a.fields_modified,
            applied_at=ts,
        )
        for a in applications
    ]
    session.add_all(rows)
    return len(rows)


def list_rule_applications(
    session: Session, *, transaction_id: int | None = None
) -> list[RuleApplication]:
    stmt = select(RuleApplication).order_by(RuleApplication.id)
    if transaction_id is not None:
        stmt = stmt.where(RuleApplication.transaction_id == transaction_id)
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "AppliedRule",
    "RuleCondition",
    "TRANSFORMABLE_FIELDS",
    "apply",
    "create_rule",
    "evaluate_rules",
    "find_blocking_rule",
    "list_rule_applications",
    "load_active_rules",
    "matches",
    "parse_conditions",
    "record_applications",
]
