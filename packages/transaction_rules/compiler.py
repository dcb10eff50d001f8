"""Rule validation and compilation into an evaluation plan.

``compile_rules`` takes the current rule definitions (models or raw
documents) and returns an immutable :class:`RulePlan`:

- disabled rules are dropped;
- every remaining rule is validated against a closed table of
  field/comparator pairs and its values are parsed once into typed operands
  (``Decimal``, ``date``, casefolded text, compiled regex);
- malformed rules are excluded and reported as :class:`RuleValidationError`
  on ``plan.rejected``; they never stop the rest from compiling;
- rules are ordered by ``(priority, id)``. Identifiers are compared as plain
  strings, so equal priorities resolve in a total, deterministic order.

The plan is cheap to rebuild and is compiled once per import batch.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from .errors import RuleValidationError
from .logging_setup import get_logger
from .models import (
    Action,
    ActionKind,
    Combinator,
    Comparator,
    Condition,
    ConditionGroup,
    Rule,
    RuleField,
    TransactionType,
)

_logger = get_logger("transaction_rules.compiler")

# ---------------------------------------------------------------------------
# Field/comparator table
# ---------------------------------------------------------------------------

TEXT_FIELDS: frozenset[RuleField] = frozenset(
    {
        RuleField.DESCRIPTION,
        RuleField.PAYEE,
        RuleField.ACCOUNT,
        RuleField.CATEGORY,
        RuleField.NOTES,
    }
)

TEXT_COMPARATORS: frozenset[Comparator] = frozenset(
    {
        Comparator.EQUALS,
        Comparator.CONTAINS,
        Comparator.STARTS_WITH,
        Comparator.ENDS_WITH,
        Comparator.MATCHES,
        Comparator.IS_EMPTY,
        Comparator.IS_NOT_EMPTY,
    }
)

AMOUNT_COMPARATORS: frozenset[Comparator] = frozenset(
    {
        Comparator.EQUALS,
        Comparator.GREATER_THAN,
        Comparator.LESS_THAN,
        Comparator.GREATER_OR_EQUAL,
        Comparator.LESS_OR_EQUAL,
        Comparator.BETWEEN,
    }
)

DATE_COMPARATORS: frozenset[Comparator] = frozenset(
    {Comparator.EQUALS, Comparator.BEFORE, Comparator.AFTER, Comparator.BETWEEN}
)

# "contains" on tags means one tag equals the value; "matches" means one tag
# matches the pattern.
TAG_COMPARATORS: frozenset[Comparator] = frozenset(
    {Comparator.CONTAINS, Comparator.MATCHES, Comparator.IS_EMPTY, Comparator.IS_NOT_EMPTY}
)

TYPE_COMPARATORS: frozenset[Comparator] = frozenset({Comparator.EQUALS})

ALLOWED: Mapping[RuleField, frozenset[Comparator]] = {
    **{f: TEXT_COMPARATORS for f in TEXT_FIELDS},
    RuleField.AMOUNT: AMOUNT_COMPARATORS,
    RuleField.DATE: DATE_COMPARATORS,
    RuleField.TAGS: TAG_COMPARATORS,
    RuleField.TRANSACTION_TYPE: TYPE_COMPARATORS,
}

_NO_VALUE = frozenset({Comparator.IS_EMPTY, Comparator.IS_NOT_EMPTY})
_TRANSACTION_TYPES = frozenset(t.value for t in TransactionType)

# Actions whose payload must be a non-empty string.
_NEEDS_VALUE = frozenset(
    {
        ActionKind.SET_CATEGORY,
        ActionKind.ADD_TAG,
        ActionKind.REMOVE_TAG,
        ActionKind.RENAME_PAYEE,
        ActionKind.SET_FLAG,
    }
)


# ---------------------------------------------------------------------------
# Compiled forms
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CompiledCondition:
    """A condition with its operands parsed to the field's type."""

    field: RuleField
    comparator: Comparator
    negate: bool = False
    text: str | None = None
    pattern: re.Pattern[str] | None = None
    number: Decimal | None = None
    number_to: Decimal | None = None
    day: date | None = None
    day_to: date | None = None


@dataclass(frozen=True, slots=True)
class CompiledGroup:
    combinator: Combinator
    conditions: tuple[CompiledCondition, ...]


@dataclass(frozen=True, slots=True)
class CompiledRule:
    id: str
    label: str
    priority: int
    combinator: Combinator
    conditions: tuple[CompiledCondition, ...]
    actions: tuple[Action, ...]
    stop_processing: bool
    # Non-empty only for rules written with nested groups.
    groups: tuple[CompiledGroup, ...] = ()
    group_combinator: Combinator = Combinator.ALL

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.priority, self.id)

    def all_conditions(self) -> tuple[CompiledCondition, ...]:
        """Flat conditions followed by every grouped condition, in rule order."""

        return self.conditions + tuple(c for g in self.groups for c in g.conditions)


@dataclass(frozen=True, slots=True)
class RulePlan:
    """Ordered, validated snapshot of the active rule set."""

    rules: tuple[CompiledRule, ...] = ()
    rejected: tuple[RuleValidationError, ...] = ()
    # Field → ids of rules with at least one condition on it.
    fields_used: Mapping[RuleField, tuple[str, ...]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)

    @property
    def rule_ids(self) -> tuple[str, ...]:
        return tuple(r.id for r in self.rules)

    @property
    def rejected_ids(self) -> tuple[str, ...]:
        return tuple(e.rule_id for e in self.rejected)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def validation_reason(exc: ValidationError) -> str:
    """First pydantic error as ``loc: message``."""

    errs = exc.errors()
    if not errs:
        return str(exc)
    e = errs[0]
    loc = ".".join(str(p) for p in e.get("loc", ()))
    return f"{loc}: {e.get('msg')}" if loc else str(e.get("msg"))


def _parse_decimal(raw: str | None, what: str) -> Decimal:
    if raw is None or not raw.strip():
        raise ValueError(f"{what} is required")
    try:
        d = Decimal(raw.strip())
    except InvalidOperation:
        raise ValueError(f"{what} is not a number: {raw!r}") from None
    if not d.is_finite():
        raise ValueError(f"{what} must be finite: {raw!r}")
    return d


def _parse_day(raw: str | None, what: str) -> date:
    if raw is None or not raw.strip():
        raise ValueError(f"{what} is required")
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        raise ValueError(f"{what} is not an ISO date (YYYY-MM-DD): {raw!r}") from None


def compile_condition(cond: Condition) -> CompiledCondition:
    """Validate one condition and parse its operands; raises ``ValueError``."""

    allowed = ALLOWED[cond.field]
    if cond.comparator not in allowed:
        raise ValueError(
            f"comparator {cond.comparator.value!r} is not valid for field {cond.field.value!r}"
        )
    if cond.value_to is not None and cond.comparator is not Comparator.BETWEEN:
        raise ValueError(f"value_to is only valid with 'between', not {cond.comparator.value!r}")

    base = {"field": cond.field, "comparator": cond.comparator, "negate": cond.negate}

    if cond.comparator in _NO_VALUE:
        if cond.value not in (None, ""):
            raise ValueError(f"{cond.comparator.value!r} takes no value")
        return CompiledCondition(**base)

    if cond.field is RuleField.TRANSACTION_TYPE:
        kind = (cond.value or "").strip().casefold()
        if kind not in _TRANSACTION_TYPES:
            raise ValueError(
                f"transaction_type must be one of {sorted(t.value for t in TransactionType)}, "
                f"got {cond.value!r}"
            )
        return CompiledCondition(**base, text=kind)

    if cond.field in TEXT_FIELDS or cond.field is RuleField.TAGS:
        if cond.value is None:
            raise ValueError(f"{cond.comparator.value!r} on {cond.field.value!r} needs a value")
        # Blank patterns compile to "" and never match.
        if not cond.value.strip():
            return CompiledCondition(**base, text="")
        if cond.comparator is Comparator.MATCHES:
            try:
                pattern = re.compile(cond.value, re.IGNORECASE)
            except re.error as exc:
                raise ValueError(f"invalid pattern {cond.value!r}: {exc}") from None
            return CompiledCondition(**base, text=cond.value, pattern=pattern)
        if cond.field is RuleField.TAGS:
            return CompiledCondition(**base, text=cond.value.strip().casefold())
        return CompiledCondition(**base, text=cond.value.casefold())

    if cond.field is RuleField.AMOUNT:
        number = _parse_decimal(cond.value, "amount value")
        number_to = None
        if cond.comparator is Comparator.BETWEEN:
            number_to = _parse_decimal(cond.value_to, "amount value_to")
            if number_to < number:
                raise ValueError(f"empty amount range: {number} > {number_to}")
        return CompiledCondition(**base, number=number, number_to=number_to)

    day = _parse_day(cond.value, "date value")
    day_to = None
    if cond.comparator is Comparator.BETWEEN:
        day_to = _parse_day(cond.value_to, "date value_to")
        if day_to < day:
            raise ValueError(f"empty date range: {day} > {day_to}")
    return CompiledCondition(**base, day=day, day_to=day_to)


def _check_action(action: Action) -> None:
    if action.kind in _NEEDS_VALUE and not (action.value or "").strip():
        raise ValueError(f"action {action.kind.value!r} needs a non-empty value")


def _compile_conditions(
    rule_id: str, conditions: tuple[Condition, ...], where: str = ""
) -> tuple[CompiledCondition, ...]:
    compiled: list[CompiledCondition] = []
    for i, cond in enumerate(conditions):
        try:
            compiled.append(compile_condition(cond))
        except ValueError as exc:
            raise RuleValidationError(rule_id, f"{where}condition {i}: {exc}") from exc
    return tuple(compiled)


def _compile_group(rule_id: str, group: ConditionGroup, index: int) -> CompiledGroup:
    conditions = _compile_conditions(rule_id, group.conditions, f"group {index} ")
    if not conditions:
        _logger.warning("compile:empty_group rule_id=%s group=%d (never matches)", rule_id, index)
    return CompiledGroup(combinator=group.combinator, conditions=conditions)


def compile_rule(rule: Rule) -> CompiledRule:
    """Compile a single rule or raise :class:`RuleValidationError`."""

    if rule.conditions and rule.groups:
        raise RuleValidationError(rule.id, "use either conditions or groups, not both")
    conditions = _compile_conditions(rule.id, rule.conditions)
    groups = tuple(_compile_group(rule.id, g, i) for i, g in enumerate(rule.groups))
    for i, action in enumerate(rule.actions):
        try:
            _check_action(action)
        except ValueError as exc:
            raise RuleValidationError(rule.id, f"action {i}: {exc}") from exc
    if not conditions and not groups:
        _logger.warning("compile:no_conditions rule_id=%s (rule will never match)", rule.id)
    return CompiledRule(
        id=rule.id,
        label=rule.label,
        priority=rule.priority,
        combinator=rule.combinator,
        conditions=conditions,
        actions=tuple(rule.actions),
        stop_processing=rule.stop_processing,
        groups=groups,
        group_combinator=rule.group_combinator,
    )


def _coerce(item: Rule | Mapping[str, Any], position: int) -> Rule:
    if isinstance(item, Rule):
        return item
    rid = str(item.get("id") or f"#{position}") if isinstance(item, Mapping) else f"#{position}"
    try:
        return Rule.model_validate(item)
    except ValidationError as exc:
        raise RuleValidationError(rid, validation_reason(exc)) from exc


# ---------------------------------------------------------------------------
# Public entrypoint
# ---------------------------------------------------------------------------


def compile_rules(rules: Iterable[Rule | Mapping[str, Any]]) -> RulePlan:
    """Build a :class:`RulePlan` from the current rule definitions."""

    compiled: list[CompiledRule] = []
    rejected: list[RuleValidationError] = []
    seen_ids: set[str] = set()
    disabled = 0

    for position, item in enumerate(rules):
        try:
            rule = _coerce(item, position)
        except RuleValidationError as exc:
            rejected.append(exc)
            continue
        if rule.id in seen_ids:
            rejected.append(RuleValidationError(rule.id, "duplicate rule id"))
            continue
        seen_ids.add(rule.id)
        if not rule.enabled:
            disabled += 1
            continue
        try:
            compiled.append(compile_rule(rule))
        except RuleValidationError as exc:
            rejected.append(exc)

    compiled.sort(key=lambda r: r.sort_key)

    fields_used: dict[RuleField, list[str]] = {}
    for r in compiled:
        for f in dict.fromkeys(c.field for c in r.all_conditions()):
            fields_used.setdefault(f, []).append(r.id)

    for err in rejected:
        _logger.warning("compile:rule_rejected rule_id=%s reason=%s", err.rule_id, err.reason)
    _logger.info(
        "compile:done rules=%d rejected=%d disabled=%d",
        len(compiled),
        len(rejected),
        disabled,
    )
    return RulePlan(
        rules=tuple(compiled),
        rejected=tuple(rejected),
        fields_used={f: tuple(ids) for f, ids in fields_used.items()},
    )


__all__ = [
    "ALLOWED",
    "CompiledCondition",
    "CompiledGroup",
    "CompiledRule",
    "RulePlan",
    "compile_condition",
    "compile_rule",
    "compile_rules",
    "validation_reason",
]
