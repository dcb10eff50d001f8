"""Condition (trigger) evaluation against a single transaction.

Semantics
---------
- Text comparisons are case-insensitive (``str.casefold``). A missing text
  field (e.g. no payee) compares as the empty string.
- An empty or whitespace-only pattern for ``equals``/``contains``/
  ``starts_with``/``ends_with``/``matches`` never matches, and ``negate``
  does not turn it into a catch-all.
- Amount comparisons use the signed ``Decimal`` value; ``between`` is
  inclusive on both ends.
- Date comparisons use calendar dates; ``between`` is inclusive.
- ``tags``: ``contains`` is true when one tag equals the value,
  ``matches`` when one tag matches the pattern.
- ``transaction_type`` is ``income``, ``expense`` or ``unknown`` (zero amount).
- ``all`` needs every condition, ``any`` needs one; a rule without
  conditions never matches. Grouped rules combine each group with its own
  combinator and the group results with the rule's ``group_combinator``; an
  empty group never matches.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from .compiler import CompiledCondition, CompiledGroup, CompiledRule
from .models import Combinator, Comparator, RuleField, Transaction


@dataclass(frozen=True, slots=True)
class TriggerResult:
    matched: bool
    # One entry per condition, in rule order (grouped conditions flattened).
    condition_results: tuple[bool, ...] = ()
    group_results: tuple[bool, ...] = ()


def _text_value(tx: Transaction, field: RuleField) -> str:
    match field:
        case RuleField.DESCRIPTION:
            raw = tx.description
        case RuleField.PAYEE:
            raw = tx.payee
        case RuleField.ACCOUNT:
            raw = tx.account
        case RuleField.CATEGORY:
            raw = tx.category
        case RuleField.NOTES:
            raw = tx.notes
        case _:
            raise ValueError(f"{field.value!r} is not a text field")
    return raw or ""


# ---------------------------------------------------------------------------
# Comparators
# ---------------------------------------------------------------------------


def _text(cond: CompiledCondition, tx: Transaction) -> bool | None:
    """Raw text result, or ``None`` when the pattern is empty (never matches)."""

    value = _text_value(tx, cond.field)
    match cond.comparator:
        case Comparator.IS_EMPTY:
            return not value.strip()
        case Comparator.IS_NOT_EMPTY:
            return bool(value.strip())
        case Comparator.MATCHES:
            if cond.pattern is None:
                return None
            return cond.pattern.search(value) is not None

    needle = cond.text or ""
    if not needle.strip():
        return None
    hay = value.casefold()
    match cond.comparator:
        case Comparator.EQUALS:
            return hay.strip() == needle.strip()
        case Comparator.CONTAINS:
            return needle in hay
        case Comparator.STARTS_WITH:
            return hay.startswith(needle)
        case Comparator.ENDS_WITH:
            return hay.endswith(needle)
    raise ValueError(f"unsupported text comparator {cond.comparator.value!r}")


def _tags(cond: CompiledCondition, tx: Transaction) -> bool | None:
    tags = tx.tags
    match cond.comparator:
        case Comparator.IS_EMPTY:
            return not tags
        case Comparator.IS_NOT_EMPTY:
            return bool(tags)
        case Comparator.MATCHES:
            if cond.pattern is None:
                return None
            return any(cond.pattern.search(t) is not None for t in tags)
        case Comparator.CONTAINS:
            needle = (cond.text or "").strip()
            if not needle:
                return None
            return any(t.strip().casefold() == needle for t in tags)
    raise ValueError(f"unsupported tags comparator {cond.comparator.value!r}")


def _transaction_type(cond: CompiledCondition, tx: Transaction) -> bool:
    if cond.comparator is Comparator.EQUALS:
        return tx.transaction_type.value == cond.text
    raise ValueError(f"unsupported transaction_type comparator {cond.comparator.value!r}")


def _amount(cond: CompiledCondition, tx: Transaction) -> bool:
    amount = tx.amount
    n = cond.number
    match cond.comparator:
        case Comparator.EQUALS:
            return amount == n
        case Comparator.GREATER_THAN:
            return amount > n
        case Comparator.LESS_THAN:
            return amount < n
        case Comparator.GREATER_OR_EQUAL:
            return amount >= n
        case Comparator.LESS_OR_EQUAL:
            return amount <= n
        case Comparator.BETWEEN:
            return n <= amount <= cond.number_to
    raise ValueError(f"unsupported amount comparator {cond.comparator.value!r}")


def _date(cond: CompiledCondition, tx: Transaction) -> bool:
    day = tx.date
    match cond.comparator:
        case Comparator.EQUALS:
            return day == cond.day
        case Comparator.BEFORE:
            return day < cond.day
        case Comparator.AFTER:
            return day > cond.day
        case Comparator.BETWEEN:
            return cond.day <= day <= cond.day_to
    raise ValueError(f"unsupported date comparator {cond.comparator.value!r}")


_BY_FIELD: dict[RuleField, Callable[[CompiledCondition, Transaction], bool | None]] = {
    RuleField.DESCRIPTION: _text,
    RuleField.PAYEE: _text,
    RuleField.ACCOUNT: _text,
    RuleField.CATEGORY: _text,
    RuleField.NOTES: _text,
    RuleField.TAGS: _tags,
    RuleField.AMOUNT: _amount,
    RuleField.DATE: _date,
    RuleField.TRANSACTION_TYPE: _transaction_type,
}


def evaluate_condition(cond: CompiledCondition, tx: Transaction) -> bool:
    result = _BY_FIELD[cond.field](cond, tx)
    if result is None:
        return False
    return not result if cond.negate else result


def _combine(combinator: Combinator, results: tuple[bool, ...]) -> bool:
    if not results:
        return False
    return any(results) if combinator is Combinator.ANY else all(results)


def _evaluate_group(group: CompiledGroup, tx: Transaction) -> tuple[bool, tuple[bool, ...]]:
    results = tuple(evaluate_condition(c, tx) for c in group.conditions)
    return _combine(group.combinator, results), results


def evaluate_rule(rule: CompiledRule, tx: Transaction) -> TriggerResult:
    """Evaluate every condition of ``rule`` and combine per its combinator.

    All conditions are evaluated (no short-circuit) so diagnostics show the
    full per-condition picture.
    """

    if rule.groups:
        group_results: list[bool] = []
        flat: list[bool] = []
        for group in rule.groups:
            matched, results = _evaluate_group(group, tx)
            group_results.append(matched)
            flat.extend(results)
        return TriggerResult(
            matched=_combine(rule.group_combinator, tuple(group_results)),
            condition_results=tuple(flat),
            group_results=tuple(group_results),
        )

    results = tuple(evaluate_condition(c, tx) for c in rule.conditions)
    return TriggerResult(matched=_combine(rule.combinator, results), condition_results=results)


__all__ = ["TriggerResult", "evaluate_condition", "evaluate_rule"]
