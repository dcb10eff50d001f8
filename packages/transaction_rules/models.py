"""Data models for transactions, rules and import batches.

Two families live here:

- immutable runtime records (``Transaction``, ``RuleExecutionRecord``,
  ``ImportBatch``, progress events) as frozen ``dataclass`` types, and
- user-authored rule definitions (``Rule``, ``Condition``, ``Action``) as frozen
  pydantic models, validated when loaded from JSON or a rule store.

Amounts are always ``Decimal``; dates are calendar ``date`` values without a
timezone.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from .errors import (
    MalformedRowError,
    RuleExecutionFailure,
    RuleValidationError,
    TransactionRulesError,
)

# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionType(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"
    # Zero-amount rows (fee reversals, balance markers).
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class Transaction:
    """A canonical transaction produced by the normalizer.

    ``fingerprint`` is derived from the immutable fields (account, date,
    amount, description and any profile-configured extra columns) and never
    changes after normalization. Rule actions only touch ``category``,
    ``tags``, ``flags``, ``payee`` and ``notes``.
    """

    id: str
    date: date
    amount: Decimal
    currency: str
    description: str
    account: str
    fingerprint: str
    payee: str | None = None
    category: str | None = None
    tags: frozenset[str] = frozenset()
    flags: frozenset[str] = frozenset()
    notes: str | None = None
    batch_id: str | None = None
    row_number: int | None = None

    @property
    def transaction_type(self) -> TransactionType:
        """Direction of the money flow, derived from the amount sign."""

        if self.amount > 0:
            return TransactionType.INCOME
        if self.amount < 0:
            return TransactionType.EXPENSE
        return TransactionType.UNKNOWN

    def categorization_key(self) -> tuple[Any, ...]:
        """Fields a rule pass may change, for before/after comparisons."""

        return (self.category, self.tags, self.flags, self.payee, self.notes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "amount": f"{self.amount:.2f}",
            "currency": self.currency,
            "description": self.description,
            "account": self.account,
            "fingerprint": self.fingerprint,
            "payee": self.payee,
            "category": self.category,
            "tags": sorted(self.tags),
            "flags": sorted(self.flags),
            "notes": self.notes,
            "batch_id": self.batch_id,
            "row_number": self.row_number,
        }


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive calendar date range."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"DateRange end {self.end} precedes start {self.start}")

    def __contains__(self, day: object) -> bool:
        return isinstance(day, date) and self.start <= day <= self.end


# ---------------------------------------------------------------------------
# Rule definitions (user-owned, read-only to the engine)
# ---------------------------------------------------------------------------


class RuleField(StrEnum):
    DESCRIPTION = "description"
    PAYEE = "payee"
    AMOUNT = "amount"
    DATE = "date"
    ACCOUNT = "account"
    CATEGORY = "category"
    NOTES = "notes"
    TAGS = "tags"
    TRANSACTION_TYPE = "transaction_type"


class Comparator(StrEnum):
    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES = "matches"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    BETWEEN = "between"
    BEFORE = "before"
    AFTER = "after"


class Combinator(StrEnum):
    ALL = "all"
    ANY = "any"


class ActionKind(StrEnum):
    SET_CATEGORY = "set_category"
    CLEAR_CATEGORY = "clear_category"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    CLEAR_TAGS = "clear_tags"
    RENAME_PAYEE = "rename_payee"
    SET_FLAG = "set_flag"
    SET_NOTES = "set_notes"
    STOP_PROCESSING = "stop_processing"


def _scalar_to_str(v: Any) -> Any:
    # Numbers typed directly in JSON are kept exact by going through str().
    if isinstance(v, bool):
        raise ValueError("booleans are not valid comparison values")
    if isinstance(v, int | float | Decimal):
        return str(v)
    if isinstance(v, date):
        return v.isoformat()
    return v


class Condition(BaseModel):
    """A single predicate over one transaction field.

    ``value`` is kept as text; the compiler parses it into the type the
    field needs. ``value_to`` is the inclusive upper bound for ``between``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: RuleField
    comparator: Comparator
    value: str | None = None
    value_to: str | None = None
    negate: bool = False

    @field_validator("value", "value_to", mode="before")
    @classmethod
    def _coerce_scalar(cls, v: Any) -> Any:
        return _scalar_to_str(v)


class Action(BaseModel):
    """One mutation applied when a rule matches."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: ActionKind
    value: str | None = None


class ConditionGroup(BaseModel):
    """Conditions combined with their own combinator, nested inside a rule."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    combinator: Combinator = Combinator.ALL
    conditions: tuple[Condition, ...] = ()


class Rule(BaseModel):
    """A named, prioritized bundle of conditions and actions.

    Conditions come either flat (``conditions`` joined by ``combinator``) or
    nested (``groups``, each joined by its own combinator, the group results
    joined by ``group_combinator``). A rule may not use both forms.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    id: str
    label: str = ""
    enabled: bool = True
    priority: int = 100
    combinator: Combinator = Combinator.ALL
    conditions: tuple[Condition, ...] = ()
    groups: tuple[ConditionGroup, ...] = ()
    group_combinator: Combinator = Combinator.ALL
    actions: tuple[Action, ...] = ()
    stop_processing: bool = False

    @field_validator("id")
    @classmethod
    def _id_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("rule id must be non-empty")
        return v


class RuleSet(BaseModel):
    """Top-level shape of a rules JSON document: ``{"rules": [...]}``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rules: tuple[Rule, ...] = ()


# ---------------------------------------------------------------------------
# Execution records and statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuleExecutionRecord:
    """Audit entry for one rule evaluated against one transaction."""

    rule_id: str
    transaction_id: str
    timestamp: datetime
    matched: bool
    condition_results: tuple[bool, ...] = ()
    actions_applied: tuple[ActionKind, ...] = ()


# ---------------------------------------------------------------------------
# Import batches and progress
# ---------------------------------------------------------------------------


class ImportStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Incremental progress for an in-flight import."""

    batch_id: str
    processed_count: int
    total_count: int
    accepted_count: int
    duplicate_count: int
    malformed_count: int
    error_count: int

    @property
    def fraction(self) -> float:
        if self.total_count <= 0:
            return 1.0
        return min(1.0, self.processed_count / self.total_count)


@dataclass(frozen=True, slots=True)
class ImportBatch:
    """Final summary of one import; immutable once built.

    ``failure`` is set for batch-fatal outcomes (encoding, missing file,
    source format, persistence, cancellation) and carries the original
    exception; counts reflect the work completed before it happened.
    """

    id: str
    source: str
    profile: str
    encoding: str | None
    status: ImportStatus
    started_at: datetime
    finished_at: datetime
    row_count: int = 0
    accepted_count: int = 0
    duplicate_count: int = 0
    malformed_count: int = 0
    error_count: int = 0
    committed_count: int = 0
    categorized_count: int = 0
    malformed_rows: tuple[MalformedRowError, ...] = ()
    rule_failures: tuple[RuleExecutionFailure, ...] = ()
    rejected_rules: tuple[RuleValidationError, ...] = ()
    failure: TransactionRulesError | None = None
    rule_matches: Mapping[str, int] = field(default_factory=dict)

    @property
    def elapsed_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def skipped_rule_ids(self) -> tuple[str, ...]:
        """Rule ids excluded at compile time or failing during the run."""

        ids = [r.rule_id for r in self.rejected_rules]
        ids.extend(f.rule_id for f in self.rule_failures)
        return tuple(dict.fromkeys(ids))

    def raise_for_failure(self) -> None:
        """Re-raise the batch-fatal error, if any."""

        if self.failure is not None:
            raise self.failure

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "profile": self.profile,
            "encoding": self.encoding,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "row_count": self.row_count,
            "accepted_count": self.accepted_count,
            "duplicate_count": self.duplicate_count,
            "malformed_count": self.malformed_count,
            "error_count": self.error_count,
            "committed_count": self.committed_count,
            "categorized_count": self.categorized_count,
            "malformed_rows": [e.to_dict() for e in self.malformed_rows],
            "rule_failures": [e.to_dict() for e in self.rule_failures],
            "rejected_rules": [e.to_dict() for e in self.rejected_rules],
            "failure": self.failure.to_dict() if self.failure is not None else None,
        }


__all__ = [
    "Transaction",
    "TransactionType",
    "DateRange",
    "RuleField",
    "Comparator",
    "Combinator",
    "ActionKind",
    "Condition",
    "ConditionGroup",
    "Action",
    "Rule",
    "RuleSet",
    "RuleExecutionRecord",
    "ImportStatus",
    "ProgressEvent",
    "ImportBatch",
]
