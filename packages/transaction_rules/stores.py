"""Interfaces to the external collaborators plus in-memory implementations.

The core only needs two narrow seams:

- ``RecordStore``: ``fingerprints_in_range`` for deduplication and ``commit``
  for batched persistence. ``transactions_in_range`` and
  ``update_transactions`` back the "re-run rules" operation.
- ``RuleSource``: ``list_rules``, ``get_rule`` and change notifications. The
  core never writes rules.

``InMemoryRecordStore`` and ``InMemoryRuleSource`` serve tests and embedding
hosts; ``JsonRuleSource`` reads a rules document from disk. The SQL-backed
record store lives in :mod:`transaction_rules.persistence`.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from os import PathLike
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from .compiler import validation_reason
from .errors import RuleValidationError
from .logging_setup import get_logger
from .models import DateRange, Rule, Transaction

_logger = get_logger("transaction_rules.stores")

type RuleDefinition = Rule | Mapping[str, Any]
type RulesListener = Callable[[], None]


@runtime_checkable
class RecordStore(Protocol):
    def fingerprints_in_range(self, account: str, date_range: DateRange) -> set[str]:
        """Fingerprints already persisted for ``account`` within ``date_range``."""
        ...

    def commit(self, transactions: Sequence[Transaction]) -> int:
        """Persist ``transactions`` atomically; return how many were new.

        Must raise :class:`PersistenceFailure` (or let an exception escape)
        when nothing from this call was persisted.
        """
        ...


@runtime_checkable
class RerunCapableStore(RecordStore, Protocol):
    def transactions_in_range(
        self, account: str | None, date_range: DateRange | None
    ) -> list[Transaction]: ...

    def update_transactions(self, transactions: Sequence[Transaction]) -> int: ...


@runtime_checkable
class RuleSource(Protocol):
    def list_rules(self) -> Sequence[RuleDefinition]:
        """Current rule definitions as models or raw documents.

        Raw documents are validated at compile time so one malformed
        definition only excludes itself.
        """
        ...

    def get_rule(self, rule_id: str) -> Rule | None: ...

    def subscribe(self, listener: RulesListener) -> Callable[[], None]:
        """Register ``listener`` for change notifications; returns an unsubscribe."""
        ...


# ---------------------------------------------------------------------------
# Record stores
# ---------------------------------------------------------------------------


class InMemoryRecordStore:
    """Thread-safe dict-backed store keyed by fingerprint."""

    def __init__(self, transactions: Iterable[Transaction] = ()) -> None:
        self._lock = threading.Lock()
        self._by_fp: dict[str, Transaction] = {}
        self.commit_calls = 0
        for tx in transactions:
            self._by_fp.setdefault(tx.fingerprint, tx)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_fp)

    def all(self) -> list[Transaction]:
        with self._lock:
            return list(self._by_fp.values())

    def fingerprints_in_range(self, account: str, date_range: DateRange) -> set[str]:
        with self._lock:
            return {
                fp
                for fp, tx in self._by_fp.items()
                if tx.account == account and tx.date in date_range
            }

    def commit(self, transactions: Sequence[Transaction]) -> int:
        with self._lock:
            self.commit_calls += 1
            inserted = 0
            for tx in transactions:
                if tx.fingerprint not in self._by_fp:
                    self._by_fp[tx.fingerprint] = tx
                    inserted += 1
            return inserted

    def transactions_in_range(
        self, account: str | None, date_range: DateRange | None
    ) -> list[Transaction]:
        with self._lock:
            out = [
                tx
                for tx in self._by_fp.values()
                if (account is None or tx.account == account)
                and (date_range is None or tx.date in date_range)
            ]
        out.sort(key=lambda t: (t.date, t.fingerprint))
        return out

    def update_transactions(self, transactions: Sequence[Transaction]) -> int:
        with self._lock:
            updated = 0
            for tx in transactions:
                if tx.fingerprint in self._by_fp:
                    self._by_fp[tx.fingerprint] = tx
                    updated += 1
            return updated


# ---------------------------------------------------------------------------
# Rule sources
# ---------------------------------------------------------------------------


class InMemoryRuleSource:
    """Mutable rule collection with change notifications.

    ``list_rules`` returns a copy, so callers holding the result are not
    affected by later ``set_rules``/``upsert`` calls.
    """

    def __init__(self, rules: Iterable[RuleDefinition] = ()) -> None:
        self._lock = threading.Lock()
        self._rules: list[RuleDefinition] = list(rules)
        self._listeners: list[RulesListener] = []

    def list_rules(self) -> list[RuleDefinition]:
        with self._lock:
            return list(self._rules)

    def get_rule(self, rule_id: str) -> Rule | None:
        for item in self.list_rules():
            rid = item.id if isinstance(item, Rule) else str(item.get("id", ""))
            if rid != rule_id:
                continue
            if isinstance(item, Rule):
                return item
            try:
                return Rule.model_validate(item)
            except ValidationError as exc:
                raise RuleValidationError(rule_id, validation_reason(exc)) from exc
        return None

    def set_rules(self, rules: Iterable[RuleDefinition]) -> None:
        with self._lock:
            self._rules = list(rules)
        self._notify()

    def upsert(self, rule: Rule) -> None:
        with self._lock:
            kept = [
                r
                for r in self._rules
                if (r.id if isinstance(r, Rule) else r.get("id")) != rule.id
            ]
            kept.append(rule)
            self._rules = kept
        self._notify()

    def subscribe(self, listener: RulesListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for cb in listeners:
            try:
                cb()
            except Exception:  # noqa: BLE001
                _logger.exception("rules:listener_failed listener=%r", cb)


class JsonRuleSource(InMemoryRuleSource):
    """Rules read from a JSON document: ``{"rules": [...]}`` or a bare list.

    Entries are kept as raw documents; validation happens at compile time.
    ``reload()`` re-reads the file and notifies subscribers.
    """

    def __init__(self, path: str | PathLike[str]) -> None:
        self.path = Path(path)
        super().__init__(self._read())

    def _read(self) -> list[RuleDefinition]:
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        items = data.get("rules") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ValueError(f"{self.path}: expected a list of rules or {{'rules': [...]}}")
        out: list[RuleDefinition] = []
        for i, item in enumerate(items):
            if isinstance(item, dict):
                out.append(item)
            else:
                # Keep the position visible; the compiler rejects it.
                out.append({"id": f"#{i}", "_invalid": item})
        return out

    def reload(self) -> None:
        self.set_rules(self._read())

    def save(self, rules: Iterable[Rule]) -> None:
        payload = {"rules": [r.model_dump(mode="json") for r in rules]}
        self.path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        self.reload()


__all__ = [
    "RecordStore",
    "RerunCapableStore",
    "RuleSource",
    "RuleDefinition",
    "InMemoryRecordStore",
    "InMemoryRuleSource",
    "JsonRuleSource",
]
