"""Exact-fingerprint deduplication against the record store.

For each chunk of candidates the deduplicator asks the store only for the
fingerprints of the accounts in the chunk, within the chunk's date span, so
the full history is never loaded. A fingerprint seen earlier in the same
batch also makes a candidate a duplicate: the first occurrence wins. The
seen-set lives as long as the :class:`Deduplicator`, which is one per batch,
so this also holds across chunks before the writer has committed them.

A lookup the store cannot answer is batch-fatal: whatever it raises reaches
the caller as :class:`PersistenceFailure`.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from typing import Protocol

from .errors import PersistenceFailure, TransactionRulesError
from .logging_setup import get_logger
from .models import DateRange, Transaction

_logger = get_logger("transaction_rules.dedup")


class FingerprintLookup(Protocol):
    def fingerprints_in_range(self, account: str, date_range: DateRange) -> set[str]: ...


@dataclass(frozen=True, slots=True)
class DedupResult:
    new: tuple[Transaction, ...] = ()
    duplicates: tuple[Transaction, ...] = ()


class Deduplicator:
    """Partition candidates into new and duplicate transactions."""

    def __init__(self, store: FingerprintLookup) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._seen: set[str] = set()

    def _lookup(self, account: str, span: DateRange) -> set[str]:
        try:
            return set(self._store.fingerprints_in_range(account, span))
        except TransactionRulesError:
            raise
        except Exception as exc:
            _logger.error(
                "dedup:lookup_failed account=%s start=%s end=%s error=%s",
                account,
                span.start,
                span.end,
                type(exc).__name__,
            )
            raise PersistenceFailure(
                f"fingerprint lookup failed for {account}: {type(exc).__name__}: {exc}"
            ) from exc

    def partition(self, candidates: Sequence[Transaction]) -> DedupResult:
        if not candidates:
            return DedupResult()

        spans: dict[str, tuple[date, date]] = {}
        for tx in candidates:
            lo, hi = spans.get(tx.account, (tx.date, tx.date))
            spans[tx.account] = (min(lo, tx.date), max(hi, tx.date))

        known = {
            account: self._lookup(account, DateRange(lo, hi))
            for account, (lo, hi) in spans.items()
        }

        new: list[Transaction] = []
        dups: list[Transaction] = []
        with self._lock:
            for tx in candidates:
                fp = tx.fingerprint
                if fp in self._seen or fp in known[tx.account]:
                    dups.append(tx)
                    continue
                self._seen.add(fp)
                new.append(tx)

        _logger.debug(
            "dedup:partition candidates=%d new=%d duplicates=%d accounts=%d",
            len(candidates),
            len(new),
            len(dups),
            len(spans),
        )
        return DedupResult(new=tuple(new), duplicates=tuple(dups))


__all__ = ["DedupResult", "Deduplicator", "FingerprintLookup"]
