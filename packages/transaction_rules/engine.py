"""Rule engine: drive trigger evaluation and action execution per transaction.

Per transaction the engine walks the compiled plan in ``(priority, id)``
order::

    pending -> evaluating(rule i) -> [matched -> executing] -> evaluating(rule i+1) ... -> done

and stops early when a matched rule (or one of its actions) requests
``stop_processing``. Rules within one transaction are strictly sequential;
independent transactions fan out over a bounded thread pool (``p_map``) and
results come back in input order, so concurrent and sequential runs produce
identical outcomes.

An exception while evaluating or applying one rule to one transaction is
recorded as :class:`RuleExecutionFailure` and the next rule runs.

Shared statistics (:class:`EngineStats`) sit behind a single lock and are
updated once per transaction.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from .actions import apply_actions
from .compiler import RulePlan
from .config import resolve_max_workers
from .errors import RuleExecutionFailure
from .logging_setup import get_logger
from .models import ActionKind, RuleExecutionRecord, Transaction
from .pmap import p_map
from .triggers import evaluate_rule

_logger = get_logger("transaction_rules.engine")


class TxState(StrEnum):
    PENDING = "pending"
    EVALUATING = "evaluating"
    EXECUTING = "executing"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class TransactionOutcome:
    """Terminal state of one transaction's pass through the plan."""

    original: Transaction
    transaction: Transaction
    records: tuple[RuleExecutionRecord, ...] = ()
    failures: tuple[RuleExecutionFailure, ...] = ()
    stopped_by: str | None = None
    state: TxState = TxState.DONE

    @property
    def changed(self) -> bool:
        return self.original.categorization_key() != self.transaction.categorization_key()

    @property
    def matched_rule_ids(self) -> tuple[str, ...]:
        return tuple(r.rule_id for r in self.records if r.matched)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuleStats:
    rule_id: str
    evaluations: int = 0
    matches: int = 0
    failures: int = 0
    total_seconds: float = 0.0

    @property
    def average_seconds(self) -> float:
        return self.total_seconds / self.evaluations if self.evaluations else 0.0


@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    transactions_processed: int = 0
    transactions_affected: int = 0
    rules_fired: int = 0
    failures: int = 0
    elapsed_seconds: float = 0.0
    per_rule: Mapping[str, RuleStats] = field(default_factory=dict)

    @property
    def rule_matches(self) -> dict[str, int]:
        return {rid: s.matches for rid, s in self.per_rule.items() if s.matches}


@dataclass(slots=True)
class _RuleTally:
    evaluations: int = 0
    matches: int = 0
    failures: int = 0
    seconds: float = 0.0


class EngineStats:
    """Thread-safe aggregate over every transaction the engine processed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processed = 0
        self._affected = 0
        self._fired = 0
        self._failures = 0
        self._elapsed = 0.0
        self._per_rule: dict[str, _RuleTally] = {}

    def record(
        self,
        outcome: TransactionOutcome,
        timings: Sequence[tuple[str, float, bool, bool]],
    ) -> None:
        """Fold one transaction in; ``timings`` is ``(rule_id, seconds, matched, failed)``."""

        with self._lock:
            self._processed += 1
            if outcome.changed:
                self._affected += 1
            self._failures += len(outcome.failures)
            for rule_id, seconds, matched, failed in timings:
                tally = self._per_rule.setdefault(rule_id, _RuleTally())
                tally.evaluations += 1
                tally.seconds += seconds
                if matched:
                    tally.matches += 1
                    self._fired += 1
                if failed:
                    tally.failures += 1

    def add_elapsed(self, seconds: float) -> None:
        with self._lock:
            self._elapsed += seconds

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                transactions_processed=self._processed,
                transactions_affected=self._affected,
                rules_fired=self._fired,
                failures=self._failures,
                elapsed_seconds=self._elapsed,
                per_rule={
                    rid: RuleStats(
                        rule_id=rid,
                        evaluations=t.evaluations,
                        matches=t.matches,
                        failures=t.failures,
                        total_seconds=t.seconds,
                    )
                    for rid, t in self._per_rule.items()
                },
            )


@dataclass(frozen=True, slots=True)
class EngineResult:
    outcomes: tuple[TransactionOutcome, ...]
    stats: StatsSnapshot

    @property
    def transactions(self) -> list[Transaction]:
        return [o.transaction for o in self.outcomes]

    @property
    def failures(self) -> list[RuleExecutionFailure]:
        return [f for o in self.outcomes for f in o.failures]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RuleEngine:
    """Apply a compiled :class:`RulePlan` to transactions.

    Parameters
    ----------
    plan:
        Snapshot produced by :func:`compile_rules`; never modified.
    max_workers:
        Pool size for :meth:`run`; defaults to the CPU count (capped).
    stats:
        Aggregate to update; a fresh one is created when omitted. Pass a
        shared instance to accumulate across several engines.
    """

    def __init__(
        self,
        plan: RulePlan,
        *,
        max_workers: int | None = None,
        stats: EngineStats | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.plan = plan
        self.max_workers = resolve_max_workers(max_workers)
        self.stats = stats if stats is not None else EngineStats()
        self._clock = clock

    def process(self, tx: Transaction) -> TransactionOutcome:
        """Run ``tx`` through the ordered rule list until done or stopped."""

        current = tx
        records: list[RuleExecutionRecord] = []
        failures: list[RuleExecutionFailure] = []
        timings: list[tuple[str, float, bool, bool]] = []
        stopped_by: str | None = None
        state = TxState.PENDING

        for rule in self.plan.rules:
            state = TxState.EVALUATING
            t0 = self._clock()
            try:
                trigger = evaluate_rule(rule, current)
                applied: tuple[ActionKind, ...] = ()
                stop = False
                if trigger.matched:
                    state = TxState.EXECUTING
                    outcome = apply_actions(rule.actions, current)
                    current = outcome.transaction
                    applied = outcome.applied
                    stop = outcome.stop_processing or rule.stop_processing
            except Exception as exc:  # noqa: BLE001
                failure = RuleExecutionFailure(rule.id, tx.id, f"{type(exc).__name__}: {exc}")
                failures.append(failure)
                timings.append((rule.id, self._clock() - t0, False, True))
                _logger.warning(
                    "engine:rule_failed rule_id=%s transaction_id=%s state=%s reason=%s",
                    rule.id,
                    tx.id,
                    state,
                    failure.reason,
                )
                continue

            timings.append((rule.id, self._clock() - t0, trigger.matched, False))
            records.append(
                RuleExecutionRecord(
                    rule_id=rule.id,
                    transaction_id=tx.id,
                    timestamp=datetime.now(UTC),
                    matched=trigger.matched,
                    condition_results=trigger.condition_results,
                    actions_applied=applied,
                )
            )
            if stop:
                stopped_by = rule.id
                break

        state = TxState.DONE
        result = TransactionOutcome(
            original=tx,
            transaction=current,
            records=tuple(records),
            failures=tuple(failures),
            stopped_by=stopped_by,
            state=state,
        )
        self.stats.record(result, timings)
        return result

    def run(
        self,
        transactions: Iterable[Transaction],
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> EngineResult:
        """Process ``transactions`` concurrently; outcomes keep input order.

        ``should_stop`` is forwarded to :func:`p_map`; when it fires,
        ``concurrent.futures.CancelledError`` propagates to the caller.
        """

        items = list(transactions)
        t0 = self._clock()
        workers = min(self.max_workers, len(items))
        if workers <= 1:
            outcomes = []
            for tx in items:
                if should_stop is not None and should_stop():
                    raise CancelledError("rule engine run stopped")
                outcomes.append(self.process(tx))
        else:
            outcomes = p_map(
                items,
                self.process,
                concurrency=workers,
                should_stop=should_stop,
                thread_name_prefix="tr-engine",
            )
        elapsed = self._clock() - t0
        self.stats.add_elapsed(elapsed)
        _logger.debug(
            "engine:run_done transactions=%d workers=%d seconds=%.4f",
            len(items),
            max(workers, 1),
            elapsed,
        )
        return EngineResult(outcomes=tuple(outcomes), stats=self.stats.snapshot())


def categorize(
    plan: RulePlan,
    transactions: Iterable[Transaction],
    *,
    max_workers: int | None = None,
) -> EngineResult:
    """One-shot convenience wrapper around :class:`RuleEngine`."""

    return RuleEngine(plan, max_workers=max_workers).run(transactions)


__all__ = [
    "EngineResult",
    "EngineStats",
    "RuleEngine",
    "RuleStats",
    "StatsSnapshot",
    "TransactionOutcome",
    "TxState",
    "categorize",
]
