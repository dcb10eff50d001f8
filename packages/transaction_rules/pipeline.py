"""Import pipeline: source bytes → categorized, persisted transactions.

Stages for one batch
--------------------
1. Snapshot the rule source and compile it (later edits do not affect this
   batch).
2. Read the source (size guard), detect its encoding once, parse all rows
   sequentially and resolve the header against the profile.
3. For each chunk of rows: normalize on the worker pool, deduplicate, run
   the rule engine on the pool, and queue full commit batches.
4. A single writer thread drains a bounded queue into ``store.commit``; a
   slow store blocks the producer instead of buffering without limit.

Failure policy
--------------
Malformed rows and rule failures are counted and reported on the final
:class:`ImportBatch`. Encoding, missing file, source format, persistence
failures and cancellation end the batch; the summary carries the error as
``failure`` together with the counts reached so far. Batches the writer
already committed stay committed, and nothing is ever written partially.

Progress events go to ``on_progress`` every ``progress_every`` rows or
``progress_interval`` seconds (whichever first) and once more at the end;
``on_complete`` receives the summary. ``start_import`` runs all of this on a
background thread and returns an :class:`ImportHandle`.
"""

from __future__ import annotations

import queue
import threading
import time
import uuid
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .compiler import RulePlan, compile_rules
from .config import ImportSettings
from .dedup import Deduplicator
from .engine import EngineStats, RuleEngine
from .errors import (
    ImportCancelled,
    MalformedRowError,
    PersistenceFailure,
    RuleExecutionFailure,
    RuleValidationError,
    SourceFormatError,
    TransactionRulesError,
)
from .ingest.profiles import BankProfile, resolve_profile
from .ingest.reader import Source, describe_source, parse_rows, read_source_bytes
from .logging_setup import get_logger
from .models import (
    DateRange,
    ImportBatch,
    ImportStatus,
    ProgressEvent,
    Transaction,
)
from .normalizers import normalize_row
from .pmap import p_map
from .stores import RecordStore, RerunCapableStore, RuleSource

_logger = get_logger("transaction_rules.pipeline")

type ProgressCallback = Callable[[ProgressEvent], None]
type CompleteCallback = Callable[[ImportBatch], None]

_STOP = object()


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class _CommitWriter:
    """Single consumer that owns every write to the record store."""

    def __init__(self, store: RecordStore, *, queue_size: int, batch_id: str) -> None:
        self._store = store
        self._queue: queue.Queue[object] = queue.Queue(maxsize=queue_size)
        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._committed = 0
        self.error: BaseException | None = None
        self._thread = threading.Thread(
            target=self._run, name=f"tr-writer-{batch_id[:8]}", daemon=True
        )

    @property
    def committed(self) -> int:
        with self._lock:
            return self._committed

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if self._abort.is_set():
                continue
            batch: Sequence[Transaction] = item  # type: ignore[assignment]
            try:
                self._store.commit(batch)
            except Exception as exc:  # noqa: BLE001
                self.error = exc
                self._abort.set()
                _logger.error(
                    "writer:commit_failed size=%d committed=%d error=%s",
                    len(batch),
                    self.committed,
                    exc,
                )
                continue
            with self._lock:
                self._committed += len(batch)

    def failure(self) -> PersistenceFailure:
        exc = self.error
        committed = self.committed
        if isinstance(exc, PersistenceFailure):
            failure = PersistenceFailure(str(exc), committed_count=committed)
        else:
            failure = PersistenceFailure(
                f"commit failed: {type(exc).__name__}: {exc}", committed_count=committed
            )
        failure.__cause__ = exc
        return failure

    def put(self, batch: list[Transaction], *, cancel: threading.Event, poll: float = 0.05) -> None:
        """Block until ``batch`` is queued, the writer fails, or ``cancel`` is set."""

        while True:
            if self.error is not None:
                raise self.failure()
            if cancel.is_set():
                raise ImportCancelled("import cancelled while waiting for the writer")
            try:
                self._queue.put(batch, timeout=poll)
                return
            except queue.Full:
                continue

    def finish(self) -> None:
        """Drain everything queued, then stop; raises if any commit failed."""

        self._queue.put(_STOP)
        self._thread.join()
        if self.error is not None:
            raise self.failure()

    def abort(self) -> None:
        """Drop batches not yet started and stop after the current commit."""

        self._abort.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        self._queue.put(_STOP)
        self._thread.join()


# ---------------------------------------------------------------------------
# Counters and progress
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _Tally:
    total: int = 0
    processed: int = 0
    accepted: int = 0
    duplicate: int = 0
    categorized: int = 0
    malformed: list[MalformedRowError] = field(default_factory=list)
    rule_failures: list[RuleExecutionFailure] = field(default_factory=list)


class _ProgressEmitter:
    def __init__(
        self,
        batch_id: str,
        callback: ProgressCallback | None,
        *,
        every: int,
        interval: float,
    ) -> None:
        self._batch_id = batch_id
        self._callback = callback
        self._every = every
        self._interval = interval
        self._last_count = 0
        self._last_time = time.monotonic()

    def event(self, tally: _Tally) -> ProgressEvent:
        return ProgressEvent(
            batch_id=self._batch_id,
            processed_count=tally.processed,
            total_count=tally.total,
            accepted_count=tally.accepted,
            duplicate_count=tally.duplicate,
            malformed_count=len(tally.malformed),
            error_count=len(tally.rule_failures),
        )

    def maybe_emit(self, tally: _Tally, *, force: bool = False) -> None:
        if self._callback is None:
            return
        now = time.monotonic()
        due = (
            force
            or tally.processed - self._last_count >= self._every
            or now - self._last_time >= self._interval
        )
        if not due:
            return
        self._last_count = tally.processed
        self._last_time = now
        _safe_call(self._callback, self.event(tally), "on_progress")


def _safe_call(callback: Callable[[object], None], payload: object, name: str) -> None:
    # Observers are external; a broken one must not take the import down.
    try:
        callback(payload)
    except Exception:  # noqa: BLE001
        _logger.exception("pipeline:observer_failed callback=%s", name)


def _resolve(profile: BankProfile | str) -> BankProfile:
    if isinstance(profile, BankProfile):
        return profile
    try:
        return resolve_profile(profile)
    except (OSError, ValueError) as exc:
        raise SourceFormatError(f"cannot load bank profile {profile!r}: {exc}") from exc


def _chunks[T](items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ImportPipeline:
    """Coordinate one or more imports against a store and a rule source.

    Parameters
    ----------
    store:
        Record store used for fingerprint lookups and batched commits.
    rule_source:
        Rules are listed and compiled once at the start of every batch.
    settings:
        Tunables; defaults to :meth:`ImportSettings.from_env`.
    on_progress / on_complete:
        Optional observers, called on the pipeline's thread.
    """

    def __init__(
        self,
        store: RecordStore,
        rule_source: RuleSource,
        *,
        settings: ImportSettings | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
    ) -> None:
        self.store = store
        self.rule_source = rule_source
        self.settings = settings or ImportSettings.from_env()
        self.on_progress = on_progress
        self.on_complete = on_complete
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Ask the running import to stop at the next chunk or queue wait.

        Issued while idle, it applies to the next :meth:`run`. Every run
        consumes the request when it finishes, so later runs start clean.
        """

        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def snapshot_rules(self) -> RulePlan:
        return compile_rules(self.rule_source.list_rules())

    def run(
        self,
        source: Source,
        profile: BankProfile | str,
        *,
        batch_id: str | None = None,
    ) -> ImportBatch:
        """Import ``source`` with ``profile`` and return the final summary.

        Batch-fatal errors do not raise; they are returned on
        ``ImportBatch.failure`` (use :meth:`ImportBatch.raise_for_failure`).
        """

        settings = self.settings
        batch_id = batch_id or uuid.uuid4().hex
        started = datetime.now(UTC)
        label = describe_source(source)
        tally = _Tally()
        progress = _ProgressEmitter(
            batch_id,
            self.on_progress,
            every=settings.progress_every,
            interval=settings.progress_interval,
        )
        profile_name = profile if isinstance(profile, str) else profile.name
        encoding: str | None = None
        rejected: tuple[RuleValidationError, ...] = ()
        stats = EngineStats()
        writer: _CommitWriter | None = None
        failure: TransactionRulesError | None = None

        _logger.info("import:start batch_id=%s source=%s profile=%s", batch_id, label, profile_name)
        try:
            plan = self.snapshot_rules()
            rejected = plan.rejected
            prof = _resolve(profile)
            profile_name = prof.name

            data = read_source_bytes(source, max_bytes=settings.max_file_bytes)
            parsed = parse_rows(
                data, prof, source=label, min_confidence=settings.encoding_confidence
            )
            encoding = parsed.encoding.encoding
            tally.total = parsed.total
            progress.maybe_emit(tally, force=True)

            engine = RuleEngine(plan, max_workers=settings.max_workers, stats=stats)
            dedup = Deduplicator(self.store)
            writer = _CommitWriter(
                self.store, queue_size=settings.queue_size, batch_id=batch_id
            )
            writer.start()
            pending: list[Transaction] = []

            def _normalize(row: tuple[int, list[str]]) -> Transaction | MalformedRowError:
                row_number, fields = row
                try:
                    return normalize_row(
                        fields,
                        row_number=row_number,
                        profile=prof,
                        header_index=parsed.header_index,
                        batch_id=batch_id,
                    )
                except MalformedRowError as exc:
                    return exc

            for chunk in _chunks(parsed.rows, settings.chunk_size):
                if self._cancel.is_set():
                    raise ImportCancelled(f"import {batch_id} cancelled by caller")
                try:
                    normalized = p_map(
                        chunk,
                        _normalize,
                        concurrency=min(settings.max_workers, len(chunk)),
                        should_stop=self._cancel.is_set,
                        thread_name_prefix="tr-normalize",
                    )
                    candidates: list[Transaction] = []
                    for item in normalized:
                        if isinstance(item, MalformedRowError):
                            tally.malformed.append(item)
                        else:
                            candidates.append(item)

                    split = dedup.partition(candidates)
                    result = engine.run(split.new, should_stop=self._cancel.is_set)
                except CancelledError:
                    raise ImportCancelled(f"import {batch_id} cancelled by caller") from None

                tally.rule_failures.extend(result.failures)
                categorized = result.transactions
                tally.accepted += len(categorized)
                tally.duplicate += len(split.duplicates)
                tally.categorized += sum(1 for t in categorized if t.category is not None)
                tally.processed += len(chunk)

                pending.extend(categorized)
                while len(pending) >= settings.commit_batch_size:
                    batch = pending[: settings.commit_batch_size]
                    del pending[: settings.commit_batch_size]
                    writer.put(batch, cancel=self._cancel)

                _logger.debug(
                    "import:chunk_done batch_id=%s processed=%d/%d accepted=%d duplicates=%d malformed=%d",
                    batch_id,
                    tally.processed,
                    tally.total,
                    tally.accepted,
                    tally.duplicate,
                    len(tally.malformed),
                )
                progress.maybe_emit(tally)

            if pending:
                writer.put(pending, cancel=self._cancel)
                pending = []
            writer.finish()
            progress.maybe_emit(tally, force=True)
        except TransactionRulesError as exc:
            failure = exc
            if writer is not None:
                writer.abort()
                if writer.error is not None and not isinstance(exc, PersistenceFailure):
                    failure = writer.failure()
        except BaseException:
            if writer is not None:
                writer.abort()
            raise
        finally:
            self._cancel.clear()

        committed = writer.committed if writer is not None else 0
        if isinstance(failure, PersistenceFailure):
            failure.committed_count = committed

        if failure is None:
            status = ImportStatus.COMPLETED
        elif isinstance(failure, ImportCancelled):
            status = ImportStatus.CANCELLED
        else:
            status = ImportStatus.FAILED

        summary = ImportBatch(
            id=batch_id,
            source=label,
            profile=profile_name,
            encoding=encoding,
            status=status,
            started_at=started,
            finished_at=datetime.now(UTC),
            row_count=tally.total,
            accepted_count=tally.accepted,
            duplicate_count=tally.duplicate,
            malformed_count=len(tally.malformed),
            error_count=len(tally.rule_failures),
            committed_count=committed,
            categorized_count=tally.categorized,
            malformed_rows=tuple(tally.malformed),
            rule_failures=tuple(tally.rule_failures),
            rejected_rules=tuple(rejected),
            failure=failure,
            rule_matches=stats.snapshot().rule_matches,
        )
        self._log_summary(summary)
        if self.on_complete is not None:
            _safe_call(self.on_complete, summary, "on_complete")
        return summary

    def _log_summary(self, summary: ImportBatch) -> None:
        level_fn = _logger.info if summary.failure is None else _logger.error
        level_fn(
            "import:batch_done batch_id=%s status=%s rows=%d accepted=%d duplicates=%d "
            "malformed=%d errors=%d committed=%d seconds=%.3f%s",
            summary.id,
            summary.status.value,
            summary.row_count,
            summary.accepted_count,
            summary.duplicate_count,
            summary.malformed_count,
            summary.error_count,
            summary.committed_count,
            summary.elapsed_seconds,
            f" failure={summary.failure!r}" if summary.failure is not None else "",
        )
        for rid in summary.skipped_rule_ids:
            _logger.warning("import:rule_skipped batch_id=%s rule_id=%s", summary.id, rid)


# ---------------------------------------------------------------------------
# Background execution
# ---------------------------------------------------------------------------


_DONE = object()


class ImportHandle:
    """Handle to an import running on a background thread."""

    def __init__(self, pipeline: ImportPipeline) -> None:
        self._pipeline = pipeline
        self._events: queue.SimpleQueue[object] = queue.SimpleQueue()
        self._done = threading.Event()
        self._result: ImportBatch | None = None
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None

    def _start(self, source: Source, profile: BankProfile | str, batch_id: str | None) -> None:
        def _target() -> None:
            try:
                self._result = self._pipeline.run(source, profile, batch_id=batch_id)
            except BaseException as exc:  # noqa: BLE001
                self._error = exc
                _logger.exception("import:background_failed")
            finally:
                self._done.set()
                self._events.put(_DONE)

        self._thread = threading.Thread(target=_target, name="tr-import", daemon=True)
        self._thread.start()

    def _push(self, item: object) -> None:
        self._events.put(item)

    def cancel(self) -> None:
        self._pipeline.cancel()

    def done(self) -> bool:
        return self._done.is_set()

    def result(self, timeout: float | None = None) -> ImportBatch:
        """Wait for the summary; re-raises an unexpected background error."""

        if not self._done.wait(timeout):
            raise TimeoutError(f"import did not finish within {timeout} seconds")
        if self._error is not None:
            raise self._error
        if self._result is None:
            raise RuntimeError("import finished without a summary")
        return self._result

    def events(self, timeout: float | None = None) -> Iterator[ProgressEvent | ImportBatch]:
        """Yield progress events, then the final :class:`ImportBatch`.

        Meant for a single consumer. ``timeout`` bounds the wait for each
        event and raises ``TimeoutError`` when exceeded.
        """

        while True:
            try:
                item = self._events.get(timeout=timeout)
            except queue.Empty:
                raise TimeoutError(f"no import event within {timeout} seconds") from None
            if item is _DONE:
                if self._error is not None:
                    raise self._error
                return
            yield item  # type: ignore[misc]


def start_import(
    source: Source,
    profile: BankProfile | str,
    *,
    store: RecordStore,
    rule_source: RuleSource,
    settings: ImportSettings | None = None,
    on_progress: ProgressCallback | None = None,
    on_complete: CompleteCallback | None = None,
    batch_id: str | None = None,
) -> ImportHandle:
    """Start an import on a background thread and return its handle.

    The caller's thread never blocks: progress and the final summary arrive
    through ``handle.events()`` and the optional callbacks.
    """

    handle: ImportHandle

    def _progress(ev: ProgressEvent) -> None:
        handle._push(ev)
        if on_progress is not None:
            on_progress(ev)

    def _complete(summary: ImportBatch) -> None:
        handle._push(summary)
        if on_complete is not None:
            on_complete(summary)

    pipeline = ImportPipeline(
        store,
        rule_source,
        settings=settings,
        on_progress=_progress,
        on_complete=_complete,
    )
    handle = ImportHandle(pipeline)
    handle._start(source, profile, batch_id)
    return handle


# ---------------------------------------------------------------------------
# Re-run rules over persisted transactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RerunResult:
    examined: int
    changed: int
    updated: int
    rule_failures: tuple[RuleExecutionFailure, ...] = ()
    rejected_rules: tuple[RuleValidationError, ...] = ()
    rule_matches: dict[str, int] = field(default_factory=dict)


def rerun_rules(
    store: RerunCapableStore,
    rule_source: RuleSource,
    *,
    account: str | None = None,
    date_range: DateRange | None = None,
    settings: ImportSettings | None = None,
) -> RerunResult:
    """Re-apply the latest rule set to already persisted transactions.

    Existing categories, tags and notes are the starting state; rules only
    add to or override them. Only transactions whose rule-managed fields
    changed are written back, in commit-sized batches.
    """

    settings = settings or ImportSettings.from_env()
    plan = compile_rules(rule_source.list_rules())
    transactions = store.transactions_in_range(account, date_range)
    result = RuleEngine(plan, max_workers=settings.max_workers).run(transactions)
    changed = [o.transaction for o in result.outcomes if o.changed]

    updated = 0
    for batch in _chunks(changed, settings.commit_batch_size):
        try:
            updated += store.update_transactions(batch)
        except PersistenceFailure as exc:
            exc.committed_count = updated
            raise
        except Exception as exc:
            raise PersistenceFailure(
                f"update failed: {type(exc).__name__}: {exc}", committed_count=updated
            ) from exc

    _logger.info(
        "rerun:done account=%s examined=%d changed=%d updated=%d failures=%d rejected=%d",
        account or "*",
        len(transactions),
        len(changed),
        updated,
        len(result.failures),
        len(plan.rejected),
    )
    return RerunResult(
        examined=len(transactions),
        changed=len(changed),
        updated=updated,
        rule_failures=tuple(result.failures),
        rejected_rules=plan.rejected,
        rule_matches=result.stats.rule_matches,
    )


__all__ = [
    "ImportHandle",
    "ImportPipeline",
    "RerunResult",
    "rerun_rules",
    "start_import",
]
