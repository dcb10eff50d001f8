"""Public API for the ``transaction_rules`` package.

Thin orchestration over the pipeline, compiler and engine. Rules can be
passed as a :class:`RuleSource`, a path to a rules JSON document, or an
iterable of rule models/documents.

DB imports are local to :func:`open_sql_store` so that in-memory use never
imports SQLAlchemy models.
"""

from __future__ import annotations

from collections.abc import Iterable
from os import PathLike
from typing import TYPE_CHECKING

from .compiler import RulePlan, compile_rules
from .config import ImportSettings
from .engine import EngineResult, categorize
from .ingest.profiles import BankProfile, resolve_profile
from .ingest.reader import Source
from .models import ImportBatch, Transaction
from .pipeline import (
    CompleteCallback,
    ImportPipeline,
    ProgressCallback,
    rerun_rules,
    start_import,
)
from .stores import (
    InMemoryRecordStore,
    InMemoryRuleSource,
    JsonRuleSource,
    RecordStore,
    RuleDefinition,
    RuleSource,
)

if TYPE_CHECKING:
    from .persistence import SqlRecordStore

type RulesInput = RuleSource | str | PathLike[str] | Iterable[RuleDefinition] | None


def as_rule_source(rules: RulesInput) -> RuleSource:
    """Coerce the accepted rule inputs into a :class:`RuleSource`."""

    if rules is None:
        return InMemoryRuleSource()
    if isinstance(rules, RuleSource):
        return rules
    if isinstance(rules, str | PathLike):
        return JsonRuleSource(rules)
    return InMemoryRuleSource(rules)


def import_file(
    source: Source,
    profile: BankProfile | str,
    *,
    store: RecordStore | None = None,
    rules: RulesInput = None,
    settings: ImportSettings | None = None,
    account: str | None = None,
    on_progress: ProgressCallback | None = None,
    on_complete: CompleteCallback | None = None,
    batch_id: str | None = None,
) -> ImportBatch:
    """Import one bank export synchronously and return its summary.

    Parameters
    ----------
    source:
        Path or binary stream of the export.
    profile:
        A :class:`BankProfile`, a built-in profile name or a profile JSON path.
    store:
        Destination store; an empty :class:`InMemoryRecordStore` when omitted.
    rules:
        Rules to apply (see module docs).
    account:
        Overrides the account for every row (the profile's ``default_account``).
    on_progress / on_complete:
        Observers; exceptions they raise are logged, never propagated.

    Notes
    -----
    Batch-fatal errors are returned on ``ImportBatch.failure``. When the
    store can record batches (``record_batch``), the summary is stored too.
    """

    prof = profile
    if account:
        prof = (resolve_profile(profile) if isinstance(profile, str) else profile).with_account(
            account
        )
    store = store if store is not None else InMemoryRecordStore()
    pipeline = ImportPipeline(
        store,
        as_rule_source(rules),
        settings=settings,
        on_progress=on_progress,
        on_complete=on_complete,
    )
    summary = pipeline.run(source, prof, batch_id=batch_id)
    record = getattr(store, "record_batch", None)
    if callable(record):
        record(summary)
    return summary


def check_rules(rules: RulesInput) -> RulePlan:
    """Compile ``rules`` without running them; rejections are on the plan."""

    return compile_rules(as_rule_source(rules).list_rules())


def categorize_transactions(
    transactions: Iterable[Transaction],
    rules: RulesInput,
    *,
    max_workers: int | None = None,
) -> EngineResult:
    """Apply ``rules`` to already normalized transactions (no persistence)."""

    return categorize(check_rules(rules), transactions, max_workers=max_workers)


def open_sql_store(
    database_url: str | None = None, *, create_schema: bool = False
) -> SqlRecordStore:
    """Return a :class:`SqlRecordStore` for ``database_url`` (or ``DATABASE_URL``)."""

    from .persistence import SqlRecordStore

    return SqlRecordStore(database_url, create_schema=create_schema)


__all__ = [
    "RulesInput",
    "as_rule_source",
    "categorize_transactions",
    "check_rules",
    "import_file",
    "open_sql_store",
    "rerun_rules",
    "start_import",
]
