# ruff: noqa: I001
"""SQL-backed record store on top of the shared ``libs/db`` models.

Transactions go to ``tr_transactions`` and import summaries to
``tr_import_batches``. Engines and sessions come from ``db.client``.

Scope:
- Insert new transactions, ignoring fingerprints that already exist
  (``ON CONFLICT DO NOTHING`` on ``fingerprint_sha256``).
- Look up fingerprints per account and date span for deduplication.
- Read and update rule-managed fields for "re-run rules".
- Record finished import batches.

Every call runs in its own transaction; any ``SQLAlchemyError`` surfaces as
:class:`PersistenceFailure` and leaves nothing from that call behind.
"""

from __future__ import annotations

import os
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.client import get_engine, init_schema, session_scope
from db.models.finance import TrImportBatch, TrTransaction

from .errors import PersistenceFailure
from .logging_setup import get_logger
from .models import DateRange, ImportBatch, Transaction

_logger = get_logger("transaction_rules.persistence")

_CENTS = Decimal("0.01")


def _to_row_values(tx: Transaction, now: datetime) -> dict[str, Any]:
    return {
        "tx_id": tx.id,
        "fingerprint_sha256": tx.fingerprint,
        "account": tx.account,
        "date": tx.date,
        "amount": tx.amount,
        "currency_code": tx.currency,
        "description": tx.description,
        "payee": tx.payee,
        "category": tx.category,
        "tags": sorted(tx.tags),
        "flags": sorted(tx.flags),
        "notes": tx.notes,
        "batch_id": tx.batch_id,
        "row_number": tx.row_number,
        "categorized_at": now if tx.category is not None else None,
        "updated_at": now,
    }


def _to_transaction(row: TrTransaction) -> Transaction:
    return Transaction(
        id=row.tx_id,
        date=row.date,
        amount=Decimal(row.amount).quantize(_CENTS, rounding=ROUND_HALF_UP),
        currency=row.currency_code,
        description=row.description,
        account=row.account,
        fingerprint=row.fingerprint_sha256,
        payee=row.payee,
        category=row.category,
        tags=frozenset(row.tags or ()),
        flags=frozenset(row.flags or ()),
        notes=row.notes,
        batch_id=row.batch_id,
        row_number=row.row_number,
    )


class SqlRecordStore:
    """Record store backed by the workspace database.

    Parameters
    ----------
    database_url:
        SQLAlchemy URL; defaults to ``DATABASE_URL`` from the environment.
    create_schema:
        Create missing tables from the ORM metadata. Use for SQLite files and
        tests; Postgres databases are migrated with Alembic.
    """

    def __init__(self, database_url: str | None = None, *, create_schema: bool = False) -> None:
        if create_schema:
            engine = init_schema(database_url=database_url)
        else:
            engine = get_engine(database_url=database_url)
        self.database_url = database_url or os.environ["DATABASE_URL"]
        self.dialect = engine.dialect.name

    @contextmanager
    def _session(self, what: str) -> Iterator[Session]:
        try:
            with session_scope(database_url=self.database_url) as session:
                yield session
        except SQLAlchemyError as exc:
            _logger.error("sql:%s_failed error=%s", what, exc.__class__.__name__)
            raise PersistenceFailure(f"{what} failed: {exc.__class__.__name__}: {exc}") from exc

    # -- RecordStore --------------------------------------------------------

    def fingerprints_in_range(self, account: str, date_range: DateRange) -> set[str]:
        stmt = select(TrTransaction.fingerprint_sha256).where(
            TrTransaction.account == account,
            TrTransaction.date >= date_range.start,
            TrTransaction.date <= date_range.end,
        )
        with self._session("fingerprint lookup") as session:
            return set(session.scalars(stmt))

    def commit(self, transactions: Sequence[Transaction]) -> int:
        """Insert ``transactions`` in one statement; return how many were new."""

        if not transactions:
            return 0
        now = datetime.now(UTC)
        values = [_to_row_values(tx, now) for tx in transactions]
        with self._session("commit") as session:
            inserted = self._insert_new(session, values)
        _logger.debug("sql:commit rows=%d inserted=%d", len(values), inserted)
        return inserted

    def _insert_new(self, session: Session, values: list[dict[str, Any]]) -> int:
        match self.dialect:
            case "postgresql":
                stmt = pg_insert(TrTransaction).values(values)
            case "sqlite":
                stmt = sqlite_insert(TrTransaction).values(values)
            case _:
                existing = set(
                    session.scalars(
                        select(TrTransaction.fingerprint_sha256).where(
                            TrTransaction.fingerprint_sha256.in_(
                                [v["fingerprint_sha256"] for v in values]
                            )
                        )
                    )
                )
                fresh = [v for v in values if v["fingerprint_sha256"] not in existing]
                session.add_all(TrTransaction(**v) for v in fresh)
                return len(fresh)
        stmt = stmt.on_conflict_do_nothing(index_elements=[TrTransaction.fingerprint_sha256])
        return session.execute(stmt).rowcount or 0

    # -- Re-run support -----------------------------------------------------

    def transactions_in_range(
        self, account: str | None, date_range: DateRange | None
    ) -> list[Transaction]:
        stmt = select(TrTransaction)
        if account is not None:
            stmt = stmt.where(TrTransaction.account == account)
        if date_range is not None:
            stmt = stmt.where(
                TrTransaction.date >= date_range.start, TrTransaction.date <= date_range.end
            )
        stmt = stmt.order_by(TrTransaction.date, TrTransaction.fingerprint_sha256)
        with self._session("transaction lookup") as session:
            return [_to_transaction(row) for row in session.scalars(stmt)]

    def update_transactions(self, transactions: Sequence[Transaction]) -> int:
        """Write back the rule-managed fields; immutable fields are never touched."""

        if not transactions:
            return 0
        now = datetime.now(UTC)
        updated = 0
        with self._session("update") as session:
            for tx in transactions:
                stmt = (
                    update(TrTransaction)
                    .where(TrTransaction.fingerprint_sha256 == tx.fingerprint)
                    .values(
                        category=tx.category,
                        tags=sorted(tx.tags),
                        flags=sorted(tx.flags),
                        payee=tx.payee,
                        notes=tx.notes,
                        categorized_at=now if tx.category is not None else None,
                        updated_at=now,
                    )
                )
                updated += session.execute(stmt).rowcount or 0
        return updated

    # -- Import batches -----------------------------------------------------

    def record_batch(self, summary: ImportBatch) -> None:
        """Store (or replace) the summary row for a finished import."""

        payload = summary.to_dict()
        row = TrImportBatch(
            id=summary.id,
            source=summary.source,
            profile=summary.profile,
            encoding=summary.encoding,
            status=summary.status.value,
            row_count=summary.row_count,
            accepted_count=summary.accepted_count,
            duplicate_count=summary.duplicate_count,
            malformed_count=summary.malformed_count,
            error_count=summary.error_count,
            committed_count=summary.committed_count,
            summary={
                k: payload[k]
                for k in ("malformed_rows", "rule_failures", "rejected_rules", "failure")
            },
            started_at=summary.started_at,
            finished_at=summary.finished_at,
        )
        with self._session("batch record") as session:
            session.merge(row)

    def get_batch(self, batch_id: str) -> dict[str, Any] | None:
        with self._session("batch lookup") as session:
            row = session.get(TrImportBatch, batch_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "source": row.source,
                "profile": row.profile,
                "encoding": row.encoding,
                "status": row.status,
                "row_count": row.row_count,
                "accepted_count": row.accepted_count,
                "duplicate_count": row.duplicate_count,
                "malformed_count": row.malformed_count,
                "error_count": row.error_count,
                "committed_count": row.committed_count,
                **row.summary,
            }

    def count(self) -> int:
        with self._session("count") as session:
            return session.scalar(select(func.count()).select_from(TrTransaction)) or 0


__all__ = ["SqlRecordStore"]
