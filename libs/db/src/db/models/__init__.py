"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the transaction and import-batch tables used by
``transaction_rules``.
"""

from .finance import Base, TrImportBatch, TrTransaction

__all__ = [
    "Base",
    "TrImportBatch",
    "TrTransaction",
]
