"""Error taxonomy for imports and rule evaluation.

Scope decides how an error travels:

- row scoped (``MalformedRowError``) and rule scoped (``RuleValidationError``,
  ``RuleExecutionFailure``) errors are collected into the batch summary and
  never abort an import;
- batch-fatal errors (``UnsupportedEncodingError``, ``SourceFormatError``,
  ``PersistenceFailure``, ``ImportCancelled``) stop the pipeline and surface
  as a single structured failure on the finished ``ImportBatch``.
"""

from __future__ import annotations


class TransactionRulesError(Exception):
    """Base class for every error raised by this package."""

    #: Whether the error terminates an import batch.
    fatal: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"kind": type(self).__name__, "message": str(self)}


class MalformedRowError(TransactionRulesError):
    """A single source row could not be turned into a transaction."""

    def __init__(self, row_number: int, field: str, reason: str) -> None:
        self.row_number = row_number
        self.field = field
        self.reason = reason
        super().__init__(f"row {row_number}: invalid {field}: {reason}")

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": type(self).__name__,
            "row_number": self.row_number,
            "field": self.field,
            "reason": self.reason,
        }


class UnsupportedEncodingError(TransactionRulesError):
    """No supported text encoding scored above the confidence threshold."""

    fatal = True

    def __init__(self, source: str, best_guess: str | None, confidence: float) -> None:
        self.source = source
        self.best_guess = best_guess
        self.confidence = confidence
        guess = f"best guess {best_guess} at {confidence:.2f}" if best_guess else "no candidate"
        super().__init__(f"could not detect a supported encoding for {source} ({guess})")


class SourceFormatError(TransactionRulesError):
    """The source file is missing, unreadable, too large or does not fit the profile."""

    fatal = True


class RuleValidationError(TransactionRulesError):
    """A rule definition is internally inconsistent and was excluded."""

    def __init__(self, rule_id: str, reason: str) -> None:
        self.rule_id = rule_id
        self.reason = reason
        super().__init__(f"rule {rule_id!r}: {reason}")

    def to_dict(self) -> dict[str, object]:
        return {"kind": type(self).__name__, "rule_id": self.rule_id, "reason": self.reason}


class RuleExecutionFailure(TransactionRulesError):
    """Evaluating or applying one rule against one transaction raised."""

    def __init__(self, rule_id: str, transaction_id: str, reason: str) -> None:
        self.rule_id = rule_id
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"rule {rule_id!r} failed on transaction {transaction_id}: {reason}")

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": type(self).__name__,
            "rule_id": self.rule_id,
            "transaction_id": self.transaction_id,
            "reason": self.reason,
        }


class PersistenceFailure(TransactionRulesError):
    """The record store rejected a commit; earlier commits stay durable."""

    fatal = True

    def __init__(self, message: str, *, committed_count: int = 0) -> None:
        self.committed_count = committed_count
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": type(self).__name__,
            "message": str(self),
            "committed_count": self.committed_count,
        }


class ImportCancelled(TransactionRulesError):
    """The caller cancelled an in-flight import."""

    fatal = True


__all__ = [
    "TransactionRulesError",
    "MalformedRowError",
    "UnsupportedEncodingError",
    "SourceFormatError",
    "RuleValidationError",
    "RuleExecutionFailure",
    "PersistenceFailure",
    "ImportCancelled",
]
