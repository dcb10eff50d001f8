"""Apply a matched rule's actions to a transaction.

Actions run in list order and produce a new :class:`Transaction` via
``dataclasses.replace``; the input is never mutated. Every action is
idempotent, and among conflicting actions in one list the last one wins.
Only ``category``, ``tags``, ``flags``, ``payee`` and ``notes`` change; the
fingerprint and other immutable fields are untouched.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace

from .models import Action, ActionKind, Transaction


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    transaction: Transaction
    # Kinds that ran, in order (including ones that changed nothing).
    applied: tuple[ActionKind, ...] = ()
    stop_processing: bool = False


def _clean(value: str | None) -> str:
    return (value or "").strip()


def apply_action(action: Action, tx: Transaction) -> Transaction:
    """Return ``tx`` with one action applied."""

    value = _clean(action.value)
    match action.kind:
        case ActionKind.SET_CATEGORY:
            return replace(tx, category=value)
        case ActionKind.CLEAR_CATEGORY:
            return replace(tx, category=None)
        case ActionKind.ADD_TAG:
            return replace(tx, tags=tx.tags | {value})
        case ActionKind.REMOVE_TAG:
            return replace(tx, tags=tx.tags - {value})
        case ActionKind.CLEAR_TAGS:
            return replace(tx, tags=frozenset())
        case ActionKind.RENAME_PAYEE:
            return replace(tx, payee=value)
        case ActionKind.SET_FLAG:
            return replace(tx, flags=tx.flags | {value})
        case ActionKind.SET_NOTES:
            return replace(tx, notes=value or None)
        case ActionKind.STOP_PROCESSING:
            return tx
    raise ValueError(f"unsupported action kind {action.kind!r}")


def apply_actions(actions: Sequence[Action], tx: Transaction) -> ActionOutcome:
    """Apply ``actions`` in order; report whether any asked to stop."""

    current = tx
    applied: list[ActionKind] = []
    stop = False
    for action in actions:
        current = apply_action(action, current)
        applied.append(action.kind)
        if action.kind is ActionKind.STOP_PROCESSING:
            stop = True
    return ActionOutcome(transaction=current, applied=tuple(applied), stop_processing=stop)


__all__ = ["ActionOutcome", "apply_action", "apply_actions"]
