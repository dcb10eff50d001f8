"""Import tuning knobs resolved from the environment.

Every setting has a conservative default and an optional
``TRANSACTION_RULES_*`` override. Invalid or non-positive overrides fall back
to the default rather than failing, matching how the CLI treats its other
environment knobs. Entrypoints load ``.env`` (``python-dotenv``) before
calling :meth:`ImportSettings.from_env`.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace

from .ingest.encoding import DEFAULT_MIN_CONFIDENCE
from .ingest.reader import DEFAULT_MAX_FILE_BYTES
from .logging_setup import get_logger

_logger = get_logger("transaction_rules.config")

ENV_PREFIX = "TRANSACTION_RULES_"
_MAX_WORKERS_CAP = 32


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        _logger.warning("config:invalid_env name=%s%s value=%r", ENV_PREFIX, name, raw)
        return default
    return value if value > 0 else default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        _logger.warning("config:invalid_env name=%s%s value=%r", ENV_PREFIX, name, raw)
        return default
    return value if value > 0 else default


def resolve_max_workers(requested: int | None = None) -> int:
    """Worker count for the normalize/evaluate pool.

    An explicit positive ``requested`` wins; otherwise the CPU count. Capped
    at 32 to avoid oversubscription and never below 1.
    """

    if requested is not None and requested > 0:
        return max(1, min(requested, _MAX_WORKERS_CAP))
    return max(1, min(os.cpu_count() or 1, _MAX_WORKERS_CAP))


@dataclass(frozen=True, slots=True)
class ImportSettings:
    """Tunables for one :class:`ImportPipeline`.

    Attributes
    ----------
    max_workers:
        Threads used for normalization and rule evaluation.
    chunk_size:
        Rows normalized, deduplicated and categorized together.
    commit_batch_size:
        Transactions per store commit.
    queue_size:
        Commit batches buffered ahead of the writer before producers block.
    progress_every:
        Emit a progress event at least every this many processed rows.
    progress_interval:
        ...or every this many seconds, whichever comes first.
    encoding_confidence:
        Minimum encoding-detection score.
    max_file_bytes:
        Largest accepted source file.
    """

    max_workers: int = resolve_max_workers()
    chunk_size: int = 500
    commit_batch_size: int = 250
    queue_size: int = 4
    progress_every: int = 500
    progress_interval: float = 0.25
    encoding_confidence: float = DEFAULT_MIN_CONFIDENCE
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES

    def __post_init__(self) -> None:
        for name in ("max_workers", "chunk_size", "commit_batch_size", "queue_size", "progress_every"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if not 0.0 < self.encoding_confidence <= 1.0:
            raise ValueError("encoding_confidence must be in (0, 1]")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ImportSettings:
        e = os.environ if env is None else env
        defaults = cls()
        confidence = _env_float(e, "ENCODING_CONFIDENCE", defaults.encoding_confidence)
        return cls(
            max_workers=resolve_max_workers(_env_int(e, "MAX_WORKERS", 0) or None),
            chunk_size=_env_int(e, "CHUNK_SIZE", defaults.chunk_size),
            commit_batch_size=_env_int(e, "COMMIT_BATCH_SIZE", defaults.commit_batch_size),
            queue_size=_env_int(e, "QUEUE_SIZE", defaults.queue_size),
            progress_every=_env_int(e, "PROGRESS_EVERY", defaults.progress_every),
            progress_interval=_env_float(e, "PROGRESS_INTERVAL", defaults.progress_interval),
            encoding_confidence=min(confidence, 1.0),
            max_file_bytes=_env_int(e, "MAX_FILE_BYTES", defaults.max_file_bytes),
        )

    def with_overrides(self, **changes: object) -> ImportSettings:
        """Copy with the non-``None`` entries of ``changes`` applied."""

        return replace(self, **{k: v for k, v in changes.items() if v is not None})


__all__ = ["ENV_PREFIX", "ImportSettings", "resolve_max_workers"]
