"""Source acquisition and sequential row parsing.

Turns ``(bytes | path | binary stream, BankProfile)`` into decoded CSV rows
with 1-based data row numbers and a resolved header index. Parsing follows
RFC 4180 rules via the stdlib :mod:`csv` module (quoted fields with embedded
delimiters and newlines, doubled quotes).

Everything raised here is batch-fatal: a missing or oversized file, an
undetectable encoding, or a header that lacks a required column.
"""

from __future__ import annotations

import csv
import io
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import BinaryIO

from ..errors import SourceFormatError
from ..logging_setup import get_logger
from .encoding import DEFAULT_MIN_CONFIDENCE, EncodingGuess, decode_text
from .profiles import REQUIRED_COLUMNS, BankProfile

_logger = get_logger("transaction_rules.ingest.reader")

DEFAULT_MAX_FILE_BYTES = 50 * 1024 * 1024

type Source = bytes | str | PathLike[str] | BinaryIO
type HeaderIndex = Mapping[str, tuple[int, ...]]


@dataclass(frozen=True, slots=True)
class SourceRows:
    """Decoded rows of one source file, ready for the normalizer."""

    source: str
    encoding: EncodingGuess
    header: tuple[str, ...]
    header_index: HeaderIndex
    # (row_number, fields); row numbers count non-blank data records from 1.
    rows: list[tuple[int, list[str]]]

    @property
    def total(self) -> int:
        return len(self.rows)


# ---------------------------------------------------------------------------
# Acquisition
# ---------------------------------------------------------------------------


def describe_source(source: Source) -> str:
    if isinstance(source, bytes | bytearray):
        return f"<bytes:{len(source)}>"
    if isinstance(source, str | PathLike):
        return os.fspath(source)
    return str(getattr(source, "name", "<stream>"))


def read_source_bytes(source: Source, *, max_bytes: int = DEFAULT_MAX_FILE_BYTES) -> bytes:
    """Load the raw bytes of ``source`` enforcing the size limit."""

    label = describe_source(source)
    if isinstance(source, bytes | bytearray):
        data = bytes(source)
    elif isinstance(source, str | PathLike):
        p = Path(source)
        try:
            size = p.stat().st_size
        except FileNotFoundError:
            raise SourceFormatError(f"file not found: {label}") from None
        except OSError as exc:
            raise SourceFormatError(f"cannot access {label}: {exc}") from exc
        if size > max_bytes:
            raise SourceFormatError(
                f"file too large: {label} is {size} bytes (limit {max_bytes})"
            )
        try:
            data = p.read_bytes()
        except OSError as exc:
            raise SourceFormatError(f"cannot read {label}: {exc}") from exc
    else:
        # Read one byte past the limit so an oversized stream is detectable.
        data = source.read(max_bytes + 1)
        if not isinstance(data, bytes | bytearray):
            raise SourceFormatError(f"stream {label} must be opened in binary mode")
        data = bytes(data)

    if len(data) > max_bytes:
        raise SourceFormatError(
            f"file too large: {label} exceeds {max_bytes} bytes"
        )
    if not data.strip():
        raise SourceFormatError(f"source is empty: {label}")
    return data


# ---------------------------------------------------------------------------
# Header resolution
# ---------------------------------------------------------------------------


def _norm_header(name: str) -> str:
    return " ".join(name.replace("\ufeff", "").split()).casefold()


def resolve_header(header: Sequence[str] | None, profile: BankProfile) -> dict[str, tuple[int, ...]]:
    """Map each profile column key to concrete field indexes.

    Named references are matched case-insensitively against ``header``.
    Optional columns missing from the file are dropped from the index; a
    missing required column raises :class:`SourceFormatError`.
    """

    positions: dict[str, int] = {}
    if header is not None:
        for i, name in enumerate(header):
            # First occurrence wins for repeated header names.
            positions.setdefault(_norm_header(name), i)

    required = set(REQUIRED_COLUMNS)
    if not profile.default_account:
        required.add("account")

    index: dict[str, tuple[int, ...]] = {}
    missing: list[str] = []
    for key in profile.columns:
        resolved: list[int] = []
        unresolved: list[str] = []
        for ref in profile.refs(key):
            if isinstance(ref, int):
                resolved.append(ref)
            elif (pos := positions.get(_norm_header(ref))) is not None:
                resolved.append(pos)
            else:
                unresolved.append(ref)
        if resolved:
            index[key] = tuple(resolved)
            if unresolved:
                _logger.debug(
                    "reader:partial_column profile=%s key=%s missing=%s",
                    profile.name,
                    key,
                    unresolved,
                )
        elif key in required:
            missing.append(f"{key} ({', '.join(unresolved)})")
    if missing:
        raise SourceFormatError(
            f"header does not match profile {profile.name!r}; missing columns: "
            + ", ".join(missing)
        )
    return index


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_rows(
    data: bytes,
    profile: BankProfile,
    *,
    source: str = "<bytes>",
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> SourceRows:
    """Detect the encoding once, decode, and split ``data`` into rows."""

    text, guess = decode_text(
        data, profile.encodings, min_confidence=min_confidence, source=source
    )

    with io.StringIO(text, newline="") as f:
        for _ in range(profile.skip_lines):
            if not f.readline():
                break
        reader = csv.reader(f, delimiter=profile.delimiter, quotechar=profile.quotechar)
        header: list[str] | None = None
        rows: list[tuple[int, list[str]]] = []
        row_number = 0
        try:
            for fields in reader:
                if not fields or all(not v.strip() for v in fields):
                    continue
                if profile.has_header and header is None:
                    header = fields
                    continue
                row_number += 1
                rows.append((row_number, fields))
        except csv.Error as exc:
            raise SourceFormatError(
                f"{source}: CSV parse error near line {reader.line_num}: {exc}"
            ) from exc

    if profile.has_header and header is None:
        raise SourceFormatError(f"{source}: no header row found")

    header_index = resolve_header(header, profile)
    _logger.info(
        "reader:parsed source=%s profile=%s encoding=%s rows=%d",
        source,
        profile.name,
        guess.encoding,
        len(rows),
    )
    return SourceRows(
        source=source,
        encoding=guess,
        header=tuple(header or ()),
        header_index=header_index,
        rows=rows,
    )


__all__ = [
    "DEFAULT_MAX_FILE_BYTES",
    "HeaderIndex",
    "Source",
    "SourceRows",
    "describe_source",
    "parse_rows",
    "read_source_bytes",
    "resolve_header",
]
