"""Once-per-file text encoding detection.

Strategy
--------
1. A byte-order mark wins outright (UTF-8 with BOM, UTF-16 LE/BE).
2. Otherwise each candidate encoding allowed by the profile is scored: bytes
   that fail to decode score zero, and decodable text scores the fraction of
   characters that look like ordinary statement text (letters, digits,
   punctuation, whitespace, common currency signs). Strict UTF-8 gets a small
   bonus because a successful multi-byte UTF-8 decode is strong evidence.
3. The best score below ``min_confidence`` fails the whole file with
   :class:`UnsupportedEncodingError` before any row is decoded.

Only a prefix of the file is scored. :func:`decode_text` decodes the whole
file with the winner; if a byte past the prefix does not decode, the other
candidates are tried on the full text in preference order, and when none of
them qualifies the file fails with :class:`UnsupportedEncodingError`.
"""

from __future__ import annotations

import codecs
import unicodedata
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import UnsupportedEncodingError
from ..logging_setup import get_logger

_logger = get_logger("transaction_rules.ingest.encoding")

DEFAULT_MIN_CONFIDENCE = 0.9
_SAMPLE_BYTES = 64 * 1024

_BOMS: tuple[tuple[bytes, str], ...] = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)

_EXTRA_PLAUSIBLE = set("€£¥$¢§°±µ«»–—‘’“”…·")


@dataclass(frozen=True, slots=True)
class EncodingGuess:
    encoding: str
    confidence: float
    bom: bool = False


def _plausible(ch: str) -> bool:
    if ch in "\r\n\t":
        return True
    if ch in _EXTRA_PLAUSIBLE:
        return True
    cat = unicodedata.category(ch)
    # Letters, marks, numbers, punctuation, symbols, spaces; controls and
    # unassigned/private-use code points count against the candidate.
    return cat[0] in "LMNPSZ" and cat not in {"So", "Co", "Cn"}


def _score(text: str) -> float:
    if not text:
        return 1.0
    good = sum(1 for ch in text if _plausible(ch))
    return good / len(text)


def _decode_sample(sample: bytes, encoding: str, *, truncated: bool) -> str | None:
    decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
    try:
        # final=False tolerates a multi-byte sequence cut by the sample window.
        return decoder.decode(sample, final=not truncated)
    except UnicodeDecodeError:
        return None


def detect_encoding(
    data: bytes,
    candidates: Sequence[str],
    *,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    source: str = "<bytes>",
) -> EncodingGuess:
    """Choose one of ``candidates`` for ``data`` or raise.

    Parameters
    ----------
    data:
        The complete file contents (only a prefix is inspected).
    candidates:
        Supported encodings in preference order; ties go to the earlier one.
    min_confidence:
        Minimum plausibility score in ``[0, 1]``.
    source:
        Descriptor used in the error message.
    """

    for bom, name in _BOMS:
        if data.startswith(bom):
            _logger.debug("encoding:bom source=%s encoding=%s", source, name)
            return EncodingGuess(encoding=name, confidence=1.0, bom=True)

    sample = data[:_SAMPLE_BYTES]
    truncated = len(data) > _SAMPLE_BYTES

    best: EncodingGuess | None = None
    for enc in candidates:
        # UTF-16 without a BOM is not something bank exports produce.
        if enc == "utf-16":
            continue
        text = _decode_sample(sample, enc, truncated=truncated)
        if text is None:
            continue
        score = _score(text)
        if enc == "utf-8" and any(b >= 0x80 for b in sample):
            score = min(1.0, score + 0.05)
        if best is None or score > best.confidence:
            best = EncodingGuess(encoding=enc, confidence=score)

    if best is None or best.confidence < min_confidence:
        raise UnsupportedEncodingError(
            source,
            best.encoding if best else None,
            best.confidence if best else 0.0,
        )
    _logger.debug(
        "encoding:detected source=%s encoding=%s confidence=%.3f",
        source,
        best.encoding,
        best.confidence,
    )
    return best


def decode_text(
    data: bytes,
    candidates: Sequence[str],
    *,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    source: str = "<bytes>",
) -> tuple[str, EncodingGuess]:
    """Detect the encoding of ``data`` and decode all of it."""

    guess = detect_encoding(data, candidates, min_confidence=min_confidence, source=source)
    try:
        return data.decode(guess.encoding), guess
    except UnicodeDecodeError as exc:
        _logger.warning(
            "encoding:late_decode_error source=%s encoding=%s offset=%d",
            source,
            guess.encoding,
            exc.start,
        )
    # A byte-order mark is an explicit claim; bytes that contradict it are corrupt.
    if guess.bom:
        raise UnsupportedEncodingError(source, guess.encoding, 0.0)

    for enc in candidates:
        if enc in (guess.encoding, "utf-16"):
            continue
        try:
            text = data.decode(enc)
        except UnicodeDecodeError:
            continue
        score = _score(text)
        if score >= min_confidence:
            _logger.info(
                "encoding:fallback source=%s from=%s to=%s confidence=%.3f",
                source,
                guess.encoding,
                enc,
                score,
            )
            return text, EncodingGuess(encoding=enc, confidence=score)
    raise UnsupportedEncodingError(source, guess.encoding, 0.0)


__all__ = ["DEFAULT_MIN_CONFIDENCE", "EncodingGuess", "decode_text", "detect_encoding"]
