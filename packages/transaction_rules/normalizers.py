"""Raw CSV row → canonical :class:`Transaction`.

``normalize_row`` is a pure function of ``(row, profile)``: it performs no I/O,
reads no clock and derives both the fingerprint and the transaction id from
the row content and its row number. Any field that cannot be parsed raises
:class:`MalformedRowError` naming the row and the offending field.

Fingerprint composition
-----------------------
SHA-256 over canonical JSON of ``account``, ISO ``date``, 2-place ``amount``,
whitespace-collapsed ``description`` and the profile's ``fingerprint_columns``
(e.g. a bank sequence number). Payee, currency and anything a rule may change
are deliberately excluded so the fingerprint survives re-imports and re-runs.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import MalformedRowError
from .ingest.profiles import BankProfile
from .models import Transaction

_CENTS = Decimal("0.01")
_CURRENCY_SIGNS = "$€£¥"
_CURRENCY_CODE_RE = re.compile(r"^[A-Z]{3}$")
_DIGITS_RE = re.compile(r"^\d+$")

# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def clean_text(raw: str | None) -> str:
    """Trim and collapse internal whitespace (including newlines) to one space."""

    if not raw:
        return ""
    return " ".join(raw.split())


def parse_amount(
    raw: str | None,
    *,
    decimal_separator: str = ".",
    thousands_separator: str | None = ",",
) -> Decimal:
    """Parse a bank amount string into a 2-place ``Decimal``.

    Accepts a leading ``+``/``-``, a trailing ``-``, parentheses for negatives,
    currency symbols or a leading/trailing ISO code, and grouped thousands.
    Grouping is checked (``1,23,4`` is rejected) so a misconfigured separator
    fails loudly instead of scaling the amount.
    """

    if raw is None:
        raise ValueError("amount is required")
    s = clean_text(raw)
    if not s:
        raise ValueError("amount is empty")

    negative = False
    # Strip sign, currency markers and parentheses until stable so any
    # ordering ("-€(1.234,56)", "(1,234.56) USD", "12.50-") is handled.
    while s:
        before = s
        if s.startswith("+"):
            s = s[1:].lstrip()
        elif s.startswith("-"):
            negative = True
            s = s[1:].lstrip()
        if s.endswith("-"):
            negative = True
            s = s[:-1].rstrip()
        if s and s[0] in _CURRENCY_SIGNS:
            s = s[1:].lstrip()
        if s and s[-1] in _CURRENCY_SIGNS:
            s = s[:-1].rstrip()
        if len(s) > 4 and _CURRENCY_CODE_RE.match(s[:3]) and s[3] == " ":
            s = s[4:]
        if len(s) > 4 and _CURRENCY_CODE_RE.match(s[-3:]) and s[-4] == " ":
            s = s[:-4]
        if len(s) >= 2 and s.startswith("(") and s.endswith(")"):
            negative = True
            s = s[1:-1].strip()
        if s == before:
            break

    s = s.replace(" ", "")
    whole, sep, frac = s.partition(decimal_separator)
    if sep and not _DIGITS_RE.match(frac):
        raise ValueError(f"invalid amount: {raw!r}")
    groups = whole.split(thousands_separator) if thousands_separator else [whole]
    if not all(_DIGITS_RE.match(g) for g in groups):
        raise ValueError(f"invalid amount: {raw!r}")
    if len(groups) > 1 and (len(groups[0]) > 3 or any(len(g) != 3 for g in groups[1:])):
        raise ValueError(f"invalid digit grouping in amount: {raw!r}")

    try:
        d = Decimal("".join(groups) + ("." + frac if sep else ""))
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {raw!r}") from exc
    d = d.quantize(_CENTS, rounding=ROUND_HALF_UP)
    # No negative zero: "-0,00" and "0,00" must fingerprint the same.
    return -d if negative and d != 0 else d


def parse_date(raw: str | None, formats: Sequence[str]) -> date:
    """Parse ``raw`` with the first matching format; time parts are dropped."""

    s = clean_text(raw)
    if not s:
        raise ValueError("date is empty")
    candidates = [s]
    # Some exports append a time ("01/31/2024 13:45" or ISO "2024-01-31T13:45").
    head = s.split(" ", 1)[0].split("T", 1)[0]
    if head != s:
        candidates.append(head)
    for value in candidates:
        for fmt in formats:
            try:
                return datetime.strptime(value, fmt).date()
            except ValueError:
                continue
    raise ValueError(f"{raw!r} does not match any of {list(formats)}")


def compute_fingerprint(
    *,
    account: str,
    day: date,
    amount: Decimal,
    description: str,
    extra: Mapping[str, str] | None = None,
) -> str:
    """Stable SHA-256 over the immutable transaction fields."""

    payload = {
        "account": account,
        "date": day.isoformat(),
        "amount": f"{amount.quantize(_CENTS, rounding=ROUND_HALF_UP):.2f}",
        "description": clean_text(description),
        "extra": dict(extra or {}),
    }
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Row normalization
# ---------------------------------------------------------------------------


def _field(
    fields: Sequence[str],
    header_index: Mapping[str, tuple[int, ...]],
    key: str,
    *,
    row_number: int,
    required: bool,
) -> str:
    idxs = header_index.get(key, ())
    values: list[str] = []
    for i in idxs:
        if i >= len(fields):
            if required and len(idxs) == 1:
                raise MalformedRowError(
                    row_number, key, f"row has {len(fields)} fields, expected column {i + 1}"
                )
            continue
        v = clean_text(fields[i])
        if v:
            values.append(v)
    # Multi-column descriptions may repeat a value (e.g. name in two columns).
    return " ".join(dict.fromkeys(values))


def normalize_row(
    fields: Sequence[str],
    *,
    row_number: int,
    profile: BankProfile,
    header_index: Mapping[str, tuple[int, ...]],
    batch_id: str | None = None,
) -> Transaction:
    """Build a canonical :class:`Transaction` from one raw row.

    Parameters
    ----------
    fields:
        Decoded cell values of the row.
    row_number:
        1-based data row number, reported in :class:`MalformedRowError`.
    profile:
        Bank profile with separators, date formats and defaults.
    header_index:
        Column key → field indexes, from :func:`ingest.reader.resolve_header`.
    batch_id:
        Import batch reference stamped onto the transaction.
    """

    def get(key: str, *, required: bool = False) -> str:
        return _field(fields, header_index, key, row_number=row_number, required=required)

    raw_amount = get("amount", required=True)
    try:
        amount = parse_amount(
            raw_amount,
            decimal_separator=profile.decimal_separator,
            thousands_separator=profile.thousands_separator,
        )
    except ValueError as exc:
        raise MalformedRowError(row_number, "amount", str(exc)) from exc

    if "sign" in header_index:
        sign = get("sign").casefold()
        negatives = {v.casefold() for v in profile.negative_sign_values}
        amount = -abs(amount) if sign in negatives else abs(amount)
    if profile.invert_amounts:
        amount = -amount

    try:
        day = parse_date(get("date", required=True), profile.date_formats)
    except ValueError as exc:
        raise MalformedRowError(row_number, "date", str(exc)) from exc

    payee = get("payee") or None
    description = get("description", required=True) or payee or ""
    if not description:
        raise MalformedRowError(row_number, "description", "description is empty")

    account = get("account") or (profile.default_account or "")
    if not account:
        raise MalformedRowError(row_number, "account", "account is empty")

    currency = (get("currency") or profile.default_currency).upper()
    if not _CURRENCY_CODE_RE.match(currency):
        raise MalformedRowError(row_number, "currency", f"not an ISO 4217 code: {currency!r}")

    extra = {key: get(key) for key in profile.fingerprint_columns}
    fingerprint = compute_fingerprint(
        account=account, day=day, amount=amount, description=description, extra=extra
    )
    return Transaction(
        id=f"{fingerprint[:16]}-{row_number}",
        date=day,
        amount=amount,
        currency=currency,
        description=description,
        account=account,
        fingerprint=fingerprint,
        payee=payee,
        batch_id=batch_id,
        row_number=row_number,
    )


__all__ = [
    "clean_text",
    "compute_fingerprint",
    "normalize_row",
    "parse_amount",
    "parse_date",
]
