"""Bank-format profiles: column layout and number/date conventions per bank.

A profile tells the normalizer where each canonical field lives in a row and
how to read it. Columns are referenced either by header name (matched
case-insensitively after trimming) or by zero-based index for exports without
a header row.

Canonical column keys
---------------------
- ``date`` (required), ``amount`` (required), ``description`` (required; a
  list of columns is joined with a space)
- ``payee``, ``account``, ``currency``, ``reference`` (optional)
- ``sign`` (optional): a debit/credit indicator column; values listed in
  ``negative_sign_values`` make the amount negative.

Built-in profiles are exposed through :func:`get_profile`; custom ones can be
loaded from JSON with :func:`load_profile`.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from os import PathLike
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

ColumnRef = str | int

REQUIRED_COLUMNS: tuple[str, ...] = ("date", "amount", "description")
OPTIONAL_COLUMNS: tuple[str, ...] = ("payee", "account", "currency", "reference", "sign")

# Encodings the detector may choose between, in preference order.
SUPPORTED_ENCODINGS: tuple[str, ...] = ("utf-8", "utf-16", "cp1252", "iso-8859-1")


class BankProfile(BaseModel):
    """Column mapping and parsing conventions for one bank export format."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    delimiter: str = ","
    quotechar: str = '"'
    has_header: bool = True
    # Lines to drop before the header (or first data row); some banks emit a preamble.
    skip_lines: int = 0
    columns: Mapping[str, ColumnRef | tuple[ColumnRef, ...]]
    decimal_separator: str = "."
    thousands_separator: str | None = ","
    date_formats: tuple[str, ...] = ("%Y-%m-%d",)
    encodings: tuple[str, ...] = SUPPORTED_ENCODINGS
    default_currency: str = "EUR"
    default_account: str | None = None
    negative_sign_values: tuple[str, ...] = ()
    invert_amounts: bool = False
    # Extra column keys folded into the fingerprint (e.g. a bank sequence number).
    fingerprint_columns: tuple[str, ...] = ()

    @field_validator("delimiter", "quotechar", "decimal_separator")
    @classmethod
    def _single_char(cls, v: str) -> str:
        if len(v) != 1:
            raise ValueError("must be a single character")
        return v

    @field_validator("encodings")
    @classmethod
    def _known_encodings(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        unknown = [e for e in v if e.lower() not in SUPPORTED_ENCODINGS]
        if unknown or not v:
            raise ValueError(
                f"encodings must be a non-empty subset of {list(SUPPORTED_ENCODINGS)}; "
                f"got unsupported {unknown}"
            )
        return tuple(e.lower() for e in v)

    @model_validator(mode="after")
    def _check_columns(self) -> BankProfile:
        missing = [k for k in REQUIRED_COLUMNS if k not in self.columns]
        if missing:
            raise ValueError(f"profile {self.name!r} lacks required columns: {missing}")
        allowed = set(REQUIRED_COLUMNS) | set(OPTIONAL_COLUMNS)
        extra = sorted(k for k in self.columns if k not in allowed)
        if extra:
            raise ValueError(f"profile {self.name!r} maps unknown column keys: {extra}")
        if "account" not in self.columns and not self.default_account:
            raise ValueError(
                f"profile {self.name!r} needs an 'account' column or a default_account"
            )
        if self.thousands_separator == self.decimal_separator:
            raise ValueError("thousands_separator must differ from decimal_separator")
        for key in self.fingerprint_columns:
            if key not in self.columns:
                raise ValueError(f"fingerprint column {key!r} is not mapped in columns")
        if not self.has_header:
            named = [
                k
                for k, ref in self.columns.items()
                if any(isinstance(r, str) for r in _as_refs(ref))
            ]
            if named:
                raise ValueError(
                    f"profile {self.name!r} has no header row; columns {named} must use indexes"
                )
        return self

    def refs(self, key: str) -> tuple[ColumnRef, ...]:
        ref = self.columns.get(key)
        return _as_refs(ref) if ref is not None else ()

    def with_account(self, account: str) -> BankProfile:
        """Copy of this profile that assigns ``account`` to every row."""

        columns = {k: v for k, v in self.columns.items() if k != "account"}
        return self.model_copy(update={"columns": columns, "default_account": account})


def _as_refs(ref: ColumnRef | tuple[ColumnRef, ...] | list[ColumnRef]) -> tuple[ColumnRef, ...]:
    if isinstance(ref, tuple | list):
        return tuple(ref)
    return (ref,)


# ---------------------------------------------------------------------------
# Built-in profiles
# ---------------------------------------------------------------------------

_BUILTIN: dict[str, BankProfile] = {
    "generic": BankProfile(
        name="generic",
        columns={
            "date": "date",
            "amount": "amount",
            "description": "description",
            "payee": "payee",
            "account": "account",
            "currency": "currency",
        },
    ),
    # Rabobank CSV export: ISO dates, signed Dutch amounts ("+1.234,56"),
    # ISO-8859-1 by default. Volgnr is unique per account, so it joins the fingerprint.
    "rabobank": BankProfile(
        name="rabobank",
        columns={
            "account": "IBAN/BBAN",
            "currency": "Munt",
            "reference": "Volgnr",
            "date": "Datum",
            "amount": "Bedrag",
            "payee": "Naam tegenpartij",
            "description": ("Omschrijving-1", "Omschrijving-2", "Omschrijving-3"),
        },
        decimal_separator=",",
        thousands_separator=".",
        encodings=("utf-8", "iso-8859-1", "cp1252"),
        fingerprint_columns=("reference",),
    ),
    # ING (NL) semicolon export with an Af/Bij indicator and unsigned amounts.
    "ing_nl": BankProfile(
        name="ing_nl",
        delimiter=";",
        columns={
            "date": "Datum",
            "payee": "Naam / Omschrijving",
            "account": "Rekening",
            "sign": "Af Bij",
            "amount": "Bedrag (EUR)",
            "description": ("Naam / Omschrijving", "Mededelingen"),
        },
        decimal_separator=",",
        thousands_separator=".",
        date_formats=("%Y%m%d", "%d-%m-%Y"),
        negative_sign_values=("Af",),
    ),
    # Chase card export; purchases are already negative.
    "chase": BankProfile(
        name="chase",
        columns={
            "date": "Post Date",
            "amount": "Amount",
            "description": "Description",
            "payee": "Description",
            "reference": "Transaction Date",
        },
        date_formats=("%m/%d/%Y",),
        default_currency="USD",
        default_account="chase",
        encodings=("utf-8", "cp1252"),
    ),
}


def list_profiles() -> list[str]:
    return sorted(_BUILTIN)


def get_profile(name: str) -> BankProfile:
    """Return a built-in profile by name (case-insensitive; ``-``/space → ``_``)."""

    key = name.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return _BUILTIN[key]
    except KeyError:
        raise ValueError(
            f"unknown bank profile: {name!r}. Known profiles: {', '.join(list_profiles())}"
        ) from None


def load_profile(path: str | PathLike[str]) -> BankProfile:
    """Load and validate a custom profile from a JSON file."""

    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        data = json.load(f)
    try:
        return BankProfile.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"invalid bank profile in {p}: {exc}") from exc


def resolve_profile(name_or_path: str) -> BankProfile:
    """Accept either a built-in profile name or a path to a JSON profile."""

    if name_or_path.endswith(".json") or Path(name_or_path).is_file():
        return load_profile(name_or_path)
    return get_profile(name_or_path)


__all__ = [
    "BankProfile",
    "ColumnRef",
    "REQUIRED_COLUMNS",
    "OPTIONAL_COLUMNS",
    "SUPPORTED_ENCODINGS",
    "get_profile",
    "list_profiles",
    "load_profile",
    "resolve_profile",
]
