"""Source decoding and parsing: bank profiles, encoding detection, CSV rows."""

from .encoding import EncodingGuess, decode_text, detect_encoding
from .profiles import BankProfile, get_profile, list_profiles, load_profile, resolve_profile
from .reader import SourceRows, parse_rows, read_source_bytes

__all__ = [
    "BankProfile",
    "EncodingGuess",
    "SourceRows",
    "decode_text",
    "detect_encoding",
    "get_profile",
    "list_profiles",
    "load_profile",
    "parse_rows",
    "read_source_bytes",
    "resolve_profile",
]
