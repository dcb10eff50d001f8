"""Pytest configuration for test isolation.

Settings are read from ``TRANSACTION_RULES_*`` variables and ``DATABASE_URL``
(possibly loaded from a developer's ``.env``). A stray value there would change
worker counts, batch sizes or the target database under the tests, so every
test starts from a clean environment and its own working directory.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Local packages resolve first when the project is not installed.
_ROOT = Path(__file__).resolve().parents[1]
for _p in (_ROOT / "libs" / "db" / "src", _ROOT / "packages", _ROOT / "tests"):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop package settings from the environment and run in ``tmp_path``."""

    for name in list(os.environ):
        if name.startswith("TRANSACTION_RULES_") or name == "DATABASE_URL":
            monkeypatch.delenv(name, raising=False)
    # The CLI loads ./.env; keep it pointed at an empty directory.
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    from helpers.db import bootstrap_sqlite_db

    return bootstrap_sqlite_db(tmp_path / "db" / "transactions.sqlite3")
