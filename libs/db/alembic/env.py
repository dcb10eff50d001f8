# ruff: noqa: I001
"""
Alembic environment for the transaction-rules tables.

URL resolution: ``DATABASE_URL`` (after loading the nearest ``.env``), then
``sqlalchemy.url`` from alembic.ini. Only ``tr_*`` tables are managed here, so
autogenerate ignores anything else living in a shared database. SQLite runs
in batch mode because it cannot ALTER most constraints in place.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from dotenv import load_dotenv, find_dotenv

import db as _db_pkg

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

_env_file = find_dotenv(usecwd=True)
if _env_file:
    load_dotenv(dotenv_path=_env_file, override=False)

TABLE_PREFIX = "tr_"


def _resolve_url() -> str:
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError(
            "No database URL: export DATABASE_URL or set sqlalchemy.url in alembic.ini"
        )
    return url


def _include_object(obj, name, type_, reflected, compare_to) -> bool:
    if type_ == "table":
        return bool(name) and name.startswith(TABLE_PREFIX)
    return True


def _configure_kwargs(url: str) -> dict:
    return {
        "target_metadata": _db_pkg.metadata,
        "include_object": _include_object,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline(url: str) -> None:
    """Emit SQL to stdout instead of connecting."""
    context.configure(url=url, literal_binds=True, **_configure_kwargs(url))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online(url: str) -> None:
    section = dict(config.get_section(config.config_ini_section) or {})
    section["sqlalchemy.url"] = url
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with engine.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(url))
        with context.begin_transaction():
            context.run_migrations()


_url = _resolve_url()
if context.is_offline_mode():
    run_migrations_offline(_url)
else:
    run_migrations_online(_url)
