# ruff: noqa: I001
"""CLI for the ``transaction_rules`` package.

A Typer console over :mod:`transaction_rules.api`. ``.env`` in the working
directory is loaded with ``python-dotenv`` before any command runs (existing
environment variables win), and logging is configured centrally.

Commands
--------
- ``import``: import a bank CSV, categorize it with a rules file and persist
  it (SQL database when a URL is available, otherwise a dry run in memory).
- ``rerun-rules``: re-apply the current rules to persisted transactions.
- ``check-rules``: compile a rules file and list accepted/rejected rules.
- ``profiles``: list the built-in bank profiles.
"""

from __future__ import annotations

import json
import os
from datetime import date
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table
from typer.models import ArgumentInfo, OptionInfo

from .config import ImportSettings
from .errors import TransactionRulesError
from .logging_setup import configure_logging
from .models import DateRange, ImportBatch, ProgressEvent

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Import bank CSV exports and categorize them with user-defined rules. "
        "Loads DATABASE_URL and TRANSACTION_RULES_* settings from a local .env."
    ),
)

# Module-level option objects (no calls in parameter defaults, ruff B008).
CSV_PATH_ARGUMENT: ArgumentInfo = typer.Argument(
    ...,
    help="Path to the bank CSV export",
    dir_okay=False,
    file_okay=True,
    exists=False,  # the pipeline reports a missing file as a batch failure
)
RULES_PATH_ARGUMENT: ArgumentInfo = typer.Argument(
    ..., help="Path to a rules JSON document", dir_okay=False, exists=True, readable=True
)
PROFILE_OPTION: OptionInfo = typer.Option(
    "generic", "--profile", "-p", help="Built-in profile name or path to a profile JSON."
)
RULES_OPTION: OptionInfo = typer.Option(
    None, "--rules", "-r", help="Rules JSON document ({'rules': [...]} or a list)."
)
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, help="Override DATABASE_URL (falls back to env var)."
)
DRY_RUN_OPTION: OptionInfo = typer.Option(
    False, "--dry-run", help="Keep results in memory; nothing is written to a database."
)
CREATE_SCHEMA_OPTION: OptionInfo = typer.Option(
    False, help="Create missing tables from the ORM models (SQLite and tests)."
)
ACCOUNT_OPTION: OptionInfo = typer.Option(
    None, help="Account identifier for every row (overrides the profile default)."
)
MAX_WORKERS_OPTION: OptionInfo = typer.Option(None, min=1, help="Worker threads.")
CHUNK_SIZE_OPTION: OptionInfo = typer.Option(None, min=1, help="Rows per processing chunk.")
COMMIT_BATCH_OPTION: OptionInfo = typer.Option(
    None, min=1, help="Transactions per database commit."
)
JSON_OPTION: OptionInfo = typer.Option(False, "--json", help="Print the summary as JSON.")
SINCE_OPTION: OptionInfo = typer.Option(None, help="First date (YYYY-MM-DD), inclusive.")
UNTIL_OPTION: OptionInfo = typer.Option(None, help="Last date (YYYY-MM-DD), inclusive.")
LOG_LEVEL_OPTION: OptionInfo = typer.Option(
    None, "--log-level", help="Logging level (overrides TRANSACTION_RULES_LOG_LEVEL)."
)


# ---- Helpers -------------------------------------------------------------------


def _fail(message: str, code: int = 1) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(code)


def _open_store(database_url: str | None, *, dry_run: bool, create_schema: bool):
    from .api import open_sql_store
    from .stores import InMemoryRecordStore

    url = database_url or os.getenv("DATABASE_URL")
    if dry_run or not url:
        if not dry_run:
            err_console.print("[yellow]DATABASE_URL is not set; running in memory (dry run).[/yellow]")
        return InMemoryRecordStore()
    return open_sql_store(url, create_schema=create_schema)


def _parse_day(raw: str | None, name: str) -> date | None:
    if raw is None:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise _fail(f"{name} must be YYYY-MM-DD, got {raw!r}") from None


def _summary_table(summary: ImportBatch) -> Table:
    table = Table(title=f"Import {summary.id}", show_header=False)
    table.add_column("field", style="cyan")
    table.add_column("value")
    rows = [
        ("source", summary.source),
        ("profile", summary.profile),
        ("encoding", summary.encoding or "-"),
        ("status", summary.status.value),
        ("rows", summary.row_count),
        ("accepted", summary.accepted_count),
        ("duplicates", summary.duplicate_count),
        ("malformed", summary.malformed_count),
        ("rule errors", summary.error_count),
        ("categorized", summary.categorized_count),
        ("committed", summary.committed_count),
        ("seconds", f"{summary.elapsed_seconds:.2f}"),
    ]
    for name, value in rows:
        table.add_row(name, str(value))
    return table


def _print_details(summary: ImportBatch, *, limit: int = 20) -> None:
    if summary.malformed_rows:
        table = Table(title="Malformed rows")
        table.add_column("row", justify="right")
        table.add_column("field")
        table.add_column("reason")
        for err in summary.malformed_rows[:limit]:
            table.add_row(str(err.row_number), err.field, err.reason)
        console.print(table)
        if len(summary.malformed_rows) > limit:
            console.print(f"... and {len(summary.malformed_rows) - limit} more")
    for rid in summary.skipped_rule_ids:
        console.print(f"[yellow]skipped rule[/yellow] {rid}")
    if summary.failure is not None:
        err_console.print(f"[red]Import failed:[/red] {summary.failure}")


# ---- Commands ------------------------------------------------------------------


@app.command("import")
def import_cmd(
    csv_path: Annotated[Path, CSV_PATH_ARGUMENT],
    *,
    profile: str = PROFILE_OPTION,
    rules: Path | None = RULES_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    create_schema: bool = CREATE_SCHEMA_OPTION,
    account: str | None = ACCOUNT_OPTION,
    max_workers: int | None = MAX_WORKERS_OPTION,
    chunk_size: int | None = CHUNK_SIZE_OPTION,
    commit_batch_size: int | None = COMMIT_BATCH_OPTION,
    as_json: bool = JSON_OPTION,
) -> None:
    """Import a bank CSV, categorize it with the rules and persist the result."""

    from .api import import_file

    try:
        settings = ImportSettings.from_env().with_overrides(
            max_workers=max_workers,
            chunk_size=chunk_size,
            commit_batch_size=commit_batch_size,
        )
        store = _open_store(database_url, dry_run=dry_run, create_schema=create_schema)
    except (TransactionRulesError, RuntimeError, ValueError) as e:
        raise _fail(str(e)) from e

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=err_console,
        transient=True,
        disable=as_json,
    ) as progress:
        task = progress.add_task(f"Importing {csv_path.name}", total=None)

        def _on_progress(ev: ProgressEvent) -> None:
            progress.update(task, completed=ev.processed_count, total=ev.total_count)

        try:
            summary = import_file(
                csv_path,
                profile,
                store=store,
                rules=rules,
                settings=settings,
                account=account,
                on_progress=_on_progress,
            )
        except (TransactionRulesError, OSError, ValueError) as e:
            raise _fail(str(e)) from e

    if as_json:
        typer.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        console.print(_summary_table(summary))
        _print_details(summary)
    if summary.failure is not None:
        raise typer.Exit(1)


@app.command("rerun-rules")
def rerun_rules_cmd(
    rules: Annotated[Path, RULES_PATH_ARGUMENT],
    *,
    database_url: str | None = DATABASE_URL_OPTION,
    account: str | None = ACCOUNT_OPTION,
    since: str | None = SINCE_OPTION,
    until: str | None = UNTIL_OPTION,
    max_workers: int | None = MAX_WORKERS_OPTION,
) -> None:
    """Re-apply the current rules to transactions already in the database."""

    from .api import as_rule_source, open_sql_store, rerun_rules

    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise _fail("DATABASE_URL is not set; pass --database-url")

    start = _parse_day(since, "--since")
    end = _parse_day(until, "--until")
    date_range = None
    if start is not None or end is not None:
        try:
            date_range = DateRange(start or date.min, end or date.max)
        except ValueError as e:
            raise _fail(str(e)) from e

    try:
        result = rerun_rules(
            open_sql_store(url),
            as_rule_source(rules),
            account=account,
            date_range=date_range,
            settings=ImportSettings.from_env().with_overrides(max_workers=max_workers),
        )
    except TransactionRulesError as e:
        raise _fail(str(e)) from e

    table = Table(title="Re-run rules", show_header=False)
    table.add_column("field", style="cyan")
    table.add_column("value")
    table.add_row("examined", str(result.examined))
    table.add_row("changed", str(result.changed))
    table.add_row("updated", str(result.updated))
    table.add_row("rule errors", str(len(result.rule_failures)))
    console.print(table)
    for err in result.rejected_rules:
        console.print(f"[yellow]rejected rule[/yellow] {err.rule_id}: {err.reason}")


@app.command("check-rules")
def check_rules_cmd(rules: Annotated[Path, RULES_PATH_ARGUMENT]) -> None:
    """Validate a rules file; exits 1 when any rule is rejected."""

    from .api import check_rules

    try:
        plan = check_rules(rules)
    except (OSError, ValueError) as e:
        raise _fail(f"could not read rules: {e}") from e

    table = Table(title=f"Rules ({len(plan)} active)")
    table.add_column("priority", justify="right")
    table.add_column("id")
    table.add_column("conditions", justify="right")
    table.add_column("actions", justify="right")
    for rule in plan:
        table.add_row(
            str(rule.priority), rule.id, str(len(rule.all_conditions())), str(len(rule.actions))
        )
    console.print(table)
    for err in plan.rejected:
        console.print(f"[red]rejected[/red] {err.rule_id}: {err.reason}")
    if plan.rejected:
        raise typer.Exit(1)


@app.command("profiles")
def profiles_cmd() -> None:
    """List the built-in bank profiles."""

    from .ingest.profiles import get_profile, list_profiles

    table = Table(title="Bank profiles")
    table.add_column("name")
    table.add_column("delimiter")
    table.add_column("decimal")
    table.add_column("date formats")
    table.add_column("currency")
    for name in list_profiles():
        p = get_profile(name)
        table.add_row(
            name, repr(p.delimiter), p.decimal_separator, ", ".join(p.date_formats), p.default_currency
        )
    console.print(table)


@app.callback()
def _root(log_level: str | None = LOG_LEVEL_OPTION) -> None:
    """Load ``.env`` from the working directory and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


def main() -> None:  # pragma: no cover - console script entry point
    app()


if __name__ == "__main__":  # pragma: no cover
    app()
