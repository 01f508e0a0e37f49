# ruff: noqa: I001
"""CLI for the ``ledger_pipeline`` package.

A Typer console interface over :mod:`ledger_pipeline.api`. Environment
variables (notably ``DATABASE_URL``) are loaded from a local ``.env`` using
``python-dotenv`` before any command runs. Business logic lives in the
library modules; commands only parse input and print results.

Input files for ``process`` hold parsed transactions as a JSON array or as
JSON Lines, one object per transaction, with the fields of
:class:`ledger_pipeline.models.ParsedTransaction`.
"""

from __future__ import annotations

import json
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError
from typer.models import OptionInfo

from .logging_setup import configure_logging
from .models import (
    InvalidPercent,
    ParsedTransaction,
    PendingEdits,
    PendingStatus,
    ProcessBlocked,
    ProcessDuplicate,
    ProcessError,
    ProcessResult,
    ProcessSuccess,
    Processed,
    QueueDuplicate,
    Queued,
    QueueResult,
    RetroactiveSuccess,
    Stale,
    SweepReport,
    TransitionResult,
)


# ---- Small module-level helpers used by CLI commands ------------------------


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    raise typer.Exit(1)


def _load_parsed(path: Path) -> list[ParsedTransaction]:
    """Read a JSON array or JSON Lines file of parsed transactions."""

    text = path.read_text(encoding="utf-8")
    stripped = text.lstrip()
    raw: list[Any]
    if stripped.startswith("["):
        raw = json.loads(stripped)
    else:
        raw = [json.loads(line) for line in text.splitlines() if line.strip()]
    return [ParsedTransaction.model_validate(obj) for obj in raw]


def _decimal(value: str | None, name: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        _fail(f"{name} must be a number, got {value!r}")
    return None  # pragma: no cover - _fail raises


def describe_result(result: ProcessResult | QueueResult) -> str:
    """One tab-separated line describing a pipeline or queue outcome."""

    match result:
        case ProcessSuccess(transaction_id=tx_id, cashback_amount=cb, subscription_matched=sub):
            extra = f"\tcashback={cb}" if cb is not None else ""
            if sub:
                extra += "\tsubscription"
            return f"saved\t{tx_id}{extra}"
        case ProcessBlocked(rule_name=name):
            return f"blocked\t{name}"
        case ProcessDuplicate(existing_transaction_id=tx_id, reason=reason, pending_id=pid):
            ref = tx_id if tx_id is not None else f"pending:{pid}"
            return f"duplicate\t{ref}\t{reason}"
        case ProcessError(message=message):
            return f"error\t{message}"
        case Queued(pending_id=pid, expires_at=expires):
            return f"queued\t{pid}\t{expires.isoformat()}"
        case QueueDuplicate(reason=reason, existing_transaction_id=tx_id, pending_id=pid):
            ref = tx_id if tx_id is not None else f"pending:{pid}"
            return f"duplicate\t{ref}\t{reason}"
    return repr(result)


def describe_transition(outcome: TransitionResult) -> str:
    if isinstance(outcome, Stale):
        status = outcome.status.value if outcome.status is not None else "missing"
        return f"stale\t{outcome.pending_id}\t{status}"
    line = f"{outcome.status.value.lower()}\t{outcome.pending_id}"
    if outcome.result is not None:
        line += f"\t{describe_result(outcome.result)}"
    return line


def describe_report(report: SweepReport) -> str:
    return (
        f"examined={report.examined} saved={report.saved} blocked={report.blocked} "
        f"duplicates={report.duplicates} stale={report.stale} failed={report.failed}"
    )


# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults). Typer will inspect these when used as default values below.
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
WORKERS_OPTION: OptionInfo = typer.Option(
    "--workers", min=1, help="Worker threads (default LEDGER_SWEEP_WORKERS or 1)."
)


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Process parsed bank-notification transactions into the ledger. "
        "Loads DATABASE_URL from a local .env before running."
    ),
)


@app.command("init-db")
def init_db_cmd(database_url: Annotated[str | None, DATABASE_URL_OPTION] = None) -> None:
    """Create all ledger tables (development databases; use Alembic otherwise)."""

    from db.client import get_engine
    from db.models.ledger import Base

    try:
        Base.metadata.create_all(get_engine(database_url=database_url))
    except Exception as e:
        _fail(f"failed to create tables: {e}")
    typer.echo("ok")


@app.command("process")
def process_cmd(
    path: Annotated[Path, typer.Argument(help="JSON or JSONL file of parsed transactions.")],
    *,
    queue: bool = typer.Option(False, help="Queue for confirmation instead of saving."),
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
    workers: Annotated[int | None, WORKERS_OPTION] = None,
) -> None:
    """Save (or queue) every transaction in ``path``; one result line each."""

    from . import api

    try:
        items = _load_parsed(path)
    except FileNotFoundError:
        _fail(f"File not found: {path}")
    except json.JSONDecodeError as e:
        _fail(f"invalid JSON in {path}: {e}")
    except PydanticValidationError as e:
        _fail(f"invalid transaction in {path}: {e}")

    results: list[ProcessResult | QueueResult]
    if queue:
        results = [api.queue_transaction(p, database_url=database_url) for p in items]
    else:
        results = list(api.process_batch(items, database_url=database_url, concurrency=workers))

    for result in results:
        typer.echo(describe_result(result))
    if any(isinstance(r, ProcessError) for r in results):
        raise typer.Exit(1)


@app.command("pending")
def pending_cmd(
    show_all: bool = typer.Option(False, "--all", help="Include resolved entries."),
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """List pending entries: id, status, amount, merchant, category, expiry."""

    from db.client import session_scope

    from .pending import list_pending

    with session_scope(database_url=database_url) as session:
        rows = list_pending(session, status=None if show_all else PendingStatus.PENDING)
        lines = [
            "\t".join(
                [
                    str(r.id),
                    r.status,
                    f"{r.amount} {r.currency}",
                    r.merchant,
                    r.category,
                    r.expires_at.isoformat(),
                ]
            )
            for r in rows
        ]
    for line in lines:
        typer.echo(line)


@app.command("confirm")
def confirm_cmd(
    pending_id: int,
    *,
    category: str | None = typer.Option(None, help="Override the category."),
    merchant: str | None = typer.Option(None, help="Override the merchant."),
    amount: str | None = typer.Option(None, help="Override the amount."),
    cashback: str | None = typer.Option(None, help="Custom cashback percent for this entry."),
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Confirm a pending entry and save it to the ledger."""

    from . import api
    from .errors import ValidationError

    try:
        edits = PendingEdits(
            category=category, merchant=merchant, amount=_decimal(amount, "amount")
        )
        outcome = api.confirm(
            pending_id,
            edits=edits,
            custom_cashback_percent=_decimal(cashback, "cashback"),
            database_url=database_url,
        )
    except (ValidationError, PydanticValidationError) as e:
        _fail(str(e))
    typer.echo(describe_transition(outcome))
    if isinstance(outcome, Processed) and isinstance(outcome.result, ProcessError):
        raise typer.Exit(1)


@app.command("reject")
def reject_cmd(
    pending_id: int, database_url: Annotated[str | None, DATABASE_URL_OPTION] = None
) -> None:
    """Reject a pending entry; nothing is saved."""

    from . import api

    typer.echo(describe_transition(api.reject(pending_id, database_url=database_url)))


@app.command("sweep")
def sweep_cmd(
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
    workers: Annotated[int | None, WORKERS_OPTION] = None,
) -> None:
    """Auto-save every expired pending entry and print the counts."""

    from . import api
    from .errors import PersistenceError

    try:
        report = api.run_expiry_sweep(database_url=database_url, concurrency=workers)
    except PersistenceError as e:
        _fail(str(e))
    typer.echo(describe_report(report))
    if report.failed:
        raise typer.Exit(1)


@app.command("confirm-all")
def confirm_all_cmd(
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
    workers: Annotated[int | None, WORKERS_OPTION] = None,
) -> None:
    """Confirm every pending entry as queued and print the counts."""

    from . import api
    from .errors import PersistenceError

    try:
        report = api.confirm_all(database_url=database_url, concurrency=workers)
    except PersistenceError as e:
        _fail(str(e))
    typer.echo(describe_report(report))
    if report.failed:
        raise typer.Exit(1)


@app.command("set-cashback")
def set_cashback_cmd(
    bank: str,
    last4: str,
    percent: str,
    *,
    retroactive: bool = typer.Option(
        False, help="Also apply to past expenses of this account without cashback."
    ),
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Set an account's default cashback percent."""

    from . import api

    pct = _decimal(percent, "percent")
    result = api.set_account_cashback(
        bank, last4, pct, apply_retroactive=retroactive, database_url=database_url
    )
    if isinstance(result, InvalidPercent):
        _fail(f"percent must be greater than 0, got {percent}")
    if isinstance(result, RetroactiveSuccess):
        typer.echo(f"ok\tupdated={result.updated_count}")
    else:
        typer.echo("ok")


@app.command("rules-fired")
def rules_fired_cmd(
    transaction_id: int | None = typer.Option(None, help="Only this ledger transaction."),
    database_url: Annotated[str | None, DATABASE_URL_OPTION] = None,
) -> None:
    """Print the rule audit trail: transaction id, rule name, changed fields."""

    from db.client import session_scope

    from .rules import list_rule_applications

    with session_scope(database_url=database_url) as session:
        lines = [
            f"{a.transaction_id}\t{a.rule_name}\t{json.dumps(a.fields_modified, sort_keys=True)}"
            for a in list_rule_applications(session, transaction_id=transaction_id)
        ]
    for line in lines:
        typer.echo(line)


@app.callback()
def _root() -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures package logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    app()
