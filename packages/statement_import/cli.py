# ruff: noqa: I001
"""CLI for the ``statement_import`` package.

Command handlers (``cmd_*``) return a process exit status and are wrapped by
the Typer commands below. ``.env`` in the working directory is loaded with
``python-dotenv`` (without overriding the environment) before any command
runs, so ``OPENAI_API_KEY`` and ``DATABASE_URL`` can live there.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from typer.models import ArgumentInfo, OptionInfo

from .config import ImportSettings
from .errors import StatementImportError
from .logging_setup import configure_logging
from .orchestrator import ImportOrchestrator, ImportStatus, UploadedFile
from .review import ReviewSession


def _print_err(msg: str) -> None:
    print(msg, file=sys.stderr)


def _print_progress(status: ImportStatus) -> None:
    progress = f"[{status.current}/{status.total}] " if status.total else ""
    line = f"{progress}{status.message}"
    if status.detail:
        line += f" {status.detail}"
    _print_err(line)


def _build_orchestrator(
    *,
    database_url: str | None,
    settings: ImportSettings,
    with_ocr: bool,
) -> ImportOrchestrator:
    # Deferred imports keep `--help` fast.
    from .extract import TransactionExtractor
    from .ocr import OcrWorkerPool, TextExtractor
    from .persistence import SqlCategoryReader, SqlTransactionStore

    text_extractor = None
    if with_ocr:
        pool = OcrWorkerPool.from_settings(settings)
        pool.initialize()
        text_extractor = TextExtractor(pool, settings)
    return ImportOrchestrator(
        text_extractor=text_extractor,
        transaction_extractor=TransactionExtractor(settings=settings),
        categories=SqlCategoryReader(database_url=database_url),
        store=SqlTransactionStore(database_url=database_url),
        settings=settings,
        on_progress=_print_progress,
    )


def _finish_review(
    orchestrator: ImportOrchestrator,
    session: ReviewSession,
    *,
    assume_yes: bool,
    reviewer: Callable[[ReviewSession], bool] | None = None,
) -> int:
    if not assume_yes:
        if reviewer is None:
            from .term_ui import review_in_terminal as reviewer
        if not reviewer(session):
            orchestrator.discard(session)
            print("Import cancelled; nothing was saved.")
            return 0
    try:
        report = orchestrator.commit(session)
    except StatementImportError as e:
        _print_err(f"Error: {e.message}")
        return 1
    print(report.message)
    if report.merge_failures:
        _print_err(f"Warning: {len(report.merge_failures)} merge update(s) failed")
    return 0


def cmd_init_db(*, database_url: str | None) -> int:
    """Create the ``categories`` and ``transactions`` tables if missing."""

    from db import Base
    from db.client import get_engine
    from sqlalchemy.exc import SQLAlchemyError

    try:
        Base.metadata.create_all(bind=get_engine(database_url=database_url))
    except (RuntimeError, SQLAlchemyError) as e:
        _print_err(f"Error: database initialization failed: {e}")
        return 1
    print("Database tables are ready.")
    return 0


def cmd_init_ocr(*, settings: ImportSettings) -> int:
    from .api import initialize_ocr
    from .ocr import OcrWorkerPool

    pool = OcrWorkerPool.from_settings(settings)
    response = initialize_ocr(pool)
    pool.shutdown()
    print(json.dumps(response.body, indent=2))
    return 0 if response.ok else 1


def cmd_import_files(
    paths: Sequence[Path],
    *,
    user_id: str,
    database_url: str | None,
    assume_yes: bool,
    settings: ImportSettings,
    orchestrator: ImportOrchestrator | None = None,
    reviewer: Callable[[ReviewSession], bool] | None = None,
) -> int:
    files: list[UploadedFile] = []
    for p in paths:
        try:
            files.append(UploadedFile(name=p.name, content=p.read_bytes()))
        except OSError as e:
            _print_err(f"Error: cannot read {p}: {e}")
            return 1

    orch = orchestrator or _build_orchestrator(
        database_url=database_url, settings=settings, with_ocr=True
    )
    try:
        session = orch.import_files(user_id, files)
    except StatementImportError as e:
        _print_err(f"Error: {e.message}")
        return 1
    for outcome in orch.outcomes:
        if not outcome.ok:
            _print_err(f"Warning: {outcome.source_label}: {outcome.error}")
    return _finish_review(orch, session, assume_yes=assume_yes, reviewer=reviewer)


def cmd_import_text(
    text: str,
    *,
    user_id: str,
    database_url: str | None,
    assume_yes: bool,
    settings: ImportSettings,
    orchestrator: ImportOrchestrator | None = None,
    reviewer: Callable[[ReviewSession], bool] | None = None,
) -> int:
    orch = orchestrator or _build_orchestrator(
        database_url=database_url, settings=settings, with_ocr=False
    )
    try:
        session = orch.import_text(user_id, text)
    except StatementImportError as e:
        _print_err(f"Error: {e.message}")
        return 1
    return _finish_review(orch, session, assume_yes=assume_yes, reviewer=reviewer)


def _settings_or_exit() -> ImportSettings:
    try:
        return ImportSettings.from_env()
    except ValueError as e:
        _print_err(f"Error: {e}")
        raise typer.Exit(code=2) from e


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Import bank/card statement images or pasted text as reviewed, deduplicated "
        "transactions. Loads OPENAI_API_KEY and DATABASE_URL from a local .env."
    ),
)

# Module-level option objects (no calls in parameter defaults).
USER_ID_OPTION: OptionInfo = typer.Option(
    ..., "--user-id", envvar="STATEMENT_IMPORT_USER_ID", help="Owner of the imported rows."
)
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
YES_OPTION: OptionInfo = typer.Option(
    False, "--yes", "-y", help="Save the default selection without interactive review."
)
FILES_ARGUMENT: ArgumentInfo = typer.Argument(
    ..., exists=True, dir_okay=False, help="Statement image(s), processed in order."
)
TEXT_ARGUMENT: ArgumentInfo = typer.Argument(
    None, help="Statement text; omit or pass '-' to read standard input."
)


@app.command("init-db")
def init_db_cmd(database_url: str | None = DATABASE_URL_OPTION) -> None:
    """Create database tables."""

    raise typer.Exit(code=cmd_init_db(database_url=database_url))


@app.command("init-ocr")
def init_ocr_cmd() -> None:
    """Pre-warm OCR workers and report the pool size."""

    raise typer.Exit(code=cmd_init_ocr(settings=_settings_or_exit()))


@app.command("import-files")
def import_files_cmd(
    paths: Annotated[list[Path], FILES_ARGUMENT],
    user_id: Annotated[str, USER_ID_OPTION],
    database_url: str | None = DATABASE_URL_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """OCR statement images, review the transactions and save them."""

    raise typer.Exit(
        code=cmd_import_files(
            paths,
            user_id=user_id,
            database_url=database_url,
            assume_yes=yes,
            settings=_settings_or_exit(),
        )
    )


@app.command("import-text")
def import_text_cmd(
    user_id: Annotated[str, USER_ID_OPTION],
    text: str | None = TEXT_ARGUMENT,
    database_url: str | None = DATABASE_URL_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Parse pasted statement text, review the transactions and save them."""

    if text is None or text == "-":
        text = sys.stdin.read()
    raise typer.Exit(
        code=cmd_import_text(
            text,
            user_id=user_id,
            database_url=database_url,
            assume_yes=yes,
            settings=_settings_or_exit(),
        )
    )


@app.callback()
def _root() -> None:
    """Load ``.env`` and configure logging before any subcommand."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover
    app()
