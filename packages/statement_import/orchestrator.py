"""End-to-end driver for a statement import run.

One run goes ``IDLE -> UPLOADING -> EXTRACTING -> DEDUPING ->
CHECKING_EXISTING -> READY_FOR_REVIEW`` and hands back a
:class:`~statement_import.review.ReviewSession`; committing that session
goes through ``SAVING`` back to ``IDLE``. Any error returns the orchestrator
to ``IDLE`` with the message on the status and re-raises.

Files are processed one at a time in submission order. A file that fails to
extract is recorded in :attr:`ImportOrchestrator.outcomes` and skipped; the
run fails only when no file yields a transaction.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from .categories import category_names, resolve_category
from .config import ImportSettings
from .duplicates import DedupSummary, mark_existing_duplicates, mark_intra_batch_duplicates
from .errors import (
    AuthenticationError,
    ExtractionError,
    StageTimeoutError,
    StatementImportError,
    ValidationError,
)
from .extract import PARSE_TIMEOUT_MESSAGE, TransactionExtractor
from .logging_setup import get_logger
from .models import (
    PASTED_TEXT_LABEL,
    CandidateTransaction,
    Category,
    ParsedTransaction,
    TransactionType,
)
from .ocr import OCR_TIMEOUT_MESSAGE
from .persistence import CategoryReader, TransactionStore
from .review import NOTHING_TO_SAVE_DETAIL, CommitReport, ReviewSession
from .timeouts import run_with_timeout

_logger = get_logger("statement_import.orchestrator")


class ImportState(StrEnum):
    IDLE = "idle"
    UPLOADING = "uploading"
    EXTRACTING = "extracting"
    DEDUPING = "deduping"
    CHECKING_EXISTING = "checking_existing"
    READY_FOR_REVIEW = "ready_for_review"
    SAVING = "saving"


@dataclass(frozen=True, slots=True)
class ImportStatus:
    state: ImportState
    message: str = ""
    detail: str = ""
    current: int = 0
    total: int = 0
    error: str | None = None


@dataclass(frozen=True, slots=True)
class UploadedFile:
    name: str
    content: bytes


@dataclass(frozen=True, slots=True)
class FileOutcome:
    source_label: str
    transactions: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class FileExtraction:
    text: str
    transactions: list[ParsedTransaction]
    ocr_ms: float
    parse_ms: float

    @property
    def total_ms(self) -> float:
        return self.ocr_ms + self.parse_ms


class TextSource(Protocol):
    def extract(self, image_bytes: bytes, *, timeout: float | None = None) -> str: ...


def require_user(user_id: str | None) -> str:
    if not user_id or not str(user_id).strip():
        raise AuthenticationError()
    return str(user_id)


def validate_upload(name: str, content: bytes, *, max_bytes: int) -> None:
    if not content:
        raise ValidationError(f"No file provided{f' ({name})' if name else ''}")
    if len(content) > max_bytes:
        raise ValidationError(
            f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.",
        )


class ImportOrchestrator:
    """Run statement files or pasted text through extraction and dedup."""

    def __init__(
        self,
        *,
        text_extractor: TextSource | None,
        transaction_extractor: TransactionExtractor,
        categories: CategoryReader,
        store: TransactionStore,
        settings: ImportSettings | None = None,
        on_progress: Callable[[ImportStatus], None] | None = None,
    ) -> None:
        self._text_extractor = text_extractor
        self._transaction_extractor = transaction_extractor
        self._categories = categories
        self._store = store
        self._settings = settings or ImportSettings()
        self._on_progress = on_progress
        self._status = ImportStatus(ImportState.IDLE)
        self._outcomes: list[FileOutcome] = []

    @property
    def settings(self) -> ImportSettings:
        return self._settings

    @property
    def transaction_extractor(self) -> TransactionExtractor:
        return self._transaction_extractor

    @property
    def status(self) -> ImportStatus:
        return self._status

    @property
    def outcomes(self) -> list[FileOutcome]:
        """Per-file results of the most recent ``import_files`` run."""

        return list(self._outcomes)

    def _publish(
        self,
        state: ImportState,
        message: str = "",
        detail: str = "",
        *,
        current: int = 0,
        total: int = 0,
        error: str | None = None,
    ) -> None:
        self._status = ImportStatus(state, message, detail, current, total, error)
        _logger.debug("orchestrator:status state=%s message=%s", state.value, message)
        if self._on_progress is not None:
            self._on_progress(self._status)

    def _fail(self, exc: StatementImportError) -> None:
        _logger.error("orchestrator:failed state=%s error=%s", self._status.state.value, exc)
        self._publish(ImportState.IDLE, "Import failed", exc.message, error=exc.message)

    def _load_categories(self, user_id: str) -> list[Category]:
        return run_with_timeout(
            lambda: self._categories.list_categories(user_id),
            seconds=self._settings.store_timeout_seconds,
            stage="store",
        )

    def known_category_names(self, user_id: str) -> list[str]:
        return category_names(self._load_categories(user_id))

    # ---- Extraction ------------------------------------------------------

    def extract_file(self, content: bytes, known_category_names: Sequence[str]) -> FileExtraction:
        """OCR then parse one image under the combined time ceiling."""

        if self._text_extractor is None:
            raise ExtractionError("No OCR backend configured")
        text_extractor = self._text_extractor
        fused = self._settings.fused_timeout_seconds
        reached_parse = False

        def _run() -> FileExtraction:
            nonlocal reached_parse
            t0 = time.perf_counter()
            text = text_extractor.extract(
                content, timeout=min(self._settings.ocr_timeout_seconds, fused)
            )
            t1 = time.perf_counter()
            reached_parse = True
            parsed = self._transaction_extractor.extract(text, known_category_names)
            t2 = time.perf_counter()
            return FileExtraction(
                text=text,
                transactions=parsed,
                ocr_ms=(t1 - t0) * 1000.0,
                parse_ms=(t2 - t1) * 1000.0,
            )

        try:
            return run_with_timeout(
                _run, seconds=fused, stage="ocr+parse", message=OCR_TIMEOUT_MESSAGE
            )
        except StageTimeoutError as e:
            if e.stage == "ocr+parse" and reached_parse:
                raise StageTimeoutError(e.stage, e.seconds, PARSE_TIMEOUT_MESSAGE) from None
            raise

    # ---- Runs ------------------------------------------------------------

    def import_files(self, user_id: str | None, files: Sequence[UploadedFile]) -> ReviewSession:
        self._outcomes = []
        try:
            user = require_user(user_id)
            if not files:
                raise ValidationError("No file provided")
            for f in files:
                validate_upload(f.name, f.content, max_bytes=self._settings.max_upload_bytes)

            total = len(files)
            self._publish(ImportState.UPLOADING, "Uploading files...", total=total)
            categories = self._load_categories(user)
            names = category_names(categories)

            per_file: list[tuple[str, list[ParsedTransaction]]] = []
            for i, f in enumerate(files, start=1):
                size_mb = len(f.content) / (1024 * 1024)
                self._publish(
                    ImportState.EXTRACTING,
                    f"Processing file {i} of {total}...",
                    f"File: {f.name} ({size_mb:.2f} MB)",
                    current=i,
                    total=total,
                )
                try:
                    result = self.extract_file(f.content, names)
                except StatementImportError as e:
                    _logger.warning("orchestrator:file_failed file=%s error=%s", f.name, e)
                    self._outcomes.append(FileOutcome(f.name, error=e.message))
                    self._publish(
                        ImportState.EXTRACTING,
                        f"Processing file {i} of {total}...",
                        f"Error processing {f.name}: {e.message}. Continuing with other files...",
                        current=i,
                        total=total,
                    )
                    continue
                self._outcomes.append(FileOutcome(f.name, transactions=len(result.transactions)))
                per_file.append((f.name, result.transactions))
                found = len(result.transactions)
                self._publish(
                    ImportState.EXTRACTING,
                    f"Processing file {i} of {total}...",
                    (
                        f"Found {found} transaction(s) in {f.name}."
                        if found
                        else f"No transactions found in {f.name}."
                    ),
                    current=i,
                    total=total,
                )

            if not any(txs for _, txs in per_file):
                raise ExtractionError(
                    "No transactions found in any of the images. Try clearer images.",
                    status_code=400,
                )
            return self._prepare_review(user, per_file, categories)
        except StatementImportError as e:
            self._fail(e)
            raise

    def import_text(self, user_id: str | None, text: str) -> ReviewSession:
        self._outcomes = []
        try:
            user = require_user(user_id)
            if text is None or not text.strip():
                raise ValidationError("Text cannot be empty")

            self._publish(ImportState.EXTRACTING, "Parsing transactions...", current=1, total=1)
            categories = self._load_categories(user)
            parsed = self._transaction_extractor.extract(text, category_names(categories))
            if not parsed:
                raise ExtractionError(
                    "No transactions found in the text.", status_code=400
                )
            return self._prepare_review(user, [(PASTED_TEXT_LABEL, parsed)], categories)
        except StatementImportError as e:
            self._fail(e)
            raise

    def _prepare_review(
        self,
        user_id: str,
        per_source: Sequence[tuple[str, Sequence[ParsedTransaction]]],
        categories: Sequence[Category],
    ) -> ReviewSession:
        candidates: list[CandidateTransaction] = []
        for label, parsed in per_source:
            for p in parsed:
                candidates.append(
                    CandidateTransaction.from_parsed(
                        p, candidate_id=len(candidates), source_label=label
                    )
                )

        self._publish(
            ImportState.DEDUPING,
            "Deduplicating transactions...",
            "Checking for duplicate transactions across files...",
        )
        mark_intra_batch_duplicates(candidates)

        self._publish(
            ImportState.CHECKING_EXISTING,
            "Checking against existing transactions...",
            "Comparing with transactions already in your account...",
        )
        existing = run_with_timeout(
            lambda: self._store.list_recent(user_id, self._settings.history_window),
            seconds=self._settings.store_timeout_seconds,
            stage="store",
        )
        existing_by_id = mark_existing_duplicates(candidates, existing)
        summary = DedupSummary.of(candidates)

        category_ids = {
            c.candidate_id: resolve_category(c.suggested_category, categories)
            for c in candidates
            if c.type is TransactionType.EXPENSE
        }

        session = ReviewSession(
            user_id,
            candidates,
            categories=categories,
            existing_by_id=existing_by_id,
            category_ids=category_ids,
            settings=self._settings,
        )
        _logger.info(
            "orchestrator:ready candidates=%d intra_duplicates=%d existing_duplicates=%d "
            "selected=%d window=%d",
            summary.total,
            summary.intra_duplicates,
            summary.existing_duplicates,
            len(session.selected),
            len(existing_by_id),
        )
        self._publish(
            ImportState.READY_FOR_REVIEW,
            "Processing complete!",
            (
                f"Found {summary.total} transaction(s) total. "
                f"{summary.unique} unique, {summary.intra_duplicates} duplicate(s) within import, "
                f"{summary.existing_duplicates} already exist in your account."
            ),
        )
        return session

    def commit(self, session: ReviewSession) -> CommitReport:
        """Persist a reviewed session through the orchestrator's store."""

        try:
            self._publish(
                ImportState.SAVING, "Saving transactions...", session.plan_commit().describe()
            )
            report = session.commit(self._store)
        except StatementImportError as e:
            self._fail(e)
            raise
        detail = NOTHING_TO_SAVE_DETAIL if report.nothing_to_save else ""
        self._publish(ImportState.IDLE, report.message, detail)
        return report

    def discard(self, session: ReviewSession) -> None:
        session.discard()
        self._publish(ImportState.IDLE, "Import cancelled")


__all__ = [
    "FileExtraction",
    "FileOutcome",
    "ImportOrchestrator",
    "ImportState",
    "ImportStatus",
    "TextSource",
    "UploadedFile",
    "require_user",
    "validate_upload",
]
