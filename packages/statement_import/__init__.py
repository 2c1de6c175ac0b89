"""Public interface for the ``statement_import`` package.

Re-exports the pipeline stages, the review/commit protocol and the error
taxonomy. No runtime logic lives here.
"""

from .categories import resolve_category
from .config import ImportSettings
from .duplicates import (
    comparison_key,
    mark_existing_duplicates,
    mark_intra_batch_duplicates,
)
from .errors import (
    AuthenticationError,
    ExtractionError,
    PersistenceError,
    ReviewError,
    StageTimeoutError,
    StatementImportError,
    ValidationError,
)
from .extract import TransactionExtractor
from .models import (
    CandidateTransaction,
    Category,
    ExistingTransaction,
    ParsedTransaction,
    TransactionType,
)
from .ocr import OcrWorkerPool, TextExtractor
from .orchestrator import ImportOrchestrator, ImportState, ImportStatus, UploadedFile
from .review import CommitPlan, CommitReport, ReviewSession

__all__ = [
    # Pipeline
    "ImportOrchestrator",
    "ImportSettings",
    "ImportState",
    "ImportStatus",
    "OcrWorkerPool",
    "TextExtractor",
    "TransactionExtractor",
    "UploadedFile",
    "comparison_key",
    "mark_existing_duplicates",
    "mark_intra_batch_duplicates",
    "resolve_category",
    # Review
    "CommitPlan",
    "CommitReport",
    "ReviewSession",
    # Models
    "CandidateTransaction",
    "Category",
    "ExistingTransaction",
    "ParsedTransaction",
    "TransactionType",
    # Errors
    "AuthenticationError",
    "ExtractionError",
    "PersistenceError",
    "ReviewError",
    "StageTimeoutError",
    "StatementImportError",
    "ValidationError",
]
