"""Request-level entry points.

Each function authenticates, validates, runs its stage under an end-to-end
time budget and always returns an :class:`ApiResponse`; no exception escapes.
Success bodies carry ``transactions``; failure bodies carry ``error``.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import StatementImportError, ValidationError
from .extract import PARSE_TIMEOUT_MESSAGE
from .logging_setup import get_logger
from .ocr import OCR_TIMEOUT_MESSAGE, OcrWorkerPool, TextExtractor
from .orchestrator import ImportOrchestrator, require_user, validate_upload
from .timeouts import run_with_timeout

_logger = get_logger("statement_import.api")

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again."


@dataclass(frozen=True, slots=True)
class ApiResponse:
    status: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _guard(endpoint: str, fn: Callable[[], dict[str, Any]]) -> ApiResponse:
    t0 = time.perf_counter()
    try:
        body = fn()
    except StatementImportError as e:
        _logger.warning(
            "api:%s_failed status=%d error=%s latency_ms=%.2f",
            endpoint,
            e.status_code,
            e.message,
            (time.perf_counter() - t0) * 1000.0,
        )
        return ApiResponse(e.status_code, {"error": e.message})
    except Exception:  # noqa: BLE001 - entry points never raise
        _logger.exception("api:%s_unexpected", endpoint)
        return ApiResponse(500, {"error": UNEXPECTED_ERROR_MESSAGE})
    return ApiResponse(200, body)


def _ms(seconds: float) -> int:
    return round(seconds * 1000.0)


def upload_statement(
    user_id: str | None,
    filename: str,
    payload: bytes | None,
    *,
    orchestrator: ImportOrchestrator,
    max_bytes: int | None = None,
    timeout: float | None = None,
) -> ApiResponse:
    """OCR and parse one statement image.

    Body on success: ``transactions``, ``extracted_text`` and ``stats``
    (``ocr_ms``, ``parse_ms``, ``total_ms``).
    """

    settings = orchestrator.settings
    limit = max_bytes if max_bytes is not None else settings.max_upload_bytes
    budget = timeout if timeout is not None else settings.fused_timeout_seconds

    def _run() -> dict[str, Any]:
        t0 = time.perf_counter()
        user = require_user(user_id)
        validate_upload(filename, payload or b"", max_bytes=limit)
        _logger.info("api:upload file=%s bytes=%d", filename, len(payload or b""))

        def _work() -> dict[str, Any]:
            names = orchestrator.known_category_names(user)
            result = orchestrator.extract_file(payload or b"", names)
            return {
                "transactions": [t.to_public_dict() for t in result.transactions],
                "extracted_text": result.text,
                "stats": {
                    "ocr_ms": round(result.ocr_ms),
                    "parse_ms": round(result.parse_ms),
                    "total_ms": _ms(time.perf_counter() - t0),
                },
            }

        return run_with_timeout(
            _work, seconds=budget, stage="upload", message=OCR_TIMEOUT_MESSAGE
        )

    return _guard("upload", _run)


def extract_text(
    user_id: str | None,
    filename: str,
    payload: bytes | None,
    *,
    text_extractor: TextExtractor,
    max_bytes: int,
) -> ApiResponse:
    """OCR only; body on success is ``{"text": ...}``."""

    def _run() -> dict[str, Any]:
        require_user(user_id)
        validate_upload(filename, payload or b"", max_bytes=max_bytes)
        return {"text": text_extractor.extract(payload or b"")}

    return _guard("ocr", _run)


def parse_text(
    user_id: str | None,
    body: Mapping[str, Any] | None,
    *,
    orchestrator: ImportOrchestrator,
    timeout: float | None = None,
) -> ApiResponse:
    """Parse pasted statement text given as ``{"text": str}``."""

    settings = orchestrator.settings
    budget = timeout if timeout is not None else settings.llm_timeout_seconds

    def _run() -> dict[str, Any]:
        t0 = time.perf_counter()
        user = require_user(user_id)
        if body is not None and not isinstance(body, Mapping):
            raise ValidationError("Request body must be a JSON object")
        text = (body or {}).get("text")
        if not text or not isinstance(text, str):
            raise ValidationError("Text is required")
        if not text.strip():
            raise ValidationError("Text cannot be empty")
        _logger.info("api:parse chars=%d", len(text))

        def _work() -> dict[str, Any]:
            names = orchestrator.known_category_names(user)
            t1 = time.perf_counter()
            parsed = orchestrator.transaction_extractor.extract(text, names)
            return {
                "transactions": [t.to_public_dict() for t in parsed],
                "stats": {
                    "parse_ms": _ms(time.perf_counter() - t1),
                    "total_ms": _ms(time.perf_counter() - t0),
                },
            }

        return run_with_timeout(
            _work, seconds=budget, stage="parse", message=PARSE_TIMEOUT_MESSAGE
        )

    return _guard("parse", _run)


def initialize_ocr(pool: OcrWorkerPool) -> ApiResponse:
    """Pre-warm the OCR pool and report its size."""

    def _run() -> dict[str, Any]:
        was_ready = pool.idle_count > 0
        ready = pool.initialize()
        return {
            "success": True,
            "message": "OCR workers initialized",
            "pool_size": ready,
            "was_already_initialized": was_ready,
        }

    response = _guard("init_ocr", _run)
    if not response.ok:
        response.body["success"] = False
    return response


__all__ = [
    "ApiResponse",
    "UNEXPECTED_ERROR_MESSAGE",
    "extract_text",
    "initialize_ocr",
    "parse_text",
    "upload_statement",
]
