"""Statement text to structured transactions via the OpenAI Responses API.

Public API:
    - :class:`TransactionExtractor`

No side effects occur at import time; the OpenAI client is created lazily
per extractor through :func:`_create_client`.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable, Sequence
from datetime import date
from typing import Any

from openai import APITimeoutError, OpenAI, OpenAIError
from openai.types.responses import ResponseTextConfigParam

from . import prompting
from .config import ImportSettings
from .errors import ExtractionError, StageTimeoutError, ValidationError
from .logging_setup import get_logger
from .models import ParsedTransaction
from .parsing import decode_payload, parse_transactions
from .timeouts import run_with_timeout

_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
_JITTER_PCT: float = 0.20

PARSE_TIMEOUT_MESSAGE = "Parsing timed out. Try with a shorter text."

_logger = get_logger("statement_import.extract")


def _create_client(timeout: float) -> OpenAI:
    # Retries are handled here (429/5xx only), not by the SDK.
    return OpenAI(timeout=timeout, max_retries=0)


def _is_retryable(exc: BaseException) -> bool:
    """Return True only for HTTP 429 and 5xx errors."""

    sc = getattr(exc, "status_code", None)
    return isinstance(sc, int) and (sc == 429 or 500 <= sc < 600)


def _sleep_backoff(attempt_no: int) -> None:
    base = _BACKOFF_SCHEDULE_SEC[min(attempt_no - 1, len(_BACKOFF_SCHEDULE_SEC) - 1)]
    jitter = base * _JITTER_PCT
    time.sleep(max(0.0, base + random.uniform(-jitter, jitter)))


def _response_text(resp: Any) -> str:
    """Locate the text output of a Responses SDK result.

    Prefers ``resp.output_text``; falls back to ``resp.output[0].content[0].text``.
    """

    text: Any = getattr(resp, "output_text", None)
    if not text:
        output = getattr(resp, "output", None)
        content = getattr(output[0], "content", None) if output else None
        if content:
            text = getattr(content[0], "text", None)
            if not isinstance(text, str):
                # Some SDK versions wrap the text in an object with ``value``.
                text = getattr(text, "value", None)
    if not isinstance(text, str) or not text.strip():
        raise ExtractionError("No response from the language model")
    return text


class TransactionExtractor:
    """Extract :class:`ParsedTransaction` records from free-form statement text.

    ``client`` is anything exposing ``responses.create(**kwargs)``; when
    omitted an :class:`openai.OpenAI` client is created on first use.
    ``today`` supplies the reference date for the missing-year and
    missing-date rules.
    """

    def __init__(
        self,
        client: Any | None = None,
        *,
        settings: ImportSettings | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._client = client
        self._settings = settings or ImportSettings()
        self._today = today

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                self._client = _create_client(self._settings.llm_timeout_seconds)
            except OpenAIError as e:
                raise ExtractionError(f"OpenAI client is not configured: {e}") from e
        return self._client

    def extract(
        self,
        text: str,
        known_category_names: Sequence[str] = (),
        *,
        timeout: float | None = None,
    ) -> list[ParsedTransaction]:
        """Return the transactions found in ``text`` (possibly empty).

        Raises ``ValidationError`` for blank text, ``StageTimeoutError`` when
        the call exceeds its budget and ``ExtractionError`` for backend or
        decode failures.
        """

        if not text or not text.strip():
            raise ValidationError("Text cannot be empty")
        seconds = timeout if timeout is not None else self._settings.llm_timeout_seconds
        return run_with_timeout(
            lambda: self._extract(text, known_category_names, seconds),
            seconds=seconds,
            stage="parse",
            message=PARSE_TIMEOUT_MESSAGE,
        )

    def _extract(
        self, text: str, known_category_names: Sequence[str], seconds: float
    ) -> list[ParsedTransaction]:
        today = self._today()
        settings = self._settings
        instructions = prompting.build_system_instructions(known_category_names, today=today)
        text_cfg = ResponseTextConfigParam(format=prompting.build_response_format())
        client = self._get_client()

        _logger.info(
            "extract:llm chars=%d categories=%d model=%s schema=%s",
            len(text),
            len(known_category_names),
            settings.openai_model,
            prompting.SCHEMA_NAME,
        )
        attempt = 1
        while True:
            t0 = time.perf_counter()
            try:
                resp = client.responses.create(
                    model=settings.openai_model,
                    instructions=instructions,
                    input=prompting.build_user_content(text),
                    text=text_cfg,
                    temperature=settings.temperature,
                    timeout=seconds,
                )
                break
            except APITimeoutError as e:
                _logger.error("extract:llm_timeout attempt=%d", attempt)
                raise StageTimeoutError("parse", seconds, PARSE_TIMEOUT_MESSAGE) from e
            except OpenAIError as e:
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if attempt >= settings.llm_max_attempts or not _is_retryable(e):
                    _logger.error(
                        "extract:llm_failed_terminal latency_ms=%.2f error=%s attempt=%d",
                        dt_ms,
                        e.__class__.__name__,
                        attempt,
                    )
                    raise ExtractionError(f"Failed to parse transactions: {e}") from e
                _logger.warning(
                    "extract:llm_retry latency_ms=%.2f error=%s attempt=%d",
                    dt_ms,
                    e.__class__.__name__,
                    attempt,
                )
                _sleep_backoff(attempt)
                attempt += 1

        items = decode_payload(_response_text(resp))
        parsed = parse_transactions(items, today=today)
        _logger.info(
            "extract:llm_done items=%d kept=%d latency_ms=%.2f",
            len(items),
            len(parsed),
            (time.perf_counter() - t0) * 1000.0,
        )
        return parsed


__all__ = ["PARSE_TIMEOUT_MESSAGE", "TransactionExtractor"]
