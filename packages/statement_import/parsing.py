"""Decode and normalize LLM output into :class:`ParsedTransaction` objects.

Decoding is two-stage: strict JSON first, then the first JSON array/object
found inside a fenced code block. Both failing is a single
:class:`ExtractionError`. Item-level problems never fail the call; such items
are dropped.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .errors import ExtractionError
from .logging_setup import get_logger
from .models import ParsedTransaction, TransactionType

_logger = get_logger("statement_import.parsing")

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\[.*?\]|\{.*?\})\s*```", re.DOTALL)
_AMOUNT_STRIP_CHARS = "$€£¥ \t"


def decode_payload(text: str) -> list[Any]:
    """Return the raw transaction items contained in a model response.

    Accepts a bare JSON array or an object with a ``transactions`` array.
    """

    stripped = (text or "").strip()
    if not stripped:
        raise ExtractionError("No response from the language model")

    try:
        decoded: Any = json.loads(stripped)
    except json.JSONDecodeError as strict_err:
        match = _FENCED_JSON_RE.search(stripped)
        if match is None:
            raise ExtractionError(
                f"Invalid JSON response from the language model: {strict_err.msg}"
            ) from strict_err
        try:
            decoded = json.loads(match.group(1))
        except json.JSONDecodeError as fenced_err:
            raise ExtractionError(
                "Invalid JSON response from the language model "
                f"(strict: {strict_err.msg}; fenced block: {fenced_err.msg})"
            ) from fenced_err

    if isinstance(decoded, list):
        return decoded
    if isinstance(decoded, Mapping):
        items = decoded.get("transactions") or []
        if not isinstance(items, list):
            raise ExtractionError("Language model returned a non-array 'transactions' field")
        return items
    raise ExtractionError("Language model returned JSON that is neither an array nor an object")


def _coerce_amount(raw: Any) -> Decimal | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int | float | Decimal):
        text = str(raw)
    elif isinstance(raw, str):
        text = raw.replace(",", "").strip(_AMOUNT_STRIP_CHARS)
    else:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return abs(value)


def _coerce_date(raw: Any, *, today: date) -> date | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return today
    if not isinstance(raw, str):
        return None
    try:
        return date.fromisoformat(raw.strip()[:10])
    except ValueError:
        return None


def coerce_item(raw: Any, *, today: date) -> ParsedTransaction | None:
    """Normalize one decoded item, or return ``None`` when it must be dropped.

    Items need a non-zero ``amount`` and non-empty ``description`` and ``type``.
    """

    if not isinstance(raw, Mapping):
        return None
    if not raw.get("amount") or not raw.get("description") or not raw.get("type"):
        return None

    amount = _coerce_amount(raw["amount"])
    if amount is None:
        _logger.debug("parsing:drop_item reason=amount value=%r", raw["amount"])
        return None
    when = _coerce_date(raw.get("date"), today=today)
    if when is None:
        _logger.debug("parsing:drop_item reason=date value=%r", raw.get("date"))
        return None

    kind = str(raw["type"]).strip().lower()
    suggested = raw.get("suggested_category")
    try:
        return ParsedTransaction(
            amount=amount,
            description=str(raw["description"]),
            date=when,
            type=TransactionType.INCOME if kind == "income" else TransactionType.EXPENSE,
            suggested_category=str(suggested) if suggested else None,
        )
    except PydanticValidationError as e:
        _logger.debug("parsing:drop_item reason=validation errors=%d", e.error_count())
        return None


def parse_transactions(items: Sequence[Any], *, today: date) -> list[ParsedTransaction]:
    out: list[ParsedTransaction] = []
    for raw in items:
        parsed = coerce_item(raw, today=today)
        if parsed is not None:
            out.append(parsed)
    if len(out) != len(items):
        _logger.info("parsing:filtered kept=%d dropped=%d", len(out), len(items) - len(out))
    return out


__all__ = ["coerce_item", "decode_payload", "parse_transactions"]
