from __future__ import annotations

from datetime import date

import httpx
import openai
import pytest
import pytesseract

import statement_import.extract as extract_mod
from statement_import.api import (
    UNEXPECTED_ERROR_MESSAGE,
    extract_text,
    initialize_ocr,
    parse_text,
    upload_statement,
)
from statement_import.config import ImportSettings
from statement_import.extract import TransactionExtractor
from statement_import.models import Category
from statement_import.ocr import OcrWorkerPool
from statement_import.orchestrator import ImportOrchestrator

from tests.helpers.fakes import FakeTextExtractor, InMemoryStore
from tests.helpers.openai_stub import OpenAIStub, transactions_json

TODAY = date(2024, 2, 1)
COFFEE = {
    "amount": 5.5,
    "description": "Coffee Shop",
    "date": "2024-01-15",
    "type": "expense",
    "suggested_category": "Food",
}


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(extract_mod, "_sleep_backoff", lambda attempt: None)


def _orchestrator(stub: OpenAIStub, texts=None, *, delay: float = 0.0) -> ImportOrchestrator:
    store = InMemoryStore(categories=[Category(id="cat-food", name="Food")])
    settings = ImportSettings()
    return ImportOrchestrator(
        text_extractor=FakeTextExtractor(texts or {}, delay=delay),
        transaction_extractor=TransactionExtractor(stub, settings=settings, today=lambda: TODAY),
        categories=store,
        store=store,
        settings=settings,
    )


def test_upload_returns_transactions_text_and_stats():
    orch = _orchestrator(OpenAIStub([transactions_json([COFFEE])]), {b"img": "Coffee Shop 5.50"})

    resp = upload_statement("user-1", "s.png", b"img", orchestrator=orch)

    assert resp.status == 200 and resp.ok
    assert resp.body["transactions"] == [
        {
            "amount": 5.5,
            "description": "Coffee Shop",
            "date": "2024-01-15",
            "type": "expense",
            "suggested_category": "Food",
        }
    ]
    assert resp.body["extracted_text"] == "Coffee Shop 5.50"
    assert set(resp.body["stats"]) == {"ocr_ms", "parse_ms", "total_ms"}


@pytest.mark.parametrize(
    ("user", "payload", "status", "error"),
    [
        (None, b"img", 401, "Unauthorized"),
        ("user-1", None, 400, "No file provided"),
        ("user-1", b"x" * 11, 400, "File too large"),
    ],
)
def test_upload_rejects_bad_requests(user, payload, status, error):
    orch = _orchestrator(OpenAIStub([]))
    resp = upload_statement(user, "s.png", payload, orchestrator=orch, max_bytes=10)
    assert resp.status == status
    assert resp.body["error"].startswith(error)


def test_upload_timeout_is_408_with_guidance():
    orch = _orchestrator(OpenAIStub([]), {b"img": "x"}, delay=0.5)
    resp = upload_statement("user-1", "s.png", b"img", orchestrator=orch, timeout=0.05)
    assert resp.status == 408
    assert resp.body == {
        "error": "Processing timed out. Try a smaller image or paste the text directly."
    }


def test_upload_with_no_text_detected_is_client_error():
    resp = upload_statement("user-1", "s.png", b"blank", orchestrator=_orchestrator(OpenAIStub([])))
    assert resp.status == 400
    assert resp.body == {"error": "No text detected in image"}


def test_unexpected_failure_is_still_a_structured_500():
    orch = _orchestrator(OpenAIStub([]), {b"img": RuntimeError("segfault-ish")})
    resp = upload_statement("user-1", "s.png", b"img", orchestrator=orch)
    assert resp.status == 500
    assert resp.body == {"error": UNEXPECTED_ERROR_MESSAGE}


def test_parse_text_success():
    orch = _orchestrator(OpenAIStub([transactions_json([COFFEE])]))
    resp = parse_text("user-1", {"text": "Coffee Shop - $5.50 on 2024-01-15"}, orchestrator=orch)
    assert resp.status == 200
    assert [t["description"] for t in resp.body["transactions"]] == ["Coffee Shop"]
    assert "parse_ms" in resp.body["stats"]


@pytest.mark.parametrize(
    ("body", "error"),
    [
        (None, "Text is required"),
        ({}, "Text is required"),
        ({"text": 42}, "Text is required"),
        ({"text": "   "}, "Text cannot be empty"),
        (["text"], "Request body must be a JSON object"),
        ("Coffee 5.50", "Request body must be a JSON object"),
    ],
)
def test_parse_text_validation(body, error):
    resp = parse_text("user-1", body, orchestrator=_orchestrator(OpenAIStub([])))
    assert (resp.status, resp.body) == (400, {"error": error})


def test_parse_text_requires_user():
    resp = parse_text("", {"text": "x"}, orchestrator=_orchestrator(OpenAIStub([])))
    assert resp.status == 401


def test_parse_text_timeout_and_backend_error():
    slow = _orchestrator(OpenAIStub([transactions_json([])], delay=0.5))
    resp = parse_text("user-1", {"text": "x"}, orchestrator=slow, timeout=0.05)
    assert resp.status == 408
    assert resp.body["error"] == "Parsing timed out. Try with a shorter text."

    req = httpx.Request("POST", "https://api.openai.com/v1/responses")
    bad = openai.BadRequestError("bad", response=httpx.Response(400, request=req), body=None)
    resp = parse_text("user-1", {"text": "x"}, orchestrator=_orchestrator(OpenAIStub([bad])))
    assert resp.status == 500
    assert resp.body["error"].startswith("Failed to parse transactions")


def test_extract_text_endpoint():
    ocr = FakeTextExtractor({b"img": "hello"})
    assert extract_text("user-1", "s.png", b"img", text_extractor=ocr, max_bytes=100).body == {
        "text": "hello"
    }
    assert extract_text("user-1", "s.png", b"", text_extractor=ocr, max_bytes=100).status == 400


def test_initialize_ocr_reports_pool_state(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")
    pool = OcrWorkerPool(2)

    first = initialize_ocr(pool)
    second = initialize_ocr(pool)

    assert first.body == {
        "success": True,
        "message": "OCR workers initialized",
        "pool_size": 2,
        "was_already_initialized": False,
    }
    assert second.body["was_already_initialized"] is True
