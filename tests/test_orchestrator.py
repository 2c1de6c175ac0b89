from __future__ import annotations

import io
from datetime import date
from decimal import Decimal

import pytest
import pytesseract
from PIL import Image

import statement_import.extract as extract_mod
from statement_import.config import ImportSettings
from statement_import.errors import (
    AuthenticationError,
    ExtractionError,
    StageTimeoutError,
    ValidationError,
)
from statement_import.extract import TransactionExtractor
from statement_import.models import Category, TransactionType
from statement_import.ocr import OcrWorkerPool, TextExtractor
from statement_import.orchestrator import (
    ImportOrchestrator,
    ImportState,
    ImportStatus,
    UploadedFile,
)
from statement_import.review import SessionState

from tests.helpers.fakes import FakeTextExtractor, InMemoryStore, existing
from tests.helpers.openai_stub import OpenAIStub, transactions_json

TODAY = date(2024, 2, 1)
FOOD = Category(id="cat-food", name="Food")

GROCERY = {
    "amount": 45.2,
    "description": "Grocery Store",
    "date": "2024-01-16",
    "type": "expense",
    "suggested_category": "Food",
}


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(extract_mod, "_sleep_backoff", lambda attempt: None)


def _orchestrator(
    stub: OpenAIStub,
    *,
    texts: dict | None = None,
    store: InMemoryStore | None = None,
    settings: ImportSettings | None = None,
    delay: float = 0.0,
    progress: list[ImportStatus] | None = None,
    text_extractor=None,
) -> tuple[ImportOrchestrator, InMemoryStore]:
    settings = settings or ImportSettings()
    store = store or InMemoryStore(categories=[FOOD])
    orch = ImportOrchestrator(
        text_extractor=text_extractor or FakeTextExtractor(texts or {}, delay=delay),
        transaction_extractor=TransactionExtractor(stub, settings=settings, today=lambda: TODAY),
        categories=store,
        store=store,
        settings=settings,
        on_progress=progress.append if progress is not None else None,
    )
    return orch, store


def test_pasted_text_scenario_resolves_category_for_expense_only():
    stub = OpenAIStub(
        [
            transactions_json(
                [
                    {
                        "amount": 5.5,
                        "description": "Coffee Shop",
                        "date": "2024-01-15",
                        "type": "expense",
                        "suggested_category": "Food",
                    },
                    {
                        "amount": 2000,
                        "description": "Salary Deposit",
                        "date": "2024-01-01",
                        "type": "income",
                        "suggested_category": "Food",
                    },
                ]
            )
        ]
    )
    orch, store = _orchestrator(stub)

    session = orch.import_text(
        "user-1", "Coffee Shop - $5.50 on 2024-01-15; Salary Deposit - $2000.00 on 2024-01-01"
    )

    coffee, salary = session.candidates
    assert (coffee.type, coffee.amount) == (TransactionType.EXPENSE, Decimal("5.50"))
    assert (salary.type, salary.amount) == (TransactionType.INCOME, Decimal("2000.00"))
    assert not coffee.is_duplicate and not salary.is_duplicate
    assert coffee.source_label == "pasted text"
    assert session.overlay(0).category_id == "cat-food"
    assert session.overlay(1).category_id is None
    assert session.selected == {0, 1}
    assert "ONLY from this list: Food" in stub.calls[0]["instructions"]
    assert store.list_recent_calls == [("user-1", 500)]
    assert orch.status.state is ImportState.READY_FOR_REVIEW


def test_same_line_in_two_files_commits_exactly_one_row():
    stub = OpenAIStub([transactions_json([GROCERY]), transactions_json([GROCERY])])
    texts = {b"img-a": "Grocery Store - $45.20 on 2024-01-16", b"img-b": "Grocery Store - $45.20 on 2024-01-16"}
    orch, store = _orchestrator(stub, texts=texts)

    session = orch.import_files(
        "user-1", [UploadedFile("a.png", b"img-a"), UploadedFile("b.png", b"img-b")]
    )

    first, second = session.candidates
    assert (first.source_label, second.source_label) == ("a.png", "b.png")
    assert not first.is_intra_duplicate
    assert second.is_intra_duplicate and second.duplicate_of_index == 0
    assert orch.status.detail == (
        "Found 2 transaction(s) total. 1 unique, 1 duplicate(s) within import, "
        "0 already exist in your account."
    )

    report = orch.commit(session)

    assert report.inserted == 1
    assert sum(len(rows) for rows in store.insert_calls) == 1
    assert orch.status.state is ImportState.IDLE
    assert session.state is SessionState.COMMITTED


def test_match_against_history_without_merge_writes_nothing():
    stub = OpenAIStub([transactions_json([GROCERY])])
    store = InMemoryStore(
        categories=[FOOD],
        existing=[existing("tx-1", "45.20", "grocery store", date(2024, 1, 16), category_id="cat-food")],
    )
    orch, _ = _orchestrator(stub, texts={b"img": "Grocery"}, store=store)

    session = orch.import_files("user-1", [UploadedFile("s.png", b"img")])
    (cand,) = session.candidates
    assert cand.is_existing_duplicate and cand.existing_transaction_id == "tx-1"
    assert session.existing_for(0).id == "tx-1"
    assert session.selected == frozenset()

    report = orch.commit(session)

    assert report.nothing_to_save
    assert store.write_count == 0
    assert orch.status.message == "No transactions to save"


def test_slow_file_is_recorded_and_other_files_continue():
    stub = OpenAIStub([transactions_json([GROCERY])])
    settings = ImportSettings(fused_timeout_seconds=0.5)
    # The slow file sleeps past the fused ceiling; the second file is fast.
    slow_then_fast = _PerPayloadDelay({b"slow": 1.5}, {b"slow": "x", b"ok": "Grocery"})
    orch, _ = _orchestrator(stub, settings=settings, text_extractor=slow_then_fast)
    session = orch.import_files(
        "user-1", [UploadedFile("slow.png", b"slow"), UploadedFile("ok.png", b"ok")]
    )

    bad, good = orch.outcomes
    assert not bad.ok and "timed out" in bad.error
    assert good.ok and good.transactions == 1
    assert [c.source_label for c in session.candidates] == ["ok.png"]


def _png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("1", (width, height), color=1).save(buf, format="PNG")
    return buf.getvalue()


def test_oversized_image_is_skipped_and_later_files_still_run(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
    monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")
    monkeypatch.setattr(pytesseract, "image_to_string", lambda image, **_kw: "Grocery Store 45.20")
    stub = OpenAIStub([transactions_json([GROCERY])])
    ocr = TextExtractor(OcrWorkerPool(1), ImportSettings(ocr_preprocess=False))
    orch, _ = _orchestrator(stub, text_extractor=ocr)

    session = orch.import_files(
        "user-1",
        [UploadedFile("bomb.png", _png(100, 100)), UploadedFile("ok.png", _png(20, 20))],
    )

    bad, good = orch.outcomes
    assert (bad.source_label, good.source_label) == ("bomb.png", "ok.png")
    assert "too large" in bad.error
    assert good.transactions == 1
    assert [c.description for c in session.candidates] == ["Grocery Store"]
    assert orch.status.state is ImportState.READY_FOR_REVIEW


def test_single_file_timeout_fails_the_run_with_no_transactions():
    settings = ImportSettings(fused_timeout_seconds=0.05)
    progress: list[ImportStatus] = []
    orch, _ = _orchestrator(
        OpenAIStub([]), texts={b"img": "x"}, settings=settings, delay=0.5, progress=progress
    )

    with pytest.raises(ExtractionError) as ei:
        orch.import_files("user-1", [UploadedFile("s.png", b"img")])

    assert ei.value.status_code == 400
    assert "No transactions found in any of the images" in ei.value.message
    assert "Processing timed out" in orch.outcomes[0].error
    assert orch.status.state is ImportState.IDLE
    assert orch.status.error == ei.value.message


def test_extract_file_timeout_is_distinguishable():
    settings = ImportSettings(fused_timeout_seconds=0.05)
    orch, _ = _orchestrator(OpenAIStub([]), texts={b"img": "x"}, settings=settings, delay=0.5)
    with pytest.raises(StageTimeoutError) as ei:
        orch.extract_file(b"img", [])
    assert ei.value.stage == "ocr+parse"
    assert ei.value.status_code == 408
    assert ei.value.message.startswith("Processing timed out")


def test_fused_timeout_during_parse_carries_parse_guidance():
    settings = ImportSettings(fused_timeout_seconds=0.1)
    stub = OpenAIStub([transactions_json([GROCERY])], delay=0.5)
    orch, _ = _orchestrator(stub, texts={b"img": "Grocery"}, settings=settings)
    with pytest.raises(StageTimeoutError) as ei:
        orch.extract_file(b"img", [])
    assert ei.value.stage == "ocr+parse"
    assert ei.value.message.startswith("Parsing timed out")


def test_progress_walks_through_the_states_in_order():
    progress: list[ImportStatus] = []
    stub = OpenAIStub([transactions_json([GROCERY])])
    orch, _ = _orchestrator(stub, texts={b"img": "Grocery"}, progress=progress)

    session = orch.import_files("user-1", [UploadedFile("s.png", b"img")])
    orch.commit(session)

    states = [s.state for s in progress]
    order = [
        ImportState.UPLOADING,
        ImportState.EXTRACTING,
        ImportState.DEDUPING,
        ImportState.CHECKING_EXISTING,
        ImportState.READY_FOR_REVIEW,
        ImportState.SAVING,
        ImportState.IDLE,
    ]
    assert [s for i, s in enumerate(states) if i == 0 or states[i - 1] != s] == order
    extracting = [s for s in progress if s.state is ImportState.EXTRACTING]
    assert extracting[0].message == "Processing file 1 of 1..."
    assert extracting[-1].detail == "Found 1 transaction(s) in s.png."
    ready = next(s for s in progress if s.state is ImportState.READY_FOR_REVIEW)
    assert ready.message == "Processing complete!"


def test_failed_file_message_says_processing_continues():
    progress: list[ImportStatus] = []
    stub = OpenAIStub([transactions_json([GROCERY])])
    orch, _ = _orchestrator(stub, texts={b"ok": "Grocery"}, progress=progress)

    orch.import_files("user-1", [UploadedFile("blank.png", b"blank"), UploadedFile("ok.png", b"ok")])

    details = [s.detail for s in progress if s.state is ImportState.EXTRACTING]
    assert (
        "Error processing blank.png: No text detected in image. Continuing with other files..."
        in details
    )


def test_file_with_zero_transactions_is_not_a_failure():
    stub = OpenAIStub([transactions_json([]), transactions_json([GROCERY])])
    orch, _ = _orchestrator(stub, texts={b"a": "header only", b"b": "Grocery"})
    session = orch.import_files("user-1", [UploadedFile("a.png", b"a"), UploadedFile("b.png", b"b")])
    assert [o.ok for o in orch.outcomes] == [True, True]
    assert len(session.candidates) == 1


def test_inputs_are_validated_before_any_work():
    orch, store = _orchestrator(OpenAIStub([]))
    with pytest.raises(AuthenticationError):
        orch.import_files(None, [UploadedFile("a.png", b"x")])
    assert orch.status.error == "Unauthorized"
    with pytest.raises(ValidationError, match="No file provided"):
        orch.import_files("user-1", [])
    assert orch.status.error == "No file provided"
    with pytest.raises(ValidationError, match="File too large"):
        orch.import_files("user-1", [UploadedFile("big.png", b"x" * (10 * 1024 * 1024 + 1))])
    with pytest.raises(ValidationError, match="Text cannot be empty"):
        orch.import_text("user-1", "   ")
    assert store.list_recent_calls == []
    assert orch.status.state is ImportState.IDLE
    assert orch.status.error == "Text cannot be empty"


def test_text_with_no_transactions_fails():
    orch, _ = _orchestrator(OpenAIStub([transactions_json([])]))
    with pytest.raises(ExtractionError) as ei:
        orch.import_text("user-1", "hello")
    assert ei.value.status_code == 400


def test_discard_returns_to_idle_without_writes():
    stub = OpenAIStub([transactions_json([GROCERY])])
    orch, store = _orchestrator(stub)
    session = orch.import_text("user-1", "Grocery")
    orch.discard(session)
    assert session.state is SessionState.DISCARDED
    assert store.write_count == 0
    assert orch.status.state is ImportState.IDLE


class _PerPayloadDelay:
    def __init__(self, delays: dict[bytes, float], texts: dict[bytes, str]) -> None:
        self._fakes = {
            key: FakeTextExtractor({key: text}, delay=delays.get(key, 0.0))
            for key, text in texts.items()
        }

    def extract(self, image_bytes: bytes, *, timeout: float | None = None) -> str:
        return self._fakes[image_bytes].extract(image_bytes, timeout=timeout)
