"""Review session and commit protocol for one import run.

Candidates are immutable during review. User edits live in an overlay table
keyed by ``candidate_id`` and the selection is a set of candidate ids.

Commit rules, applied to the selection in candidate order:

- intra-batch duplicates are never written;
- existing duplicates are written only when merge is on, as a partial
  update holding just the changed amount/category (no-op merges are dropped);
- everything else becomes one row of a single batch insert;
- income always carries ``category_id = None``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date as Date
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from .config import ImportSettings
from .errors import PersistenceError, ReviewError, StageTimeoutError
from .logging_setup import get_logger
from .models import (
    CandidateTransaction,
    Category,
    ExistingTransaction,
    NewTransaction,
    TransactionType,
    TransactionUpdate,
    quantize_amount,
)
from .persistence import TransactionStore
from .timeouts import run_with_timeout

_logger = get_logger("statement_import.review")

# Stored and effective amounts closer than this are treated as equal.
MERGE_AMOUNT_TOLERANCE = Decimal("0.01")

NOTHING_TO_SAVE_MESSAGE = "No transactions to save"
NOTHING_TO_SAVE_DETAIL = (
    "All selected transactions are duplicates or already exist in your account."
)
SAVE_UNCONFIRMED_MESSAGE = (
    "Saving timed out and may still complete. Check your transactions before importing again."
)


class SessionState(StrEnum):
    OPEN = "open"
    COMMITTED = "committed"
    DISCARDED = "discarded"
    # The batch insert outlived its budget and may still land.
    OUTCOME_UNKNOWN = "outcome_unknown"


@dataclass(slots=True)
class CandidateOverlay:
    """Editable values for one candidate; starts as a copy of the extraction."""

    amount: Decimal
    date: Date
    type: TransactionType
    category_id: str | None = None
    merge: bool = False


@dataclass(frozen=True, slots=True)
class CommitPlan:
    inserts: tuple[NewTransaction, ...] = ()
    updates: tuple[TransactionUpdate, ...] = ()
    skipped: tuple[int, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.inserts and not self.updates

    def describe(self) -> str:
        parts: list[str] = []
        if self.inserts:
            parts.append(f"saving {len(self.inserts)} new")
        if self.updates:
            parts.append(f"merging {len(self.updates)}")
        if self.skipped:
            parts.append(f"skipping {len(self.skipped)} duplicate(s)")
        return ", ".join(parts) if parts else NOTHING_TO_SAVE_DETAIL


@dataclass(frozen=True, slots=True)
class CommitReport:
    inserted: int = 0
    merged: int = 0
    merge_failures: tuple[str, ...] = ()
    skipped: int = 0
    nothing_to_save: bool = False
    message: str = ""
    inserted_ids: tuple[str, ...] = field(default=(), repr=False)


def _parse_amount(value: Decimal | float | int | str) -> Decimal:
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ReviewError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite() or dec < 0:
        raise ReviewError(f"Amount must be a non-negative number, got {value!r}")
    return quantize_amount(dec)


def _parse_date(value: Date | str) -> Date:
    if isinstance(value, Date):
        return value
    try:
        return Date.fromisoformat(str(value).strip())
    except ValueError as e:
        raise ReviewError(f"Invalid date (expected YYYY-MM-DD): {value!r}") from e


def _parse_type(value: TransactionType | str) -> TransactionType:
    try:
        return TransactionType(str(value).strip().lower())
    except ValueError as e:
        raise ReviewError(f"Type must be 'income' or 'expense', got {value!r}") from e


class ReviewSession:
    """Mutable review view over the candidates of one import run."""

    def __init__(
        self,
        user_id: str,
        candidates: Sequence[CandidateTransaction],
        *,
        categories: Sequence[Category] = (),
        existing_by_id: Mapping[str, ExistingTransaction] | None = None,
        category_ids: Mapping[int, str | None] | None = None,
        selected: Iterable[int] | None = None,
        settings: ImportSettings | None = None,
    ) -> None:
        self.user_id = user_id
        self._candidates: dict[int, CandidateTransaction] = {c.candidate_id: c for c in candidates}
        if len(self._candidates) != len(candidates):
            raise ValueError("candidate_id values must be unique")
        self._order: tuple[int, ...] = tuple(c.candidate_id for c in candidates)
        self.categories: tuple[Category, ...] = tuple(categories)
        self._category_ids = {c.id for c in self.categories}
        self.existing_by_id: dict[str, ExistingTransaction] = dict(existing_by_id or {})
        self._settings = settings or ImportSettings()
        self.state = SessionState.OPEN

        prefill = category_ids or {}
        self._overlays: dict[int, CandidateOverlay] = {
            c.candidate_id: CandidateOverlay(
                amount=c.amount,
                date=c.date,
                type=c.type,
                category_id=(
                    prefill.get(c.candidate_id) if c.type is TransactionType.EXPENSE else None
                ),
            )
            for c in candidates
        }
        if selected is None:
            self._selected = {c.candidate_id for c in candidates if not c.is_duplicate}
        else:
            self._selected = {cid for cid in selected if cid in self._candidates}

    # ---- Read access -----------------------------------------------------

    @property
    def candidates(self) -> list[CandidateTransaction]:
        return [self._candidates[cid] for cid in self._order]

    @property
    def selected(self) -> frozenset[int]:
        return frozenset(self._selected)

    def candidate(self, candidate_id: int) -> CandidateTransaction:
        try:
            return self._candidates[candidate_id]
        except KeyError:
            raise ReviewError(f"Unknown candidate: {candidate_id}") from None

    def overlay(self, candidate_id: int) -> CandidateOverlay:
        self.candidate(candidate_id)
        return self._overlays[candidate_id]

    def is_selected(self, candidate_id: int) -> bool:
        return candidate_id in self._selected

    def existing_for(self, candidate_id: int) -> ExistingTransaction | None:
        cand = self.candidate(candidate_id)
        if cand.existing_transaction_id is None:
            return None
        return self.existing_by_id.get(cand.existing_transaction_id)

    # ---- Edits -----------------------------------------------------------

    def _editable(self, candidate_id: int) -> CandidateTransaction:
        if self.state is not SessionState.OPEN:
            raise ReviewError(f"Review session is {self.state.value}")
        return self.candidate(candidate_id)

    def set_selected(self, candidate_id: int, selected: bool) -> None:
        cand = self._editable(candidate_id)
        if cand.is_duplicate:
            raise ReviewError(
                "Duplicates cannot be selected individually; use merge for existing transactions"
            )
        if selected:
            self._selected.add(candidate_id)
        else:
            self._selected.discard(candidate_id)

    def toggle(self, candidate_id: int) -> bool:
        """Flip selection and return the new state."""

        now = not self.is_selected(candidate_id)
        self.set_selected(candidate_id, now)
        return now

    def set_amount(self, candidate_id: int, value: Decimal | float | int | str) -> None:
        self._editable(candidate_id)
        self._overlays[candidate_id].amount = _parse_amount(value)

    def set_date(self, candidate_id: int, value: Date | str) -> None:
        self._editable(candidate_id)
        self._overlays[candidate_id].date = _parse_date(value)

    def set_type(self, candidate_id: int, value: TransactionType | str) -> None:
        self._editable(candidate_id)
        self._overlays[candidate_id].type = _parse_type(value)

    def set_category(self, candidate_id: int, category_id: str | None) -> None:
        self._editable(candidate_id)
        if category_id is not None and category_id not in self._category_ids:
            raise ReviewError(f"Unknown category: {category_id}")
        self._overlays[candidate_id].category_id = category_id

    def set_merge(self, candidate_id: int, merge: bool) -> None:
        """Opt an existing duplicate into (or out of) reconciliation."""

        cand = self._editable(candidate_id)
        if not cand.is_existing_duplicate:
            raise ReviewError("Only transactions that already exist can be merged")
        if cand.is_intra_duplicate:
            raise ReviewError("Repeated rows within this import are never saved")
        self._overlays[candidate_id].merge = merge
        if merge:
            self._selected.add(candidate_id)
        else:
            self._selected.discard(candidate_id)

    # ---- Commit ----------------------------------------------------------

    def _effective_category(self, overlay: CandidateOverlay) -> str | None:
        if overlay.type is TransactionType.INCOME:
            return None
        return overlay.category_id

    def _merge_update(
        self, cand: CandidateTransaction, overlay: CandidateOverlay
    ) -> TransactionUpdate | None:
        existing = self.existing_for(cand.candidate_id)
        if existing is None:
            _logger.warning(
                "review:merge_target_missing candidate_id=%d existing_id=%s",
                cand.candidate_id,
                cand.existing_transaction_id,
            )
            return None
        changed: dict[str, object] = {}
        if abs(existing.amount - overlay.amount) > MERGE_AMOUNT_TOLERANCE:
            changed["amount"] = overlay.amount
        category_id = self._effective_category(overlay)
        if existing.category_id != category_id:
            changed["category_id"] = category_id
        if not changed:
            return None
        return TransactionUpdate(transaction_id=existing.id, fields=changed)

    def plan_commit(self) -> CommitPlan:
        """Compute inserts and merge updates without touching the store."""

        inserts: list[NewTransaction] = []
        updates: list[TransactionUpdate] = []
        skipped: list[int] = []
        for cid in self._order:
            if cid not in self._selected:
                continue
            cand = self._candidates[cid]
            overlay = self._overlays[cid]
            if cand.is_intra_duplicate:
                skipped.append(cid)
                continue
            if cand.is_existing_duplicate:
                update = self._merge_update(cand, overlay) if overlay.merge else None
                if update is None:
                    skipped.append(cid)
                else:
                    updates.append(update)
                continue
            inserts.append(
                NewTransaction(
                    user_id=self.user_id,
                    amount=overlay.amount,
                    description=cand.description,
                    date=overlay.date,
                    type=overlay.type,
                    category_id=self._effective_category(overlay),
                )
            )
        return CommitPlan(inserts=tuple(inserts), updates=tuple(updates), skipped=tuple(skipped))

    def commit(self, store: TransactionStore) -> CommitReport:
        """Persist the plan: one batch insert, then merge updates one by one.

        An insert failure raises ``PersistenceError`` and leaves the session
        open. An insert that times out moves the session to
        ``OUTCOME_UNKNOWN`` so it cannot be committed again. Individual merge
        failures are collected in the report.
        """

        if self.state is not SessionState.OPEN:
            raise ReviewError(f"Review session is {self.state.value}")
        plan = self.plan_commit()
        if plan.is_empty:
            _logger.info("review:nothing_to_save skipped=%d", len(plan.skipped))
            return CommitReport(
                skipped=len(plan.skipped),
                nothing_to_save=True,
                message=NOTHING_TO_SAVE_MESSAGE,
            )
        _logger.info("review:commit %s", plan.describe())

        seconds = self._settings.store_timeout_seconds
        inserted_ids: list[str] = []
        if plan.inserts:
            try:
                inserted_ids = run_with_timeout(
                    lambda: store.insert_many(list(plan.inserts)),
                    seconds=seconds,
                    stage="store",
                    message=SAVE_UNCONFIRMED_MESSAGE,
                )
            except StageTimeoutError:
                self.state = SessionState.OUTCOME_UNKNOWN
                _logger.error("review:insert_unconfirmed rows=%d", len(plan.inserts))
                raise

        merged = 0
        failures: list[str] = []
        for update in plan.updates:
            try:
                run_with_timeout(
                    lambda u=update: store.update_partial(u.transaction_id, u.fields),
                    seconds=seconds,
                    stage="store",
                )
                merged += 1
            except (PersistenceError, StageTimeoutError) as e:
                _logger.warning(
                    "review:merge_failed id=%s error=%s", update.transaction_id, e.message
                )
                failures.append(update.transaction_id)

        self.state = SessionState.COMMITTED
        report = CommitReport(
            inserted=len(plan.inserts),
            merged=merged,
            merge_failures=tuple(failures),
            skipped=len(plan.skipped),
            message=self._report_message(len(plan.inserts), merged, failures, len(plan.skipped)),
            inserted_ids=tuple(inserted_ids),
        )
        _logger.info(
            "review:committed inserted=%d merged=%d merge_failed=%d skipped=%d",
            report.inserted,
            report.merged,
            len(report.merge_failures),
            report.skipped,
        )
        return report

    @staticmethod
    def _report_message(inserted: int, merged: int, failures: Sequence[str], skipped: int) -> str:
        parts = [f"Saved {inserted} new transaction(s)"]
        if merged or failures:
            parts.append(f"updated {merged} existing")
        if failures:
            parts.append(f"{len(failures)} update(s) failed")
        if skipped:
            parts.append(f"skipped {skipped} duplicate(s)")
        return ", ".join(parts) + "."

    def discard(self) -> None:
        """Abandon the review; nothing is written."""

        if self.state is SessionState.OPEN:
            self.state = SessionState.DISCARDED
            self._selected.clear()


__all__ = [
    "MERGE_AMOUNT_TOLERANCE",
    "NOTHING_TO_SAVE_DETAIL",
    "NOTHING_TO_SAVE_MESSAGE",
    "SAVE_UNCONFIRMED_MESSAGE",
    "CandidateOverlay",
    "CommitPlan",
    "CommitReport",
    "ReviewSession",
    "SessionState",
]
