"""Duplicate detection for import candidates.

Two passes share a single key function:

- :func:`mark_intra_batch_duplicates` flags later repeats inside one run;
  the first occurrence in candidate order wins.
- :func:`mark_existing_duplicates` flags candidates whose key matches a
  transaction already in the store (bounded recent window).
"""

from __future__ import annotations

import unicodedata
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date as Date
from decimal import Decimal

from .logging_setup import get_logger
from .models import (
    CandidateTransaction,
    ComparisonKey,
    ExistingTransaction,
    TransactionType,
    quantize_amount,
)

_logger = get_logger("statement_import.duplicates")


def normalize_description(text: str) -> str:
    """NFKC-fold, lowercase, trim and collapse internal whitespace."""

    return " ".join(unicodedata.normalize("NFKC", text).split()).lower()


def comparison_key(
    *,
    amount: Decimal | float | int | str,
    description: str,
    date: Date,
    type: TransactionType | str,
) -> ComparisonKey:
    return ComparisonKey(
        amount=quantize_amount(amount),
        description=normalize_description(description),
        date=date,
        type=TransactionType(type),
    )


def key_of(item: CandidateTransaction | ExistingTransaction) -> ComparisonKey:
    return comparison_key(
        amount=item.amount,
        description=item.description,
        date=item.date,
        type=item.type,
    )


@dataclass(frozen=True, slots=True)
class DedupSummary:
    total: int
    intra_duplicates: int
    existing_duplicates: int

    @property
    def unique(self) -> int:
        return self.total - self.intra_duplicates

    @classmethod
    def of(cls, candidates: Sequence[CandidateTransaction]) -> DedupSummary:
        """Count the flags left by both passes."""

        return cls(
            total=len(candidates),
            intra_duplicates=sum(1 for c in candidates if c.is_intra_duplicate),
            existing_duplicates=sum(1 for c in candidates if c.is_existing_duplicate),
        )


def mark_intra_batch_duplicates(candidates: Sequence[CandidateTransaction]) -> int:
    """Flag repeats of an earlier key; return how many were flagged.

    ``duplicate_of_index`` is the list position of the first occurrence.
    """

    first_seen: dict[ComparisonKey, int] = {}
    flagged = 0
    for index, cand in enumerate(candidates):
        key = key_of(cand)
        first = first_seen.get(key)
        if first is None:
            first_seen[key] = index
            cand.is_intra_duplicate = False
            cand.duplicate_of_index = None
            continue
        cand.is_intra_duplicate = True
        cand.duplicate_of_index = first
        flagged += 1
    return flagged


def mark_existing_duplicates(
    candidates: Sequence[CandidateTransaction],
    existing: Iterable[ExistingTransaction],
) -> dict[str, ExistingTransaction]:
    """Flag candidates matching a stored transaction.

    Applies to every candidate regardless of its intra-batch flag. When two
    stored rows share a key the most recent one (first in the window) is
    kept. Returns the window indexed by id for the merge diff at commit.
    """

    by_key: dict[ComparisonKey, ExistingTransaction] = {}
    by_id: dict[str, ExistingTransaction] = {}
    for tx in existing:
        by_id[tx.id] = tx
        by_key.setdefault(key_of(tx), tx)

    for cand in candidates:
        match = by_key.get(key_of(cand))
        cand.is_existing_duplicate = match is not None
        cand.existing_transaction_id = match.id if match is not None else None
    _logger.debug("duplicates:existing_pass window=%d distinct_keys=%d", len(by_id), len(by_key))
    return by_id


__all__ = [
    "DedupSummary",
    "comparison_key",
    "key_of",
    "mark_existing_duplicates",
    "mark_intra_batch_duplicates",
    "normalize_description",
]
