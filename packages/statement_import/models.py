"""Typed models shared across the import pipeline.

``ParsedTransaction`` and ``CandidateTransaction`` are pydantic models
because they carry data decoded from LLM output; persisted records and
derived keys are plain frozen dataclasses / named tuples.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date as Date
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

_CENTS = Decimal("0.01")

PASTED_TEXT_LABEL = "pasted text"


def quantize_amount(value: Decimal | float | int | str) -> Decimal:
    """Round to cents (half-up) via ``str`` so floats keep their printed value."""

    dec = value if isinstance(value, Decimal) else Decimal(str(value))
    return dec.quantize(_CENTS, rounding=ROUND_HALF_UP)


class TransactionType(StrEnum):
    INCOME = "income"
    EXPENSE = "expense"


class ParsedTransaction(BaseModel):
    """One transaction as extracted from statement text."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    amount: Decimal = Field(ge=0)
    description: str = Field(min_length=1)
    date: Date
    type: TransactionType
    suggested_category: str | None = None

    @field_validator("amount", mode="after")
    @classmethod
    def _cents(cls, v: Decimal) -> Decimal:
        return quantize_amount(v)

    @field_validator("suggested_category", mode="after")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        return v or None

    def to_public_dict(self) -> dict[str, object]:
        """JSON-friendly mapping used by the entry points."""

        out: dict[str, object] = {
            "amount": float(self.amount),
            "description": self.description,
            "date": self.date.isoformat(),
            "type": self.type.value,
        }
        if self.suggested_category:
            out["suggested_category"] = self.suggested_category
        return out


class CandidateTransaction(ParsedTransaction):
    """A parsed transaction inside one import run.

    Dedup flags are filled in by :mod:`statement_import.duplicates`. Review
    edits never touch this object; they live in the review session's overlay
    table keyed by ``candidate_id``.
    """

    candidate_id: int = Field(ge=0)
    source_label: str
    is_intra_duplicate: bool = False
    duplicate_of_index: int | None = None
    is_existing_duplicate: bool = False
    existing_transaction_id: str | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.is_intra_duplicate or self.is_existing_duplicate

    @classmethod
    def from_parsed(
        cls, parsed: ParsedTransaction, *, candidate_id: int, source_label: str
    ) -> CandidateTransaction:
        return cls(
            **parsed.model_dump(),
            candidate_id=candidate_id,
            source_label=source_label,
        )


@dataclass(frozen=True, slots=True)
class ExistingTransaction:
    id: str
    amount: Decimal
    description: str
    date: Date
    type: TransactionType
    category_id: str | None = None


@dataclass(frozen=True, slots=True)
class Category:
    id: str
    name: str
    color: str | None = None
    icon: str | None = None


class ComparisonKey(NamedTuple):
    amount: Decimal
    description: str
    date: Date
    type: TransactionType


@dataclass(frozen=True, slots=True)
class NewTransaction:
    """Row queued for the batch insert."""

    user_id: str
    amount: Decimal
    description: str
    date: Date
    type: TransactionType
    category_id: str | None = None


@dataclass(frozen=True, slots=True)
class TransactionUpdate:
    """Partial update of a stored transaction; ``fields`` holds changed columns only."""

    transaction_id: str
    fields: dict[str, object] = field(default_factory=dict)


__all__ = [
    "PASTED_TEXT_LABEL",
    "CandidateTransaction",
    "Category",
    "ComparisonKey",
    "ExistingTransaction",
    "NewTransaction",
    "ParsedTransaction",
    "TransactionType",
    "TransactionUpdate",
    "quantize_amount",
]
