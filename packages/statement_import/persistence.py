"""Store collaborators used by the import pipeline.

The pipeline depends only on the :class:`CategoryReader` and
:class:`TransactionStore` protocols. The SQL implementations here work on the
shared ``db`` models through ``db.client.session_scope``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol

from db.client import session_scope
from db.models.budget import Category as CategoryRow
from db.models.budget import Transaction as TransactionRow
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .errors import PersistenceError
from .logging_setup import get_logger
from .models import (
    Category,
    ExistingTransaction,
    NewTransaction,
    TransactionType,
    quantize_amount,
)

_logger = get_logger("statement_import.persistence")

# Columns a merge may change on a stored transaction.
UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"amount", "description", "date", "type", "category_id"}
)


class CategoryReader(Protocol):
    def list_categories(self, user_id: str) -> list[Category]: ...


class TransactionStore(Protocol):
    def list_recent(self, user_id: str, limit: int) -> list[ExistingTransaction]: ...

    def insert_many(self, rows: Sequence[NewTransaction]) -> list[str]: ...

    def update_partial(self, transaction_id: str, fields: Mapping[str, object]) -> None: ...


def _to_existing(row: TransactionRow) -> ExistingTransaction:
    return ExistingTransaction(
        id=row.id,
        amount=quantize_amount(row.amount),
        description=row.description,
        date=row.date,
        type=TransactionType(row.type),
        category_id=row.category_id,
    )


class SqlCategoryReader:
    def __init__(self, *, database_url: str | None = None) -> None:
        self._database_url = database_url

    def list_categories(self, user_id: str) -> list[Category]:
        """Categories of ``user_id`` ordered by name."""

        try:
            with session_scope(database_url=self._database_url) as session:
                rows = session.scalars(
                    select(CategoryRow)
                    .where(CategoryRow.user_id == user_id)
                    .order_by(CategoryRow.name)
                ).all()
                return [Category(id=r.id, name=r.name, color=r.color, icon=r.icon) for r in rows]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load categories: {e}") from e


class SqlTransactionStore:
    def __init__(self, *, database_url: str | None = None) -> None:
        self._database_url = database_url

    def list_recent(self, user_id: str, limit: int) -> list[ExistingTransaction]:
        """Most recent ``limit`` transactions of ``user_id`` by date (newest first)."""

        try:
            with session_scope(database_url=self._database_url) as session:
                rows = session.scalars(
                    select(TransactionRow)
                    .where(TransactionRow.user_id == user_id)
                    .order_by(TransactionRow.date.desc(), TransactionRow.created_at.desc())
                    .limit(limit)
                ).all()
                return [_to_existing(r) for r in rows]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load recent transactions: {e}") from e

    def insert_many(self, rows: Sequence[NewTransaction]) -> list[str]:
        """Insert all rows in one transaction and return their ids."""

        if not rows:
            return []
        try:
            with session_scope(database_url=self._database_url) as session:
                orm_rows = [
                    TransactionRow(
                        user_id=r.user_id,
                        amount=r.amount,
                        description=r.description,
                        date=r.date,
                        type=r.type.value,
                        category_id=r.category_id,
                    )
                    for r in rows
                ]
                session.add_all(orm_rows)
                session.flush()
                ids = [r.id for r in orm_rows]
        except SQLAlchemyError as e:
            _logger.error("persistence:insert_failed rows=%d error=%s", len(rows), e)
            raise PersistenceError(f"Failed to save transactions: {e}") from e
        _logger.info("persistence:inserted rows=%d", len(ids))
        return ids

    def update_partial(self, transaction_id: str, fields: Mapping[str, object]) -> None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise PersistenceError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        try:
            with session_scope(database_url=self._database_url) as session:
                row = session.get(TransactionRow, transaction_id)
                if row is None:
                    raise PersistenceError(f"Transaction {transaction_id} not found")
                for name, value in fields.items():
                    if isinstance(value, TransactionType):
                        value = value.value
                    setattr(row, name, value)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to update transaction {transaction_id}: {e}") from e
        _logger.debug(
            "persistence:updated id=%s fields=%s", transaction_id, ",".join(sorted(fields))
        )


__all__ = [
    "CategoryReader",
    "SqlCategoryReader",
    "SqlTransactionStore",
    "TransactionStore",
    "UPDATABLE_FIELDS",
]
