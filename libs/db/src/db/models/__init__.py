"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the budgeting models used by ``statement_import``.
"""

from .budget import Base, Category, Transaction

__all__ = [
    "Base",
    "Category",
    "Transaction",
]
