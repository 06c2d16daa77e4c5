"""Shared SQLAlchemy models registry for the ledger database.

Currently includes the ledger domain models used by ``fiscal_ledger``.
"""

from .ledger import (
    Base,
    CategoryMapping,
    GlobalKeywordRule,
    LedgerAccount,
    LedgerContact,
    LedgerTransaction,
    LedgerUser,
    UserKeywordRule,
)

__all__ = [
    "Base",
    "CategoryMapping",
    "GlobalKeywordRule",
    "LedgerAccount",
    "LedgerContact",
    "LedgerTransaction",
    "LedgerUser",
    "UserKeywordRule",
]
