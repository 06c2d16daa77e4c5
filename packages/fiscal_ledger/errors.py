"""Exception types raised across ``fiscal_ledger``.

Only conditions a caller can act on get a dedicated type. Model output that
fails validation is not an error: the generative tier simply answers
``None``.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger errors."""


class ConfigurationError(LedgerError):
    """Missing or invalid settings; raised before any work starts."""


class FeedError(LedgerError):
    """The bank-data aggregator call failed (timeout, HTTP error, bad payload).

    Transient by nature. Re-running the sync is safe because the cursor was not
    advanced and commits are keyed upserts.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CommitError(LedgerError):
    """A bounded write batch was rejected by the store.

    Carries enough context (owner, account, page) to resume.
    """

    def __init__(
        self,
        message: str,
        *,
        owner_id: str,
        account_id: str | None = None,
        page_index: int | None = None,
        cursor: str | None = None,
    ) -> None:
        super().__init__(message)
        self.owner_id = owner_id
        self.account_id = account_id
        self.page_index = page_index
        self.cursor = cursor


class AccountNotFound(LedgerError):
    """The (user, account) pair does not exist or has no access token."""


class PublishNotAuthorized(LedgerError):
    """The actor is not allowed to promote user rules to the global table."""


__all__ = [
    "AccountNotFound",
    "CommitError",
    "ConfigurationError",
    "FeedError",
    "LedgerError",
    "PublishNotAuthorized",
]
