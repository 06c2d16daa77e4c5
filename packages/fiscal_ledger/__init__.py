"""Public interface for the ``fiscal_ledger`` package.

This module exposes the stable import surface: the taxonomy, the resolution
pipeline and its tiers, the bulk migration runner and the sync engine. There
is no runtime logic here, only symbol re-exports.
"""

from .errors import (
    AccountNotFound,
    CommitError,
    ConfigurationError,
    FeedError,
    LedgerError,
    PublishNotAuthorized,
)
from .heuristics import HeuristicResult, enforce_accounting_rules, score
from .migrate import (
    LegacyMappingTransform,
    MigrationRunner,
    RepairTransform,
    normalize_l0_transform,
)
from .models import Resolution, RunStats, TransactionRecord, UserContext
from .pipeline import ResolutionPipeline, apply_resolution, review_status_for
from .rules import AllowlistAuthorizer, RuleStore, sanitize_keyword
from .sync import SyncEngine, SyncResult, SyncState, handle_webhook, sync_owners
from .taxonomy import DEFAULT_BUCKET, L0, SIX_SET, CategoryLabel, normalize_hierarchy, normalize_l0

__all__ = [
    # Errors
    "AccountNotFound",
    "CommitError",
    "ConfigurationError",
    "FeedError",
    "LedgerError",
    "PublishNotAuthorized",
    # Taxonomy
    "CategoryLabel",
    "DEFAULT_BUCKET",
    "L0",
    "SIX_SET",
    "normalize_hierarchy",
    "normalize_l0",
    # Resolution
    "AllowlistAuthorizer",
    "HeuristicResult",
    "Resolution",
    "ResolutionPipeline",
    "RuleStore",
    "TransactionRecord",
    "UserContext",
    "apply_resolution",
    "enforce_accounting_rules",
    "review_status_for",
    "sanitize_keyword",
    "score",
    # Jobs
    "LegacyMappingTransform",
    "MigrationRunner",
    "RepairTransform",
    "RunStats",
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "handle_webhook",
    "normalize_l0_transform",
    "sync_owners",
]
