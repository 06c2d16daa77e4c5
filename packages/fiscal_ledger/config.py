"""Process configuration read from the environment.

Entrypoints load ``.env`` first (``python-dotenv``, never overriding variables
already set) and then call :func:`load_settings`. Invalid values and missing
credentials surface as :class:`~fiscal_ledger.errors.ConfigurationError`
before any run starts, never mid-run.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

# Environment variable -> settings field.
_ENV_FIELDS: dict[str, str] = {
    "DATABASE_URL": "database_url",
    "OPENAI_API_KEY": "openai_api_key",
    "FISCAL_LEDGER_DEEP_MODEL": "deep_model",
    "PLAID_CLIENT_ID": "plaid_client_id",
    "PLAID_SECRET": "plaid_secret",
    "PLAID_ENV": "plaid_env",
    "PLAID_BASE_URL": "plaid_base_url",
    "PLAID_WEBHOOK_URL": "plaid_webhook_url",
    "FISCAL_LEDGER_PAGE_SIZE": "page_size",
    "FISCAL_LEDGER_BATCH_SIZE": "batch_size",
    "FISCAL_LEDGER_DRY_RUN": "dry_run",
    "FISCAL_LEDGER_REMOVED_POLICY": "removed_policy",
    "FISCAL_LEDGER_RULE_PUBLISHERS": "rule_publishers",
    "FISCAL_LEDGER_CONCURRENCY": "concurrency",
}
_FIELD_ENVS: dict[str, str] = {v: k for k, v in _ENV_FIELDS.items()}

# Hard atomic-batch limit of the store; configured ceilings must stay below it.
STORE_BATCH_LIMIT = 500

RemovedPolicy = Literal["soft", "hard"]


class LedgerSettings(BaseModel):
    """Validated, immutable settings snapshot."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    database_url: str | None = None
    openai_api_key: str | None = None
    deep_model: str = "gpt-5"
    plaid_client_id: str | None = None
    plaid_secret: str | None = None
    plaid_env: Literal["sandbox", "development", "production"] = "sandbox"
    plaid_base_url: str | None = None
    plaid_webhook_url: str | None = None
    page_size: int = Field(default=400, ge=1, le=1000)
    batch_size: int = Field(default=450, ge=1, le=STORE_BATCH_LIMIT)
    dry_run: bool = False
    removed_policy: RemovedPolicy = "soft"
    rule_publishers: frozenset[str] = frozenset()
    concurrency: int = Field(default=1, ge=1, le=32)

    @field_validator("plaid_env", "removed_policy", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("rule_publishers", mode="before")
    @classmethod
    def _split_publishers(cls, v: Any) -> Any:
        if isinstance(v, str):
            return frozenset(p.strip() for p in v.split(",") if p.strip())
        return v

    def require(self, *fields: str) -> None:
        """Raise ``ConfigurationError`` naming every unset field in ``fields``."""

        missing = [_FIELD_ENVS.get(f, f) for f in fields if not getattr(self, f)]
        if missing:
            raise ConfigurationError(f"missing required configuration: {', '.join(missing)}")


def load_settings(environ: Mapping[str, str] | None = None, **overrides: Any) -> LedgerSettings:
    """Build :class:`LedgerSettings` from ``environ`` (defaults to ``os.environ``).

    Empty strings count as unset. ``overrides`` (e.g. CLI options) win over the
    environment when not ``None``.
    """

    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for env_name, field in _ENV_FIELDS.items():
        raw = env.get(env_name)
        if raw is not None and raw.strip() != "":
            values[field] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return LedgerSettings.model_validate(values)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e


__all__ = ["LedgerSettings", "RemovedPolicy", "STORE_BATCH_LIMIT", "load_settings"]
