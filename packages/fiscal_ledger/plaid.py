"""Plaid adapter: the cursor-paginated transaction change feed and item setup.

Requests are JSON POSTs carrying ``client_id``/``secret`` in the body, sent
with ``httpx``. Responses are validated with pydantic at this boundary so the
sync engine only sees typed records. Any HTTP or payload failure raises
:class:`~fiscal_ledger.errors.FeedError`; nothing is retried here.

Plaid reports amounts outflow-positive; conversion to the ledger's
inflow-positive convention happens in the sync engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .config import LedgerSettings
from .errors import ConfigurationError, FeedError
from .logging_setup import get_logger

PLAID_ENV_URLS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

_logger = get_logger("fiscal_ledger.plaid")


# ---- Feed payloads -----------------------------------------------------------


class PlaidCategory(BaseModel):
    model_config = ConfigDict(extra="ignore")

    primary: str | None = None
    detailed: str | None = None


class PlaidTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    transaction_id: str
    account_id: str
    amount: Decimal
    date: date
    name: str = ""
    merchant_name: str | None = None
    pending: bool = False
    personal_finance_category: PlaidCategory | None = None


class PlaidRemoved(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_id: str
    account_id: str | None = None


class PlaidAccount(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    account_id: str
    name: str | None = None
    mask: str | None = None
    type: str | None = None


class _AccountsBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    accounts: list[PlaidAccount] = []


class _SyncBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    added: list[PlaidTransaction] = []
    modified: list[PlaidTransaction] = []
    removed: list[PlaidRemoved] = []
    next_cursor: str
    has_more: bool = False


@dataclass(frozen=True, slots=True)
class FeedPage:
    added: tuple[PlaidTransaction, ...]
    modified: tuple[PlaidTransaction, ...]
    removed: tuple[PlaidRemoved, ...]
    next_cursor: str
    has_more: bool


@dataclass(frozen=True, slots=True)
class ItemCredentials:
    access_token: str
    item_id: str


class TransactionFeed(Protocol):
    """The part of the aggregator the sync engine consumes."""

    def transactions_sync(self, access_token: str, cursor: str | None) -> FeedPage: ...


# ---- Client ------------------------------------------------------------------


class PlaidClient:
    """Thin JSON client for the Plaid endpoints the ledger uses."""

    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: str = "sandbox",
        base_url: str | None = None,
        http: httpx.Client | None = None,
        timeout: float = 20.0,
        page_count: int = 500,
    ) -> None:
        self.base_url = base_url or PLAID_ENV_URLS.get(env, PLAID_ENV_URLS["sandbox"])
        self._client_id = client_id
        self._secret = secret
        self._http = http or httpx.Client(base_url=self.base_url, timeout=timeout)
        self._page_count = page_count

    @classmethod
    def from_settings(cls, settings: LedgerSettings, **kwargs: Any) -> PlaidClient:
        client_id, secret = settings.plaid_client_id, settings.plaid_secret
        if not client_id or not secret:
            missing = [name for name, v in (("PLAID_CLIENT_ID", client_id), ("PLAID_SECRET", secret)) if not v]
            raise ConfigurationError(f"missing required configuration: {', '.join(missing)}")
        return cls(
            client_id=client_id,
            secret=secret,
            env=settings.plaid_env,
            base_url=settings.plaid_base_url,
            **kwargs,
        )

    def close(self) -> None:
        self._http.close()

    def post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = {"client_id": self._client_id, "secret": self._secret, **payload}
        try:
            response = self._http.post(path, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            code = None
            try:
                code = e.response.json().get("error_code")
            except ValueError:
                pass
            _logger.warning(
                "plaid:http_error path=%s status=%d error_code=%s",
                path,
                e.response.status_code,
                code,
            )
            raise FeedError(
                f"Plaid {path} failed with HTTP {e.response.status_code} ({code or 'unknown'})",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            _logger.warning("plaid:transport_error path=%s error=%s", path, e)
            raise FeedError(f"Plaid {path} failed: {e}") from e
        except ValueError as e:
            raise FeedError(f"Plaid {path} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise FeedError(f"Plaid {path} returned an unexpected body")
        return data

    # ---- Endpoints -----------------------------------------------------------

    def transactions_sync(self, access_token: str, cursor: str | None) -> FeedPage:
        """Fetch one page of the change feed starting at ``cursor``."""

        payload: dict[str, Any] = {"access_token": access_token, "count": self._page_count}
        if cursor:
            payload["cursor"] = cursor
        data = self.post("/transactions/sync", payload)
        try:
            body = _SyncBody.model_validate(data)
        except ValidationError as e:
            raise FeedError(f"Plaid /transactions/sync payload invalid: {e.error_count()} errors") from e
        return FeedPage(
            added=tuple(body.added),
            modified=tuple(body.modified),
            removed=tuple(body.removed),
            next_cursor=body.next_cursor,
            has_more=body.has_more,
        )

    def exchange_public_token(self, public_token: str) -> ItemCredentials:
        data = self.post("/item/public_token/exchange", {"public_token": public_token})
        access_token = data.get("access_token")
        item_id = data.get("item_id")
        if not isinstance(access_token, str) or not isinstance(item_id, str):
            raise FeedError("Plaid token exchange response lacks access_token/item_id")
        return ItemCredentials(access_token=access_token, item_id=item_id)

    def create_link_token(
        self, user_id: str, *, webhook: str | None = None, days_requested: int = 90
    ) -> str:
        payload: dict[str, Any] = {
            "client_name": "FiscalFlow",
            "language": "en",
            "country_codes": ["US"],
            "user": {"client_user_id": user_id},
            "products": ["transactions"],
            "transactions": {"days_requested": days_requested},
        }
        if webhook:
            payload["webhook"] = webhook
        data = self.post("/link/token/create", payload)
        token = data.get("link_token")
        if not isinstance(token, str):
            raise FeedError("Plaid link token response lacks link_token")
        return token

    def get_accounts(self, access_token: str) -> tuple[PlaidAccount, ...]:
        data = self.post("/accounts/get", {"access_token": access_token})
        try:
            body = _AccountsBody.model_validate(data)
        except ValidationError as e:
            raise FeedError(f"Plaid /accounts/get payload invalid: {e.error_count()} errors") from e
        return tuple(body.accounts)

    def update_item_webhook(self, access_token: str, webhook: str) -> None:
        self.post("/item/webhook/update", {"access_token": access_token, "webhook": webhook})


__all__ = [
    "FeedPage",
    "ItemCredentials",
    "PLAID_ENV_URLS",
    "PlaidAccount",
    "PlaidCategory",
    "PlaidClient",
    "PlaidRemoved",
    "PlaidTransaction",
    "TransactionFeed",
]
