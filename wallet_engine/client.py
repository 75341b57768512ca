"""HTTP client for the wallet data API.

The blocking :class:`WalletApiClient` wraps :mod:`requests`; the engine runs
it from the event loop through :class:`AsyncWalletApi`, which hands every call
to a worker thread.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterator, Mapping, Optional

import requests

from .config import EngineConfig

logger = logging.getLogger(__name__)


class ApiError(RuntimeError):
    """Raised when the data API cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ApiError):
    """Raised on HTTP 401; never retried by the caches or the settings sync."""


@dataclass(slots=True)
class TransactionQuery:
    """Filters accepted by ``GET /api/transactions``.

    ``range_from`` / ``range_to`` are the inclusive row offsets sent as
    ``from`` / ``to``.
    """

    range_from: Optional[int] = None
    range_to: Optional[int] = None
    search: Optional[str] = None
    transaction_type: Optional[str] = None
    category: Optional[str] = None
    start_date: Optional[datetime | date | str] = None
    end_date: Optional[datetime | date | str] = None
    fields: Optional[str] = None
    order_by: Optional[str] = None
    order_asc: Optional[bool] = None
    card_id: Optional[str] = None

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        for item in dataclasses.fields(self):
            value = getattr(self, item.name)
            if value is None or value == "":
                continue
            name = {"range_from": "from", "range_to": "to"}.get(item.name, item.name)
            params[name] = _format_param(value)
        return params


class WalletApiClient:
    """Blocking client for cards, transactions and preferences."""

    def __init__(self, config: EngineConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        payload: Any = None,
    ) -> Any:
        url = f"{self._config.api_base_url}{path}"
        headers = {"Accept": "application/json"}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"

        logger.debug("%s %s", method, path)
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=headers,
                timeout=self._config.http_timeout,
            )
        except requests.RequestException as exc:
            raise ApiError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 401:
            raise AuthenticationError(f"{method} {path} requires authentication", 401)
        if not response.ok:
            raise ApiError(f"{method} {path} returned HTTP {response.status_code}", response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(f"{method} {path} returned invalid JSON", response.status_code) from exc

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    def current_user_id(self) -> Optional[str]:
        body = self._request("GET", "/api/user")
        if not isinstance(body, Mapping) or body.get("id") in (None, ""):
            return None
        return str(body["id"])

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------
    def get_preferences(self) -> dict[str, Any]:
        body = self._request("GET", "/api/preferences")
        return dict(body) if isinstance(body, Mapping) else {}

    def replace_preferences(self, preferences: Mapping[str, Any]) -> Any:
        return self._checked(self._request("POST", "/api/preferences", payload={"preferences": dict(preferences)}))

    def patch_preferences(self, updates: Mapping[str, Any]) -> Any:
        return self._checked(self._request("PATCH", "/api/preferences", payload={"updates": dict(updates)}))

    def save_apis(self, apis: Any) -> Any:
        return self._checked(self._request("POST", "/api/preferences/apis", payload={"apis": apis}))

    @staticmethod
    def _checked(body: Any) -> Any:
        if isinstance(body, Mapping) and body.get("success") is False:
            raise ApiError(str(body.get("error") or "Preferences update rejected"))
        return body

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------
    def list_cards(self) -> list[dict[str, Any]]:
        return list(self._request("GET", "/api/cards") or [])

    def sum_by_card(self) -> dict[str, float]:
        body = self._request("GET", "/api/cards/sums") or {}
        return {str(card_id): float(total or 0) for card_id, total in dict(body).items()}

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    def list_transactions(self, query: Optional[TransactionQuery] = None) -> list[dict[str, Any]]:
        params = (query or TransactionQuery()).to_params()
        return list(self._request("GET", "/api/transactions", params=params) or [])

    def iter_transactions(self, query: Optional[TransactionQuery] = None, page_size: int = 500) -> Iterator[dict[str, Any]]:
        """Yield every matching transaction, paging by row offsets."""

        if page_size < 1:
            raise ValueError("page_size must be positive.")
        base = query or TransactionQuery()
        offset = base.range_from or 0
        while True:
            page_query = TransactionQuery(**{item.name: getattr(base, item.name) for item in dataclasses.fields(base)})
            page_query.range_from = offset
            page_query.range_to = offset + page_size - 1
            page = self.list_transactions(page_query)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def create_transaction(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return dict(self._request("POST", "/api/transactions", payload=dict(payload)) or {})

    def update_transaction(self, transaction_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        return dict(self._request("PATCH", f"/api/transactions/{transaction_id}", payload=dict(patch)) or {})

    def delete_transaction(self, transaction_id: str) -> None:
        self._request("DELETE", f"/api/transactions/{transaction_id}")


class AsyncWalletApi:
    """Awaitable facade over :class:`WalletApiClient`."""

    def __init__(self, client: WalletApiClient) -> None:
        self._client = client

    async def current_user_id(self) -> Optional[str]:
        return await asyncio.to_thread(self._client.current_user_id)

    async def get_preferences(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._client.get_preferences)

    async def patch_preferences(self, updates: Mapping[str, Any]) -> Any:
        return await asyncio.to_thread(self._client.patch_preferences, updates)

    async def save_apis(self, apis: Any) -> Any:
        return await asyncio.to_thread(self._client.save_apis, apis)

    async def list_cards(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._client.list_cards)

    async def sum_by_card(self) -> dict[str, float]:
        return await asyncio.to_thread(self._client.sum_by_card)

    async def list_transactions(self, query: Optional[TransactionQuery] = None) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._client.list_transactions, query)

    async def list_all_transactions(self, query: Optional[TransactionQuery] = None) -> list[dict[str, Any]]:
        return await asyncio.to_thread(lambda: list(self._client.iter_transactions(query)))

    async def create_transaction(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._client.create_transaction, payload)

    async def update_transaction(self, transaction_id: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._client.update_transaction, transaction_id, patch)

    async def delete_transaction(self, transaction_id: str) -> None:
        await asyncio.to_thread(self._client.delete_transaction, transaction_id)


def _format_param(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


__all__ = [
    "ApiError",
    "AsyncWalletApi",
    "AuthenticationError",
    "TransactionQuery",
    "WalletApiClient",
]
