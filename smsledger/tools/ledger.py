"""Ledger backend API wrapper — create, list and patch transactions."""

import logging
from typing import Awaitable, Callable, Optional

import httpx

from smsledger.errors import LedgerApiError

logger = logging.getLogger(__name__)

TRANSACTIONS_PATH = "/transcation"  # backend route spelling
REQUEST_TIMEOUT = 15.0

TokenRefresher = Callable[[], Awaitable[Optional[str]]]


def _error_message(resp: httpx.Response, default: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or default
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or default)
    return default


class LedgerClient:
    """Bearer-token client. A 401 triggers the refresher once, then one retry."""

    def __init__(
        self,
        base_url: str,
        refresher: Optional[TokenRefresher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.refresher = refresher
        self._transport = transport
        self.timeout = timeout

    async def _request(self, method: str, path: str, token: str, payload: dict | None = None):
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            try:
                resp = await client.request(
                    method, url, json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
                if resp.status_code == 401 and self.refresher:
                    logger.info("Ledger returned 401 for %s %s, refreshing token", method, path)
                    new_token = await self.refresher()
                    if new_token:
                        resp = await client.request(
                            method, url, json=payload,
                            headers={"Authorization": f"Bearer {new_token}"},
                        )
            except httpx.HTTPError as e:
                raise LedgerApiError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            message = _error_message(resp, f"{method} {path} returned {resp.status_code}")
            raise LedgerApiError(message, status_code=resp.status_code)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise LedgerApiError(f"{method} {path} returned non-JSON body", resp.status_code) from e

    async def create_transaction(self, token: str, payload: dict) -> dict:
        """POST a new transaction. Returns the created record."""
        result = await self._request("POST", TRANSACTIONS_PATH, token, payload)
        if isinstance(result, dict) and isinstance(result.get("transaction"), dict):
            return result["transaction"]
        return result if isinstance(result, dict) else {}

    async def list_transactions(self, token: str) -> list[dict]:
        result = await self._request("GET", TRANSACTIONS_PATH, token)
        if isinstance(result, list):
            return result
        return list(result.get("transactions") or [])

    async def update_transaction(self, token: str, transaction_id: str, fields: dict) -> dict:
        """PATCH a subset of fields (used for category picks from notifications)."""
        return await self._request("PATCH", f"{TRANSACTIONS_PATH}/{transaction_id}", token, fields)


def transaction_id(txn: dict | None) -> str:
    """The backend returns either `id` or Mongo-style `_id`."""
    if not txn:
        return ""
    return str(txn.get("id") or txn.get("_id") or "")
