#!/usr/bin/env python3
"""
HTTP Transaction Remote

``TransactionRemote`` implementation over the transactions REST API using
``requests``. Blocking calls run in worker threads (``asyncio.to_thread``) so
the event loop, and with it every optimistic patch, never waits on the
network.

Endpoints:
- GET    /transactions           feed page (cursor pagination)
- GET    /transactions/{id}      single transaction
- POST   /expenses, /income      create
- PUT    /transactions/{id}      partial update
- DELETE /transactions/{id}      delete
- POST   /auth/refresh-token     exchange the refresh token after a 401
"""

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any

import requests

from ..core.config import Config
from ..core.errors import AuthExpired, TransportFailure, UnknownTransaction, ValidationRejected
from ..core.models import FeedFilters, Transaction, TransactionDraft, TransactionKind
from ..feed.remote import FeedPageResponse
from .mapping import changes_to_api, draft_to_api, page_from_api, transaction_from_api
from .tokens import TokenStore

logger = logging.getLogger(__name__)

VALIDATION_STATUSES = {400, 409, 422}

CREATE_ENDPOINTS = {
    TransactionKind.EXPENSE: ("/expenses", "expense"),
    TransactionKind.INCOME: ("/income", "income"),
}


class HttpTransactionRemote:
    """Transactions REST API client with transparent token refresh."""

    def __init__(
        self,
        base_url: str,
        tokens: TokenStore | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        on_session_lost: Callable[[], None] | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API root, e.g. ``https://api.example.com/api/v1``
            tokens: Bearer and refresh tokens of the signed-in user
            timeout: Per-request timeout in seconds
            session: requests session to use (a new one by default)
            on_session_lost: Called on the event loop when a token refresh
                fails; applications wire it to the feed's ``on_session_cleared``
        """
        self.base_url = base_url.rstrip("/")
        self.tokens = tokens or TokenStore()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
        self.on_session_lost = on_session_lost
        self._refresh_lock = threading.Lock()

    @classmethod
    def from_config(
        cls, config: Config, on_session_lost: Callable[[], None] | None = None
    ) -> "HttpTransactionRemote":
        """Build a client from the ``api`` section of the configuration."""
        return cls(
            base_url=config.api.base_url,
            tokens=TokenStore(config.api.access_token, config.api.refresh_token),
            timeout=config.api.timeout,
            on_session_lost=on_session_lost,
        )

    # ------------------------------------------------------------------
    # TransactionRemote
    # ------------------------------------------------------------------

    async def fetch_page(self, filters: FeedFilters, cursor: str | None, limit: int) -> FeedPageResponse:
        params: dict[str, Any] = {**filters.to_params(), "limit": limit}
        if cursor:
            params["cursor"] = cursor
        payload = await self._call("GET", "/transactions", params=params)
        return page_from_api(payload)

    async def create(self, draft: TransactionDraft) -> Transaction:
        path, key = CREATE_ENDPOINTS[draft.kind]
        payload = await self._call("POST", path, json=draft_to_api(draft))
        document = (payload.get("data") or {}).get(key)
        if not payload.get("success") or not document:
            raise ValidationRejected(payload.get("message") or f"Failed to create {key}")
        return transaction_from_api(document, kind=draft.kind)

    async def update(self, transaction_id: str, changes: dict[str, Any]) -> Transaction:
        try:
            payload = await self._call("PUT", f"/transactions/{transaction_id}", json=changes_to_api(changes))
        except _NotFound as e:
            raise UnknownTransaction(f"Transaction {transaction_id} not found") from e
        document = (payload.get("data") or {}).get("transaction")
        if not payload.get("success") or not document:
            raise ValidationRejected(payload.get("message") or "Failed to update transaction")
        return transaction_from_api(document)

    async def delete(self, transaction_id: str) -> None:
        try:
            await self._call("DELETE", f"/transactions/{transaction_id}")
        except _NotFound:
            logger.info(f"Transaction {transaction_id} was already deleted")

    async def get(self, transaction_id: str) -> Transaction | None:
        try:
            payload = await self._call("GET", f"/transactions/{transaction_id}")
        except _NotFound:
            return None
        document = (payload.get("data") or {}).get("transaction")
        return transaction_from_api(document) if document else None

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(self._request, method, path, **kwargs)
        except AuthExpired:
            if self.on_session_lost is not None:
                self.on_session_lost()
            raise

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request, refreshing the access token once on 401."""
        token = self.tokens.access_token
        response = self._send(method, path, params, json, token)

        if response.status_code == 401:
            logger.info(f"{method} {path} returned 401, refreshing access token")
            self._refresh(token)
            response = self._send(method, path, params, json, self.tokens.access_token)
            if response.status_code == 401:
                self.tokens.clear()
                raise AuthExpired("Session expired", status_code=401)

        return self._handle(method, path, response)

    def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
        token: str | None,
    ) -> requests.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url} params={params}")
        try:
            return self.session.request(
                method, url, params=params, json=json, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise TransportFailure(f"{method} {path} timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise TransportFailure(f"Network unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportFailure(f"{method} {path} failed: {e}") from e

    def _refresh(self, rejected_token: str | None) -> None:
        """
        Exchange the refresh token for a new access token.

        Concurrent 401s refresh once: a caller that finds the token already
        replaced just retries with it.

        Raises:
            AuthExpired: If no refresh token is stored or the exchange fails
        """
        with self._refresh_lock:
            if self.tokens.access_token and self.tokens.access_token != rejected_token:
                return

            refresh_token = self.tokens.refresh_token
            if not refresh_token:
                self.tokens.clear()
                raise AuthExpired("No refresh token available", status_code=401)

            try:
                response = self.session.post(
                    f"{self.base_url}/auth/refresh-token",
                    json={"refreshToken": refresh_token},
                    timeout=self.timeout,
                )
                response.raise_for_status()
                token = (response.json().get("data") or {}).get("token")
                self.tokens.store(token)
            except (requests.exceptions.RequestException, ValueError) as e:
                self.tokens.clear()
                logger.warning(f"Token refresh failed: {e}")
                raise AuthExpired(f"Token refresh failed: {e}", status_code=401) from e

            logger.info("Access token refreshed")

    def _handle(self, method: str, path: str, response: requests.Response) -> dict[str, Any]:
        status = response.status_code
        payload = _json_body(response)

        if status < 400:
            return payload

        message = payload.get("message") or payload.get("error") or response.reason or f"HTTP {status}"
        if status in VALIDATION_STATUSES:
            errors = payload.get("errors")
            raise ValidationRejected(str(message), errors if isinstance(errors, dict) else None)
        if status == 404:
            raise _NotFound(str(message), status_code=404)

        logger.warning(f"{method} {path} failed with HTTP {status}: {message}")
        raise TransportFailure(str(message), status_code=status)


class _NotFound(TransportFailure):
    """404 from the API; translated per endpoint."""


def _json_body(response: requests.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
