"""HTTP transport to the PesaSoft backend."""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

from pesawallet.config import DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

Response = Tuple[int, str, Optional[Any]]


def unwrap(j: Any) -> Any:
    """Strip the `{success, message, data}` envelope when the backend uses it."""
    if isinstance(j, dict) and "success" in j and "data" in j:
        return j["data"]
    return j


def is_success(status: int, j: Any) -> bool:
    if not 200 <= status < 300:
        return False
    return not (isinstance(j, dict) and j.get("success") is False)


def error_message(status: int, text: str, j: Any, default: str = "request failed") -> str:
    """Backend message verbatim when there is one."""
    if isinstance(j, dict):
        for k in ("message", "error", "detail"):
            if isinstance(j.get(k), str) and j[k]:
                return j[k]
    if status == 0:
        return text or "network error"
    if text and text.strip() and len(text) < 200:
        return text.strip()
    return f"{default} (HTTP {status})"


class ApiClient:
    """
    Thin async client for the backend contract.

    `req` never raises for transport problems: it returns
    `(status, text, json_or_none)` with status 0 on timeout or connection
    failure. Any 401 invokes `on_unauthorized` before the response is handed
    back, so a stale token is dropped before a caller can retry with it.
    """

    def __init__(
        self,
        api_base: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        on_unauthorized: Optional[Callable[[], Awaitable[None]]] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.api = api_base.rstrip("/")
        self.token_provider = token_provider
        self.on_unauthorized = on_unauthorized
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ssl = ssl.create_default_context()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        connector = aiohttp.TCPConnector(ssl=self._ssl, force_close=True)
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            json_serialize=json.dumps,
        )
        return self._session

    async def close(self) -> None:
        if self._session:
            await self._session.close()

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token is None and self.token_provider is not None:
            token = self.token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def req(
        self,
        method: str,
        path: str,
        data: Any = None,
        params: Optional[Dict[str, str]] = None,
        token: Optional[str] = None,
        notify_unauthorized: bool = True,
    ) -> Response:
        """Generic request. Returns (status, text, json_or_none)."""
        session = await self._ensure_session()
        url = f"{self.api}{path}"
        kwargs: Dict[str, Any] = {"headers": self._headers(token)}
        if params:
            kwargs["params"] = params
        if method.upper() in ("POST", "PUT") and data is not None:
            kwargs["json"] = data
        try:
            async with session.request(method.upper(), url, **kwargs) as resp:
                text = await resp.text()
                status = resp.status
        except asyncio.TimeoutError:
            logger.warning("%s %s timed out", method.upper(), path)
            return 0, "timeout", None
        except aiohttp.ClientError as e:
            logger.warning("%s %s failed: %s", method.upper(), path, e)
            return 0, str(e) or e.__class__.__name__, None
        try:
            j = json.loads(text) if text.strip() else None
        except ValueError:
            j = None
        logger.debug("%s %s -> %s", method.upper(), path, status)
        if status == 401 and notify_unauthorized and self.on_unauthorized is not None:
            await self.on_unauthorized()
        return status, text, j

    # ------------------------
    # Auth
    # ------------------------
    async def login(self, identifier: str, password: str) -> Response:
        return await self.req("POST", "/auth/login", {"identifier": identifier, "password": password}, notify_unauthorized=False)

    async def register(self, profile_fields: Dict[str, Any]) -> Response:
        return await self.req("POST", "/auth/register", profile_fields, notify_unauthorized=False)

    async def get_profile(self) -> Response:
        return await self.req("GET", "/auth/profile")

    async def revoke(self, token: str) -> Response:
        return await self.req("POST", "/auth/logout", {}, token=token, notify_unauthorized=False)

    # ------------------------
    # Users & transactions
    # ------------------------
    async def search_users(self, query: str) -> Tuple[bool, List[Dict[str, Any]]]:
        s, t, j = await self.req("GET", "/users/search", params={"q": query})
        if not is_success(s, j):
            logger.info("user search failed: %s", error_message(s, t, j))
            return False, []
        body = unwrap(j)
        users = body.get("users", []) if isinstance(body, dict) else body
        return True, [u for u in users or [] if isinstance(u, dict)]

    async def send_money(self, body: Dict[str, Any]) -> Response:
        return await self.req("POST", "/mpesa/send-money", body)

    async def stk_push(self, body: Dict[str, Any]) -> Response:
        return await self.req("POST", "/mpesa/stk-push", body)

    async def pay_merchant(self, body: Dict[str, Any]) -> Response:
        return await self.req("POST", "/payments/merchant", body)

    # ------------------------
    # History
    # ------------------------
    async def get_transactions(self, limit: int = 20, page: Optional[int] = None) -> Response:
        params = {"limit": str(limit)}
        if page is not None:
            params["page"] = str(page)
        return await self.req("GET", "/transactions", params=params)

    async def get_transaction_status(self, transaction_id: str) -> Response:
        return await self.req("GET", f"/mpesa/transaction/{quote(transaction_id, safe='')}/status")
