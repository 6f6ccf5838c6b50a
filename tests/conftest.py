"""
Shared test fixtures
====================

Fakes for the two external collaborators of the core:
- FakeApi: scripted backend responses for the session store and search
- FakeExecutor: scripted transaction outcomes, optionally held open with a gate
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import pytest

from pesawallet.cache import MemoryCache
from pesawallet.config import TOKEN_KEY, USER_KEY, WALLET_KEY
from pesawallet.dispatcher import PaymentDispatcher, TransactionExecutor
from pesawallet.session import SessionStore
from pesawallet.wizard import RecipientSearch, TransferWizard


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")


USER = {
    "_id": "u-1",
    "firstName": "Amina",
    "lastName": "Otieno",
    "email": "amina@example.com",
    "phoneNumber": "0712345678",
    "role": "user",
    "isVerified": True,
}
WALLET = {"balance": 1000, "currency": "KES", "isPinSet": True}
RECIPIENT = {"_id": "u-2", "firstName": "Brian", "lastName": "Kamau", "phoneNumber": "0798765432"}


def envelope(data: Any, message: str = "ok") -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def failure(message: str, **extra) -> Dict[str, Any]:
    return {"success": False, "message": message, **extra}


class FakeApi:
    """Stands in for ApiClient; each method pops the next scripted response."""

    def __init__(self):
        self.responses: Dict[str, List[Tuple[int, str, Any]]] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.search_results: List[Dict[str, Any]] = [RECIPIENT]
        self.profile_gate: Optional[asyncio.Event] = None

    def script(self, name: str, status: int, j: Any = None, text: str = "") -> None:
        if not text and j is not None:
            text = json.dumps(j)
        self.responses.setdefault(name, []).append((status, text, j))

    def _next(self, name: str) -> Tuple[int, str, Any]:
        queue = self.responses.get(name)
        if not queue:
            return 0, "no scripted response", None
        return queue.pop(0)

    async def login(self, identifier, password):
        self.calls.append(("login", identifier))
        return self._next("login")

    async def register(self, fields):
        self.calls.append(("register", dict(fields)))
        return self._next("register")

    async def get_profile(self):
        self.calls.append(("profile", None))
        response = self._next("profile")
        if self.profile_gate is not None:
            gate, self.profile_gate = self.profile_gate, None
            await gate.wait()
        return response

    async def revoke(self, token):
        self.calls.append(("revoke", token))
        return self._next("revoke")

    async def search_users(self, query):
        self.calls.append(("search", query))
        return True, list(self.search_results)

    async def get_transactions(self, limit=20, page=None):
        self.calls.append(("transactions", limit))
        return self._next("transactions")

    async def get_transaction_status(self, transaction_id):
        self.calls.append(("status", transaction_id))
        return self._next("status")


class FakeExecutor(TransactionExecutor):
    def __init__(self, status: int = 200, j: Any = None):
        self.response = (status, json.dumps(j) if j is not None else "", j)
        self.requests = []
        self.gate: Optional[asyncio.Event] = None

    def respond(self, status: int, j: Any = None, text: str = "") -> None:
        self.response = (status, text or (json.dumps(j) if j is not None else ""), j)

    async def execute(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        return self.response


def seeded_cache(token: Optional[str] = "tok-1", user=USER, wallet=WALLET) -> MemoryCache:
    data = {}
    if token is not None:
        data[TOKEN_KEY] = token.encode()
    if user is not None:
        data[USER_KEY] = json.dumps(user).encode()
    if wallet is not None:
        data[WALLET_KEY] = json.dumps(wallet).encode()
    return MemoryCache(data)


async def logged_in_store(api: FakeApi, balance=1000) -> SessionStore:
    """A store restored from cache (no network) holding the given balance."""
    store = SessionStore(seeded_cache(wallet=dict(WALLET, balance=balance)), api)
    await store.load()
    return store


def make_wizard(store: SessionStore, executor: FakeExecutor, api: Optional[FakeApi] = None) -> TransferWizard:
    search = RecipientSearch(api, debounce=0) if api is not None else None
    return TransferWizard(store, PaymentDispatcher(executor, store), search)


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def executor():
    return FakeExecutor(200, envelope({"status": "completed", "transactionId": "tx-9"}))
