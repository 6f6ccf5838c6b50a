"""
ApiClient Tests
===============

Runs the real aiohttp client against a local aiohttp.web backend.
"""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from conftest import RECIPIENT, envelope, failure
from pesawallet.api import ApiClient, error_message, is_success, unwrap


async def search(request):
    if request.headers.get("Authorization") != "Bearer tok-1":
        return web.json_response(failure("Unauthorized"), status=401)
    return web.json_response(envelope({"users": [RECIPIENT, "junk"], "query": request.query["q"]}))


async def profile(request):
    return web.json_response(failure("Token expired"), status=401)


async def login(request):
    body = await request.json()
    if body.get("password") != "secret1":
        return web.json_response(failure("Invalid credentials"), status=401)
    return web.json_response(envelope({"token": "tok-1"}))


async def send_money(request):
    body = await request.json()
    return web.json_response(envelope({"status": "completed", "echo": body}))


async def transactions(request):
    rows = [{"_id": f"t-{i}", "type": "send", "amount": 100, "status": "completed"} for i in range(20)]
    return web.json_response(envelope({"transactions": rows[: int(request.query["limit"])], "page": request.query.get("page")}))


async def transaction_status(request):
    return web.json_response(envelope({"transactionId": request.match_info["tx_id"], "status": "completed"}))


async def slow(request):
    await asyncio.sleep(1)
    return web.json_response({})


@pytest_asyncio.fixture
async def backend():
    app = web.Application()
    app.router.add_get("/api/users/search", search)
    app.router.add_get("/api/auth/profile", profile)
    app.router.add_post("/api/auth/login", login)
    app.router.add_post("/api/mpesa/send-money", send_money)
    app.router.add_get("/api/transactions", transactions)
    app.router.add_get("/api/mpesa/transaction/{tx_id}/status", transaction_status)
    app.router.add_get("/api/slow", slow)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield str(server.make_url("/api"))
    await server.close()


class TestEnvelope:
    def test_unwrap_strips_envelope_only(self):
        assert unwrap(envelope({"a": 1})) == {"a": 1}
        assert unwrap({"a": 1}) == {"a": 1}

    def test_success_false_on_2xx_is_failure(self):
        assert not is_success(200, failure("nope"))
        assert is_success(201, None)

    def test_error_message_prefers_backend_text(self):
        assert error_message(400, "", {"message": "Invalid PIN"}) == "Invalid PIN"
        assert error_message(0, "", None) == "network error"
        assert error_message(500, "x" * 300, None) == "request failed (HTTP 500)"


class TestApiClient:
    @pytest.mark.asyncio
    async def test_bearer_token_from_provider(self, backend):
        client = ApiClient(backend, token_provider=lambda: "tok-1")
        try:
            ok, users = await client.search_users("Bri")
        finally:
            await client.close()

        assert ok
        assert users == [RECIPIENT]

    @pytest.mark.asyncio
    async def test_401_invokes_unauthorized_hook(self, backend):
        calls = []

        async def on_unauthorized():
            calls.append(True)

        client = ApiClient(backend, token_provider=lambda: "stale", on_unauthorized=on_unauthorized)
        try:
            status, _, j = await client.get_profile()
        finally:
            await client.close()

        assert status == 401
        assert j["message"] == "Token expired"
        assert calls == [True]

    @pytest.mark.asyncio
    async def test_failed_login_does_not_trigger_hook(self, backend):
        calls = []

        async def on_unauthorized():
            calls.append(True)

        client = ApiClient(backend, on_unauthorized=on_unauthorized)
        try:
            status, _, j = await client.login("0712345678", "wrong")
        finally:
            await client.close()

        assert status == 401
        assert j["message"] == "Invalid credentials"
        assert calls == []

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self, backend):
        client = ApiClient(backend, token_provider=lambda: "tok-1")
        body = {"recipientId": "u-2", "amount": 125.5, "description": "", "pin": "1234"}
        try:
            status, _, j = await client.send_money(body)
        finally:
            await client.close()

        assert status == 200
        assert j["data"]["echo"] == body

    @pytest.mark.asyncio
    async def test_timeout_is_status_zero(self, backend):
        client = ApiClient(backend, timeout=0.2)
        try:
            status, text, j = await client.req("GET", "/slow")
        finally:
            await client.close()

        assert (status, text, j) == (0, "timeout", None)

    @pytest.mark.asyncio
    async def test_unreachable_backend_is_status_zero(self):
        client = ApiClient("http://127.0.0.1:1/api")
        try:
            status, _, j = await client.req("GET", "/auth/profile")
        finally:
            await client.close()

        assert status == 0
        assert j is None

    @pytest.mark.asyncio
    async def test_transactions_sends_limit_and_page(self, backend):
        client = ApiClient(backend, token_provider=lambda: "tok-1")
        try:
            status, _, j = await client.get_transactions(limit=5, page=2)
        finally:
            await client.close()

        assert status == 200
        assert len(j["data"]["transactions"]) == 5
        assert j["data"]["page"] == "2"

    @pytest.mark.asyncio
    async def test_transaction_status_path(self, backend):
        client = ApiClient(backend, token_provider=lambda: "tok-1")
        try:
            status, _, j = await client.get_transaction_status("ws_CO_1")
        finally:
            await client.close()

        assert status == 200
        assert unwrap(j) == {"transactionId": "ws_CO_1", "status": "completed"}
