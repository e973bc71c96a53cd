import asyncio
from typing import Any

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from aecoin_store.services.database import close_db, init_db


class FakeBillplz:
    """Minimal stand-in for the Billplz v3 API that records every call."""

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.bills: dict[str, dict[str, Any]] = {}
        self.queued: list[tuple[int, Any]] = []
        self.collection_delay = 0.0
        self.base_url = ""
        self.app = web.Application()
        self.app.router.add_post("/v3/collections", self.create_collection)
        self.app.router.add_post("/v3/bills", self.create_bill)
        self.app.router.add_get("/v3/bills/{bill_id}", self.get_bill)

    def calls_to(self, method: str, path: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method and call["path"] == path]

    def queue(self, status: int, body: Any) -> None:
        self.queued.append((status, body))

    async def _record(self, request: web.Request) -> dict[str, Any]:
        body = await request.json() if request.can_read_body else None
        call = {
            "method": request.method,
            "path": request.path,
            "json": body,
            "authorization": request.headers.get("Authorization"),
        }
        self.calls.append(call)
        return call

    def _queued_response(self):
        if not self.queued:
            return None
        status, body = self.queued.pop(0)
        if isinstance(body, str):
            return web.Response(status=status, text=body)
        return web.json_response(body, status=status)

    async def create_collection(self, request: web.Request):
        call = await self._record(request)
        queued = self._queued_response()
        if queued is not None:
            return queued
        if self.collection_delay:
            await asyncio.sleep(self.collection_delay)
        return web.json_response({"id": "col_aecoin", "title": call["json"]["title"], "status": "active"})

    async def create_bill(self, request: web.Request):
        call = await self._record(request)
        queued = self._queued_response()
        if queued is not None:
            return queued
        bill_id = f"bill_{len(self.bills) + 1}"
        bill = dict(call["json"])
        bill.update(
            {
                "id": bill_id,
                "state": "due",
                "paid": False,
                "url": f"https://www.billplz.com/bills/{bill_id}",
            }
        )
        self.bills[bill_id] = bill
        return web.json_response(bill)

    async def get_bill(self, request: web.Request):
        await self._record(request)
        queued = self._queued_response()
        if queued is not None:
            return queued
        bill = self.bills.get(request.match_info["bill_id"])
        if bill is None:
            return web.json_response({"error": {"type": "RecordNotFound", "message": ["not found"]}}, status=404)
        return web.json_response(bill)


@pytest_asyncio.fixture
async def billplz_api():
    fake = FakeBillplz()
    server = TestServer(fake.app)
    await server.start_server()
    fake.base_url = str(server.make_url("/")).rstrip("/")
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def db():
    await init_db("sqlite://:memory:")
    yield
    await close_db()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "BILLPLZ_SECRET_KEY",
        "BILLPLZ_SIGNATURE_KEY",
        "BILLPLZ_SIGNATURE_BYPASS",
        "BILLPLZ_COLLECTION_ID",
        "APP_ENV",
        "DISCORD_WEBHOOK_URL",
        "ADMIN_API_KEY",
    ):
        monkeypatch.delenv(key, raising=False)
