"""
Shared fixtures: in-memory SQLite engine bound to the app, sessions,
account/profile factories, a mocked payment gateway and a fresh notifier.
"""

import itertools
import json
import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("OXAPAY_MERCHANT_API_KEY", "")
os.environ.setdefault("ADMIN_TELEGRAM_IDS", "999")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from backend.orderbot.bot_notify import Notifier, set_notifier
from backend.orderbot.database import bind_engine, create_tables, get_session_factory
from backend.orderbot.models import SCHEMA, TxType
from backend.orderbot.payment_gateway import OxaPayClient, set_gateway
from backend.orderbot.services import ledger, profiles

VALID_DRAFT = {
    "first_name": "John",
    "middle_name": None,
    "last_name": "Smith",
    "phone": "+1-555-123-4567",
    "email": "john.smith@email.com",
    "gender": "male",
    "dob": "1990-03-15",
    "address": "123 Main Street",
    "apartment": None,
    "city": "New York",
    "state": "NY",
    "postal": "10001",
    "credential": None,
}


@pytest_asyncio.fixture(autouse=True)
async def engine():
    """Fresh in-memory database per test; tables live without the Postgres schema."""
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        execution_options={"schema_translate_map": {SCHEMA: None}},
    )
    bind_engine(eng)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db(engine):
    async with get_session_factory()() as session:
        yield session


@pytest.fixture(autouse=True)
def notifier():
    n = Notifier()
    set_notifier(n)
    yield n
    set_notifier(Notifier())


class FakeOxaPay:
    """Answers /merchants/request and /merchants/inquiry like the real gateway."""

    def __init__(self):
        self._ids = itertools.count(1001)
        self.requests = []
        self.statuses = {}
        self.fail_requests = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request.url.path, body))
        if self.fail_requests:
            return httpx.Response(200, json={"result": 102, "message": "Invalid merchant"})
        if request.url.path == "/merchants/request":
            track_id = str(next(self._ids))
            return httpx.Response(
                200, json={"result": 100, "trackId": track_id, "payLink": f"https://pay.test/{track_id}"},
            )
        if request.url.path == "/merchants/inquiry":
            status = self.statuses.get(body["trackId"], "Waiting")
            return httpx.Response(200, json={"result": 100, "status": status, "amount": 10, "currency": "USD"})
        return httpx.Response(404)


@pytest.fixture
def oxapay():
    fake = FakeOxaPay()
    client = OxaPayClient(merchant="test-merchant", api_base="https://gateway.test",
                          transport=httpx.MockTransport(fake.handler))
    set_gateway(client)
    fake.client = client
    yield fake
    set_gateway(None)


@pytest.fixture
def make_account(db):
    counter = itertools.count(100)

    async def _make(balance: int = 0, telegram_id: int = None, is_admin: bool = False):
        account = await ledger.ensure_account(db, telegram_id or next(counter), username="tester")
        account.is_admin = is_admin
        await db.commit()
        if balance:
            await ledger.credit_entry(db, account.id, balance, TxType.ADMIN_CREDIT, "seed")
        return account

    return _make


@pytest.fixture
def make_profile(db):
    async def _make(account_id: int, **overrides):
        draft = dict(VALID_DRAFT, **overrides)
        profile = await profiles.create_profile(db, account_id, draft)
        await db.commit()
        return profile

    return _make
