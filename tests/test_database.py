"""
Store retries: failures before commit are retried, a failed commit is never replayed.
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import SessionTransaction

from backend.orderbot.database import run_in_session, with_store_retry
from backend.orderbot.errors import TransientStoreError
from backend.orderbot.services import ledger, orders


def connection_lost():
    return OperationalError("COMMIT", {}, Exception("server closed the connection unexpectedly"))


@pytest.fixture
def commit_then_fail(monkeypatch):
    """The first commit reaches the server and then the connection drops."""
    original = SessionTransaction.commit
    calls = {"armed": False, "failed": False}

    def commit(self, *args, **kwargs):
        result = original(self, *args, **kwargs)
        if calls["armed"] and not calls["failed"]:
            calls["failed"] = True
            raise connection_lost()
        return result

    monkeypatch.setattr(SessionTransaction, "commit", commit)
    return calls


@pytest.mark.asyncio
async def test_failed_commit_does_not_place_a_second_order(db, make_account, make_profile, commit_then_fail):
    account_id = (await make_account(balance=1000)).id
    profile_id = (await make_profile(account_id)).id
    commit_then_fail["armed"] = True

    with pytest.raises(TransientStoreError):
        await run_in_session(lambda s: orders.create_order(s, account_id, profile_id, 100), label="create order")

    assert commit_then_fail["failed"]
    db.expire_all()
    assert len(await orders.list_orders(db, account_id)) == 1
    assert await ledger.balance(db, account_id) == 900
    assert await ledger.verify_balance(db, account_id) == (900, 900)


@pytest.mark.asyncio
async def test_transient_error_before_commit_is_retried():
    attempts = []

    async def op():
        attempts.append(1)
        if len(attempts) < 3:
            raise connection_lost()
        return "ok"

    assert await with_store_retry(op, attempts=3, base_delay=0) == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retries_exhausted():
    async def op():
        raise connection_lost()

    with pytest.raises(TransientStoreError):
        await with_store_retry(op, attempts=2, base_delay=0)


@pytest.mark.asyncio
async def test_integrity_errors_are_not_retried():
    attempts = []

    async def op():
        attempts.append(1)
        raise IntegrityError("INSERT", {}, Exception("duplicate key"))

    with pytest.raises(IntegrityError):
        await with_store_retry(op, attempts=3, base_delay=0)
    assert len(attempts) == 1
