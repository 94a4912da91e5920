import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.services.session_store import (
    InMemorySessionStore,
    InvoiceFields,
    PendingOrder,
    SenderLocks,
    normalize_sender_key,
)
from app.services.state_machine import OrderState


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _order(key="33611111111", state=OrderState.INCOMPLETE, **fields):
    return PendingOrder(sender_key=key, state=state, fields=InvoiceFields(**fields))


class TestInvoiceFields:
    def test_missing_fields_order(self):
        assert InvoiceFields().missing_fields() == ["client_name", "description", "amount"]

    def test_email_never_required(self):
        fields = InvoiceFields(client_name="Dupont", description="Site web", amount=1500)
        assert fields.is_complete() is True
        assert fields.missing_fields() == []

    def test_total_with_tax(self):
        fields = InvoiceFields(amount=500, quantity=2, tax_rate_pct=20)
        assert fields.total_with_tax() == 1200.0

    def test_copy_is_independent(self):
        fields = InvoiceFields(client_name="A")
        clone = fields.copy()
        clone.client_name = "B"
        assert fields.client_name == "A"


class TestInMemorySessionStore:
    def test_set_and_get_normalizes_key(self):
        store = InMemorySessionStore()
        store.set(_order(key="+33 6 11 11 11 11", client_name="Dupont"))
        order = store.get("33611111111@s.whatsapp.net")
        assert order is not None
        assert order.fields.client_name == "Dupont"

    def test_delete_reports_existence(self):
        store = InMemorySessionStore()
        store.set(_order())
        assert store.delete("33611111111") is True
        assert store.delete("33611111111") is False
        assert len(store) == 0

    def test_expiry_is_lazy(self):
        clock = Clock()
        store = InMemorySessionStore(ttl_minutes=30, clock=clock)
        store.set(_order())
        clock.now += timedelta(minutes=29)
        assert store.get("33611111111") is not None
        clock.now += timedelta(minutes=2)
        assert store.get("33611111111") is None
        assert len(store) == 0

    def test_zero_ttl_never_expires(self):
        clock = Clock()
        store = InMemorySessionStore(ttl_minutes=0, clock=clock)
        store.set(_order())
        clock.now += timedelta(days=30)
        assert store.get("33611111111") is not None

    def test_set_refreshes_timestamp(self):
        clock = Clock()
        store = InMemorySessionStore(ttl_minutes=30, clock=clock)
        store.set(_order())
        clock.now += timedelta(minutes=20)
        store.set(store.get("33611111111"))
        clock.now += timedelta(minutes=20)
        assert store.get("33611111111") is not None


class TestSenderLocks:
    def test_turns_are_serialized(self):
        locks = SenderLocks()
        events = []

        async def turn(name, sender):
            async with locks.hold(sender):
                events.append(f"{name}-start")
                await asyncio.sleep(0)
                events.append(f"{name}-end")

        async def run():
            await asyncio.gather(turn("a", "+33611111111"), turn("b", "33611111111"))

        asyncio.run(run())
        assert events == ["a-start", "a-end", "b-start", "b-end"]

    def test_different_senders_run_concurrently(self):
        locks = SenderLocks()
        events = []

        async def turn(name, sender):
            async with locks.hold(sender):
                events.append(f"{name}-start")
                await asyncio.sleep(0)
                events.append(f"{name}-end")

        async def run():
            await asyncio.gather(turn("a", "1"), turn("b", "2"))

        asyncio.run(run())
        assert events[:2] == ["a-start", "b-start"]

    def test_idle_locks_are_dropped(self):
        locks = SenderLocks()

        async def run():
            for number in range(1000):
                async with locks.hold(str(number)):
                    assert len(locks) == 1

        asyncio.run(run())
        assert len(locks) == 0

    def test_lock_kept_while_waiter_pending(self):
        locks = SenderLocks()
        sizes = []

        async def first():
            async with locks.hold("336"):
                await asyncio.sleep(0)
                await asyncio.sleep(0)
            sizes.append(len(locks))

        async def second():
            async with locks.hold("336"):
                pass

        async def run():
            await asyncio.gather(first(), second())

        asyncio.run(run())
        assert sizes == [1]
        assert len(locks) == 0

    def test_lock_released_on_error(self):
        locks = SenderLocks()

        async def run():
            async with locks.hold("336"):
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(run())
        assert len(locks) == 0


def test_normalize_sender_key():
    assert normalize_sender_key("33611111111@s.whatsapp.net") == "33611111111"
