import asyncio

import fakeredis
import fakeredis.aioredis

from ferrow.model.paymentsession._redis import (
    PENDING_INDEX, PaymentSessionStore, k_idemp, k_ps,
)


def run(fn):
    async def go():
        r = fakeredis.aioredis.FakeRedis(
            server=fakeredis.FakeServer(), decode_responses=True)
        try:
            return await fn(PaymentSessionStore(r, ttl_seconds=60), r)
        finally:
            await r.aclose()
    return asyncio.run(go())


SESSION = {
    "order_id": "o-1",
    "order_number": "ORD-1-X",
    "amount": 55000,
    "customer_email": "a@b.co",
    "redirect_url": "/mockpay/tok_1",
    "provider": "mock",
    "payment_status": None,
}


def test_save_get_and_remove():
    async def go(store, r):
        await store.save_payment_session("tok_1", SESSION)
        saved = await store.get_payment_session("tok_1")
        ttl = await r.ttl(k_ps("tok_1"))
        total, items = await store.get_recent_payment_sessions(10)
        await store.remove_pending("tok_1")
        gone = await store.get_payment_session("tok_1")
        left = await r.zcard(PENDING_INDEX)
        return saved, ttl, total, items, gone, left

    saved, ttl, total, items, gone, left = run(go)
    assert saved["amount"] == "55000"
    assert saved["payment_status"] == ""
    assert 0 < ttl <= 120
    assert total == 1
    assert items[0]["token"] == "tok_1"
    assert items[0]["amount"] == 55000
    assert items[0]["email"] == "a@b.co"
    assert items[0]["status"] == "pending"
    assert gone is None
    assert left == 0


def test_recent_sessions_newest_first_and_limited():
    async def go(store, r):
        for i in range(3):
            await store.save_payment_session(
                f"tok_{i}", {**SESSION, "created_at": 1000 + i})
        return await store.get_recent_payment_sessions(2)

    total, items = run(go)
    assert total == 3
    assert [i["token"] for i in items] == ["tok_2", "tok_1"]


def test_expired_session_is_dropped_from_index():
    async def go(store, r):
        await store.save_payment_session("tok_live", SESSION)
        await store.save_payment_session("tok_dead", SESSION)
        # hash expired, index entry left behind
        await r.delete(k_ps("tok_dead"))
        total, items = await store.get_recent_payment_sessions(10)
        indexed = await r.zrange(PENDING_INDEX, 0, -1)
        return total, items, indexed

    total, items, indexed = run(go)
    assert total == 1
    assert [i["token"] for i in items] == ["tok_live"]
    assert indexed == ["tok_live"]


def test_mark_event_seen_once():
    async def go(store, r):
        evt = "tx-1:settlement:200"
        first = await store.mark_event_seen(evt)
        second = await store.mark_event_seen(evt)
        ttl = await r.ttl(k_idemp(evt))
        await store.forget_event(evt)
        again = await store.mark_event_seen(evt)
        return first, second, ttl, again

    first, second, ttl, again = run(go)
    assert (first, second, again) == (True, False, True)
    assert ttl > 0


def test_unidentifiable_events_always_pass():
    async def go(store, r):
        seen = [await store.mark_event_seen(None) for _ in range(2)]
        await store.forget_event(None)
        return seen, await r.dbsize()

    seen, keys = run(go)
    assert seen == [True, True]
    assert keys == 0
