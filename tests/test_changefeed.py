import asyncio

import orjson

from ferrow.changefeed import ChangeFeed


def test_publish_reaches_every_subscriber():
    async def go():
        feed = ChangeFeed()
        a, b = feed.subscribe(), feed.subscribe()
        feed.publish("orders", "UPDATE", "o-1")
        return a.get_nowait(), b.get_nowait(), feed.subscribers

    got_a, got_b, n = asyncio.run(go())
    assert got_a == got_b == {"table": "orders", "event": "UPDATE",
                              "id": "o-1"}
    assert n == 2


def test_full_queue_drops_events():
    async def go():
        feed = ChangeFeed(queue_size=2)
        q = feed.subscribe()
        for i in range(5):
            feed.publish("products", "INSERT", i)
        return q.qsize()

    assert asyncio.run(go()) == 2


def test_stream_frames_and_unsubscribe():
    async def go():
        feed = ChangeFeed()
        q = feed.subscribe()
        frames = feed.stream(q, keepalive=0.01)
        first = await frames.__anext__()
        keepalive = await frames.__anext__()
        feed.publish("orders", "DELETE", "o-9")
        data = await frames.__anext__()
        await frames.aclose()
        return first, keepalive, data, feed.subscribers

    first, keepalive, data, left = asyncio.run(go())
    assert first == b": connected\n\n"
    assert keepalive == b": keepalive\n\n"
    assert data.startswith(b"data: ") and data.endswith(b"\n\n")
    assert orjson.loads(data[len(b"data: "):]) == {
        "table": "orders", "event": "DELETE", "id": "o-9",
    }
    assert left == 0
