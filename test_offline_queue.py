# test_offline_queue.py
import asyncio
import json
import uuid
from datetime import timedelta

import httpx
import pytest

from cinepos.client.api import ApiClient
from cinepos.client.config import ClientSettings
from cinepos.client.offline_queue import FAILED, ConnectivityWatcher, OfflineQueue, _now
from cinepos.errors import PaymentMethodNotAllowed
from cinepos.main import app


class FlakyNetwork(httpx.AsyncBaseTransport):
    """ASGI transport to the app that can be switched off, or made to answer 503."""

    def __init__(self):
        self.inner = httpx.ASGITransport(app=app)
        self.online = True
        self.unavailable = False
        self.sent: list[dict] = []

    async def handle_async_request(self, request):
        if not self.online:
            raise httpx.ConnectError("network is unreachable", request=request)
        if request.url.path == "/orders":
            self.sent.append(json.loads(request.content))
            if self.unavailable:
                return httpx.Response(503, json={"error": "INTERNAL", "detail": "maintenance"})
        return await self.inner.handle_async_request(request)


@pytest.fixture
def net():
    return FlakyNetwork()

@pytest.fixture
def settings(staff_headers, tmp_path):
    return ClientSettings(API_BASE="http://testserver", TOKEN=staff_headers["Authorization"].split()[1],
                          QUEUE_DB_PATH=str(tmp_path / "queue.db"), REQUEST_TIMEOUT_SEC=30)

def cash(pid, theater_id, qty=1, **extra):
    return {"theaterId": theater_id, "items": [{"productId": pid, "quantity": qty}],
            "customerName": "Walk-in", "paymentMethod": "cash", **extra}


def test_offline_orders_replay_in_fifo_order(client, base_url, staff_headers, make_product, theater_id, settings, net):
    p = make_product(stock=10)

    async def scenario():
        async with ApiClient(settings, transport=net) as api:
            queue = OfflineQueue(api, rng=lambda: 0.5)
            watcher = ConnectivityWatcher(api, queue)
            net.online = False
            assert await watcher.check() is None
            assert watcher.online is False

            a, b, c = (queue.enqueue(cash(p["id"], theater_id, qty=n)) for n in (1, 2, 3))
            assert [e["status"] for e in queue.entries()] == ["queued"] * 3
            assert a["orderPayload"]["source"] == "offline-pos"
            queue.close()

            # app restarted while offline: nothing is lost
            queue = OfflineQueue(api, rng=lambda: 0.5)
            watcher.queue = queue
            assert [e["queueId"] for e in queue.entries()] == [a["queueId"], b["queueId"], c["queueId"]]

            net.online = True
            res = await watcher.check()
            assert watcher.online is True
            assert res.synced == [a["idempotencyKey"], b["idempotencyKey"], c["idempotencyKey"]]
            assert queue.entries() == []
            queue.close()
            return res

    res = asyncio.run(scenario())
    assert [s["idempotencyKey"] for s in net.sent] == res.synced
    numbers = []
    for key in res.synced:
        order = res.responses[key]["order"]
        assert order["status"] == "PAID"
        assert order["source"] == "offline-pos"
        assert order["idempotencyKey"] == key
        numbers.append(order["orderNumber"])
    assert numbers == sorted(numbers)
    stock = client.get(f"{base_url}/stock/{p['id']}", headers=staff_headers).json()
    assert stock["available"] == 4

def test_replaying_a_synced_entry_returns_the_original(client, base_url, staff_headers, make_product, theater_id, settings, net):
    p = make_product(stock=5)
    key = str(uuid.uuid4())
    r = client.post(f"{base_url}/orders", headers=staff_headers,
                    json=cash(p["id"], theater_id, idempotencyKey=key, source="offline-pos"))
    original = r.json()["order"]

    async def scenario():
        async with ApiClient(settings, transport=net) as api:
            queue = OfflineQueue(api)
            queue.enqueue(cash(p["id"], theater_id, idempotencyKey=key))
            res = await queue.drain()
            queue.close()
            return res

    res = asyncio.run(scenario())
    assert res.synced == [key]
    assert res.responses[key]["order"]["id"] == original["id"]
    assert client.get(f"{base_url}/stock/{p['id']}", headers=staff_headers).json()["available"] == 4

def test_network_errors_back_off_and_keep_order(make_product, theater_id, settings, net):
    p = make_product(stock=5)

    async def scenario():
        async with ApiClient(settings, transport=net) as api:
            queue = OfflineQueue(api, rng=lambda: 0.5)
            first = queue.enqueue(cash(p["id"], theater_id))
            second = queue.enqueue(cash(p["id"], theater_id))

            net.online = False
            t0 = _now()
            res = await queue.drain(now=t0)
            assert res.synced == [] and res.retry_in == pytest.approx(2.0)
            head = queue.entries()[0]
            assert head["queueId"] == first["queueId"]
            assert head["attempts"] == 1 and "ConnectError" in head["lastError"]

            # server back but answering 503: still the head, still waiting, nothing overtakes it
            net.online, net.unavailable = True, True
            res = await queue.drain(now=t0 + timedelta(seconds=2.5))
            assert res.synced == [] and res.retry_in == pytest.approx(4.0)
            assert [s["idempotencyKey"] for s in net.sent] == [first["idempotencyKey"]]

            # not due yet
            res = await queue.drain(now=t0 + timedelta(seconds=3))
            assert res.synced == [] and res.retry_in > 0
            assert len(net.sent) == 1

            net.unavailable = False
            res = await queue.drain(now=t0 + timedelta(seconds=7))
            assert res.synced == [first["idempotencyKey"], second["idempotencyKey"]]
            queue.close()

    asyncio.run(scenario())

def test_backoff_schedule(settings):
    q = OfflineQueue(api=None, settings=settings, db_path=":memory:", rng=lambda: 0.5)
    assert [q.backoff(n) for n in range(1, 8)] == [2, 4, 8, 16, 32, 60, 60]
    low = OfflineQueue(api=None, settings=settings, db_path=":memory:", rng=lambda: 0.0)
    high = OfflineQueue(api=None, settings=settings, db_path=":memory:", rng=lambda: 1.0)
    assert low.backoff(1) == pytest.approx(1.8)
    assert high.backoff(10) == pytest.approx(66.0)

def test_rejected_entry_is_failed_and_drain_continues(make_product, theater_id, settings, net):
    p = make_product(stock=5)

    async def scenario():
        async with ApiClient(settings, transport=net) as api:
            queue = OfflineQueue(api)
            bad = queue.enqueue(cash("no-such-product", theater_id))
            good = queue.enqueue(cash(p["id"], theater_id))
            res = await queue.drain()
            assert res.failed == [bad["idempotencyKey"]]
            assert res.synced == [good["idempotencyKey"]]

            failed = queue.entries(status=FAILED)
            assert [e["queueId"] for e in failed] == [bad["queueId"]]
            assert failed[0]["lastError"].startswith("VALIDATION")
            # failed entries are not retried on their own
            assert (await queue.drain()).failed == []

            queue.retry(bad["queueId"])
            assert queue.entries()[0]["status"] == "queued"
            queue.discard(bad["queueId"])
            assert queue.entries() == []
            queue.close()

    asyncio.run(scenario())

def test_card_payment_refused_while_offline(theater_id, settings, net):
    async def scenario():
        async with ApiClient(settings, transport=net) as api:
            queue = OfflineQueue(api)
            with pytest.raises(PaymentMethodNotAllowed):
                queue.enqueue({"theaterId": theater_id, "items": [{"productId": "p", "quantity": 1}],
                               "customerName": "x", "paymentMethod": "card"})
            assert queue.entries() == []
            await queue.drain()
            queue.close()

    asyncio.run(scenario())
    assert net.sent == []
