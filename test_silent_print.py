# test_silent_print.py
import asyncio
import socket
import time

import httpx
from websockets.asyncio.server import serve

from cinepos.bridge import PrintBridge
from cinepos.client.api import ApiClient
from cinepos.client.config import ClientSettings
from cinepos.client.printing import BRIDGE, BROWSER, SKIPPED, SilentPrintDispatcher
from cinepos.client.receipt import render_escpos, render_html
from cinepos.main import app


BILL = {
    "theater": {"name": "Galaxy Cinemas", "gstin": "27ABCDE1234F2Z5"},
    "order": {"id": "o-1", "orderNumber": "GA-20250101-0001", "customerName": "Walk-in", "seat": "F12"},
    "items": [{"name": "Popcorn <large>", "size": "Large", "quantity": 2, "unitPrice": 100.0, "taxRate": 5.0, "lineTotal": 210.0}],
    "pricing": {"subtotal": 200.0, "cgst": 5.0, "sgst": 5.0, "tax": 10.0, "totalDiscount": 0.0, "total": 210.0, "currency": "INR"},
    "payment": {"method": "cash", "status": "PAID"},
    "footer": "Enjoy the show",
}

def job(kind="gst_bill", category=None, order_id="o-1", job_id=None):
    bill = dict(BILL, category=category) if category else BILL
    return {"id": job_id, "orderId": order_id, "theaterId": "t-1", "kind": kind, "category": category, "bill": bill}

def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class Recorder:
    def __init__(self):
        self.pages = []
        self.sleeps = []

    async def browser_print(self, kind, page):
        self.pages.append((kind, page))

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


def dispatcher(port, rec, **kw):
    settings = ClientSettings(PRINT_BRIDGE_PORT=port, **kw)
    return SilentPrintDispatcher(settings, browser_print=rec.browser_print, sleep=rec.sleep)


def test_bridge_acks_and_suppresses_duplicates():
    rec = Recorder()

    async def scenario():
        bridge = PrintBridge(ClientSettings())
        async with bridge.serve("127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            d = dispatcher(port, rec)
            first = await d.dispatch(job(job_id="j-1"))
            again = await d.dispatch(job(job_id="j-1"))
            # a second counter (fresh client state) sends the same job: the bridge drops it
            other = await dispatcher(port, rec).dispatch(job(job_id="j-1"))
        return bridge, first, again, other

    bridge, first, again, other = asyncio.run(scenario())
    assert (first.via, first.bridge_job_id) == (BRIDGE, "j-1")
    assert again.via == SKIPPED
    assert other.via == BRIDGE
    assert len(bridge.printed) == 1
    assert rec.pages == []

def test_falls_back_to_browser_when_bridge_is_down():
    rec = Recorder()
    d = dispatcher(free_port(), rec)
    out = asyncio.run(d.dispatch(job()))
    assert out.via == BROWSER
    kind, page = rec.pages[0]
    assert kind == "gst_bill"
    assert "Tax Invoice" in page and "GA-20250101-0001" in page
    assert "Popcorn &lt;large&gt;" in page
    assert "window.print()" in page
    # printed once, even through the fallback
    assert asyncio.run(d.dispatch(job())).via == SKIPPED
    assert len(rec.pages) == 1

def test_silent_bridge_times_out_quickly():
    rec = Recorder()

    async def scenario():
        async def hang(reader, writer):
            await asyncio.sleep(1)
            writer.close()

        server = await asyncio.start_server(hang, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        async with server:
            started = time.monotonic()
            out = await dispatcher(port, rec, PRINT_CONNECT_TIMEOUT_MS=200).dispatch(job())
            return out, time.monotonic() - started

    out, elapsed = asyncio.run(scenario())
    assert out.via == BROWSER
    assert elapsed < 1.5
    assert len(rec.pages) == 1

def test_slow_handshake_and_missing_ack_share_one_deadline():
    rec = Recorder()

    async def scenario():
        async def slow_upgrade(connection, request):
            await asyncio.sleep(0.2)

        async def never_ack(ws):
            await ws.recv()
            await asyncio.sleep(1)

        async with serve(never_ack, "127.0.0.1", 0, process_request=slow_upgrade) as server:
            port = server.sockets[0].getsockname()[1]
            started = time.monotonic()
            out = await dispatcher(port, rec, PRINT_CONNECT_TIMEOUT_MS=300).dispatch(job())
            return out, time.monotonic() - started

    out, elapsed = asyncio.run(scenario())
    assert out.via == BROWSER
    assert elapsed < 0.45
    assert len(rec.pages) == 1

def test_printed_jobs_are_remembered_up_to_a_limit():
    rec = Recorder()
    d = SilentPrintDispatcher(ClientSettings(PRINT_BRIDGE_PORT=free_port()), browser_print=rec.browser_print,
                              sleep=rec.sleep, remember=2)

    async def scenario():
        for order_id in ("o-1", "o-2", "o-3"):
            await d.dispatch(job(order_id=order_id))
        # o-1 fell out of memory; o-3 is still known
        return await d.dispatch(job(order_id="o-3")), await d.dispatch(job(order_id="o-1"))

    recent, forgotten = asyncio.run(scenario())
    assert recent.via == SKIPPED
    assert forgotten.via == BROWSER
    assert len(rec.pages) == 4

def test_multi_category_order_prints_bill_then_dockets():
    rec = Recorder()
    jobs = [job("category_docket", "Food"), job("gst_bill"), job("category_docket", "Beverages"),
            job("category_docket", "Food")]
    d = dispatcher(free_port(), rec)
    outcomes = asyncio.run(d.print_jobs(jobs))

    assert [(o.key[1], o.key[2], o.via) for o in outcomes] == [
        ("gst_bill", "", BROWSER),
        ("category_docket", "Beverages", BROWSER),
        ("category_docket", "Food", BROWSER),
        ("category_docket", "Food", SKIPPED),
    ]
    assert rec.sleeps == [2.0, 2.0]
    docket_page = rec.pages[1][1]
    assert "Beverages Docket" in docket_page
    assert "210.00" not in docket_page

def test_escpos_rendering():
    data = render_escpos("gst_bill", BILL, width=32)
    assert data.startswith(b"\x1b@")
    assert data.endswith(b"\x1dV\x00")
    text = data.decode("ascii", "replace")
    assert "GSTIN 27ABCDE1234F2Z5" in text
    assert "210.00" in text
    docket = render_escpos("category_docket", dict(BILL, category="Food")).decode("ascii", "replace")
    assert "*** Food ***" in docket
    assert "x2" in docket and "TOTAL" not in docket
    assert "Tax Invoice" in render_html("gst_bill", BILL)

def test_bridge_forwards_to_network_printer():
    received = bytearray()

    async def scenario():
        done = asyncio.Event()

        async def printer(reader, writer):
            received.extend(await reader.read())
            writer.close()
            done.set()

        printer_server = await asyncio.start_server(printer, "127.0.0.1", 0)
        printer_port = printer_server.sockets[0].getsockname()[1]
        bridge = PrintBridge(ClientSettings(PRINTER_HOST="127.0.0.1", PRINTER_PORT=printer_port))
        async with printer_server, bridge.serve("127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            out = await dispatcher(port, Recorder()).dispatch(job("category_docket", "Food"))
            await asyncio.wait_for(done.wait(), 5)
        return out

    out = asyncio.run(scenario())
    assert out.via == BRIDGE
    assert b"*** Food ***" in received

def test_print_pending_jobs_from_server(client, base_url, auth_headers, make_product, order_body, rng_suffix):
    r = client.post(f"{base_url}/theaters", headers=auth_headers, json={"name": f"Print Hall {rng_suffix}"})
    tid = r.json()["id"]
    cats = {}
    for name in ("Food", "Beverages"):
        r = client.post(f"{base_url}/categories", headers=auth_headers, json={"theaterId": tid, "name": name})
        cats[name] = r.json()["id"]
    food = make_product(name="Samosa", theater=tid, category=None, categoryId=cats["Food"])
    drink = make_product(name="Lassi", theater=tid, category=None, categoryId=cats["Beverages"])
    r = client.post(f"{base_url}/orders", headers=auth_headers,
                    json=order_body([(food["id"], 1), (drink["id"], 1)], theater=tid))
    assert r.status_code == 201, r.text
    order_id = r.json()["order"]["id"]
    rec = Recorder()

    async def scenario():
        bridge = PrintBridge(ClientSettings())
        async with bridge.serve("127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            settings = ClientSettings(API_BASE="http://testserver", TOKEN=auth_headers["Authorization"].split()[1],
                                      PRINT_BRIDGE_PORT=port)
            async with ApiClient(settings, transport=httpx.ASGITransport(app=app)) as api:
                d = SilentPrintDispatcher(settings, browser_print=rec.browser_print, sleep=rec.sleep)
                outcomes = await d.print_pending(api, tid)
                left = await api.print_queue(tid)
        return bridge, outcomes, left

    bridge, outcomes, left = asyncio.run(scenario())
    assert [(o.key[0], o.key[1], o.key[2]) for o in outcomes] == [
        (order_id, "gst_bill", ""), (order_id, "category_docket", "Beverages"), (order_id, "category_docket", "Food")]
    assert all(o.via == BRIDGE for o in outcomes)
    assert rec.sleeps == [2.0, 2.0]
    assert left == []
    assert [m["kind"] for m in bridge.printed] == ["gst_bill", "category_docket", "category_docket"]
