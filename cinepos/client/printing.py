"""Silent print dispatcher.

Jobs go to the loopback print bridge over a WebSocket first. If the bridge
cannot be reached and acknowledge within the connect timeout (at most 500 ms
for the whole connect, send and ack exchange) the receipt is rendered to
HTML and handed to the browser print path instead.
Jobs are suppressed client-side on (orderId, kind, category) for the most
recent ``remember`` jobs; the bridge suppresses again on its side.
"""
import asyncio
import json
import logging
import tempfile
import webbrowser
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from cinepos.client.config import ClientSettings
from cinepos.client.receipt import GST_BILL, render_html

log = logging.getLogger(__name__)

BRIDGE, BROWSER, SKIPPED = "bridge", "browser", "skipped"


def job_key(job: dict) -> tuple[str, str, str]:
    return (job["orderId"], job["kind"], job.get("category") or "")


def _open_in_browser(kind: str, page: str) -> None:
    with tempfile.NamedTemporaryFile("w", suffix=".html", prefix=f"cinepos-{kind}-", delete=False, encoding="utf-8") as f:
        f.write(page)
    webbrowser.open(Path(f.name).as_uri())


async def default_browser_print(kind: str, page: str) -> None:
    await asyncio.to_thread(_open_in_browser, kind, page)


@dataclass
class PrintOutcome:
    key: tuple[str, str, str]
    via: str
    job_id: str | None = None
    bridge_job_id: str | None = None
    error: str | None = None


class SilentPrintDispatcher:
    def __init__(
        self,
        settings: ClientSettings | None = None,
        browser_print: Callable[[str, str], Awaitable[None]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        remember: int = 1000,
    ):
        self.settings = settings or ClientSettings()
        self.browser_print = browser_print or default_browser_print
        self._sleep = sleep
        self._remember = max(remember, 1)
        self._done: OrderedDict[tuple[str, str, str], None] = OrderedDict()

    def _mark_done(self, key: tuple[str, str, str]) -> None:
        self._done[key] = None
        self._done.move_to_end(key)
        while len(self._done) > self._remember:
            self._done.popitem(last=False)

    @property
    def bridge_url(self) -> str:
        return f"ws://{self.settings.PRINT_BRIDGE_HOST}:{self.settings.PRINT_BRIDGE_PORT}"

    @property
    def timeout(self) -> float:
        return self.settings.PRINT_CONNECT_TIMEOUT_MS / 1000

    async def _exchange(self, msg: dict) -> dict:
        async with connect(self.bridge_url, open_timeout=None, close_timeout=self.timeout) as ws:
            await ws.send(json.dumps(msg))
            return json.loads(await ws.recv())

    async def _send_to_bridge(self, job: dict) -> str:
        msg = {
            "type": "print",
            "jobId": job.get("id"),
            "orderId": job["orderId"],
            "theaterId": job.get("theaterId"),
            "kind": job["kind"],
            "category": job.get("category"),
            "receiptTemplateId": job.get("receiptTemplateId") or job["kind"],
            "bill": job["bill"],
        }
        ack = await asyncio.wait_for(self._exchange(msg), timeout=self.timeout)
        if not ack.get("ok"):
            raise ValueError(ack.get("error") or "bridge rejected job")
        return ack.get("jobId")

    async def dispatch(self, job: dict) -> PrintOutcome:
        """Print one job once. Returns how it was delivered."""
        key = job_key(job)
        if key in self._done:
            return PrintOutcome(key, SKIPPED, job.get("id"))
        try:
            bridge_id = await self._send_to_bridge(job)
        except (OSError, asyncio.TimeoutError, WebSocketException, ValueError) as e:
            log.info("print bridge unavailable for %s/%s (%s), using browser print", key[0], key[1], e.__class__.__name__)
            await self.browser_print(job["kind"], render_html(job["kind"], job["bill"]))
            self._mark_done(key)
            return PrintOutcome(key, BROWSER, job.get("id"), error=str(e) or e.__class__.__name__)
        self._mark_done(key)
        return PrintOutcome(key, BRIDGE, job.get("id"), bridge_job_id=bridge_id)

    async def print_jobs(self, jobs: Iterable[dict]) -> list[PrintOutcome]:
        """GST bills first, then category dockets, with a pause between jobs that actually print."""
        ordered = sorted(jobs, key=lambda j: (j["orderId"], j["kind"] != GST_BILL, j.get("category") or ""))
        out: list[PrintOutcome] = []
        printed = 0
        for job in ordered:
            if job_key(job) in self._done:
                out.append(PrintOutcome(job_key(job), SKIPPED, job.get("id")))
                continue
            if printed:
                await self._sleep(self.settings.PRINT_INTER_JOB_DELAY_SEC)
            out.append(await self.dispatch(job))
            printed += 1
        return out

    async def print_pending(self, api, theater_id: str) -> list[PrintOutcome]:
        """Print the server's pending jobs for a theater and acknowledge each one printed."""
        jobs = await api.print_queue(theater_id)
        outcomes = await self.print_jobs(jobs)
        for o in outcomes:
            if o.job_id:
                await api.ack_print(o.job_id)
        return outcomes
