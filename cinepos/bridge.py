"""Reference loopback print bridge.

Listens on 127.0.0.1 (default port 17388) for print jobs from the dispatcher,
acknowledges each one with ``{"ok": true, "jobId": ...}``, suppresses
duplicates on (orderId, kind, category) and forwards the rendered ESC/POS
bytes to a raw TCP thermal printer when one is configured.

Run with ``python -m cinepos.bridge``.
"""
import asyncio
import json
import logging
import uuid

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from cinepos.client.config import ClientSettings
from cinepos.client.receipt import render_escpos
from cinepos.util.logging import setup_json_logging

log = logging.getLogger(__name__)


class PrintBridge:
    def __init__(self, settings: ClientSettings | None = None):
        self.settings = settings or ClientSettings()
        self.seen: dict[tuple[str, str, str], str] = {}
        self.printed: list[dict] = []
        self._printer_lock = asyncio.Lock()

    async def _to_printer(self, data: bytes):
        s = self.settings
        if not s.PRINTER_HOST:
            log.info("no printer configured; dropped %d bytes", len(data))
            return
        async with self._printer_lock:
            _, writer = await asyncio.wait_for(asyncio.open_connection(s.PRINTER_HOST, s.PRINTER_PORT), timeout=5)
            try:
                writer.write(data)
                await writer.drain()
            finally:
                writer.close()
                await writer.wait_closed()

    async def handle_job(self, msg: dict) -> dict:
        if msg.get("type") != "print" or not msg.get("orderId") or not msg.get("kind") or not isinstance(msg.get("bill"), dict):
            return {"ok": False, "error": "malformed job"}
        key = (msg["orderId"], msg["kind"], msg.get("category") or "")
        if key in self.seen:
            return {"ok": True, "jobId": self.seen[key], "duplicate": True}
        job_id = msg.get("jobId") or str(uuid.uuid4())
        try:
            await self._to_printer(render_escpos(msg["kind"], msg["bill"], self.settings.PRINTER_WIDTH))
        except (OSError, asyncio.TimeoutError) as e:
            log.warning("printer write failed for %s/%s: %s", key[0], key[1], e)
            return {"ok": False, "error": f"printer: {e.__class__.__name__}"}
        self.seen[key] = job_id
        self.printed.append(msg)
        log.info("printed %s for order %s", msg["kind"], msg["orderId"])
        return {"ok": True, "jobId": job_id}

    async def handler(self, ws: ServerConnection):
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    await ws.send(json.dumps({"ok": False, "error": "invalid json"}))
                    continue
                await ws.send(json.dumps(await self.handle_job(msg)))
        except ConnectionClosed:
            pass

    def serve(self, host: str | None = None, port: int | None = None):
        return serve(self.handler, host or self.settings.PRINT_BRIDGE_HOST, port if port is not None else self.settings.PRINT_BRIDGE_PORT)


async def main():
    bridge = PrintBridge()
    async with bridge.serve() as server:
        log.info("print bridge listening on %s:%s", bridge.settings.PRINT_BRIDGE_HOST, bridge.settings.PRINT_BRIDGE_PORT)
        await server.serve_forever()


if __name__ == "__main__":
    setup_json_logging()
    asyncio.run(main())
