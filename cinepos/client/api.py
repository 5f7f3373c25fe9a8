"""Async HTTP client for the order API.

Error bodies are mapped back onto ``cinepos.errors`` classes, with the HTTP
status kept on ``http_status``. Anything that never produced an HTTP response
(connection refused, DNS, read timeout) is raised as ``Unreachable``.
"""
import logging

import httpx

from cinepos.client.config import ClientSettings
from cinepos.errors import OrderError, error_from_payload

log = logging.getLogger(__name__)


class Unreachable(Exception):
    """No HTTP response: offline, server down, or timed out."""


class ApiClient:
    def __init__(self, settings: ClientSettings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or ClientSettings()
        headers = {}
        if self.settings.TOKEN:
            headers["Authorization"] = f"Bearer {self.settings.TOKEN}"
        self._http = httpx.AsyncClient(
            base_url=self.settings.API_BASE.rstrip("/"),
            headers=headers,
            timeout=self.settings.REQUEST_TIMEOUT_SEC,
            transport=transport,
        )

    async def aclose(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    def set_token(self, token: str):
        self._http.headers["Authorization"] = f"Bearer {token}"

    async def _request(self, method: str, path: str, **kw) -> httpx.Response:
        try:
            r = await self._http.request(method, path, **kw)
        except httpx.TransportError as e:
            raise Unreachable(f"{method} {path}: {e.__class__.__name__}") from e
        if r.is_success:
            return r
        try:
            payload = r.json()
        except ValueError:
            payload = {"detail": r.text or f"HTTP {r.status_code}"}
        err: OrderError = error_from_payload(r.status_code, payload if isinstance(payload, dict) else None)
        err.http_status = r.status_code
        err.payload = payload
        raise err

    async def health(self) -> bool:
        try:
            r = await self._http.get("/healthz", timeout=min(self.settings.REQUEST_TIMEOUT_SEC, 3.0))
        except httpx.TransportError:
            return False
        return r.status_code == 200

    async def login(self, mobile: str, password: str) -> str:
        r = await self._request("POST", "/auth/login", params={"mobile": mobile, "password": password})
        token = r.json()["access_token"]
        self.set_token(token)
        return token

    async def accept_order(self, payload: dict) -> dict:
        return (await self._request("POST", "/orders", json=payload)).json()

    async def payment_config(self, theater_id: str, channel: str = "kiosk") -> dict:
        return (await self._request("GET", f"/payments/config/{theater_id}", params={"channel": channel})).json()

    async def create_payment(self, order_id: str, payment_method: str) -> dict:
        body = {"orderId": order_id, "paymentMethod": payment_method}
        return (await self._request("POST", "/payments/create", json=body)).json()

    async def verify_payment(self, payload: dict) -> dict:
        return (await self._request("POST", "/payments/verify", json=payload)).json()

    async def pull_events(self, theater_id: str, since: int = 0) -> dict:
        return (await self._request("GET", "/sync/pull", params={"theaterId": theater_id, "since": since})).json()

    async def print_queue(self, theater_id: str) -> list[dict]:
        return (await self._request("GET", "/print/queue", params={"theaterId": theater_id})).json()

    async def ack_print(self, job_id: str) -> dict:
        return (await self._request("POST", f"/print/jobs/{job_id}/ack")).json()
