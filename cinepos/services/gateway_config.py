"""Source/channel taxonomy and per (theater, channel) gateway configuration.

Configs are read-mostly; they are cached per process for
``GATEWAY_CONFIG_TTL_SEC`` and dropped explicitly when an admin updates them.
"""
import threading
import time
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from cinepos.config import settings
from cinepos.errors import PaymentMethodNotAllowed, ValidationFailed
from cinepos.models.core import Channel, GatewayProvider, OrderType, PaymentGatewayConfig, PayMethod

POS_SOURCES = frozenset({"pos", "staff", "offline-pos", "counter"})
KIOSK_SOURCES = frozenset({"kiosk"})
ONLINE_SOURCES = frozenset({"qr_code", "online", "qr_order", "web"})
ALL_SOURCES = POS_SOURCES | KIOSK_SOURCES | ONLINE_SOURCES

OFFLINE_SOURCE = "offline-pos"
GATEWAY_METHODS = frozenset({PayMethod.CARD, PayMethod.UPI, PayMethod.NETBANKING, PayMethod.WALLET})

_METHOD_ALIASES = {"cod": "cash", "cash_on_delivery": "cash", "net_banking": "netbanking"}


def normalize_source(source: str | None) -> str:
    src = (source or "").strip().lower()
    if src == "offline_pos":
        src = OFFLINE_SOURCE
    if src not in ALL_SOURCES:
        raise ValidationFailed(f"unknown source {source!r}")
    return src


def order_type_for(source: str) -> OrderType:
    return OrderType.ONLINE if source in ONLINE_SOURCES else OrderType.POS


def channel_for(source: str) -> Channel:
    return Channel.ONLINE if order_type_for(source) == OrderType.ONLINE else Channel.KIOSK


def dashboard_bucket(source: str) -> str:
    """pos / kiosk / online; offline-pos, staff and counter roll into pos."""
    if source in ONLINE_SOURCES:
        return "online"
    if source in KIOSK_SOURCES:
        return "kiosk"
    return "pos"


def normalize_method(method: str | None) -> PayMethod:
    m = (method or "").strip().lower()
    m = _METHOD_ALIASES.get(m, m)
    try:
        return PayMethod(m)
    except ValueError:
        raise ValidationFailed(f"unknown payment method {method!r}")


@dataclass(frozen=True)
class ResolvedConfig:
    theater_id: str
    channel: Channel
    provider: GatewayProvider = GatewayProvider.NONE
    enabled: bool = False
    accepted: frozenset = field(default_factory=lambda: frozenset({PayMethod.CASH}))
    key_id: str | None = None
    key_secret: str | None = None
    salt_index: str | None = None
    webhook_secret: str | None = None
    test_mode: bool = False

    @property
    def gateway_active(self) -> bool:
        return self.enabled and self.provider != GatewayProvider.NONE

    def allows(self, method: PayMethod) -> bool:
        if method == PayMethod.CASH:
            return PayMethod.CASH in self.accepted
        return self.gateway_active and method in self.accepted

    def public(self) -> dict:
        return {
            "theaterId": self.theater_id,
            "channel": self.channel.value,
            "provider": self.provider.value if self.gateway_active else GatewayProvider.NONE.value,
            "acceptedMethods": sorted(m.value for m in PayMethod if self.allows(m)),
            "keyId": self.key_id if self.provider == GatewayProvider.RAZORPAY and self.gateway_active else None,
            "testMode": self.test_mode,
        }


def _resolve(row: PaymentGatewayConfig | None, theater_id: str, channel: Channel) -> ResolvedConfig:
    if row is None or not row.enabled:
        # absent or disabled: cash only
        return ResolvedConfig(theater_id=theater_id, channel=channel)
    flags = row.accepted_methods or {}
    accepted = {PayMethod.CASH} if flags.get("cash", True) else set()
    for m in GATEWAY_METHODS:
        if flags.get(m.value):
            accepted.add(m)
    return ResolvedConfig(
        theater_id=theater_id,
        channel=channel,
        provider=row.provider,
        enabled=row.enabled,
        accepted=frozenset(accepted),
        key_id=row.key_id,
        key_secret=row.key_secret,
        salt_index=row.salt_index,
        webhook_secret=row.webhook_secret,
        test_mode=row.test_mode,
    )


class GatewayConfigCache:
    def __init__(self, ttl_sec: float | None = None):
        self.ttl = ttl_sec if ttl_sec is not None else settings.GATEWAY_CONFIG_TTL_SEC
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, Channel], tuple[float, ResolvedConfig]] = {}

    def get(self, db: Session, theater_id: str, channel: Channel) -> ResolvedConfig:
        key = (theater_id, channel)
        now = time.monotonic()
        with self._lock:
            hit = self._entries.get(key)
            if hit and hit[0] > now:
                return hit[1]
        row = db.scalar(select(PaymentGatewayConfig).where(
            PaymentGatewayConfig.theater_id == theater_id,
            PaymentGatewayConfig.channel == channel,
        ))
        cfg = _resolve(row, theater_id, channel)
        with self._lock:
            self._entries[key] = (now + self.ttl, cfg)
        return cfg

    def invalidate(self, theater_id: str | None = None, channel: Channel | None = None):
        with self._lock:
            if theater_id is None:
                self._entries.clear()
                return
            for key in list(self._entries):
                if key[0] == theater_id and (channel is None or key[1] == channel):
                    del self._entries[key]


config_cache = GatewayConfigCache()


def check_method(cfg: ResolvedConfig, source: str, method: PayMethod):
    """Refuse a method before anything is persisted."""
    if source == OFFLINE_SOURCE and method != PayMethod.CASH:
        raise PaymentMethodNotAllowed("offline orders must be paid in cash", method=method.value)
    if not cfg.allows(method):
        raise PaymentMethodNotAllowed(
            f"{method.value} is not accepted on the {cfg.channel.value} channel",
            method=method.value, acceptedMethods=cfg.public()["acceptedMethods"],
        )
