from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from cinepos.db import get_db
from cinepos.deps import ADMIN_ROLES, require_role, require_theater_access
from cinepos.errors import NotFound, ValidationFailed
from cinepos.models.core import Channel, GatewayProvider, PaymentGatewayConfig, Theater, User
from cinepos.schemas.catalog import GatewayConfigIn
from cinepos.services.gateway_config import config_cache
from cinepos.util.audit import audit

router = APIRouter(prefix="/settings", tags=["settings"])

@router.put("/payment-gateway/{theater_id}/{channel}")
def upsert_gateway_config(theater_id: str, channel: str, body: GatewayConfigIn,
                          db: Session = Depends(get_db), user: User = Depends(require_role(*ADMIN_ROLES))):
    require_theater_access(user, theater_id)
    if not db.get(Theater, theater_id):
        raise NotFound("theater not found")
    try:
        ch = Channel(channel.lower())
    except ValueError:
        raise ValidationFailed(f"unknown channel {channel!r}")
    provider = GatewayProvider(body.provider)
    if body.enabled and provider != GatewayProvider.NONE and not (body.key_id and body.key_secret):
        raise ValidationFailed("keyId and keySecret are required for an enabled gateway")

    cfg = (db.query(PaymentGatewayConfig)
             .filter(PaymentGatewayConfig.theater_id == theater_id, PaymentGatewayConfig.channel == ch).first())
    if not cfg:
        cfg = PaymentGatewayConfig(theater_id=theater_id, channel=ch)
        db.add(cfg)
    cfg.provider = provider
    cfg.enabled = body.enabled
    cfg.accepted_methods = {k.lower(): bool(v) for k, v in body.accepted_methods.items()}
    cfg.key_id = body.key_id
    # keep the stored secret when the admin screen sends it back blank
    if body.key_secret:
        cfg.key_secret = body.key_secret
    if body.webhook_secret:
        cfg.webhook_secret = body.webhook_secret
    cfg.salt_index = body.salt_index
    cfg.test_mode = body.test_mode
    audit(db, user.id, "PaymentGatewayConfig", theater_id, "UPSERT",
          after={"channel": ch.value, "provider": provider.value, "enabled": body.enabled,
                 "acceptedMethods": cfg.accepted_methods})
    db.commit()
    config_cache.invalidate(theater_id, ch)
    return config_cache.get(db, theater_id, ch).public()
