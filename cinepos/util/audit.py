import json
from sqlalchemy.orm import Session
from cinepos.models.core import AuditLog

def audit(db: Session, actor_user_id: str, entity: str, entity_id: str,
          action: str, before: dict | str | None = None, after: dict | str | None = None, reason: str | None = None):
    entry = AuditLog(
        actor_user_id=actor_user_id or "system",
        entity=entity, entity_id=entity_id,
        action=action,
        reason=reason,
        before=json.dumps(before) if isinstance(before, dict) else before,
        after=json.dumps(after) if isinstance(after, dict) else after,
    )
    db.add(entry)
    return entry
