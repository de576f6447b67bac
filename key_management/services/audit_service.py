from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from models.key_models import AuditLog


def log_audit(db: Session, entity_type: str, entity_id: str, action: str, details: str | None = None, user_id: str | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )
