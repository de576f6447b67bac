from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.key_models import Key, KeyEvent, KeyEventKeys
from services.audit_service import log_audit
from services.errors import BackendError, NotFoundError

EVENT_TYPES = {"ORDER", "FLEX", "LOST"}
EVENT_STATUSES = {"ORDERED", "RECEIVED", "COMPLETED"}
EVENT_STATUS_TRANSITIONS = {
    "ORDERED": {"RECEIVED", "COMPLETED"},
    "RECEIVED": {"COMPLETED"},
    "COMPLETED": set(),
}

LOGGER = logging.getLogger("key_management.orders")


def serialize_event(event: KeyEvent) -> dict:
    return {
        "id": event.KeyEventID,
        "type": event.Type,
        "status": event.Status,
        "workOrderId": event.WorkOrderID,
        "keyIds": [key.KeyID for key in event.Keys],
        "createdAt": event.CreatedAt,
        "updatedAt": event.UpdatedAt,
    }


def create_event(db: Session, event_type: str, key_ids: list[str], user_id: str | None = None, work_order_id: str | None = None) -> dict:
    if event_type not in EVENT_TYPES:
        raise BackendError(f"Unknown event type: {event_type}")
    unique_ids = list(dict.fromkeys(key_ids or []))
    if not unique_ids:
        raise BackendError("No keys selected for the event")
    keys = db.execute(select(Key).where(Key.KeyID.in_(unique_ids))).scalars().all()
    found = {key.KeyID for key in keys}
    missing = [key_id for key_id in unique_ids if key_id not in found]
    if missing:
        raise NotFoundError(f"Keys not found: {', '.join(missing)}")

    now = datetime.now()
    event = KeyEvent(Type=event_type, Status="ORDERED", WorkOrderID=work_order_id, CreatedAt=now, UpdatedAt=now)
    event.Keys = list(keys)
    db.add(event)
    db.flush()
    log_audit(db, "KeyEvent", event.KeyEventID, "Create", f"{event_type} for {len(keys)} key(s)", user_id)
    db.commit()
    LOGGER.info("Created %s event %s for %s key(s)", event_type, event.KeyEventID, len(keys))
    return serialize_event(event)


def _transition_event(event: KeyEvent, new_status: str) -> bool:
    if new_status not in EVENT_STATUSES:
        raise BackendError(f"Unknown event status: {new_status}")
    current = event.Status or "ORDERED"
    if current == new_status:
        return False
    if new_status not in EVENT_STATUS_TRANSITIONS.get(current, set()):
        raise BackendError(f"Invalid status transition: {current} -> {new_status}")
    event.Status = new_status
    event.UpdatedAt = datetime.now()
    return True


def update_event_status(db: Session, event_id: str, status: str, user_id: str | None = None) -> dict:
    event = db.execute(
        select(KeyEvent).options(selectinload(KeyEvent.Keys)).where(KeyEvent.KeyEventID == event_id)
    ).scalars().first()
    if not event:
        raise NotFoundError(f"Event {event_id} not found")
    previous = event.Status
    if _transition_event(event, status):
        log_audit(db, "KeyEvent", event.KeyEventID, "StatusChange", f"{previous} -> {status}", user_id)
        db.commit()
    return serialize_event(event)


def _events_for_keys(db: Session, key_ids: list[str]) -> list[KeyEvent]:
    if not key_ids:
        return []
    stmt = (
        select(KeyEvent)
        .options(selectinload(KeyEvent.Keys))
        .join(KeyEventKeys, KeyEventKeys.c.KeyEventID == KeyEvent.KeyEventID)
        .where(KeyEventKeys.c.KeyID.in_(key_ids))
        .order_by(KeyEvent.CreatedAt)
    )
    return list(db.execute(stmt).scalars().unique().all())


def get_latest_events_for_keys(db: Session, key_ids: list[str]) -> dict[str, dict]:
    wanted = set(key_ids or [])
    latest: dict[str, KeyEvent] = {}
    for event in _events_for_keys(db, list(wanted)):
        for key in event.Keys:
            if key.KeyID not in wanted:
                continue
            current = latest.get(key.KeyID)
            # Ordered by CreatedAt, so a later row wins ties.
            if current is None or (event.CreatedAt or datetime.min) >= (current.CreatedAt or datetime.min):
                latest[key.KeyID] = event
    return {key_id: serialize_event(event) for key_id, event in latest.items()}


def complete_events_for_keys(db: Session, key_ids: list[str], user_id: str | None = None) -> int:
    completed = 0
    for event in _events_for_keys(db, key_ids):
        if event.Status in {"ORDERED", "RECEIVED"}:
            _transition_event(event, "COMPLETED")
            log_audit(db, "KeyEvent", event.KeyEventID, "StatusChange", "-> COMPLETED (loan activated)", user_id)
            completed += 1
    return completed
