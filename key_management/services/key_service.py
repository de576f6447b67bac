from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.key_models import Card, CardCode, Key, KeySystem
from services.audit_service import log_audit
from services.errors import BackendError, NotFoundError
from services.event_service import serialize_event

KEY_TYPES = ("HN", "FS", "MV", "LGH", "PB", "GAR", "LOK", "HL", "FÖR", "SOP", "ÖVR")
KEY_SYSTEM_TYPES = ("MECHANICAL", "ELECTRONIC", "HYBRID")

# camelCase attribute -> Key column
KEY_FIELD_MAP = {
    "keyName": "KeyName",
    "keyType": "KeyType",
    "rentalObjectCode": "RentalObjectCode",
    "keySequenceNumber": "KeySequenceNumber",
    "flexNumber": "FlexNumber",
    "disposed": "Disposed",
    "keySystemId": "KeySystemID",
}

LOGGER = logging.getLogger("key_management.keys")


def serialize_key_system(system: KeySystem) -> dict:
    return {
        "id": system.KeySystemID,
        "systemCode": system.SystemCode,
        "name": system.Name,
        "manufacturer": system.Manufacturer,
        "type": system.Type,
        "isActive": bool(system.IsActive),
        "createdAt": system.CreatedAt,
    }


def _loan_summary(loan) -> dict:
    return {
        "id": loan.KeyLoanID,
        "contact": loan.Contact,
        "contact2": loan.Contact2,
        "loanType": loan.LoanType,
        "createdAt": loan.CreatedAt,
        "pickedUpAt": loan.PickedUpAt,
        "returnedAt": loan.ReturnedAt,
        "availableToNextTenantFrom": loan.AvailableToNextTenantFrom,
        "keyIds": [key.KeyID for key in loan.Keys],
        "cardIds": [card.CardID for card in loan.Cards],
    }


def serialize_key(key: Key, include_loans: bool = False, include_events: bool = False, include_key_system: bool = False) -> dict:
    data = {
        "id": key.KeyID,
        "keyName": key.KeyName,
        "keyType": key.KeyType,
        "keySequenceNumber": key.KeySequenceNumber,
        "flexNumber": key.FlexNumber,
        "rentalObjectCode": key.RentalObjectCode,
        "keySystemId": key.KeySystemID,
        "disposed": bool(key.Disposed),
        "createdAt": key.CreatedAt,
        "updatedAt": key.UpdatedAt,
    }
    if include_loans:
        data["loans"] = [_loan_summary(loan) for loan in key.Loans]
    if include_events:
        events = sorted(key.Events, key=lambda event: event.CreatedAt or datetime.min)
        data["events"] = [serialize_event(event) for event in events]
    if include_key_system:
        data["keySystem"] = serialize_key_system(key.KeySystem) if key.KeySystem else None
    return data


def serialize_card(card: Card, include_loans: bool = False) -> dict:
    data = {
        "id": card.CardID,
        "name": card.Name,
        "rentalObjectCode": card.RentalObjectCode,
        "disabled": bool(card.Disabled),
        "owner": card.Owner,
        "codes": [{"format": code.Format, "number": code.Number} for code in card.Codes],
        "createdAt": card.CreatedAt,
    }
    if include_loans:
        data["loans"] = [_loan_summary(loan) for loan in card.Loans]
    return data


def get_key_or_404(db: Session, key_id: str) -> Key:
    key = db.get(Key, key_id)
    if not key:
        raise NotFoundError(f"Key {key_id} not found")
    return key


def list_keys_for_rental_object(
    db: Session,
    rental_object_code: str,
    include_loans: bool = False,
    include_events: bool = False,
    include_key_system: bool = False,
) -> list[dict]:
    stmt = select(Key).where(Key.RentalObjectCode == rental_object_code)
    if include_loans:
        stmt = stmt.options(selectinload(Key.Loans))
    if include_events:
        stmt = stmt.options(selectinload(Key.Events))
    if include_key_system:
        stmt = stmt.options(selectinload(Key.KeySystem))
    stmt = stmt.order_by(Key.KeyName, Key.KeyType, Key.FlexNumber, Key.KeySequenceNumber)
    keys = db.execute(stmt).scalars().all()
    return [
        serialize_key(key, include_loans=include_loans, include_events=include_events, include_key_system=include_key_system)
        for key in keys
    ]


def _validate_key_attributes(attributes: dict) -> None:
    if "keyType" in attributes and attributes["keyType"] not in KEY_TYPES:
        raise BackendError(f"Unknown key type: {attributes['keyType']}")
    if "keyName" in attributes and not str(attributes["keyName"] or "").strip():
        raise BackendError("Key name is required")


def _apply_key_attributes(key: Key, attributes: dict) -> None:
    for field, column in KEY_FIELD_MAP.items():
        if field not in attributes:
            continue
        value = attributes[field]
        if field == "disposed":
            value = bool(value)
        setattr(key, column, value)


def create_key(db: Session, attributes: dict, user_id: str | None = None) -> dict:
    if not str(attributes.get("keyName") or "").strip():
        raise BackendError("Key name is required")
    if attributes.get("keyType") not in KEY_TYPES:
        raise BackendError(f"Unknown key type: {attributes.get('keyType')}")
    system_id = attributes.get("keySystemId")
    if system_id and not db.get(KeySystem, system_id):
        raise NotFoundError(f"Key system {system_id} not found")

    key = Key(Disposed=False, CreatedAt=datetime.now(), UpdatedAt=datetime.now())
    _apply_key_attributes(key, attributes)
    db.add(key)
    db.flush()
    log_audit(db, "Key", key.KeyID, "Create", f"{key.KeyName} ({key.KeyType}) seq={key.KeySequenceNumber} flex={key.FlexNumber}", user_id)
    db.commit()
    return serialize_key(key)


def update_key(db: Session, key_id: str, attributes: dict, user_id: str | None = None) -> dict:
    _validate_key_attributes(attributes)
    key = get_key_or_404(db, key_id)
    was_disposed = bool(key.Disposed)
    _apply_key_attributes(key, attributes)
    key.UpdatedAt = datetime.now()
    action = "Update"
    if "disposed" in attributes and bool(attributes["disposed"]) != was_disposed:
        action = "Dispose" if key.Disposed else "UndoDispose"
    log_audit(db, "Key", key.KeyID, action, ",".join(sorted(attributes.keys())), user_id)
    db.commit()
    return serialize_key(key)


def bulk_update_keys(db: Session, key_ids: list[str], attributes: dict, user_id: str | None = None) -> list[dict]:
    _validate_key_attributes(attributes)
    keys = []
    for key_id in key_ids:
        keys.append(get_key_or_404(db, key_id))
    for key in keys:
        _apply_key_attributes(key, attributes)
        key.UpdatedAt = datetime.now()
        log_audit(db, "Key", key.KeyID, "BulkUpdate", ",".join(sorted(attributes.keys())), user_id)
    db.commit()
    LOGGER.info("Bulk-updated %s keys (%s)", len(keys), ",".join(sorted(attributes.keys())))
    return [serialize_key(key) for key in keys]


def list_cards_for_rental_object(db: Session, rental_object_code: str, include_loans: bool = False) -> list[dict]:
    stmt = select(Card).options(selectinload(Card.Codes)).where(Card.RentalObjectCode == rental_object_code)
    if include_loans:
        stmt = stmt.options(selectinload(Card.Loans))
    cards = db.execute(stmt.order_by(Card.Name)).scalars().all()
    return [serialize_card(card, include_loans=include_loans) for card in cards]


def create_card(db: Session, attributes: dict, user_id: str | None = None) -> dict:
    card = Card(
        RentalObjectCode=attributes.get("rentalObjectCode"),
        Name=attributes.get("name"),
        Disabled=bool(attributes.get("disabled") or False),
        Owner=attributes.get("owner"),
        CreatedAt=datetime.now(),
    )
    for code in attributes.get("codes") or []:
        card.Codes.append(CardCode(Format=code.get("format"), Number=code.get("number")))
    db.add(card)
    db.flush()
    log_audit(db, "Card", card.CardID, "Create", card.Name, user_id)
    db.commit()
    return serialize_card(card)


def list_key_systems(db: Session) -> list[dict]:
    systems = db.execute(select(KeySystem).order_by(KeySystem.SystemCode)).scalars().all()
    return [serialize_key_system(system) for system in systems]


def create_key_system(db: Session, attributes: dict, user_id: str | None = None) -> dict:
    system_type = attributes.get("type") or "MECHANICAL"
    if system_type not in KEY_SYSTEM_TYPES:
        raise BackendError(f"Unknown key system type: {system_type}")
    system = KeySystem(
        SystemCode=attributes.get("systemCode"),
        Name=attributes.get("name"),
        Manufacturer=attributes.get("manufacturer"),
        Type=system_type,
        IsActive=attributes.get("isActive", True),
        CreatedAt=datetime.now(),
    )
    db.add(system)
    db.flush()
    log_audit(db, "KeySystem", system.KeySystemID, "Create", system.SystemCode, user_id)
    db.commit()
    return serialize_key_system(system)
