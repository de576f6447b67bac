"""In-memory inventory of keys, cards, loans and events for one rental object.

A snapshot is what the lifecycle rules read. It is built from the JSON shape
returned by the keys backend and carries no business logic beyond lookups,
plus the display helpers (status and ordering) the portal uses when listing
keys.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import date, datetime

from services.keys_backend import KeysBackend

KEY_TYPE_SORT_ORDER = {"LGH": 1, "PB": 2, "FS": 3, "HN": 4}


def parse_datetime(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    # Naive local time throughout, like the database columns.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


@dataclass
class KeyItem:
    id: str
    key_name: str
    key_type: str
    rental_object_code: str | None = None
    sequence_number: int | None = None
    flex_number: int | None = None
    disposed: bool = False
    key_system_id: str | None = None

    @property
    def group(self) -> tuple[str, str]:
        return (self.key_name, self.key_type)

    @classmethod
    def from_payload(cls, payload: dict) -> "KeyItem":
        return cls(
            id=str(payload["id"]),
            key_name=str(payload.get("keyName") or ""),
            key_type=str(payload.get("keyType") or ""),
            rental_object_code=payload.get("rentalObjectCode"),
            sequence_number=payload.get("keySequenceNumber"),
            flex_number=payload.get("flexNumber"),
            disposed=bool(payload.get("disposed")),
            key_system_id=payload.get("keySystemId"),
        )


@dataclass
class CardItem:
    id: str
    name: str | None = None
    rental_object_code: str | None = None
    disabled: bool = False
    owner: str | None = None
    codes: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict) -> "CardItem":
        return cls(
            id=str(payload["id"]),
            name=payload.get("name"),
            rental_object_code=payload.get("rentalObjectCode"),
            disabled=bool(payload.get("disabled")),
            owner=payload.get("owner"),
            codes=[(code.get("format"), code.get("number")) for code in payload.get("codes") or []],
        )


@dataclass
class LoanRecord:
    id: str
    contact: str | None = None
    contact2: str | None = None
    loan_type: str = "TENANT"
    key_ids: list[str] = field(default_factory=list)
    card_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    picked_up_at: datetime | None = None
    returned_at: datetime | None = None
    available_from: datetime | None = None
    comment: str | None = None

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    @property
    def contacts(self) -> set[str]:
        return {value.strip() for value in (self.contact, self.contact2) if value and value.strip()}

    @classmethod
    def from_payload(cls, payload: dict) -> "LoanRecord":
        key_ids = payload.get("keyIds")
        if key_ids is None:
            key_ids = [item["id"] for item in payload.get("keysArray") or []]
        card_ids = payload.get("cardIds")
        if card_ids is None:
            card_ids = [item["id"] for item in payload.get("cardsArray") or []]
        return cls(
            id=str(payload["id"]),
            contact=payload.get("contact"),
            contact2=payload.get("contact2"),
            loan_type=payload.get("loanType") or "TENANT",
            key_ids=[str(key_id) for key_id in key_ids],
            card_ids=[str(card_id) for card_id in card_ids],
            created_at=parse_datetime(payload.get("createdAt")),
            picked_up_at=parse_datetime(payload.get("pickedUpAt")),
            returned_at=parse_datetime(payload.get("returnedAt")),
            available_from=parse_datetime(payload.get("availableToNextTenantFrom")),
            comment=payload.get("comment"),
        )


@dataclass
class KeyEventRecord:
    id: str
    type: str
    status: str
    key_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "KeyEventRecord":
        return cls(
            id=str(payload["id"]),
            type=str(payload.get("type") or ""),
            status=str(payload.get("status") or ""),
            key_ids=[str(key_id) for key_id in payload.get("keyIds") or []],
            created_at=parse_datetime(payload.get("createdAt")),
            updated_at=parse_datetime(payload.get("updatedAt")),
        )


def build_last_event_index(events: list[KeyEventRecord]) -> dict[str, KeyEventRecord]:
    """Latest event per key id by creation time; on equal timestamps the later list entry wins."""
    index: dict[str, KeyEventRecord] = {}
    for event in events:
        for key_id in event.key_ids:
            current = index.get(key_id)
            if current is None or (event.created_at or datetime.min) >= (current.created_at or datetime.min):
                index[key_id] = event
    return index


@dataclass
class InventorySnapshot:
    rental_object_code: str
    keys: dict[str, KeyItem] = field(default_factory=dict)
    cards: dict[str, CardItem] = field(default_factory=dict)
    loans: dict[str, LoanRecord] = field(default_factory=dict)
    events: list[KeyEventRecord] = field(default_factory=list)
    last_events: dict[str, KeyEventRecord] = field(default_factory=dict)

    def __post_init__(self):
        if not self.last_events and self.events:
            self.last_events = build_last_event_index(self.events)

    @classmethod
    def from_payloads(cls, rental_object_code: str, keys: list[dict], cards: list[dict] | None = None, loans: list[dict] | None = None) -> "InventorySnapshot":
        key_items = {}
        events: dict[str, KeyEventRecord] = {}
        for payload in keys:
            item = KeyItem.from_payload(payload)
            key_items[item.id] = item
            for event_payload in payload.get("events") or []:
                event = KeyEventRecord.from_payload(event_payload)
                events.setdefault(event.id, event)
        card_items = {}
        for payload in cards or []:
            card = CardItem.from_payload(payload)
            card_items[card.id] = card
        loan_records = {}
        for payload in loans or []:
            loan = LoanRecord.from_payload(payload)
            loan_records[loan.id] = loan
        ordered_events = sorted(events.values(), key=lambda event: event.created_at or datetime.min)
        return cls(
            rental_object_code=rental_object_code,
            keys=key_items,
            cards=card_items,
            loans=loan_records,
            events=ordered_events,
        )

    def clone(self) -> "InventorySnapshot":
        return copy.deepcopy(self)

    def rebuild_event_index(self) -> None:
        self.last_events = build_last_event_index(self.events)

    def latest_event(self, key_id: str) -> KeyEventRecord | None:
        return self.last_events.get(key_id)

    def open_loans(self) -> list[LoanRecord]:
        return [loan for loan in self.loans.values() if loan.is_open]

    def open_loan_for_key(self, key_id: str) -> LoanRecord | None:
        for loan in self.open_loans():
            if key_id in loan.key_ids:
                return loan
        return None

    def open_loan_for_card(self, card_id: str) -> LoanRecord | None:
        for loan in self.open_loans():
            if card_id in loan.card_ids:
                return loan
        return None

    def loans_for_key(self, key_id: str) -> list[LoanRecord]:
        return [loan for loan in self.loans.values() if key_id in loan.key_ids]

    def keys_in_group(self, key_name: str, key_type: str) -> list[KeyItem]:
        return [key for key in self.keys.values() if key.key_name == key_name and key.key_type == key_type]


def load_inventory(backend: KeysBackend, rental_object_code: str) -> InventorySnapshot:
    keys = backend.list_keys(rental_object_code, include_loans=False, include_events=True, include_key_system=False)
    cards = backend.list_cards(rental_object_code, include_loans=False)
    loans = backend.list_loans(rental_object_code, open_only=False)
    return InventorySnapshot.from_payloads(rental_object_code, keys, cards, loans)


def sort_keys_by_type_and_sequence(keys: list[KeyItem]) -> list[KeyItem]:
    def _sort_key(key: KeyItem):
        return (
            KEY_TYPE_SORT_ORDER.get(key.key_type, 999),
            key.key_name,
            key.flex_number is None,
            key.flex_number or 0,
            key.sequence_number if key.sequence_number is not None else 0,
        )

    return sorted(keys, key=_sort_key)


def visible_keys(snapshot: InventorySnapshot) -> list[KeyItem]:
    """Disposed keys stay listed only while they are still out on an open loan."""
    return [
        key
        for key in snapshot.keys.values()
        if not key.disposed or snapshot.open_loan_for_key(key.id) is not None
    ]


@dataclass
class KeyStatus:
    code: str
    label: str
    available: bool


def key_status(
    snapshot: InventorySnapshot,
    key_id: str,
    tenant_contacts: set[str] | None = None,
    now: datetime | None = None,
) -> KeyStatus:
    key = snapshot.keys[key_id]
    now = now or datetime.now()
    tenant_contacts = {value.strip() for value in (tenant_contacts or set()) if value}

    event = snapshot.latest_event(key_id)
    if event and event.status == "ORDERED":
        if event.type == "FLEX":
            return KeyStatus("INCOMING_FLEX", "Incoming flex", False)
        if event.type == "ORDER":
            return KeyStatus("INCOMING_ORDER", "Incoming", False)

    if key.disposed:
        return KeyStatus("DISPOSED", "Disposed", False)

    loan = snapshot.open_loan_for_key(key_id)
    if loan is not None:
        if loan.picked_up_at is None:
            return KeyStatus("READY_FOR_PICKUP", "Ready for pickup", False)
        if loan.contacts & tenant_contacts:
            return KeyStatus("LOANED_TO_TENANT", "Loaned to current tenant", False)
        return KeyStatus("LOANED", f"Loaned to {loan.contact or 'unknown'}", False)

    history = [item for item in snapshot.loans_for_key(key_id) if item.returned_at is not None]
    if history:
        last = max(history, key=lambda item: item.returned_at)
        if last.available_from and last.available_from > now:
            return KeyStatus("BLOCKED", f"Available from {last.available_from.date().isoformat()}", False)
        return KeyStatus("RETURNED", "Returned", True)
    return KeyStatus("AVAILABLE", "Available", True)
