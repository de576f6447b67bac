from __future__ import annotations

from datetime import datetime

from services.errors import RuleValidationError
from services.inventory import InventorySnapshot, KeyEventRecord, KeyItem, LoanRecord
from services.plans import ActionPlan, BackendCall

INCOMING_ORDER = "INCOMING_ORDER"
INCOMING_FLEX = "INCOMING_FLEX"
SWEEP_OPERATION = "sweep_disposed_loans"
SWEEP_LABEL = "close loans with only disposed keys"


def incoming_kind(event: KeyEventRecord | None) -> str | None:
    if event is None or event.status != "ORDERED":
        return None
    if event.type == "ORDER":
        return INCOMING_ORDER
    if event.type == "FLEX":
        return INCOMING_FLEX
    return None


def incoming_keys(snapshot: InventorySnapshot, kind: str, key_ids: list[str] | None = None) -> list[KeyItem]:
    if key_ids is not None:
        candidates = [snapshot.keys[key_id] for key_id in dict.fromkeys(key_ids) if key_id in snapshot.keys]
    else:
        candidates = list(snapshot.keys.values())
    return [key for key in candidates if incoming_kind(snapshot.latest_event(key.id)) == kind]


def _latest_event_ids(snapshot: InventorySnapshot, keys: list[KeyItem]) -> list[str]:
    return list(dict.fromkeys(snapshot.latest_event(key.id).id for key in keys))


def _mark_events_received(projected: InventorySnapshot, event_ids: list[str]) -> None:
    now = datetime.now()
    for event in projected.events:
        if event.id in event_ids:
            event.status = "RECEIVED"
            event.updated_at = now
    projected.rebuild_event_index()


def plan_order_extra_keys(snapshot: InventorySnapshot, key_ids: list[str]) -> ActionPlan:
    key_ids = list(dict.fromkeys(key_ids or []))
    if not key_ids:
        raise RuleValidationError("No keys selected")
    unknown = [key_id for key_id in key_ids if key_id not in snapshot.keys]
    if unknown:
        raise RuleValidationError(f"Unknown keys: {', '.join(unknown)}")
    disposed = [key_id for key_id in key_ids if snapshot.keys[key_id].disposed]
    if disposed:
        raise RuleValidationError(f"Disposed keys cannot be ordered: {', '.join(disposed)}")

    projected = snapshot.clone()
    now = datetime.now()
    projected.events.append(KeyEventRecord(id="pending-order-event", type="ORDER", status="ORDERED", key_ids=key_ids, created_at=now, updated_at=now))
    projected.rebuild_event_index()
    return ActionPlan(
        title="Order",
        calls=[BackendCall("create_extra_key_order_event", {"key_ids": key_ids}, label="record extra key order")],
        projected=projected,
        summary={"orderedKeyIds": key_ids},
    )


def plan_receive_orders(snapshot: InventorySnapshot, key_ids: list[str] | None = None) -> ActionPlan:
    """Move outstanding extra-key orders to RECEIVED.

    Keys whose latest event is no longer an ORDERED order are left alone, so
    receiving twice is a no-op.
    """
    if key_ids is not None and not key_ids:
        raise RuleValidationError("No keys selected")
    keys = incoming_keys(snapshot, INCOMING_ORDER, key_ids)
    event_ids = _latest_event_ids(snapshot, keys)

    projected = snapshot.clone()
    _mark_events_received(projected, event_ids)
    return ActionPlan(
        title="Receive order",
        calls=[
            BackendCall("update_event_status", {"event_id": event_id, "status": "RECEIVED"}, label=f"receive event {event_id}")
            for event_id in event_ids
        ],
        projected=projected,
        summary={"receivedEventIds": event_ids, "receivedKeyIds": [key.id for key in keys]},
    )


def _is_older_generation(key: KeyItem, incoming_flex: int | None) -> bool:
    if key.flex_number is None:
        return True
    if incoming_flex is None:
        return False
    return key.flex_number < incoming_flex


def disposal_candidates(snapshot: InventorySnapshot, incoming: list[KeyItem]) -> list[KeyItem]:
    """Older-generation keys replaced by the incoming flex keys, in listing order."""
    incoming_ids = {key.id for key in incoming}
    flex_by_group: dict[tuple[str, str], list[int]] = {}
    for key in incoming:
        values = flex_by_group.setdefault(key.group, [])
        if key.flex_number is not None:
            values.append(key.flex_number)

    candidates = []
    for key in snapshot.keys.values():
        if key.group not in flex_by_group or key.id in incoming_ids or key.disposed:
            continue
        values = flex_by_group[key.group]
        if _is_older_generation(key, max(values) if values else None):
            candidates.append(key)
    return candidates


def loans_closed_by_disposal(loans: list[LoanRecord], disposed_key_ids: set[str], touched_key_ids: set[str]) -> list[LoanRecord]:
    """Open loans holding a touched key in which every key is now disposed."""
    closed = []
    for loan in loans:
        if not loan.is_open or not loan.key_ids:
            continue
        if not touched_key_ids.intersection(loan.key_ids):
            continue
        if all(key_id in disposed_key_ids for key_id in loan.key_ids):
            closed.append(loan)
    return closed


def plan_receive_flex(
    snapshot: InventorySnapshot,
    key_ids: list[str] | None = None,
    dispose_key_ids: list[str] | None = None,
) -> ActionPlan:
    """Receive incoming flex keys and retire the generation they replace.

    Every disposal candidate is selected unless ``dispose_key_ids`` narrows
    the choice. Loans left holding only disposed keys are closed afterwards.
    """
    if key_ids is not None and not key_ids:
        raise RuleValidationError("No keys selected")
    incoming = incoming_keys(snapshot, INCOMING_FLEX, key_ids)
    event_ids = _latest_event_ids(snapshot, incoming)
    candidates = disposal_candidates(snapshot, incoming)
    candidate_ids = [key.id for key in candidates]

    if dispose_key_ids is None:
        to_dispose = candidate_ids
    else:
        to_dispose = list(dict.fromkeys(dispose_key_ids))
        invalid = [key_id for key_id in to_dispose if key_id not in candidate_ids]
        if invalid:
            raise RuleValidationError(f"Keys are not replaced by the incoming flex keys: {', '.join(invalid)}")

    calls = [
        BackendCall("update_event_status", {"event_id": event_id, "status": "RECEIVED"}, label=f"receive event {event_id}")
        for event_id in event_ids
    ]
    calls.extend(
        BackendCall("update_key", {"key_id": key_id, "attributes": {"disposed": True}}, label=f"dispose {key_id}")
        for key_id in to_dispose
    )
    if to_dispose:
        calls.append(BackendCall(SWEEP_OPERATION, {"key_ids": to_dispose}, label=SWEEP_LABEL))

    projected = snapshot.clone()
    _mark_events_received(projected, event_ids)
    for key_id in to_dispose:
        projected.keys[key_id].disposed = True
    disposed = {key.id for key in projected.keys.values() if key.disposed}
    closed = loans_closed_by_disposal(list(projected.loans.values()), disposed, set(to_dispose))
    now = datetime.now()
    for loan in closed:
        loan.returned_at = now
        loan.available_from = loan.available_from or now

    return ActionPlan(
        title="Receive flex",
        calls=calls,
        projected=projected,
        summary={
            "receivedEventIds": event_ids,
            "receivedKeyIds": [key.id for key in incoming],
            "disposalCandidateIds": candidate_ids,
            "disposedKeyIds": to_dispose,
            "closedLoanIds": [loan.id for loan in closed],
        },
    )
