from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import config
from services.errors import RuleValidationError
from services.inventory import InventorySnapshot, KeyEventRecord, KeyItem
from services.order_rules import INCOMING_FLEX, incoming_kind
from services.plans import ActionPlan, BackendCall, ContextRef

CREATED_KEYS_CONTEXT = "created_key_ids"


def group_label(key_name: str, key_type: str) -> str:
    return f"{key_name}-{key_type}"


@dataclass
class FlexGroup:
    key_name: str
    key_type: str
    keys: list[KeyItem] = field(default_factory=list)
    current_flex: int | None = None
    next_flex: int | None = None
    count: int = 0
    error: str | None = None

    @property
    def label(self) -> str:
        return group_label(self.key_name, self.key_type)

    @property
    def generatable(self) -> bool:
        return self.error is None and self.count > 0

    def to_dict(self) -> dict:
        return {
            "group": self.label,
            "keyName": self.key_name,
            "keyType": self.key_type,
            "keyIds": [key.id for key in self.keys],
            "currentFlex": self.current_flex,
            "nextFlex": self.next_flex,
            "count": self.count,
            "error": self.error,
        }


def group_keys(keys: list[KeyItem]) -> list[FlexGroup]:
    groups: dict[tuple[str, str], FlexGroup] = {}
    for key in keys:
        group = groups.get(key.group)
        if group is None:
            group = FlexGroup(key_name=key.key_name, key_type=key.key_type)
            groups[key.group] = group
        group.keys.append(key)
    return list(groups.values())


def evaluate_flex_groups(
    snapshot: InventorySnapshot,
    key_ids: list[str],
    counts: dict[str, int] | None = None,
    baselines: dict[str, int] | None = None,
    max_flex: int | None = None,
    default_count: int | None = None,
) -> list[FlexGroup]:
    """Work out the next generation for every (key name, key type) group of the selection.

    A group gets an ``error`` when its keys disagree on the current flex
    number, when it has no flex number and no baseline was given, when it
    is already at the maximum generation, when the next generation already
    has live keys or an outstanding flex order, or when the requested count
    is negative. ``counts`` and ``baselines`` are keyed by ``name-type``.
    """
    counts = counts or {}
    baselines = baselines or {}
    max_flex = config.FLEX_MAX_NUMBER if max_flex is None else max_flex
    default_count = config.FLEX_DEFAULT_COUNT if default_count is None else default_count

    selected = []
    for key_id in dict.fromkeys(key_ids or []):
        key = snapshot.keys.get(key_id)
        if key is None:
            raise RuleValidationError(f"Unknown key: {key_id}")
        selected.append(key)
    if not selected:
        raise RuleValidationError("No keys selected")

    groups = group_keys(selected)
    for group in groups:
        group.count = int(counts.get(group.label, default_count))
        flex_values = {key.flex_number for key in group.keys}
        if len(flex_values) > 1:
            shown = ", ".join("none" if value is None else str(value) for value in sorted(flex_values, key=lambda v: (v is None, v or 0)))
            group.error = f"Keys in {group.label} have different flex numbers ({shown})"
            continue

        current = next(iter(flex_values))
        if current is None:
            if group.label not in baselines:
                group.error = f"{group.label} has no flex number, a baseline is required"
                continue
            current = int(baselines[group.label])
        group.current_flex = current
        if current < 0:
            group.error = f"{group.label} has an invalid flex number {current}"
            continue
        if current >= max_flex:
            group.error = f"{group.label} is already at flex {current}, the maximum is {max_flex}"
            continue
        group.next_flex = current + 1
        siblings = snapshot.keys_in_group(group.key_name, group.key_type)
        if any(incoming_kind(snapshot.latest_event(key.id)) == INCOMING_FLEX for key in siblings):
            group.error = f"A flex order for {group.label} has not been received yet"
            continue
        if any(not key.disposed and key.flex_number == group.next_flex for key in siblings):
            group.error = f"{group.label} already has keys at flex {group.next_flex}"
            continue
        if group.count < 0:
            group.error = f"Invalid count {group.count} for {group.label}"
    return groups


def plan_flex_generation(
    snapshot: InventorySnapshot,
    key_ids: list[str],
    counts: dict[str, int] | None = None,
    baselines: dict[str, int] | None = None,
    max_flex: int | None = None,
    default_count: int | None = None,
) -> ActionPlan:
    groups = evaluate_flex_groups(snapshot, key_ids, counts, baselines, max_flex, default_count)
    rejected = [group for group in groups if group.error]
    generatable = [group for group in groups if group.generatable]
    if not generatable:
        reasons = [group.error for group in rejected] or ["No keys to create"]
        raise RuleValidationError("; ".join(reasons))

    calls: list[BackendCall] = []
    projected = snapshot.clone()
    pending_ids = []
    for group in generatable:
        sample = group.keys[0]
        for sequence in range(1, group.count + 1):
            attributes = {
                "keyName": sample.key_name,
                "keyType": sample.key_type,
                "rentalObjectCode": sample.rental_object_code or snapshot.rental_object_code,
                "keySequenceNumber": sequence,
                "flexNumber": group.next_flex,
                "keySystemId": sample.key_system_id,
                "disposed": False,
            }
            calls.append(
                BackendCall(
                    "create_key",
                    {"attributes": attributes},
                    label=f"create {group.label} #{sequence} flex {group.next_flex}",
                    collect_as=CREATED_KEYS_CONTEXT,
                )
            )
            pending = KeyItem(
                id=f"pending-flex-{len(pending_ids) + 1}",
                key_name=sample.key_name,
                key_type=sample.key_type,
                rental_object_code=attributes["rentalObjectCode"],
                sequence_number=sequence,
                flex_number=group.next_flex,
                key_system_id=sample.key_system_id,
            )
            projected.keys[pending.id] = pending
            pending_ids.append(pending.id)

    calls.append(
        BackendCall(
            "create_flex_order_event",
            {"key_ids": ContextRef(CREATED_KEYS_CONTEXT)},
            label="record flex order",
            supplementary=True,
        )
    )
    now = datetime.now()
    projected.events.append(KeyEventRecord(id="pending-flex-event", type="FLEX", status="ORDERED", key_ids=pending_ids, created_at=now, updated_at=now))
    projected.rebuild_event_index()

    return ActionPlan(
        title="Flex",
        calls=calls,
        projected=projected,
        summary={
            "groups": [group.to_dict() for group in groups],
            "rejectedGroups": [group.label for group in rejected],
            "totalKeys": len(pending_ids),
        },
        warnings=[group.error for group in rejected],
    )
