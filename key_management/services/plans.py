from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from services.inventory import InventorySnapshot


@dataclass(frozen=True)
class ContextRef:
    """Placeholder for a value produced by an earlier step of the same run."""

    name: str


@dataclass
class BackendCall:
    operation: str
    payload: dict
    label: str
    supplementary: bool = False
    # Append the created record's id to this context list.
    collect_as: str | None = None


@dataclass
class ActionPlan:
    title: str
    calls: list[BackendCall]
    projected: InventorySnapshot
    summary: dict = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.calls


def resolve_payload(value: Any, context: dict) -> Any:
    if isinstance(value, ContextRef):
        return list(context.get(value.name) or [])
    if isinstance(value, dict):
        return {key: resolve_payload(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_payload(item, context) for item in value]
    return value
