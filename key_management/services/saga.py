"""Ordered execution of multi-step backend sequences.

A saga runs its steps one after another. The first failing primary step
stops the run in the FAILED state; nothing that already completed is
rolled back, the outcome simply records how far it got. Supplementary
steps (receipts, audit events) may fail without failing the saga.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Callable

from services.errors import KeyManagementError

SAGA_TRANSITIONS = {
    "PENDING": {"RUNNING"},
    "RUNNING": {"COMPLETED", "FAILED"},
    "COMPLETED": set(),
    "FAILED": set(),
}

LOGGER = logging.getLogger("key_management.saga")


@dataclass
class SagaStep:
    name: str
    run: Callable[[dict], Any]
    supplementary: bool = False


@dataclass
class SagaOutcome:
    name: str
    state: str
    context: dict
    completed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[dict] = field(default_factory=list)
    failed_step: str | None = None
    error: KeyManagementError | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == "COMPLETED"

    def to_dict(self) -> dict:
        return {
            "saga": self.name,
            "state": self.state,
            "completedSteps": list(self.completed_steps),
            "skippedSteps": list(self.skipped_steps),
            "failedStep": self.failed_step,
            "error": str(self.error) if self.error else None,
        }


class Saga:
    def __init__(self, name: str, steps: list[SagaStep], context: dict | None = None):
        self.name = name
        self.steps = list(steps)
        self.context = context if context is not None else {}
        self.state = "PENDING"

    def _transition(self, new_state: str) -> None:
        if new_state not in SAGA_TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Saga {self.name} cannot move from {self.state} to {new_state}")
        self.state = new_state

    def run(self) -> SagaOutcome:
        self._transition("RUNNING")
        outcome = SagaOutcome(name=self.name, state=self.state, context=self.context)
        for step in self.steps:
            try:
                self.context[step.name] = step.run(self.context)
            except KeyManagementError as exc:
                if step.supplementary:
                    LOGGER.warning("Saga %s: supplementary step '%s' failed: %s", self.name, step.name, exc)
                    outcome.skipped_steps.append({"step": step.name, "error": str(exc)})
                    continue
                LOGGER.warning(
                    "Saga %s failed at step '%s' after %s completed step(s): %s",
                    self.name,
                    step.name,
                    len(outcome.completed_steps),
                    exc,
                )
                self._transition("FAILED")
                outcome.state = self.state
                outcome.failed_step = step.name
                outcome.error = exc
                return outcome
            outcome.completed_steps.append(step.name)

        self._transition("COMPLETED")
        outcome.state = self.state
        LOGGER.info("Saga %s completed %s step(s)", self.name, len(outcome.completed_steps))
        return outcome
