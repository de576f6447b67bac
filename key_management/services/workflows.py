from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import logging
import time
from typing import Callable

import config
from services.errors import BackendError, KeyManagementError, RuleValidationError
from services.flex_rules import evaluate_flex_groups, plan_flex_generation
from services.inventory import (
    LoanRecord,
    key_status,
    load_inventory,
    sort_keys_by_type_and_sequence,
    visible_keys,
)
from services.keys_backend import KeysBackend
from services.loan_rules import plan_disposal, plan_return
from services.order_rules import (
    SWEEP_LABEL,
    SWEEP_OPERATION,
    loans_closed_by_disposal,
    plan_order_extra_keys,
    plan_receive_flex,
    plan_receive_orders,
)
from services.plans import ActionPlan, BackendCall, resolve_payload
from services.saga import Saga, SagaOutcome, SagaStep
from services.transfer_rules import detect_transfer, plan_transfer

LOGGER = logging.getLogger("key_management.workflows")


@dataclass
class WorkflowResult:
    success: bool
    title: str
    message: str | None = None
    data: dict = field(default_factory=dict)
    failed_step: str | None = None
    status_code: int = 200

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "title": self.title,
            "message": self.message,
            "failedStep": self.failed_step,
            "data": self.data,
        }


def sweep_disposed_loans(backend: KeysBackend, key_ids: list[str]) -> list[str]:
    """Close every open loan of the given keys whose keys are all disposed.

    Works on freshly fetched loan details so keys disposed by earlier steps
    of the same run are taken into account.
    """
    closed: list[str] = []
    seen: set[str] = set()
    for key_id in key_ids:
        for summary in backend.get_loans_for_key(key_id):
            loan_id = summary["id"]
            if loan_id in seen or summary.get("returnedAt"):
                continue
            seen.add(loan_id)
            details = backend.get_loan(loan_id, include_cards=False)
            loan = LoanRecord.from_payload(details)
            disposed = {item["id"] for item in details.get("keysArray") or [] if item.get("disposed")}
            if loans_closed_by_disposal([loan], disposed, set(key_ids)):
                backend.mark_loan_returned(loan_id)
                closed.append(loan_id)
    if closed:
        LOGGER.info("Closed %s loan(s) holding only disposed keys", len(closed))
    return closed


COMPOUND_OPERATIONS: dict[str, Callable] = {
    SWEEP_OPERATION: sweep_disposed_loans,
}


def _run_call(backend: KeysBackend, call: BackendCall) -> Callable[[dict], object]:
    def _step(context: dict):
        payload = resolve_payload(call.payload, context)
        compound = COMPOUND_OPERATIONS.get(call.operation)
        if compound is not None:
            result = compound(backend, **payload)
        else:
            result = getattr(backend, call.operation)(**payload)
        if call.collect_as and isinstance(result, dict) and result.get("id"):
            context.setdefault(call.collect_as, []).append(result["id"])
        return result

    return _step


def execute_plan(backend: KeysBackend, plan: ActionPlan) -> SagaOutcome:
    steps = [SagaStep(call.label, _run_call(backend, call), supplementary=call.supplementary) for call in plan.calls]
    return Saga(plan.title, steps).run()


def _validation_failure(title: str, exc: KeyManagementError) -> WorkflowResult:
    return WorkflowResult(success=False, title=title, message=str(exc), status_code=exc.status_code)


def _result_from_outcome(plan: ActionPlan, outcome: SagaOutcome, message: str | None = None) -> WorkflowResult:
    data = dict(plan.summary)
    data["saga"] = outcome.to_dict()
    if plan.warnings:
        data["warnings"] = list(plan.warnings)
    if outcome.succeeded:
        return WorkflowResult(success=True, title=plan.title, message=message, data=data)
    return WorkflowResult(
        success=False,
        title=plan.title,
        message=str(outcome.error),
        data=data,
        failed_step=outcome.failed_step,
        status_code=getattr(outcome.error, "status_code", 400),
    )


def open_loan(
    backend: KeysBackend,
    rental_object_code: str,
    key_ids: list[str],
    card_ids: list[str],
    contact: str | None,
    contact2: str | None = None,
    loan_type: str = "TENANT",
    lease_end_date: date | None = None,
    created_by: str | None = None,
) -> WorkflowResult:
    """Loan items to a contact, transferring any loan the contact already holds on the object."""
    try:
        snapshot = load_inventory(backend, rental_object_code)
        plan = plan_transfer(
            snapshot,
            key_ids,
            card_ids,
            contact,
            contact2=contact2,
            loan_type=loan_type,
            lease_end_date=lease_end_date,
            created_by=created_by,
        )
    except KeyManagementError as exc:
        return _validation_failure("Loan", exc)

    outcome = execute_plan(backend, plan)
    if plan.title == "Transfer":
        message = f"Loan created: {plan.summary['message']}"
    else:
        message = f"Loan created with {plan.summary['itemCount']} item(s)"
    result = _result_from_outcome(plan, outcome, message)
    if outcome.succeeded:
        created = outcome.context.get(plan.calls[-1].label) or {}
        result.data["loan"] = created.get("loan")
        result.data["receiptId"] = created.get("receiptId")
    return result


def preview_transfer(backend: KeysBackend, rental_object_code: str, contacts: list[str | None]) -> dict:
    snapshot = load_inventory(backend, rental_object_code)
    return detect_transfer(snapshot, contacts).to_dict()


def key_overview(backend: KeysBackend, rental_object_code: str, tenant_contacts: list[str] | None = None) -> list[dict]:
    """Listing rows for the keys of one rental object, in display order with their status."""
    snapshot = load_inventory(backend, rental_object_code)
    contacts = set(tenant_contacts or [])
    rows = []
    for key in sort_keys_by_type_and_sequence(visible_keys(snapshot)):
        status = key_status(snapshot, key.id, contacts)
        loan = snapshot.open_loan_for_key(key.id)
        rows.append(
            {
                "id": key.id,
                "keyName": key.key_name,
                "keyType": key.key_type,
                "keySequenceNumber": key.sequence_number,
                "flexNumber": key.flex_number,
                "disposed": key.disposed,
                "status": status.code,
                "statusLabel": status.label,
                "available": status.available,
                "loanId": loan.id if loan else None,
            }
        )
    return rows


def return_items(
    backend: KeysBackend,
    rental_object_code: str,
    key_ids: list[str],
    card_ids: list[str],
    selected_for_receipt: list[str] | None = None,
    selected_cards_for_receipt: list[str] | None = None,
    available_from: datetime | None = None,
    comment: str | None = None,
    replacement: bool = False,
) -> WorkflowResult:
    try:
        snapshot = load_inventory(backend, rental_object_code)
        plan = plan_return(
            snapshot,
            key_ids,
            card_ids,
            selected_for_receipt=selected_for_receipt,
            selected_cards_for_receipt=selected_cards_for_receipt,
            available_from=available_from,
            comment=comment,
            replacement=replacement,
        )
    except KeyManagementError as exc:
        return _validation_failure("Return", exc)

    outcome = execute_plan(backend, plan)
    returned = len(plan.summary["returnedLoanIds"])
    missing = len(plan.summary["missingKeyIds"]) + len(plan.summary["missingCardIds"])
    message = f"{returned} loan(s) returned"
    if missing:
        message += f", {missing} item(s) recorded as missing"
    if replacement:
        message += f", {len(plan.summary['replacementLoans'])} replacement loan(s) created"
    result = _result_from_outcome(plan, outcome, message)
    if outcome.succeeded:
        result.data["returnOutcome"] = outcome.context.get(plan.calls[0].label)
    return result


def switch_items(backend: KeysBackend, rental_object_code: str, key_ids: list[str], card_ids: list[str], **kwargs) -> WorkflowResult:
    return return_items(backend, rental_object_code, key_ids, card_ids, replacement=True, **kwargs)


class DisposalUndo:
    """Short-lived handle that reverses one disposal batch."""

    def __init__(self, backend: KeysBackend, key_ids: list[str], window_seconds: int | None = None, clock: Callable[[], float] = time.monotonic):
        self.backend = backend
        self.key_ids = list(key_ids)
        self.window_seconds = config.DISPOSAL_UNDO_SECONDS if window_seconds is None else window_seconds
        self._clock = clock
        self.expires_at = clock() + self.window_seconds
        self.used = False

    @property
    def expired(self) -> bool:
        return self._clock() > self.expires_at

    def undo(self) -> WorkflowResult:
        if self.used:
            return _validation_failure("Undo disposal", RuleValidationError("This disposal has already been undone"))
        if self.expired:
            return _validation_failure("Undo disposal", RuleValidationError("The undo window has expired"))
        self.used = True
        steps = [
            SagaStep(
                f"restore {key_id}",
                lambda context, key_id=key_id: self.backend.update_key(key_id, {"disposed": False}),
            )
            for key_id in self.key_ids
        ]
        outcome = Saga("Undo disposal", steps).run()
        if outcome.succeeded:
            return WorkflowResult(
                success=True,
                title="Undo disposal",
                message=f"{len(self.key_ids)} key(s) restored",
                data={"restoredKeyIds": list(self.key_ids), "saga": outcome.to_dict()},
            )
        return WorkflowResult(
            success=False,
            title="Undo disposal",
            message=str(outcome.error),
            data={"saga": outcome.to_dict()},
            failed_step=outcome.failed_step,
            status_code=outcome.error.status_code,
        )


@dataclass
class DisposalResult:
    result: WorkflowResult
    undo: DisposalUndo | None = None


def dispose_keys(
    backend: KeysBackend,
    rental_object_code: str,
    key_ids: list[str],
    undo_seconds: int | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> DisposalResult:
    """Dispose keys without touching their loans; the returned handle can undo the batch."""
    try:
        snapshot = load_inventory(backend, rental_object_code)
        plan = plan_disposal(snapshot, key_ids)
    except KeyManagementError as exc:
        return DisposalResult(_validation_failure("Disposal", exc))

    outcome = execute_plan(backend, plan)
    disposed = plan.summary["disposedKeyIds"]
    result = _result_from_outcome(plan, outcome, f"{len(disposed)} key(s) disposed")
    if not outcome.succeeded:
        return DisposalResult(result)
    undo = DisposalUndo(backend, disposed, window_seconds=undo_seconds, clock=clock)
    result.data["undoWindowSeconds"] = undo.window_seconds
    return DisposalResult(result, undo)


def preview_flex(
    backend: KeysBackend,
    rental_object_code: str,
    key_ids: list[str],
    counts: dict[str, int] | None = None,
    baselines: dict[str, int] | None = None,
) -> dict:
    snapshot = load_inventory(backend, rental_object_code)
    groups = evaluate_flex_groups(snapshot, key_ids, counts, baselines)
    return {
        "groups": [group.to_dict() for group in groups],
        "totalKeys": sum(group.count for group in groups if group.generatable),
        "canGenerate": any(group.generatable for group in groups),
    }


def generate_flex_keys(
    backend: KeysBackend,
    rental_object_code: str,
    key_ids: list[str],
    counts: dict[str, int] | None = None,
    baselines: dict[str, int] | None = None,
) -> WorkflowResult:
    try:
        snapshot = load_inventory(backend, rental_object_code)
        plan = plan_flex_generation(snapshot, key_ids, counts, baselines)
    except KeyManagementError as exc:
        return _validation_failure("Flex", exc)

    outcome = execute_plan(backend, plan)
    created = list(outcome.context.get("created_key_ids") or [])
    result = _result_from_outcome(plan, outcome, f"{len(created)} flex key(s) created")
    result.data["createdKeyIds"] = created
    if outcome.skipped_steps:
        LOGGER.warning("Flex keys created without an order event: %s", ",".join(created))
    return result


def order_extra_keys(backend: KeysBackend, rental_object_code: str, key_ids: list[str]) -> WorkflowResult:
    try:
        snapshot = load_inventory(backend, rental_object_code)
        plan = plan_order_extra_keys(snapshot, key_ids)
    except KeyManagementError as exc:
        return _validation_failure("Order", exc)
    outcome = execute_plan(backend, plan)
    return _result_from_outcome(plan, outcome, f"{len(key_ids)} key(s) ordered")


def receive_order_events(backend: KeysBackend, rental_object_code: str, key_ids: list[str] | None = None) -> WorkflowResult:
    try:
        snapshot = load_inventory(backend, rental_object_code)
        plan = plan_receive_orders(snapshot, key_ids)
    except KeyManagementError as exc:
        return _validation_failure("Receive order", exc)
    if plan.is_empty:
        return WorkflowResult(success=True, title=plan.title, message="No incoming keys to receive", data=dict(plan.summary))
    outcome = execute_plan(backend, plan)
    return _result_from_outcome(plan, outcome, f"{len(plan.summary['receivedKeyIds'])} key(s) received")


def receive_flex_keys(
    backend: KeysBackend,
    rental_object_code: str,
    key_ids: list[str] | None = None,
    dispose_key_ids: list[str] | None = None,
) -> WorkflowResult:
    try:
        snapshot = load_inventory(backend, rental_object_code)
        plan = plan_receive_flex(snapshot, key_ids, dispose_key_ids)
    except KeyManagementError as exc:
        return _validation_failure("Receive flex", exc)
    if plan.is_empty:
        return WorkflowResult(success=True, title=plan.title, message="No incoming flex keys to receive", data=dict(plan.summary))

    outcome = execute_plan(backend, plan)
    closed = outcome.context.get(SWEEP_LABEL) or []
    message = (
        f"{len(plan.summary['receivedKeyIds'])} flex key(s) received, "
        f"{len(plan.summary['disposedKeyIds'])} old key(s) disposed"
    )
    if closed:
        message += f", {len(closed)} loan(s) closed"
    result = _result_from_outcome(plan, outcome, message)
    result.data["closedLoanIds"] = list(closed)
    return result


def acknowledge_receipt(backend: KeysBackend, loan_id: str) -> WorkflowResult:
    try:
        loan = backend.activate_loan(loan_id)
    except BackendError as exc:
        return _validation_failure("Activate loan", exc)
    return WorkflowResult(success=True, title="Activate loan", message="Loan activated", data={"loan": loan})


def remove_loan(backend: KeysBackend, loan_id: str) -> WorkflowResult:
    try:
        backend.remove_loan(loan_id)
    except BackendError as exc:
        return _validation_failure("Remove loan", exc)
    return WorkflowResult(success=True, title="Remove loan", message="Loan removed", data={"loanId": loan_id})
