import logging
import threading
import uuid

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from dotenv import load_dotenv

load_dotenv()

import config
from db.deps import get_keys_db
from db.session import create_schema
from schemas.events import KeyEventOrderDto, LatestEventsRequest, UpdateKeyEventDto
from schemas.keys import BulkUpdateKeysDto, CreateCardDto, CreateKeyDto, CreateKeySystemDto, UpdateKeyDto
from schemas.loans import CreateKeyLoanDto, ReturnKeyLoanDto
from schemas.workflows import (
    DisposeKeysRequest,
    FlexRequest,
    OpenLoanRequest,
    OrderKeysRequest,
    ReceiveRequest,
    ReturnItemsRequest,
    TransferPreviewRequest,
    UndoDisposalRequest,
)
from services import event_service, key_service, loan_service, workflows
from services.errors import BackendError, KeyManagementError, LoanConflictError
from services.keys_backend import SessionKeysBackend

LOGGER = logging.getLogger("key_management.api")

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

if config.CREATE_SCHEMA_ON_STARTUP:
    create_schema()

_UNDO_LOCK = threading.Lock()
_DISPOSAL_UNDO_HANDLES: dict[str, workflows.DisposalUndo] = {}


def get_keys_backend(
    db: Session = Depends(get_keys_db),
    x_user_id: str | None = Header(None, alias="X-User-Id"),
) -> SessionKeysBackend:
    return SessionKeysBackend(db, user_id=(x_user_id or "").strip() or None)


def _raise_http(exc: KeyManagementError):
    if isinstance(exc, LoanConflictError):
        raise HTTPException(
            status_code=409,
            detail={"message": str(exc), "keyIds": exc.key_ids, "cardIds": exc.card_ids},
        ) from exc
    raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


def _workflow_response(result: workflows.WorkflowResult) -> dict:
    if not result.success:
        raise HTTPException(status_code=result.status_code, detail=jsonable_encoder(result.to_dict()))
    return result.to_dict()


@app.get("/healthz")
@app.get("/api/healthz")
def healthz(db: Session = Depends(get_keys_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        LOGGER.warning("Health check failed: %s", exc)
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"status": "ok"}


# Key systems

@app.get("/api/key-systems")
def list_key_systems(db: Session = Depends(get_keys_db)):
    return key_service.list_key_systems(db)


@app.post("/api/key-systems")
def create_key_system(payload: CreateKeySystemDto, db: Session = Depends(get_keys_db), x_user_id: str | None = Header(None, alias="X-User-Id")):
    try:
        return key_service.create_key_system(db, payload.model_dump(), x_user_id)
    except BackendError as exc:
        _raise_http(exc)


# Keys

@app.get("/api/keys/by-rental-object/{rental_object_code}")
def list_keys(
    rental_object_code: str,
    includeLoans: bool = Query(False),
    includeEvents: bool = Query(False),
    includeKeySystem: bool = Query(False),
    backend: SessionKeysBackend = Depends(get_keys_backend),
):
    return backend.list_keys(
        rental_object_code,
        include_loans=includeLoans,
        include_events=includeEvents,
        include_key_system=includeKeySystem,
    )


@app.get("/api/keys/{key_id}")
def get_key(key_id: str, db: Session = Depends(get_keys_db)):
    try:
        key = key_service.get_key_or_404(db, key_id)
    except BackendError as exc:
        _raise_http(exc)
    return key_service.serialize_key(key, include_loans=True, include_events=True, include_key_system=True)


@app.post("/api/keys")
def create_key(payload: CreateKeyDto, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.create_key(payload.model_dump())
    except BackendError as exc:
        _raise_http(exc)


@app.patch("/api/keys/bulk-update")
def bulk_update_keys(payload: BulkUpdateKeysDto, db: Session = Depends(get_keys_db), x_user_id: str | None = Header(None, alias="X-User-Id")):
    updates = payload.updates.model_dump(exclude_unset=True)
    if not payload.keyIds or not updates:
        raise HTTPException(status_code=400, detail="keyIds and updates are required")
    try:
        return key_service.bulk_update_keys(db, payload.keyIds, updates, x_user_id)
    except BackendError as exc:
        _raise_http(exc)


@app.patch("/api/keys/{key_id}")
def update_key(key_id: str, payload: UpdateKeyDto, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.update_key(key_id, payload.model_dump(exclude_unset=True))
    except BackendError as exc:
        _raise_http(exc)


# Cards

@app.get("/api/cards/by-rental-object/{rental_object_code}")
def list_cards(rental_object_code: str, includeLoans: bool = Query(False), backend: SessionKeysBackend = Depends(get_keys_backend)):
    return backend.list_cards(rental_object_code, include_loans=includeLoans)


@app.post("/api/cards")
def create_card(payload: CreateCardDto, db: Session = Depends(get_keys_db), x_user_id: str | None = Header(None, alias="X-User-Id")):
    return key_service.create_card(db, payload.model_dump(), x_user_id)


# Key loans

@app.get("/api/key-loans/by-rental-object/{rental_object_code}")
def list_loans(rental_object_code: str, openOnly: bool = Query(False), backend: SessionKeysBackend = Depends(get_keys_backend)):
    return backend.list_loans(rental_object_code, open_only=openOnly)


@app.get("/api/key-loans/by-key/{key_id}")
def list_loans_for_key(key_id: str, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return backend.get_loans_for_key(key_id)


@app.get("/api/key-loans/by-card/{card_id}")
def list_loans_for_card(card_id: str, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return backend.get_loans_for_card(card_id)


@app.get("/api/key-loans/{loan_id}")
def get_loan(loan_id: str, includeCards: bool = Query(True), backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.get_loan(loan_id, include_cards=includeCards)
    except BackendError as exc:
        _raise_http(exc)


@app.get("/api/key-loans/{loan_id}/receipts")
def list_loan_receipts(loan_id: str, db: Session = Depends(get_keys_db)):
    try:
        return loan_service.list_receipts_for_loan(db, loan_id)
    except BackendError as exc:
        _raise_http(exc)


@app.post("/api/key-loans")
def create_loan(payload: CreateKeyLoanDto, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.create_loan(
            payload.keys,
            payload.cards,
            payload.contact,
            contact2=payload.contact2,
            loan_type=payload.loanType,
            created_by=payload.createdBy,
        )
    except BackendError as exc:
        _raise_http(exc)


@app.post("/api/key-loans/return")
def return_loan(payload: ReturnKeyLoanDto, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.return_loan(
            payload.keyIds,
            payload.cardIds,
            available_from=payload.availableToNextTenantFrom,
            selected_for_receipt=payload.selectedForReceipt,
            selected_cards_for_receipt=payload.selectedCardsForReceipt,
            comment=payload.comment,
        )
    except BackendError as exc:
        _raise_http(exc)


@app.post("/api/key-loans/{loan_id}/mark-returned")
def mark_loan_returned(loan_id: str, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.mark_loan_returned(loan_id)
    except BackendError as exc:
        _raise_http(exc)


@app.post("/api/key-loans/{loan_id}/activate")
def activate_loan(loan_id: str, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return _workflow_response(workflows.acknowledge_receipt(backend, loan_id))


@app.delete("/api/key-loans/{loan_id}")
def delete_loan(loan_id: str, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return _workflow_response(workflows.remove_loan(backend, loan_id))


# Key events

@app.post("/api/key-events/order")
def create_order_event(payload: KeyEventOrderDto, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.create_extra_key_order_event(payload.keyIds)
    except BackendError as exc:
        _raise_http(exc)


@app.post("/api/key-events/flex-order")
def create_flex_order_event(payload: KeyEventOrderDto, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.create_flex_order_event(payload.keyIds)
    except BackendError as exc:
        _raise_http(exc)


@app.patch("/api/key-events/{event_id}")
def update_event(event_id: str, payload: UpdateKeyEventDto, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return backend.update_event_status(event_id, payload.status)
    except BackendError as exc:
        _raise_http(exc)


@app.post("/api/key-events/latest")
def latest_events(payload: LatestEventsRequest, db: Session = Depends(get_keys_db)):
    return event_service.get_latest_events_for_keys(db, payload.keyIds)


# Workflows

@app.post("/api/workflows/loans")
def open_loan_workflow(payload: OpenLoanRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return _workflow_response(
        workflows.open_loan(
            backend,
            payload.rentalObjectCode,
            payload.keyIds,
            payload.cardIds,
            payload.contact,
            contact2=payload.contact2,
            loan_type=payload.loanType,
            lease_end_date=payload.leaseEndDate,
            created_by=payload.createdBy or backend.user_id,
        )
    )


@app.post("/api/workflows/loans/transfer-preview")
def transfer_preview(payload: TransferPreviewRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return workflows.preview_transfer(backend, payload.rentalObjectCode, payload.contacts)


@app.get("/api/workflows/keys/overview/{rental_object_code}")
def key_overview(
    rental_object_code: str,
    tenantContacts: list[str] | None = Query(None),
    backend: SessionKeysBackend = Depends(get_keys_backend),
):
    return workflows.key_overview(backend, rental_object_code, tenantContacts)


@app.post("/api/workflows/returns")
def return_workflow(payload: ReturnItemsRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return _workflow_response(
        workflows.return_items(
            backend,
            payload.rentalObjectCode,
            payload.keyIds,
            payload.cardIds,
            selected_for_receipt=payload.selectedForReceipt,
            selected_cards_for_receipt=payload.selectedCardsForReceipt,
            available_from=payload.availableToNextTenantFrom,
            comment=payload.comment,
            replacement=payload.replacement,
        )
    )


@app.post("/api/workflows/keys/dispose")
def dispose_workflow(payload: DisposeKeysRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    disposal = workflows.dispose_keys(backend, payload.rentalObjectCode, payload.keyIds)
    response = _workflow_response(disposal.result)
    if disposal.undo is not None:
        token = uuid.uuid4().hex
        with _UNDO_LOCK:
            for stale in [key for key, handle in _DISPOSAL_UNDO_HANDLES.items() if handle.expired or handle.used]:
                _DISPOSAL_UNDO_HANDLES.pop(stale, None)
            _DISPOSAL_UNDO_HANDLES[token] = disposal.undo
        response["undoToken"] = token
    return response


@app.post("/api/workflows/keys/undo-dispose")
def undo_dispose_workflow(payload: UndoDisposalRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    with _UNDO_LOCK:
        handle = _DISPOSAL_UNDO_HANDLES.pop(payload.undoToken, None)
    if handle is None:
        raise HTTPException(status_code=404, detail="Undo token not found")
    # The handle outlives the request that created it.
    handle.backend = backend
    return _workflow_response(handle.undo())


@app.post("/api/workflows/flex/preview")
def flex_preview(payload: FlexRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    try:
        return workflows.preview_flex(backend, payload.rentalObjectCode, payload.keyIds, payload.counts, payload.baselines)
    except KeyManagementError as exc:
        _raise_http(exc)


@app.post("/api/workflows/flex")
def flex_workflow(payload: FlexRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return _workflow_response(
        workflows.generate_flex_keys(backend, payload.rentalObjectCode, payload.keyIds, payload.counts, payload.baselines)
    )


@app.post("/api/workflows/orders")
def order_workflow(payload: OrderKeysRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return _workflow_response(workflows.order_extra_keys(backend, payload.rentalObjectCode, payload.keyIds))


@app.post("/api/workflows/orders/receive")
def receive_orders_workflow(payload: ReceiveRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return _workflow_response(workflows.receive_order_events(backend, payload.rentalObjectCode, payload.keyIds))


@app.post("/api/workflows/flex/receive")
def receive_flex_workflow(payload: ReceiveRequest, backend: SessionKeysBackend = Depends(get_keys_backend)):
    return _workflow_response(
        workflows.receive_flex_keys(backend, payload.rentalObjectCode, payload.keyIds, payload.disposeKeyIds)
    )
