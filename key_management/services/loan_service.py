from __future__ import annotations

from datetime import datetime
import json
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models.key_models import Card, Key, KeyLoan, Receipt
from services.audit_service import log_audit
from services.errors import (
    ActiveLoanDeleteError,
    BackendError,
    LoanConflictError,
    NotFoundError,
    PartialReturnError,
)
from services.event_service import complete_events_for_keys
from services.key_service import serialize_card, serialize_key

LOAN_TYPES = {"TENANT", "MAINTENANCE"}

LOGGER = logging.getLogger("key_management.loans")


def dedupe_ids(values) -> list[str]:
    return list(dict.fromkeys(value for value in (values or []) if value))


def _loan_query():
    return select(KeyLoan).options(
        selectinload(KeyLoan.Keys),
        selectinload(KeyLoan.Cards).selectinload(Card.Codes),
    )


def serialize_loan(loan: KeyLoan, include_items: bool = True) -> dict:
    data = {
        "id": loan.KeyLoanID,
        "contact": loan.Contact,
        "contact2": loan.Contact2,
        "loanType": loan.LoanType,
        "rentalObjectCode": loan.RentalObjectCode,
        "createdAt": loan.CreatedAt,
        "pickedUpAt": loan.PickedUpAt,
        "returnedAt": loan.ReturnedAt,
        "availableToNextTenantFrom": loan.AvailableToNextTenantFrom,
        "comment": loan.Comment,
        "createdBy": loan.CreatedBy,
        "keyIds": [key.KeyID for key in loan.Keys],
        "cardIds": [card.CardID for card in loan.Cards],
    }
    if include_items:
        data["keysArray"] = [serialize_key(key) for key in loan.Keys]
        data["cardsArray"] = [serialize_card(card) for card in loan.Cards]
    return data


def _build_receipt_payload(returned_keys, returned_cards, missing_keys, missing_cards) -> str:
    return json.dumps(
        {
            "returnedKeyIds": list(returned_keys),
            "returnedCardIds": list(returned_cards),
            "missingKeyIds": list(missing_keys),
            "missingCardIds": list(missing_cards),
        }
    )


def parse_receipt_payload(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def serialize_receipt(receipt: Receipt) -> dict:
    return {
        "id": receipt.ReceiptID,
        "keyLoanId": receipt.KeyLoanID,
        "receiptType": receipt.ReceiptType,
        "type": receipt.Type,
        "items": parse_receipt_payload(receipt.Items),
        "createdAt": receipt.CreatedAt,
    }


def _create_receipt(db: Session, loan_id: str, receipt_type: str, items_payload: str, user_id: str | None) -> str | None:
    """Receipts are supplementary: a failure is logged and never undoes the loan change."""
    try:
        receipt = Receipt(KeyLoanID=loan_id, ReceiptType=receipt_type, Type="PHYSICAL", Items=items_payload, CreatedAt=datetime.now())
        db.add(receipt)
        db.flush()
        log_audit(db, "Receipt", receipt.ReceiptID, "Create", f"{receipt_type} receipt for loan {loan_id}", user_id)
        db.commit()
        return receipt.ReceiptID
    except SQLAlchemyError as exc:
        db.rollback()
        LOGGER.warning("Could not create %s receipt for loan %s: %s", receipt_type, loan_id, exc)
        return None


def get_loan_model(db: Session, loan_id: str) -> KeyLoan:
    loan = db.execute(_loan_query().where(KeyLoan.KeyLoanID == loan_id)).scalars().first()
    if not loan:
        raise NotFoundError(f"Key loan {loan_id} not found")
    return loan


def get_loan(db: Session, loan_id: str, include_cards: bool = True) -> dict:
    data = serialize_loan(get_loan_model(db, loan_id))
    if not include_cards:
        data.pop("cardsArray", None)
    return data


def list_receipts_for_loan(db: Session, loan_id: str) -> list[dict]:
    loan = get_loan_model(db, loan_id)
    receipts = sorted(loan.Receipts, key=lambda receipt: receipt.CreatedAt or datetime.min)
    return [serialize_receipt(receipt) for receipt in receipts]


def list_loans_for_rental_object(db: Session, rental_object_code: str, open_only: bool = False) -> list[dict]:
    stmt = _loan_query().where(KeyLoan.RentalObjectCode == rental_object_code)
    if open_only:
        stmt = stmt.where(KeyLoan.ReturnedAt.is_(None))
    loans = db.execute(stmt.order_by(KeyLoan.CreatedAt)).scalars().all()
    return [serialize_loan(loan) for loan in loans]


def list_loans_for_key(db: Session, key_id: str) -> list[dict]:
    stmt = _loan_query().join(KeyLoan.Keys).where(Key.KeyID == key_id).order_by(KeyLoan.CreatedAt)
    return [serialize_loan(loan, include_items=False) for loan in db.execute(stmt).scalars().unique().all()]


def list_loans_for_card(db: Session, card_id: str) -> list[dict]:
    stmt = _loan_query().join(KeyLoan.Cards).where(Card.CardID == card_id).order_by(KeyLoan.CreatedAt)
    return [serialize_loan(loan, include_items=False) for loan in db.execute(stmt).scalars().unique().all()]


def _open_loans_for_items(db: Session, key_ids: list[str], card_ids: list[str]) -> list[KeyLoan]:
    loans: dict[str, KeyLoan] = {}
    if key_ids:
        stmt = _loan_query().join(KeyLoan.Keys).where(Key.KeyID.in_(key_ids), KeyLoan.ReturnedAt.is_(None))
        for loan in db.execute(stmt).scalars().unique().all():
            loans[loan.KeyLoanID] = loan
    if card_ids:
        stmt = _loan_query().join(KeyLoan.Cards).where(Card.CardID.in_(card_ids), KeyLoan.ReturnedAt.is_(None))
        for loan in db.execute(stmt).scalars().unique().all():
            loans[loan.KeyLoanID] = loan
    return list(loans.values())


def find_loan_conflicts(db: Session, key_ids: list[str], card_ids: list[str]) -> tuple[list[str], list[str]]:
    wanted_keys = set(key_ids or [])
    wanted_cards = set(card_ids or [])
    conflicting_keys: set[str] = set()
    conflicting_cards: set[str] = set()
    for loan in _open_loans_for_items(db, list(wanted_keys), list(wanted_cards)):
        conflicting_keys.update(key.KeyID for key in loan.Keys if key.KeyID in wanted_keys)
        conflicting_cards.update(card.CardID for card in loan.Cards if card.CardID in wanted_cards)
    return sorted(conflicting_keys), sorted(conflicting_cards)


def open_loan(
    db: Session,
    key_ids: list[str],
    card_ids: list[str],
    contact: str | None,
    contact2: str | None = None,
    loan_type: str = "TENANT",
    created_by: str | None = None,
) -> dict:
    key_ids = dedupe_ids(key_ids)
    card_ids = dedupe_ids(card_ids)
    if not key_ids and not card_ids:
        raise BackendError("No keys or cards selected")
    if loan_type not in LOAN_TYPES:
        raise BackendError(f"Unknown loan type: {loan_type}")

    keys = db.execute(select(Key).where(Key.KeyID.in_(key_ids))).scalars().all() if key_ids else []
    cards = db.execute(select(Card).where(Card.CardID.in_(card_ids))).scalars().all() if card_ids else []
    found_keys = {key.KeyID for key in keys}
    found_cards = {card.CardID for card in cards}
    missing = [item for item in key_ids if item not in found_keys] + [item for item in card_ids if item not in found_cards]
    if missing:
        raise NotFoundError(f"Items not found: {', '.join(missing)}")

    disposed = [key.KeyID for key in keys if key.Disposed]
    if disposed:
        raise BackendError(f"Disposed keys cannot be loaned: {', '.join(disposed)}")

    conflicting_keys, conflicting_cards = find_loan_conflicts(db, key_ids, card_ids)
    if conflicting_keys or conflicting_cards:
        LOGGER.warning(
            "Loan rejected, items already loaned: keys=%s cards=%s",
            ",".join(conflicting_keys),
            ",".join(conflicting_cards),
        )
        raise LoanConflictError(
            "One or more keys are already on an open loan.",
            key_ids=conflicting_keys,
            card_ids=conflicting_cards,
        )

    ordered_keys = sorted(keys, key=lambda key: key_ids.index(key.KeyID))
    ordered_cards = sorted(cards, key=lambda card: card_ids.index(card.CardID))
    sample = ordered_keys[0] if ordered_keys else ordered_cards[0]
    now = datetime.now()
    loan = KeyLoan(
        Contact=(contact or "").strip() or None,
        Contact2=(contact2 or "").strip() or None,
        LoanType=loan_type,
        RentalObjectCode=sample.RentalObjectCode,
        CreatedAt=now,
        UpdatedAt=now,
        CreatedBy=created_by,
    )
    loan.Keys = ordered_keys
    loan.Cards = ordered_cards
    db.add(loan)
    db.flush()
    log_audit(db, "KeyLoan", loan.KeyLoanID, "Create", f"{len(keys)} key(s), {len(cards)} card(s) to {loan.Contact}", created_by)
    db.commit()
    LOGGER.info("Opened loan %s with %s key(s) and %s card(s)", loan.KeyLoanID, len(keys), len(cards))

    receipt_id = _create_receipt(
        db,
        loan.KeyLoanID,
        "LOAN",
        _build_receipt_payload(key_ids, card_ids, [], []),
        created_by,
    )
    return {"loan": serialize_loan(loan), "receiptId": receipt_id}


def return_loans(
    db: Session,
    key_ids: list[str],
    card_ids: list[str],
    available_from: datetime | None = None,
    selected_for_receipt: list[str] | None = None,
    selected_cards_for_receipt: list[str] | None = None,
    comment: str | None = None,
    user_id: str | None = None,
) -> dict:
    key_ids = dedupe_ids(key_ids)
    card_ids = dedupe_ids(card_ids)
    if not key_ids and not card_ids:
        raise BackendError("No keys or cards selected")

    loans = _open_loans_for_items(db, key_ids, card_ids)
    if not loans:
        raise BackendError("No active loan found for the selected items")

    requested_keys = set(key_ids)
    requested_cards = set(card_ids)
    for loan in loans:
        missing = [key.KeyID for key in loan.Keys if key.KeyID not in requested_keys]
        missing += [card.CardID for card in loan.Cards if card.CardID not in requested_cards]
        if missing:
            raise PartialReturnError(
                f"All items from the same loan must be returned together. {len(missing)} item(s) missing."
            )

    now = datetime.now()
    for loan in loans:
        loan.ReturnedAt = now
        loan.AvailableToNextTenantFrom = available_from or now
        loan.UpdatedAt = now
        if comment:
            loan.Comment = comment
        log_audit(db, "KeyLoan", loan.KeyLoanID, "Return", comment, user_id)
    db.commit()

    selected_keys = None if selected_for_receipt is None else set(selected_for_receipt)
    selected_cards = None if selected_cards_for_receipt is None else set(selected_cards_for_receipt)
    receipt_ids = []
    missing_keys: list[str] = []
    missing_cards: list[str] = []
    for loan in loans:
        loan_keys = [key.KeyID for key in loan.Keys]
        loan_cards = [card.CardID for card in loan.Cards]
        returned_keys = loan_keys if selected_keys is None else [k for k in loan_keys if k in selected_keys]
        returned_cards = loan_cards if selected_cards is None else [c for c in loan_cards if c in selected_cards]
        loan_missing_keys = [k for k in loan_keys if k not in returned_keys]
        loan_missing_cards = [c for c in loan_cards if c not in returned_cards]
        missing_keys.extend(loan_missing_keys)
        missing_cards.extend(loan_missing_cards)
        receipt_id = _create_receipt(
            db,
            loan.KeyLoanID,
            "RETURN",
            _build_receipt_payload(returned_keys, returned_cards, loan_missing_keys, loan_missing_cards),
            user_id,
        )
        if receipt_id:
            receipt_ids.append(receipt_id)

    LOGGER.info("Returned %s loan(s), %s key(s) reported missing", len(loans), len(missing_keys))
    return {
        "returnedLoanIds": [loan.KeyLoanID for loan in loans],
        "receiptIds": receipt_ids,
        "missingKeyIds": missing_keys,
        "missingCardIds": missing_cards,
    }


def mark_loan_returned(db: Session, loan_id: str, user_id: str | None = None) -> dict:
    loan = get_loan_model(db, loan_id)
    if loan.ReturnedAt is None:
        now = datetime.now()
        loan.ReturnedAt = now
        loan.UpdatedAt = now
        if loan.AvailableToNextTenantFrom is None:
            loan.AvailableToNextTenantFrom = now
        log_audit(db, "KeyLoan", loan.KeyLoanID, "MarkReturned", None, user_id)
        db.commit()
        LOGGER.info("Loan %s marked returned", loan.KeyLoanID)
    return serialize_loan(loan)


def activate_loan(db: Session, loan_id: str, user_id: str | None = None) -> dict:
    loan = get_loan_model(db, loan_id)
    if loan.ReturnedAt is not None:
        raise BackendError("Returned loan cannot be activated")
    if loan.PickedUpAt is None:
        now = datetime.now()
        loan.PickedUpAt = now
        loan.UpdatedAt = now
        completed = complete_events_for_keys(db, [key.KeyID for key in loan.Keys], user_id)
        log_audit(db, "KeyLoan", loan.KeyLoanID, "Activate", f"{completed} event(s) completed", user_id)
        db.commit()
        LOGGER.info("Loan %s activated, %s event(s) completed", loan.KeyLoanID, completed)
    return serialize_loan(loan)


def remove_loan(db: Session, loan_id: str, user_id: str | None = None) -> None:
    loan = get_loan_model(db, loan_id)
    if loan.ReturnedAt is None and loan.PickedUpAt is not None:
        LOGGER.warning("Refusing to delete active loan %s", loan_id)
        raise ActiveLoanDeleteError()
    db.delete(loan)
    log_audit(db, "KeyLoan", loan_id, "Delete", None, user_id)
    db.commit()
