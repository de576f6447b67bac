from __future__ import annotations

from datetime import date, datetime

from services.errors import RuleValidationError
from services.inventory import InventorySnapshot, LoanRecord
from services.loan_service import LOAN_TYPES, dedupe_ids
from services.plans import ActionPlan, BackendCall

PENDING_LOAN_PREFIX = "pending-loan-"


def validate_open_request(
    key_ids: list[str],
    card_ids: list[str],
    contact: str | None,
    loan_type: str = "TENANT",
    lease_end_date: date | None = None,
    today: date | None = None,
) -> None:
    if not key_ids and not card_ids:
        raise RuleValidationError("No keys or cards selected")
    if not (contact or "").strip():
        raise RuleValidationError("A primary contact is required")
    if loan_type not in LOAN_TYPES:
        raise RuleValidationError(f"Unknown loan type: {loan_type}")
    today = today or date.today()
    if lease_end_date is not None and lease_end_date < today:
        raise RuleValidationError(f"The lease ended on {lease_end_date.isoformat()}, keys cannot be loaned")


def reject_disposed_keys(snapshot: InventorySnapshot, key_ids: list[str]) -> None:
    disposed = [key_id for key_id in key_ids if key_id in snapshot.keys and snapshot.keys[key_id].disposed]
    if disposed:
        raise RuleValidationError(f"Disposed keys cannot be loaned: {', '.join(disposed)}")


def project_new_loan(
    projected: InventorySnapshot,
    key_ids: list[str],
    card_ids: list[str],
    contact: str | None,
    contact2: str | None,
    loan_type: str,
    now: datetime,
) -> LoanRecord:
    pending_id = f"{PENDING_LOAN_PREFIX}{sum(1 for loan_id in projected.loans if loan_id.startswith(PENDING_LOAN_PREFIX)) + 1}"
    loan = LoanRecord(
        id=pending_id,
        contact=(contact or "").strip() or None,
        contact2=(contact2 or "").strip() or None,
        loan_type=loan_type,
        key_ids=list(key_ids),
        card_ids=list(card_ids),
        created_at=now,
    )
    projected.loans[loan.id] = loan
    return loan


def _is_active_key(snapshot: InventorySnapshot, key_id: str) -> bool:
    key = snapshot.keys.get(key_id)
    return key is not None and not key.disposed


def plan_open_loan(
    snapshot: InventorySnapshot,
    key_ids: list[str],
    card_ids: list[str],
    contact: str | None,
    contact2: str | None = None,
    loan_type: str = "TENANT",
    lease_end_date: date | None = None,
    created_by: str | None = None,
    today: date | None = None,
) -> ActionPlan:
    """Plan a single loan for the selected items.

    Whether an item is already loaned is decided by the backend alone; the
    plan only refuses requests that can never succeed.
    """
    key_ids = dedupe_ids(key_ids)
    card_ids = dedupe_ids(card_ids)
    validate_open_request(key_ids, card_ids, contact, loan_type, lease_end_date, today)
    reject_disposed_keys(snapshot, key_ids)

    projected = snapshot.clone()
    project_new_loan(projected, key_ids, card_ids, contact, contact2, loan_type, datetime.now())
    call = BackendCall(
        "create_loan",
        {
            "key_ids": key_ids,
            "card_ids": card_ids,
            "contact": (contact or "").strip(),
            "contact2": (contact2 or "").strip() or None,
            "loan_type": loan_type,
            "created_by": created_by,
        },
        label="create loan",
    )
    return ActionPlan(
        title="Loan",
        calls=[call],
        projected=projected,
        summary={"keyIds": key_ids, "cardIds": card_ids, "itemCount": len(key_ids) + len(card_ids)},
    )


def loans_touched_by(snapshot: InventorySnapshot, key_ids: list[str], card_ids: list[str]) -> list[LoanRecord]:
    loans: dict[str, LoanRecord] = {}
    unloaned = []
    for key_id in key_ids:
        loan = snapshot.open_loan_for_key(key_id)
        if loan is None:
            unloaned.append(key_id)
            continue
        loans[loan.id] = loan
    for card_id in card_ids:
        loan = snapshot.open_loan_for_card(card_id)
        if loan is None:
            unloaned.append(card_id)
            continue
        loans[loan.id] = loan
    if unloaned:
        raise RuleValidationError(f"No active loan found for: {', '.join(unloaned)}")
    return list(loans.values())


def plan_return(
    snapshot: InventorySnapshot,
    key_ids: list[str],
    card_ids: list[str],
    selected_for_receipt: list[str] | None = None,
    selected_cards_for_receipt: list[str] | None = None,
    available_from: datetime | None = None,
    comment: str | None = None,
    replacement: bool = False,
) -> ActionPlan:
    """Return whole loans touched by the request.

    Items of a touched loan that were not handed back are still returned
    with the loan but recorded as missing on the receipt. With
    ``replacement`` each returned loan is followed by a new loan for the
    same contacts holding only the items confirmed present.
    """
    key_ids = dedupe_ids(key_ids)
    card_ids = dedupe_ids(card_ids)
    if not key_ids and not card_ids:
        raise RuleValidationError("No keys or cards selected")

    loans = loans_touched_by(snapshot, key_ids, card_ids)
    all_keys = dedupe_ids(key_id for loan in loans for key_id in loan.key_ids)
    all_cards = dedupe_ids(card_id for loan in loans for card_id in loan.card_ids)

    if selected_for_receipt is None:
        selected_keys = [key_id for key_id in key_ids if _is_active_key(snapshot, key_id)]
    else:
        selected_keys = [key_id for key_id in dedupe_ids(selected_for_receipt) if key_id in all_keys]
    if selected_cards_for_receipt is None:
        selected_cards = list(card_ids)
    else:
        selected_cards = [card_id for card_id in dedupe_ids(selected_cards_for_receipt) if card_id in all_cards]
    missing_keys = [key_id for key_id in all_keys if key_id not in selected_keys]
    missing_cards = [card_id for card_id in all_cards if card_id not in selected_cards]

    calls = [
        BackendCall(
            "return_loan",
            {
                "key_ids": all_keys,
                "card_ids": all_cards,
                "available_from": available_from,
                "selected_for_receipt": selected_keys,
                "selected_cards_for_receipt": selected_cards,
                "comment": comment,
            },
            label="return loan",
        )
    ]

    now = datetime.now()
    projected = snapshot.clone()
    for loan in loans:
        record = projected.loans[loan.id]
        record.returned_at = now
        record.available_from = available_from or now

    replacements = []
    if replacement:
        for loan in loans:
            present_keys = [key_id for key_id in loan.key_ids if key_id in selected_keys and _is_active_key(snapshot, key_id)]
            present_cards = [card_id for card_id in loan.card_ids if card_id in selected_cards]
            if not present_keys and not present_cards:
                continue
            calls.append(
                BackendCall(
                    "create_loan",
                    {
                        "key_ids": present_keys,
                        "card_ids": present_cards,
                        "contact": loan.contact,
                        "contact2": loan.contact2,
                        "loan_type": loan.loan_type,
                        "created_by": None,
                    },
                    label=f"create replacement loan for {loan.id}",
                )
            )
            project_new_loan(projected, present_keys, present_cards, loan.contact, loan.contact2, loan.loan_type, now)
            replacements.append({"replacesLoanId": loan.id, "keyIds": present_keys, "cardIds": present_cards})

    return ActionPlan(
        title="Replacement" if replacement else "Return",
        calls=calls,
        projected=projected,
        summary={
            "returnedLoanIds": [loan.id for loan in loans],
            "returnedKeyIds": selected_keys,
            "returnedCardIds": selected_cards,
            "missingKeyIds": missing_keys,
            "missingCardIds": missing_cards,
            "replacementLoans": replacements,
        },
    )


def plan_disposal(snapshot: InventorySnapshot, key_ids: list[str]) -> ActionPlan:
    key_ids = dedupe_ids(key_ids)
    if not key_ids:
        raise RuleValidationError("No keys selected")
    unknown = [key_id for key_id in key_ids if key_id not in snapshot.keys]
    if unknown:
        raise RuleValidationError(f"Unknown keys: {', '.join(unknown)}")
    targets = [key_id for key_id in key_ids if not snapshot.keys[key_id].disposed]
    if not targets:
        raise RuleValidationError("The selected keys are already disposed")

    projected = snapshot.clone()
    for key_id in targets:
        projected.keys[key_id].disposed = True
    calls = [
        BackendCall("update_key", {"key_id": key_id, "attributes": {"disposed": True}}, label=f"dispose {key_id}")
        for key_id in targets
    ]
    skipped = [key_id for key_id in key_ids if key_id not in targets]
    return ActionPlan(
        title="Disposal",
        calls=calls,
        projected=projected,
        summary={"disposedKeyIds": targets, "alreadyDisposedKeyIds": skipped},
    )
