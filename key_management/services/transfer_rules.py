from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

from services.inventory import InventorySnapshot, LoanRecord
from services.loan_rules import plan_open_loan, project_new_loan, reject_disposed_keys, validate_open_request
from services.loan_service import dedupe_ids
from services.plans import ActionPlan, BackendCall


@dataclass
class TransferCandidate:
    loan: LoanRecord
    keys_to_transfer: list[str] = field(default_factory=list)
    disposed_keys: list[str] = field(default_factory=list)
    cards_to_transfer: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "loanId": self.loan.id,
            "contact": self.loan.contact,
            "contact2": self.loan.contact2,
            "keysToTransfer": list(self.keys_to_transfer),
            "disposedKeys": list(self.disposed_keys),
            "cardsToTransfer": list(self.cards_to_transfer),
        }


@dataclass
class TransferDetection:
    candidates: list[TransferCandidate] = field(default_factory=list)

    @property
    def has_existing_loans(self) -> bool:
        return bool(self.candidates)

    @property
    def carried_key_ids(self) -> list[str]:
        return dedupe_ids(key_id for candidate in self.candidates for key_id in candidate.keys_to_transfer)

    @property
    def carried_card_ids(self) -> list[str]:
        return dedupe_ids(card_id for candidate in self.candidates for card_id in candidate.cards_to_transfer)

    @property
    def disposed_key_ids(self) -> list[str]:
        return dedupe_ids(key_id for candidate in self.candidates for key_id in candidate.disposed_keys)

    def to_dict(self) -> dict:
        return {
            "hasExistingLoans": self.has_existing_loans,
            "loans": [candidate.to_dict() for candidate in self.candidates],
            "carriedKeyIds": self.carried_key_ids,
            "carriedCardIds": self.carried_card_ids,
            "disposedKeyIds": self.disposed_key_ids,
        }


def detect_transfer(snapshot: InventorySnapshot, contacts: list[str | None]) -> TransferDetection:
    wanted = {value.strip() for value in contacts if value and value.strip()}
    detection = TransferDetection()
    if not wanted:
        return detection
    for loan in snapshot.open_loans():
        if not loan.contacts & wanted:
            continue
        candidate = TransferCandidate(loan=loan, cards_to_transfer=list(loan.card_ids))
        for key_id in loan.key_ids:
            key = snapshot.keys.get(key_id)
            if key is not None and key.disposed:
                candidate.disposed_keys.append(key_id)
            else:
                candidate.keys_to_transfer.append(key_id)
        detection.candidates.append(candidate)
    return detection


def plan_transfer(
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
    """Open a loan, first closing any open loan the same contacts hold on this object.

    The closed loans' non-disposed keys and all their cards move into the
    new loan together with the requested items.
    """
    key_ids = dedupe_ids(key_ids)
    card_ids = dedupe_ids(card_ids)
    validate_open_request(key_ids, card_ids, contact, loan_type, lease_end_date, today)
    reject_disposed_keys(snapshot, key_ids)

    detection = detect_transfer(snapshot, [contact, contact2])
    if not detection.has_existing_loans:
        return plan_open_loan(
            snapshot,
            key_ids,
            card_ids,
            contact,
            contact2=contact2,
            loan_type=loan_type,
            lease_end_date=lease_end_date,
            created_by=created_by,
            today=today,
        )

    carried_keys = detection.carried_key_ids
    carried_cards = detection.carried_card_ids
    returned_keys = dedupe_ids(key_id for candidate in detection.candidates for key_id in candidate.loan.key_ids)
    returned_cards = dedupe_ids(card_id for candidate in detection.candidates for card_id in candidate.loan.card_ids)
    new_keys = dedupe_ids(carried_keys + key_ids)
    new_cards = dedupe_ids(carried_cards + card_ids)
    added_count = len([key_id for key_id in key_ids if key_id not in carried_keys]) + len(
        [card_id for card_id in card_ids if card_id not in carried_cards]
    )
    transferred_count = len(carried_keys) + len(carried_cards)

    calls = [
        BackendCall(
            "return_loan",
            {
                "key_ids": returned_keys,
                "card_ids": returned_cards,
                "available_from": None,
                "selected_for_receipt": carried_keys,
                "selected_cards_for_receipt": carried_cards,
                "comment": "Transferred to a new loan",
            },
            label="return existing loans",
        ),
        BackendCall(
            "create_loan",
            {
                "key_ids": new_keys,
                "card_ids": new_cards,
                "contact": (contact or "").strip(),
                "contact2": (contact2 or "").strip() or None,
                "loan_type": loan_type,
                "created_by": created_by,
            },
            label="create transferred loan",
        ),
    ]

    now = datetime.now()
    projected = snapshot.clone()
    for candidate in detection.candidates:
        record = projected.loans[candidate.loan.id]
        record.returned_at = now
        record.available_from = now
    project_new_loan(projected, new_keys, new_cards, contact, contact2, loan_type, now)

    return ActionPlan(
        title="Transfer",
        calls=calls,
        projected=projected,
        summary={
            "transfer": detection.to_dict(),
            "keyIds": new_keys,
            "cardIds": new_cards,
            "itemCount": len(new_keys) + len(new_cards),
            "newCount": added_count,
            "transferredCount": transferred_count,
            "message": f"{len(new_keys) + len(new_cards)} total ({added_count} new + {transferred_count} transferred)",
        },
    )
