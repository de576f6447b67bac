import copy
import itertools
from datetime import datetime, timedelta

from services.errors import (
    ActiveLoanDeleteError,
    BackendError,
    LoanConflictError,
    NotFoundError,
    PartialReturnError,
)
from services.keys_backend import KeysBackend

BASE_TIME = datetime(2026, 3, 1, 9, 0, 0)


class FakeKeysBackend(KeysBackend):
    """Dict-backed keys backend with the same preconditions as the real one."""

    def __init__(self):
        self.keys = {}
        self.cards = {}
        self.loans = {}
        self.events = {}
        self.calls = []
        self.failures = {}
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)

    # helpers

    def _now(self):
        return BASE_TIME + timedelta(minutes=next(self._ticks))

    def _record(self, operation, *args):
        self.calls.append((operation,) + args)
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    def add_key(self, key_id, key_name="LGH-1", key_type="LGH", sequence=1, flex=1, disposed=False, rental_object_code="R-100", key_system_id=None):
        self.keys[key_id] = {
            "id": key_id,
            "keyName": key_name,
            "keyType": key_type,
            "keySequenceNumber": sequence,
            "flexNumber": flex,
            "disposed": disposed,
            "rentalObjectCode": rental_object_code,
            "keySystemId": key_system_id,
        }
        return self.keys[key_id]

    def add_card(self, card_id, name="Card", rental_object_code="R-100"):
        self.cards[card_id] = {
            "id": card_id,
            "name": name,
            "rentalObjectCode": rental_object_code,
            "disabled": False,
            "owner": None,
            "codes": [],
        }
        return self.cards[card_id]

    def add_loan(self, loan_id, key_ids=(), card_ids=(), contact="C-1", contact2=None, picked_up=True, returned=False, rental_object_code="R-100"):
        now = self._now()
        self.loans[loan_id] = {
            "id": loan_id,
            "contact": contact,
            "contact2": contact2,
            "loanType": "TENANT",
            "rentalObjectCode": rental_object_code,
            "createdAt": now,
            "pickedUpAt": now if picked_up else None,
            "returnedAt": now if returned else None,
            "availableToNextTenantFrom": now if returned else None,
            "comment": None,
            "keyIds": list(key_ids),
            "cardIds": list(card_ids),
        }
        return self.loans[loan_id]

    def add_event(self, event_id, event_type, key_ids, status="ORDERED"):
        now = self._now()
        self.events[event_id] = {
            "id": event_id,
            "type": event_type,
            "status": status,
            "keyIds": list(key_ids),
            "createdAt": now,
            "updatedAt": now,
        }
        return self.events[event_id]

    def open_loans_for_key(self, key_id):
        return [loan for loan in self.loans.values() if loan["returnedAt"] is None and key_id in loan["keyIds"]]

    def _loan_view(self, loan, include_items=True):
        data = copy.deepcopy(loan)
        if include_items:
            data["keysArray"] = [copy.deepcopy(self.keys[key_id]) for key_id in loan["keyIds"]]
            data["cardsArray"] = [copy.deepcopy(self.cards[card_id]) for card_id in loan["cardIds"]]
        return data

    # KeysBackend

    def list_keys(self, rental_object_code, include_loans=False, include_events=False, include_key_system=False):
        self._record("list_keys", rental_object_code)
        result = []
        for key in self.keys.values():
            if key["rentalObjectCode"] != rental_object_code:
                continue
            data = copy.deepcopy(key)
            if include_events:
                events = [event for event in self.events.values() if key["id"] in event["keyIds"]]
                data["events"] = copy.deepcopy(sorted(events, key=lambda event: event["createdAt"]))
            if include_loans:
                data["loans"] = [self._loan_view(loan, False) for loan in self.loans.values() if key["id"] in loan["keyIds"]]
            result.append(data)
        return result

    def list_cards(self, rental_object_code, include_loans=False):
        self._record("list_cards", rental_object_code)
        return [copy.deepcopy(card) for card in self.cards.values() if card["rentalObjectCode"] == rental_object_code]

    def list_loans(self, rental_object_code, open_only=False):
        self._record("list_loans", rental_object_code)
        return [
            self._loan_view(loan)
            for loan in self.loans.values()
            if loan["rentalObjectCode"] == rental_object_code and (not open_only or loan["returnedAt"] is None)
        ]

    def create_key(self, attributes):
        self._record("create_key", attributes)
        key_id = f"key-{next(self._ids)}"
        key = self.add_key(
            key_id,
            key_name=attributes["keyName"],
            key_type=attributes["keyType"],
            sequence=attributes.get("keySequenceNumber"),
            flex=attributes.get("flexNumber"),
            disposed=bool(attributes.get("disposed")),
            rental_object_code=attributes.get("rentalObjectCode"),
            key_system_id=attributes.get("keySystemId"),
        )
        return copy.deepcopy(key)

    def update_key(self, key_id, attributes):
        self._record("update_key", key_id, attributes)
        if key_id not in self.keys:
            raise NotFoundError(f"Key {key_id} not found")
        self.keys[key_id].update(attributes)
        return copy.deepcopy(self.keys[key_id])

    def create_loan(self, key_ids, card_ids, contact, contact2=None, loan_type="TENANT", created_by=None):
        self._record("create_loan", list(key_ids), list(card_ids), contact)
        if not key_ids and not card_ids:
            raise BackendError("No keys or cards selected")
        disposed = [key_id for key_id in key_ids if self.keys[key_id]["disposed"]]
        if disposed:
            raise BackendError(f"Disposed keys cannot be loaned: {', '.join(disposed)}")
        conflicts = [key_id for key_id in key_ids if self.open_loans_for_key(key_id)]
        conflicting_cards = [
            card_id for card_id in card_ids
            if any(loan["returnedAt"] is None and card_id in loan["cardIds"] for loan in self.loans.values())
        ]
        if conflicts or conflicting_cards:
            raise LoanConflictError(key_ids=conflicts, card_ids=conflicting_cards)
        loan_id = f"loan-{next(self._ids)}"
        sample = self.keys[key_ids[0]] if key_ids else self.cards[card_ids[0]]
        loan = self.add_loan(loan_id, key_ids, card_ids, contact=contact, contact2=contact2, picked_up=False, rental_object_code=sample["rentalObjectCode"])
        loan["loanType"] = loan_type
        return {"loan": self._loan_view(loan), "receiptId": f"receipt-{loan_id}"}

    def return_loan(self, key_ids, card_ids, available_from=None, selected_for_receipt=None, selected_cards_for_receipt=None, comment=None):
        self._record("return_loan", list(key_ids), list(card_ids))
        touched = {}
        for loan in self.loans.values():
            if loan["returnedAt"] is not None:
                continue
            if set(loan["keyIds"]) & set(key_ids) or set(loan["cardIds"]) & set(card_ids):
                touched[loan["id"]] = loan
        if not touched:
            raise BackendError("No active loan found for the selected items")
        for loan in touched.values():
            missing = [k for k in loan["keyIds"] if k not in key_ids] + [c for c in loan["cardIds"] if c not in card_ids]
            if missing:
                raise PartialReturnError(f"All items from the same loan must be returned together. {len(missing)} item(s) missing.")
        now = self._now()
        for loan in touched.values():
            loan["returnedAt"] = now
            loan["availableToNextTenantFrom"] = available_from or now
            loan["comment"] = comment
        return {"returnedLoanIds": list(touched), "receiptIds": [], "missingKeyIds": [], "missingCardIds": []}

    def mark_loan_returned(self, loan_id):
        self._record("mark_loan_returned", loan_id)
        loan = self.loans[loan_id]
        if loan["returnedAt"] is None:
            loan["returnedAt"] = self._now()
        return self._loan_view(loan)

    def activate_loan(self, loan_id):
        self._record("activate_loan", loan_id)
        if loan_id not in self.loans:
            raise NotFoundError(f"Key loan {loan_id} not found")
        loan = self.loans[loan_id]
        if loan["returnedAt"] is not None:
            raise BackendError("Returned loan cannot be activated")
        if loan["pickedUpAt"] is None:
            loan["pickedUpAt"] = self._now()
            for event in self.events.values():
                if set(event["keyIds"]) & set(loan["keyIds"]) and event["status"] != "COMPLETED":
                    event["status"] = "COMPLETED"
        return self._loan_view(loan)

    def get_loans_for_key(self, key_id):
        self._record("get_loans_for_key", key_id)
        return [self._loan_view(loan, False) for loan in self.loans.values() if key_id in loan["keyIds"]]

    def get_loans_for_card(self, card_id):
        self._record("get_loans_for_card", card_id)
        return [self._loan_view(loan, False) for loan in self.loans.values() if card_id in loan["cardIds"]]

    def get_loan(self, loan_id, include_cards=True):
        self._record("get_loan", loan_id)
        if loan_id not in self.loans:
            raise NotFoundError(f"Key loan {loan_id} not found")
        return self._loan_view(self.loans[loan_id])

    def remove_loan(self, loan_id):
        self._record("remove_loan", loan_id)
        loan = self.loans.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Key loan {loan_id} not found")
        if loan["returnedAt"] is None and loan["pickedUpAt"] is not None:
            raise ActiveLoanDeleteError()
        del self.loans[loan_id]

    def create_extra_key_order_event(self, key_ids):
        self._record("create_extra_key_order_event", list(key_ids))
        return copy.deepcopy(self.add_event(f"event-{next(self._ids)}", "ORDER", key_ids))

    def create_flex_order_event(self, key_ids):
        self._record("create_flex_order_event", list(key_ids))
        return copy.deepcopy(self.add_event(f"event-{next(self._ids)}", "FLEX", key_ids))

    def update_event_status(self, event_id, status):
        self._record("update_event_status", event_id, status)
        event = self.events[event_id]
        event["status"] = status
        event["updatedAt"] = self._now()
        return copy.deepcopy(event)

    def get_latest_events_for_keys(self, key_ids):
        self._record("get_latest_events_for_keys", list(key_ids))
        latest = {}
        for event in sorted(self.events.values(), key=lambda item: item["createdAt"]):
            for key_id in event["keyIds"]:
                if key_id in key_ids:
                    latest[key_id] = copy.deepcopy(event)
        return latest

    def operations(self):
        return [call[0] for call in self.calls if not call[0].startswith(("list_", "get_"))]
