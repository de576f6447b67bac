from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from services import event_service, key_service, loan_service


class KeysBackend:
    """Operations the lifecycle rules need from the keys backend.

    Every method returns plain camelCase dicts (the JSON shape of the REST
    API) and raises ``BackendError`` subclasses for precondition failures.
    """

    def list_keys(self, rental_object_code: str, include_loans: bool = False, include_events: bool = False, include_key_system: bool = False) -> list[dict]:
        raise NotImplementedError

    def list_cards(self, rental_object_code: str, include_loans: bool = False) -> list[dict]:
        raise NotImplementedError

    def list_loans(self, rental_object_code: str, open_only: bool = False) -> list[dict]:
        raise NotImplementedError

    def create_key(self, attributes: dict) -> dict:
        raise NotImplementedError

    def update_key(self, key_id: str, attributes: dict) -> dict:
        raise NotImplementedError

    def create_loan(self, key_ids: list[str], card_ids: list[str], contact: str | None, contact2: str | None = None, loan_type: str = "TENANT", created_by: str | None = None) -> dict:
        raise NotImplementedError

    def return_loan(
        self,
        key_ids: list[str],
        card_ids: list[str],
        available_from: datetime | None = None,
        selected_for_receipt: list[str] | None = None,
        selected_cards_for_receipt: list[str] | None = None,
        comment: str | None = None,
    ) -> dict:
        raise NotImplementedError

    def mark_loan_returned(self, loan_id: str) -> dict:
        raise NotImplementedError

    def activate_loan(self, loan_id: str) -> dict:
        raise NotImplementedError

    def get_loans_for_key(self, key_id: str) -> list[dict]:
        raise NotImplementedError

    def get_loans_for_card(self, card_id: str) -> list[dict]:
        raise NotImplementedError

    def get_loan(self, loan_id: str, include_cards: bool = True) -> dict:
        raise NotImplementedError

    def remove_loan(self, loan_id: str) -> None:
        raise NotImplementedError

    def create_extra_key_order_event(self, key_ids: list[str]) -> dict:
        raise NotImplementedError

    def create_flex_order_event(self, key_ids: list[str]) -> dict:
        raise NotImplementedError

    def update_event_status(self, event_id: str, status: str) -> dict:
        raise NotImplementedError

    def get_latest_events_for_keys(self, key_ids: list[str]) -> dict[str, dict]:
        raise NotImplementedError


class SessionKeysBackend(KeysBackend):
    """In-process backend over a SQLAlchemy session."""

    def __init__(self, db: Session, user_id: str | None = None):
        self.db = db
        self.user_id = user_id

    def list_keys(self, rental_object_code, include_loans=False, include_events=False, include_key_system=False):
        return key_service.list_keys_for_rental_object(
            self.db,
            rental_object_code,
            include_loans=include_loans,
            include_events=include_events,
            include_key_system=include_key_system,
        )

    def list_cards(self, rental_object_code, include_loans=False):
        return key_service.list_cards_for_rental_object(self.db, rental_object_code, include_loans=include_loans)

    def list_loans(self, rental_object_code, open_only=False):
        return loan_service.list_loans_for_rental_object(self.db, rental_object_code, open_only=open_only)

    def create_key(self, attributes):
        return key_service.create_key(self.db, attributes, self.user_id)

    def update_key(self, key_id, attributes):
        return key_service.update_key(self.db, key_id, attributes, self.user_id)

    def create_loan(self, key_ids, card_ids, contact, contact2=None, loan_type="TENANT", created_by=None):
        return loan_service.open_loan(
            self.db,
            key_ids,
            card_ids,
            contact,
            contact2=contact2,
            loan_type=loan_type,
            created_by=created_by or self.user_id,
        )

    def return_loan(self, key_ids, card_ids, available_from=None, selected_for_receipt=None, selected_cards_for_receipt=None, comment=None):
        return loan_service.return_loans(
            self.db,
            key_ids,
            card_ids,
            available_from=available_from,
            selected_for_receipt=selected_for_receipt,
            selected_cards_for_receipt=selected_cards_for_receipt,
            comment=comment,
            user_id=self.user_id,
        )

    def mark_loan_returned(self, loan_id):
        return loan_service.mark_loan_returned(self.db, loan_id, self.user_id)

    def activate_loan(self, loan_id):
        return loan_service.activate_loan(self.db, loan_id, self.user_id)

    def get_loans_for_key(self, key_id):
        return loan_service.list_loans_for_key(self.db, key_id)

    def get_loans_for_card(self, card_id):
        return loan_service.list_loans_for_card(self.db, card_id)

    def get_loan(self, loan_id, include_cards=True):
        return loan_service.get_loan(self.db, loan_id, include_cards=include_cards)

    def remove_loan(self, loan_id):
        loan_service.remove_loan(self.db, loan_id, self.user_id)

    def create_extra_key_order_event(self, key_ids):
        return event_service.create_event(self.db, "ORDER", key_ids, self.user_id)

    def create_flex_order_event(self, key_ids):
        return event_service.create_event(self.db, "FLEX", key_ids, self.user_id)

    def update_event_status(self, event_id, status):
        return event_service.update_event_status(self.db, event_id, status, self.user_id)

    def get_latest_events_for_keys(self, key_ids):
        return event_service.get_latest_events_for_keys(self.db, key_ids)
