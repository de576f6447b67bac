from __future__ import annotations

from datetime import date, datetime
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

import config
from services.errors import (
    ActiveLoanDeleteError,
    BackendError,
    LoanConflictError,
    NotFoundError,
    PartialReturnError,
    TransportError,
)
from services.keys_backend import KeysBackend

LOGGER = logging.getLogger("key_management.api_client")


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise TransportError(f"Missing required environment variable: {name}")
    return value


def _build_auth_header_value(token: str, scheme: str) -> str:
    if not scheme:
        return token
    return f"{scheme} {token}"


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _quote(value: str) -> str:
    return urllib.parse.quote(str(value), safe="")


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _detail_of(raw: bytes) -> Any:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if isinstance(payload, dict):
        return payload.get("detail", payload)
    return payload


def _detail_message(detail: Any, fallback: str) -> str:
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict):
        return str(detail.get("message") or fallback)
    return fallback


class KeysApiClient(KeysBackend):
    """Keys backend reached over the portal's REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        auth_header: str | None = None,
        auth_scheme: str | None = None,
        timeout: int | None = None,
    ):
        self.base_url = (base_url or _require_env("KEYS_API_BASE_URL")).rstrip("/")
        self.token = token if token is not None else (os.environ.get("KEYS_API_TOKEN") or "").strip()
        self.auth_header = auth_header or (os.environ.get("KEYS_API_AUTH_HEADER") or "Authorization").strip()
        scheme = auth_scheme if auth_scheme is not None else os.environ.get("KEYS_API_AUTH_SCHEME", "Bearer")
        self.auth_scheme = (scheme or "").strip()
        self.timeout = timeout or config.KEYS_API_TIMEOUT_SECONDS

    def _request(
        self,
        method: str,
        path: str,
        query: dict | None = None,
        body: Any = None,
        conflict_error: type[BackendError] = LoanConflictError,
    ) -> Any:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
        headers = {"Accept": "application/json"}
        if self.token:
            headers[self.auth_header] = _build_auth_header_value(self.token, self.auth_scheme)
        data = None
        if body is not None:
            data = json.dumps(body, default=_json_default).encode("utf-8")
            headers["Content-Type"] = "application/json"
        request = urllib.request.Request(url=url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                raw = response.read()
                if not raw:
                    return None
                return json.loads(raw.decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise self._translate_http_error(exc, method, path, conflict_error) from exc
        except urllib.error.URLError as exc:
            raise TransportError(f"Keys API connection error: {exc.reason}") from exc
        except json.JSONDecodeError as exc:
            raise TransportError("Keys API returned invalid JSON") from exc

    def _translate_http_error(self, exc: urllib.error.HTTPError, method: str, path: str, conflict_error: type[BackendError]) -> BackendError:
        detail = _detail_of(exc.read() or b"")
        message = _detail_message(detail, f"Keys API HTTP error: {exc.code}")
        LOGGER.warning("Keys API %s %s failed with %s: %s", method, path, exc.code, message)
        if exc.code == 404:
            return NotFoundError(message)
        if exc.code == 409:
            if conflict_error is LoanConflictError:
                key_ids = detail.get("keyIds") if isinstance(detail, dict) else None
                card_ids = detail.get("cardIds") if isinstance(detail, dict) else None
                return LoanConflictError(message, key_ids=key_ids, card_ids=card_ids)
            return conflict_error(message)
        if exc.code in (400, 422):
            if "returned together" in message:
                return PartialReturnError(message)
            return BackendError(message, status_code=400)
        return TransportError(message)

    def list_keys(self, rental_object_code, include_loans=False, include_events=False, include_key_system=False):
        return self._request(
            "GET",
            f"/api/keys/by-rental-object/{_quote(rental_object_code)}",
            query={
                "includeLoans": _flag(include_loans),
                "includeEvents": _flag(include_events),
                "includeKeySystem": _flag(include_key_system),
            },
        ) or []

    def list_cards(self, rental_object_code, include_loans=False):
        return self._request(
            "GET",
            f"/api/cards/by-rental-object/{_quote(rental_object_code)}",
            query={"includeLoans": _flag(include_loans)},
        ) or []

    def list_loans(self, rental_object_code, open_only=False):
        return self._request(
            "GET",
            f"/api/key-loans/by-rental-object/{_quote(rental_object_code)}",
            query={"openOnly": _flag(open_only)},
        ) or []

    def create_key(self, attributes):
        return self._request("POST", "/api/keys", body=attributes)

    def update_key(self, key_id, attributes):
        return self._request("PATCH", f"/api/keys/{_quote(key_id)}", body=attributes)

    def create_loan(self, key_ids, card_ids, contact, contact2=None, loan_type="TENANT", created_by=None):
        return self._request(
            "POST",
            "/api/key-loans",
            body={
                "keys": list(key_ids or []),
                "cards": list(card_ids or []),
                "contact": contact,
                "contact2": contact2,
                "loanType": loan_type,
                "createdBy": created_by,
            },
        )

    def return_loan(self, key_ids, card_ids, available_from=None, selected_for_receipt=None, selected_cards_for_receipt=None, comment=None):
        return self._request(
            "POST",
            "/api/key-loans/return",
            body={
                "keyIds": list(key_ids or []),
                "cardIds": list(card_ids or []),
                "availableToNextTenantFrom": available_from,
                "selectedForReceipt": selected_for_receipt,
                "selectedCardsForReceipt": selected_cards_for_receipt,
                "comment": comment,
            },
        )

    def mark_loan_returned(self, loan_id):
        return self._request("POST", f"/api/key-loans/{_quote(loan_id)}/mark-returned")

    def activate_loan(self, loan_id):
        response = self._request("POST", f"/api/key-loans/{_quote(loan_id)}/activate") or {}
        return (response.get("data") or {}).get("loan", response)

    def get_loans_for_key(self, key_id):
        return self._request("GET", f"/api/key-loans/by-key/{_quote(key_id)}") or []

    def get_loans_for_card(self, card_id):
        return self._request("GET", f"/api/key-loans/by-card/{_quote(card_id)}") or []

    def get_loan(self, loan_id, include_cards=True):
        return self._request("GET", f"/api/key-loans/{_quote(loan_id)}", query={"includeCards": _flag(include_cards)})

    def remove_loan(self, loan_id):
        self._request("DELETE", f"/api/key-loans/{_quote(loan_id)}", conflict_error=ActiveLoanDeleteError)

    def create_extra_key_order_event(self, key_ids):
        return self._request("POST", "/api/key-events/order", body={"keyIds": list(key_ids or [])})

    def create_flex_order_event(self, key_ids):
        return self._request("POST", "/api/key-events/flex-order", body={"keyIds": list(key_ids or [])})

    def update_event_status(self, event_id, status):
        return self._request("PATCH", f"/api/key-events/{_quote(event_id)}", body={"status": status}, conflict_error=BackendError)

    def get_latest_events_for_keys(self, key_ids):
        return self._request("POST", "/api/key-events/latest", body={"keyIds": list(key_ids or [])}) or {}
