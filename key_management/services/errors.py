from __future__ import annotations


class KeyManagementError(RuntimeError):
    status_code = 400


class RuleValidationError(KeyManagementError):
    """Raised by the rule layer before any backend call is made."""

    status_code = 400


class BackendError(KeyManagementError):
    """A precondition failure reported by the keys backend.

    ``reason`` is the human readable message, kept verbatim so callers can
    surface it to the operator.
    """

    status_code = 400

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        if status_code is not None:
            self.status_code = status_code


class LoanConflictError(BackendError):
    status_code = 409

    def __init__(self, reason: str = "One or more items are already on an open loan.", key_ids=None, card_ids=None):
        super().__init__(reason)
        self.key_ids = list(key_ids or [])
        self.card_ids = list(card_ids or [])


class ActiveLoanDeleteError(BackendError):
    status_code = 409

    def __init__(self, reason: str = "Active loan cannot be deleted."):
        super().__init__(reason)


class PartialReturnError(BackendError):
    status_code = 400


class NotFoundError(BackendError):
    status_code = 404


class TransportError(BackendError):
    status_code = 502
