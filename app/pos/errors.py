"""
Errors raised by services and surfaced to the calling form.

Services raise these inside a transaction; the transaction rolls back and the
app-level handler renders the message with the matching HTTP status.
"""
from __future__ import annotations


class ActionError(ValueError):
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ActionError):
    status_code = 404


class ConflictError(ActionError):
    status_code = 409


class ForbiddenError(ActionError):
    status_code = 403
