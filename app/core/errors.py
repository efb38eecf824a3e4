# FILE: app/core/errors.py
from __future__ import annotations

from typing import Any, Optional


class WorkflowError(RuntimeError):
    """
    Base for every business-rule failure raised by the workflow services.
    Routes turn it into the standard error envelope (see app.utils.resp.err).
    """

    code = "WORKFLOW_ERROR"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidRequest(WorkflowError):
    code = "INVALID_REQUEST"
    status_code = 400


class InvalidTransition(WorkflowError):
    code = "INVALID_TRANSITION"
    status_code = 409


class AlreadyClaimed(WorkflowError):
    code = "ALREADY_CLAIMED"
    status_code = 409


class AlreadyPaid(WorkflowError):
    code = "ALREADY_PAID"
    status_code = 409


class OutOfStock(WorkflowError):
    code = "OUT_OF_STOCK"
    status_code = 400


class InsufficientCredits(WorkflowError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 400


class ReturnWindowExpired(WorkflowError):
    code = "RETURN_WINDOW_EXPIRED"
    status_code = 400


class DuplicateReturnRequest(WorkflowError):
    code = "DUPLICATE_RETURN_REQUEST"
    status_code = 409


class NotFound(WorkflowError):
    code = "NOT_FOUND"
    status_code = 404


class Unauthorized(WorkflowError):
    code = "UNAUTHORIZED"
    status_code = 403
