from __future__ import annotations
from typing import Optional


class KitchenError(Exception):
    """Base for errors that reach the client as {"success": false, "error": ...}."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(KitchenError):
    status_code = 400


class CustomerError(KitchenError):
    status_code = 400


class ItemError(KitchenError):
    status_code = 400

    def __init__(self, message: str, item_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class SchedulingError(KitchenError):
    status_code = 400


class InvalidStateError(KitchenError):
    status_code = 400


class NotFoundError(KitchenError):
    status_code = 404


class ConflictError(KitchenError):
    status_code = 409


class AuthenticationError(KitchenError):
    status_code = 401


class PermissionDeniedError(KitchenError):
    status_code = 403


class InternalError(KitchenError):
    status_code = 500
