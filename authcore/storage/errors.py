from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for account-store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """A write collided with a unique key such as username or email."""

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class UnknownAccount(ConstraintViolation):
    """A write referenced an account id the store does not hold."""

    def __init__(self, user_id: str, record: str = "record"):
        super().__init__(f"user not found for {record}", {"user_id": user_id})
        self.user_id = user_id


__all__ = ["StoreError", "ConstraintViolation", "UnknownAccount"]
