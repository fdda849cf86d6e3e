"""Exception types shared by the LocalBuy services and both Flask apps."""

from __future__ import annotations

from typing import Optional


class LocalBuyError(Exception):
    """Base error carrying the HTTP status it should surface as."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, object]:
        return {"success": False, "error": self.message}


class ValidationError(LocalBuyError):
    status_code = 400


class AuthenticationError(LocalBuyError):
    status_code = 401


class PermissionDenied(LocalBuyError):
    status_code = 403


class NotFoundError(LocalBuyError):
    status_code = 404
