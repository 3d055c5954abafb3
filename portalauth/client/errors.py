from __future__ import annotations

from typing import Any, Optional


class ClientError(Exception):
    """Base class for errors surfaced by the portal client."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ApiError(ClientError):
    """Non-success envelope from the server, or ``status=0`` for network failures."""

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details

    def __repr__(self) -> str:
        return f"ApiError(status={self.status}, code={self.code!r}, message={self.message!r})"


class NotAuthenticatedError(ApiError):
    """A 401 that survived the refresh-and-retry cycle."""

    def __init__(
        self,
        message: str = "not authenticated",
        code: str = "unauthorized",
        details: Optional[Any] = None,
    ):
        super().__init__(401, code, message, details)
