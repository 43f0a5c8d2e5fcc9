from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for token-engine exceptions.

    Every subclass carries a stable ``error_code`` and the HTTP ``status_code``
    a caller exposing the engine over HTTP should map it to:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)

    Messages are kept stable so existing callers matching on text keep working,
    but callers should branch on the exception type.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource state conflicts with the request (409)."""
    status_code = 409
    error_code = "conflict"


class NilUserError(ValidationError):
    def __init__(self, message: str = "User is nil", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MissingEmailError(ValidationError):
    def __init__(self, message: str = "User email is empty", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenNotFoundError(NotFoundError):
    def __init__(self, message: str = "Token not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmptyTokenError(TokenNotFoundError):
    """An empty string was presented; raised before the store is touched."""


class TokenExpiredError(AuthenticationError):
    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenUsedError(ConflictError):
    def __init__(self, message: str = "Password token already used", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(NotFoundError):
    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "NilUserError",
    "MissingEmailError",
    "TokenNotFoundError",
    "EmptyTokenError",
    "TokenExpiredError",
    "TokenUsedError",
    "UserNotFoundError",
]
