from __future__ import annotations


class HAError(RuntimeError):
    """Base for every error the client core surfaces to its callers."""

    prefix = "Error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def description(self) -> str:
        return f"{self.prefix}: {self.message}"


class StorageError(HAError):
    prefix = "Database error"


class TransportError(HAError):
    prefix = "Network error"


class HTTPError(HAError):
    prefix = "HTTP error"

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Status code {status_code}")
        self.status_code = status_code
        self.body = body


class DecodeError(HAError):
    prefix = "Failed to decode response"


class AuthenticationError(HAError):
    prefix = "Authentication failed"


class OAuthStateError(AuthenticationError):
    pass


class TokenRequestError(AuthenticationError):
    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Token request failed with status {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class NoRefreshTokenError(AuthenticationError):
    def __init__(self, message: str = "Connection has no refresh token.") -> None:
        super().__init__(message)


class RefreshError(AuthenticationError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(HAError):
    prefix = "Configuration error"


class UnknownError(HAError):
    prefix = "An unknown error occurred"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause) or type(cause).__name__)
        self.cause = cause
