from typing import Optional


class ChatRequestError(Exception):
    """Terminal pre-stream failure rendered as a JSON error envelope."""

    status_code = 500

    def __init__(self, message: str, headers: Optional[dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.headers = dict(headers or {})


class ChatValidationError(ChatRequestError, ValueError):
    status_code = 400


class AuthError(ChatRequestError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized", headers: Optional[dict[str, str]] = None) -> None:
        super().__init__(message, {"WWW-Authenticate": "Bearer", **(headers or {})})


class EntitlementError(ChatRequestError):
    status_code = 402


class PayloadTooLargeError(ChatRequestError):
    status_code = 413


class RateLimitError(ChatRequestError):
    status_code = 429

    def __init__(self, message: str, retry_after: int, headers: Optional[dict[str, str]] = None) -> None:
        super().__init__(message, {**(headers or {}), "Retry-After": str(retry_after)})
        self.retry_after = retry_after


class ProviderError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
