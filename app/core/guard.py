import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request
from fastapi.concurrency import run_in_threadpool
from jose import JWTError

from app.core.env import env_flag, is_development
from app.core.errors import (
    AuthError,
    ChatValidationError,
    EntitlementError,
    PayloadTooLargeError,
    RateLimitError,
)
from app.core.rate_limit import FixedWindowRateLimiter, RateLimitResult, rate_limit_identifier
from app.core.security import parse_bearer_token, user_id_from_token
from app.db.models import User
from app.db.session import SessionLocal

logger = logging.getLogger("uvicorn.error")

MAX_CHAT_PAYLOAD_BYTES = int(os.getenv("MAX_CHAT_PAYLOAD_BYTES", str(10 * 1024 * 1024)))
REQUEST_ID_HEADER = "X-Request-Id"


@dataclass(frozen=True)
class GuardSuccess:
    identity: User
    client_address: str
    request_id: str
    rate_limit_headers: dict[str, str] = field(default_factory=dict)

    @property
    def response_headers(self) -> dict[str, str]:
        return {**self.rate_limit_headers, REQUEST_ID_HEADER: self.request_id}


def new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(4)[:7]}"


def request_id_for(request: Request) -> str:
    existing = getattr(request.state, "request_id", None)
    if existing:
        return existing
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    request_id = incoming[:128] or new_request_id()
    request.state.request_id = request_id
    return request_id


def client_address_for(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    reset = datetime.fromtimestamp(result.reset_at, tz=timezone.utc)
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": reset.isoformat(),
    }


def load_user(user_id: int) -> Optional[User]:
    db = SessionLocal()
    try:
        return db.query(User).filter(User.id == user_id).first()
    finally:
        db.close()


def rate_limit_disabled() -> bool:
    return is_development() and env_flag("DISABLE_RATE_LIMIT")


def _check_payload(request: Request) -> None:
    content_type = (request.headers.get("content-type") or "").strip().lower()
    if not content_type.startswith("application/json"):
        raise ChatValidationError("Content-Type must be application/json")
    raw_length = request.headers.get("content-length")
    if raw_length and raw_length.strip().isdigit() and int(raw_length) > MAX_CHAT_PAYLOAD_BYTES:
        raise PayloadTooLargeError("Request payload too large")


async def _authenticate(request: Request, user_loader: Callable[[int], Optional[User]]) -> User:
    token = parse_bearer_token(request.headers.get("authorization"))
    if not token:
        raise AuthError()
    try:
        user_id = user_id_from_token(token)
    except JWTError:
        raise AuthError() from None
    user = await run_in_threadpool(user_loader, user_id)
    if not user:
        raise AuthError()
    return user


async def enforce_chat_guards(
    request: Request,
    *,
    limiter: FixedWindowRateLimiter,
    require_subscription: bool = True,
    user_loader: Callable[[int], Optional[User]] = load_user,
) -> GuardSuccess:
    request_id = request_id_for(request)
    client_address = client_address_for(request)

    _check_payload(request)
    user = await _authenticate(request, user_loader)

    headers: dict[str, str] = {}
    if not rate_limit_disabled():
        result = await limiter.check(rate_limit_identifier(user.id, client_address))
        headers = rate_limit_headers(result)
        if not result.success:
            logger.warning(
                "chat_rate_limited request_id=%s user_id=%s retry_after=%s",
                request_id,
                user.id,
                result.retry_after,
            )
            raise RateLimitError("Rate limit exceeded", retry_after=result.retry_after or 1, headers=headers)

    if require_subscription and not user.is_pro and not env_flag("BYPASS_PAYWALL"):
        raise EntitlementError("Subscription required", headers=headers)

    return GuardSuccess(
        identity=user,
        client_address=client_address,
        request_id=request_id,
        rate_limit_headers=headers,
    )
