import time
from collections import deque
from dataclasses import dataclass
from threading import Lock

import jwt
from fastapi import Depends, Header, HTTPException
from jwt import InvalidTokenError

from tusvault.config import settings
from tusvault.metrics import throttled_requests_total

AUTH_MODES = {"api_key", "jwt", "hybrid"}


@dataclass(frozen=True)
class Principal:
    user_id: str
    source: str
    is_admin: bool = False


class SlidingWindowLimiter:
    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        if limit <= 0:
            return True
        now = time.monotonic()
        with self._lock:
            bucket = self._events.setdefault(key, deque())
            while bucket and bucket[0] <= now - window_seconds:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now)
            return True


principal_rate_limiter = SlidingWindowLimiter()


def _api_key_owners() -> dict[str, str]:
    owners: dict[str, str] = {}
    for pair in settings.api_key_mappings.split(","):
        api_key, sep, user_id = pair.partition(":")
        if sep and api_key.strip() and user_id.strip():
            owners[api_key.strip()] = user_id.strip()
    return owners


def _admin_ids() -> set[str]:
    return {item.strip() for item in settings.admin_user_ids.split(",") if item.strip()}


def _bearer_token(authorization: str | None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer":
        raise HTTPException(status_code=401, detail="missing bearer token")
    token = token.strip()
    if not token:
        raise HTTPException(status_code=401, detail="missing bearer token")
    return token


def _user_from_jwt(authorization: str | None) -> tuple[str, str]:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt auth is enabled but jwt_secret is not configured")
    token = _bearer_token(authorization)
    options: dict = {"algorithms": [settings.jwt_algorithm]}
    if settings.jwt_audience:
        options["audience"] = settings.jwt_audience
    if settings.jwt_issuer:
        options["issuer"] = settings.jwt_issuer
    try:
        claims = jwt.decode(token, settings.jwt_secret, **options)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"invalid bearer token: {exc}") from exc
    user_id = str(claims.get("sub") or claims.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="jwt missing subject claim")
    return user_id, token


def _user_from_api_key(x_api_key: str | None) -> tuple[str, str]:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="missing API key")
    user_id = _api_key_owners().get(x_api_key)
    if not user_id:
        raise HTTPException(status_code=403, detail="invalid API key")
    return user_id, x_api_key


def require_user(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    mode = settings.auth_mode.lower().strip()
    if mode not in AUTH_MODES:
        raise HTTPException(status_code=500, detail=f"unsupported auth_mode: {settings.auth_mode}")

    if mode == "jwt" or (mode == "hybrid" and authorization):
        user_id, rate_key = _user_from_jwt(authorization)
        source = "jwt"
    else:
        user_id, rate_key = _user_from_api_key(x_api_key)
        source = "api_key"

    if not principal_rate_limiter.allow(rate_key, settings.api_rate_limit_per_minute, 60):
        throttled_requests_total.inc()
        raise HTTPException(
            status_code=429,
            detail="principal rate limit exceeded",
            headers={"Retry-After": "60", "X-RateLimit-Reason": "principal_rate_limit"},
        )
    return Principal(user_id=user_id, source=source, is_admin=user_id in _admin_ids())


def require_admin(principal: Principal = Depends(require_user)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return principal
