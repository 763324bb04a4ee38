"""
Token authentication for the kernel HTTP surface.

The kernel does not own user accounts. The host CMS issues JWTs carrying
``sub`` (user id) and ``role``; the kernel only verifies them and checks
roles. The cron runner authenticates with a static bearer token instead.
"""

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from cms_kernel.config import settings
from cms_kernel.exceptions import AuthenticationError, AuthorizationError, InvalidTokenError

logger = logging.getLogger(__name__)

NETWORK_ADMIN_ROLES = ("admin", "superadmin")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    user_id: str
    role: str

    @property
    def is_network_admin(self) -> bool:
        return self.role in NETWORK_ADMIN_ROLES


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    if "sub" not in data:
        raise ValueError("Missing 'sub' claim in token data.")
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Principal:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        logger.info("Token expired")
        raise InvalidTokenError("Token has expired")
    except JWTError as e:
        logger.info("JWT decoding failed: %s", e)
        raise InvalidTokenError()

    subject = payload.get("sub")
    if not subject:
        raise InvalidTokenError("Token does not contain 'sub' field.")
    return Principal(user_id=str(subject), role=str(payload.get("role") or "user"))


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authenticated")
    return decode_access_token(credentials.credentials)


def require_role(allowed_roles: List[str]) -> Callable:
    """Dependency factory rejecting principals whose role is not listed."""

    async def _check(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed_roles:
            raise AuthorizationError(required_permission=",".join(allowed_roles))
        return principal

    return _check


def verify_cron_token(request: Request) -> None:
    """Reject the request unless it carries ``Authorization: Bearer <cron_run_token>``."""
    expected = settings.cron_run_token
    if not expected:
        raise AuthenticationError("Cron runner token is not configured")
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    provided = token.strip().encode("utf-8")
    if scheme.lower() != "bearer" or not hmac.compare_digest(provided, expected.encode("utf-8")):
        raise AuthenticationError("Invalid cron token")
