from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, Optional

import jwt
from fastapi import Header

from app.core_settings import get_settings
from app.domain.errors import Forbidden, Unauthorized
from shared.core import set_request_context

settings = get_settings()


@dataclass(frozen=True)
class Actor:
    id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)


def create_access_token(subject: str, roles: Iterable[str] = (), expires_minutes: int = 60) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "roles": sorted(set(roles)),
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.PyJWTError:
        return None


def can_administer(actor: Actor) -> bool:
    return settings.ADMIN_ROLE in actor.roles


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def actor_from_token(token: Optional[str]) -> Actor:
    if not token:
        raise Unauthorized("Authentication required")
    claims = decode_access_token(token)
    if not claims or not claims.get("sub"):
        raise Unauthorized("Invalid or expired token")
    actor = Actor(id=str(claims["sub"]), roles=frozenset(claims.get("roles") or ()))
    set_request_context(actor_id=actor.id)
    return actor


def get_current_actor(authorization: Optional[str] = Header(default=None)) -> Actor:
    """FastAPI dependency resolving the bearer token to an Actor."""
    return actor_from_token(_bearer_token(authorization))


def require_admin(authorization: Optional[str] = Header(default=None)) -> Actor:
    actor = get_current_actor(authorization)
    if not can_administer(actor):
        raise Forbidden("Admin access required")
    return actor


def require_cron(authorization: Optional[str] = Header(default=None)) -> None:
    """Guards the cron endpoints with the shared CRON_SECRET."""
    if not settings.CRON_SECRET or _bearer_token(authorization) != settings.CRON_SECRET:
        raise Unauthorized("Invalid cron secret")
