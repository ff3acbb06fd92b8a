"""Simple token auth dependency for API routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from farmout.core.config import get_settings
from farmout.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class OperatorContext:
    actor: str
    authenticated: bool
    role: str


SUPPORTED_ROLES = {"dispatcher", "admin", "driver"}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return "admin"
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def _parse_api_tokens(raw: str) -> Dict[str, str]:
    """Parse `token:actor` comma-separated values from env."""
    mapping: Dict[str, str] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        if ":" not in item:
            logger.warning("Ignoring malformed API token mapping entry", entry=item)
            continue
        token, actor = item.split(":", 1)
        token = token.strip()
        actor = actor.strip()
        if token and actor:
            mapping[token] = actor
    return mapping


def get_operator_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_actor: str | None = Header(default=None, alias="X-Actor"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> OperatorContext:
    """Resolve the calling operator from a bearer token or the actor headers."""
    settings = get_settings()

    if not settings.auth_enabled:
        return OperatorContext(
            actor=(x_actor or "anonymous").strip() or "anonymous",
            authenticated=False,
            role=_normalize_role(x_actor_role),
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token_map = _parse_api_tokens(settings.api_tokens)
    actor = token_map.get(credentials.credentials.strip())
    if not actor:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )

    return OperatorContext(
        actor=actor,
        authenticated=True,
        role=_normalize_role(x_actor_role),
    )


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: OperatorContext = Depends(get_operator_context)) -> OperatorContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
