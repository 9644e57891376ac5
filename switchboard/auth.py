from __future__ import annotations

import hmac
import os
from dataclasses import dataclass

from fastapi import HTTPException, Request

ROLES = ("owner", "member")


@dataclass(frozen=True)
class ActorContext:
    actor_id: str
    role: str

    @property
    def is_owner(self) -> bool:
        return self.role == "owner"


def get_actor_context(request: Request) -> ActorContext:
    role = request.headers.get("X-Actor-Role", "member").strip().lower()
    if role not in ROLES:
        raise HTTPException(status_code=400, detail=f"X-Actor-Role must be one of: {', '.join(ROLES)}")
    return ActorContext(actor_id=request.headers.get("X-Actor-Id", "anonymous"), role=role)


def _check_admin_token(request: Request) -> None:
    expected = os.getenv("SWITCHBOARD_ADMIN_TOKEN", "").strip()
    if not expected:
        return
    scheme, _, supplied = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def require_owner(request: Request) -> ActorContext:
    """Admin endpoints: owner role, plus the bearer token when ``SWITCHBOARD_ADMIN_TOKEN`` is set."""
    _check_admin_token(request)
    actor = get_actor_context(request)
    if not actor.is_owner:
        raise HTTPException(status_code=403, detail="Owner role required")
    return actor
