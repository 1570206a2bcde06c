from __future__ import annotations

import hmac
from typing import Literal

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel

from orderflow.core.config import Settings, get_settings

ActorType = Literal["operator", "system"]


class Actor(BaseModel):
    type: ActorType
    id: str


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _presented_key(authorization: str | None, x_api_key: str | None) -> str:
    """Bearer token wins over ``X-API-Key``; a malformed Authorization header is never ignored."""
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _unauthorized("invalid authorization header")
        return token.strip()
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    raise _unauthorized("missing api key")


def authenticate(api_key: str, settings: Settings) -> Actor | None:
    """Match ``api_key`` against every configured key in constant time per key."""
    presented = api_key.encode("utf-8")
    candidates = (
        (settings.operator_api_key, Actor(type="operator", id=settings.operator_actor_id)),
        (settings.system_api_key, Actor(type="system", id=settings.system_actor_id)),
    )
    matched = None
    for configured, actor in candidates:
        # Every key is compared so timing does not reveal which one matched.
        if hmac.compare_digest(configured.encode("utf-8"), presented) and matched is None:
            matched = actor
    return matched


def get_actor(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> Actor:
    settings = get_settings()
    if not settings.auth_enabled:
        return Actor(type="operator", id=settings.operator_actor_id)

    actor = authenticate(_presented_key(authorization, x_api_key), settings)
    if actor is None:
        raise _unauthorized("invalid api key")
    return actor


def require_operator(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.type != "operator":
        raise HTTPException(status_code=403, detail="operator role required")
    return actor
