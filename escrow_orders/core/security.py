from __future__ import annotations

import base64
import hmac
import json
import time
from hashlib import sha256
from typing import Literal

from fastapi import Header, HTTPException
from pydantic import BaseModel

from escrow_orders.core.config import get_settings


ActorType = Literal["user", "moderator", "system"]


class Actor(BaseModel):
    type: ActorType
    id: str


def _auth_error(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _token_key() -> bytes:
    settings = get_settings()
    return settings.token_signing_secret.encode("utf-8")


def issue_access_token(user_id: str, ttl_seconds: int | None = None) -> str:
    """Mint a user access token.

    Session issuance belongs to the identity subsystem; this mirrors its token
    format so that operators and tests can produce tokens the engine accepts.
    """
    settings = get_settings()
    now = int(time.time())
    payload = {
        "sub": user_id,
        "iat": now,
        "exp": now + (ttl_seconds or settings.access_token_ttl_seconds),
    }
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    mac = hmac.new(_token_key(), body, sha256).digest()
    return base64.urlsafe_b64encode(body + mac).decode("ascii")


def verify_access_token(token: str) -> dict:
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
    except Exception as exc:  # pragma: no cover
        raise _auth_error("invalid token encoding") from exc

    if len(raw) <= 32:
        raise _auth_error("invalid token body")

    body, mac = raw[:-32], raw[-32:]
    expected = hmac.new(_token_key(), body, sha256).digest()
    if not hmac.compare_digest(mac, expected):
        raise _auth_error("token signature mismatch")

    payload = json.loads(body.decode("utf-8"))
    if not payload.get("sub"):
        raise _auth_error("token subject missing")
    if int(time.time()) > int(payload.get("exp", 0)):
        raise _auth_error("token expired")
    return payload


def _actor_from_api_key(api_key: str) -> Actor | None:
    settings = get_settings()
    key_map = {
        settings.system_api_key: Actor(type="system", id=settings.system_actor_id),
        settings.moderator_api_key: Actor(type="moderator", id=settings.moderator_actor_id),
    }
    return key_map.get(api_key)


def get_actor(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
) -> Actor:
    settings = get_settings()
    if not settings.auth_enabled:
        if x_user_id:
            return Actor(type="user", id=x_user_id)
        return Actor(type="system", id=settings.system_actor_id)

    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _auth_error("invalid authorization header")
        claims = verify_access_token(token.strip())
        return Actor(type="user", id=str(claims["sub"]))

    if x_api_key and x_api_key.strip():
        actor = _actor_from_api_key(x_api_key.strip())
        if actor is None:
            raise _auth_error("invalid api key")
        return actor

    raise _auth_error("missing credentials")


def require_user(actor: Actor) -> None:
    if actor.type != "user":
        raise HTTPException(status_code=403, detail="authenticated user required")


def require_roles(actor: Actor, allowed: set[str], detail: str = "insufficient role") -> None:
    if actor.type not in allowed:
        raise HTTPException(status_code=403, detail=detail)
