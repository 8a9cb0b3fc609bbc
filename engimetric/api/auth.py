"""
Bearer token verification.

Tokens are issued elsewhere; this service only verifies them. Claims:
- sub: user id
- team_id: the team the user is acting for
- iat/exp: issued/expiry
"""

from __future__ import annotations

import jwt
import structlog
from fastapi import Header
from pydantic import BaseModel

from engimetric.config import get_settings
from engimetric.db.rls import set_rls_context
from engimetric.kernel.errors import UnauthorizedError

logger = structlog.get_logger()


class AuthContext(BaseModel):
    user_id: int
    team_id: int


def verify_access_token(token: str) -> AuthContext | None:
    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT_SECRET not configured")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "iat", "sub"]},
        )
        iss = payload.get("iss")
        if iss is not None and iss != settings.jwt_issuer:
            return None
        team_id = payload.get("team_id")
        if team_id is None:
            return None
        return AuthContext(user_id=int(payload["sub"]), team_id=int(team_id))
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
    except (TypeError, ValueError) as exc:
        logger.debug("Malformed token claims", error=str(exc))
        return None


async def get_auth_context(authorization: str | None = Header(default=None)) -> AuthContext:
    """FastAPI dependency: resolve the caller and bind their identity for RLS."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise UnauthorizedError()
    ctx = verify_access_token(authorization.split(" ", 1)[1].strip())
    if ctx is None:
        raise UnauthorizedError(message="Invalid or expired token", code="auth.invalid_token")
    set_rls_context(ctx.user_id)
    return ctx
