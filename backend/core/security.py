"""Operator authentication for the HTTP API.

Tokens are issued by the CRM's identity service; the engine only verifies
them and reads the ``org_id`` claim that scopes every query. Issuing is
kept here for tests and local tooling.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
import jwt

from app.config import get_settings

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ("sub", "email", "org_id", "exp", "iat")

security_scheme = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """Claims of a verified access token."""
    sub: str  # operator id
    email: str
    org_id: str
    exp: datetime
    iat: datetime
    type: str = "access"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(
    user_id: str,
    email: str,
    org_id: str,
    expires_in: Optional[timedelta] = None,
) -> str:
    """Sign an access token for ``user_id`` acting in ``org_id``."""
    settings = get_settings()
    issued = datetime.now(timezone.utc)
    lifetime = expires_in or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": user_id,
        "email": email,
        "org_id": org_id,
        "type": "access",
        "iat": issued,
        "exp": issued + lifetime,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> TokenPayload:
    """Decode ``token`` or raise a 401.

    Signature, expiry and the presence of every required claim are checked
    by PyJWT itself.
    """
    try:
        claims = jwt.decode(
            token,
            get_settings().SECRET_KEY,
            algorithms=[ALGORITHM],
            options={"require": list(REQUIRED_CLAIMS)},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.MissingRequiredClaimError as e:
        raise _unauthorized(f"Token is missing the {e.claim} claim")
    except jwt.InvalidTokenError:
        raise _unauthorized("Invalid token")

    return TokenPayload(
        sub=claims["sub"],
        email=claims["email"],
        org_id=claims["org_id"],
        exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        iat=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
        type=claims.get("type", ""),
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> TokenPayload:
    """FastAPI dependency: the operator behind the bearer token."""
    if credentials is None:
        raise _unauthorized("Missing authorization header")

    payload = verify_token(credentials.credentials)
    if payload.type != "access":
        raise _unauthorized("Invalid token type")
    return payload
