"""Privy access-token verification and FastAPI auth dependencies."""
import hmac
import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .database import get_db
from .models import User
from .queries import db_get_user_by_privy_id

logger = logging.getLogger(__name__)

PRIVY_ISSUER = "privy.io"
PRIVY_ALGORITHMS = ["ES256"]


def verify_privy_token(token: str) -> Dict[str, Any]:
    """Decode a Privy access token; raises ``jwt.InvalidTokenError`` when it doesn't check out."""
    return jwt.decode(
        token,
        settings.privy_verification_key,
        algorithms=PRIVY_ALGORITHMS,
        audience=settings.privy_app_id,
        issuer=PRIVY_ISSUER,
        options={"require": ["sub", "exp", "iat"]},
    )


def _extract_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return request.cookies.get(settings.privy_cookie_name)


async def get_privy_id(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    """The Privy user id (DID) of the caller, from the cookie or a bearer header."""
    token = _extract_token(request, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        claims = verify_privy_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected Privy token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims["sub"]


async def get_current_user(
    privy_id: str = Depends(get_privy_id),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db_get_user_by_privy_id(db, privy_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


async def verify_cron_secret(authorization: Optional[str] = Header(None)):
    """Cron endpoints are called by the platform scheduler with ``Bearer $CRON_SECRET``."""
    expected = f"Bearer {settings.cron_secret}"
    if not settings.cron_secret or not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
