import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import bcrypt
import jwt
from bson import ObjectId
from fastapi import Depends, Request, Response

from .config import settings
from .exceptions import AuthenticationError, ForbiddenError
from .models import Role
from .storage import get_db
from .workflow import RequestContext

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(12)).decode("utf-8")


def verify_password(password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_access_token(user_id) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": str(user_id),
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.PyJWTError as e:
        logger.info(f"Rejected access token: {e}")
        return None
    return payload.get("id")


def set_token_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=settings.cookie_expire_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def clear_token_cookie(response: Response) -> None:
    response.set_cookie(TOKEN_COOKIE, "none", max_age=10, httponly=True)


def generate_reset_token() -> Tuple[str, str]:
    """Return the token mailed to the user and the digest stored for it."""
    token = secrets.token_hex(20)
    return token, hash_reset_token(token)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in user.items()
        if key not in ("password", "reset_password_token", "reset_password_expire")
    }


def _read_token(request: Request) -> Optional[str]:
    token = request.cookies.get(TOKEN_COOKIE)
    if token and token != "none":
        return token
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


async def _load_user(request: Request, db) -> Optional[Dict[str, Any]]:
    token = _read_token(request)
    if not token:
        return None
    user_id = decode_access_token(token)
    if not user_id:
        return None
    if not ObjectId.is_valid(user_id):
        return None
    return await db.users.find_one({"_id": ObjectId(user_id)})


async def get_current_user(request: Request, db=Depends(get_db)) -> Dict[str, Any]:
    user = await _load_user(request, db)
    if user is None:
        raise AuthenticationError("Not authorized to access this route")
    return user


async def get_optional_user(request: Request, db=Depends(get_db)) -> Optional[Dict[str, Any]]:
    return await _load_user(request, db)


async def require_admin(user=Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != Role.ADMIN.value:
        raise ForbiddenError(
            f"User role {user.get('role')} is not authorized to access this route"
        )
    return user


def context_for(user: Dict[str, Any]) -> RequestContext:
    return RequestContext(user_id=user["_id"], role=user.get("role", Role.USER.value))


async def get_request_context(user=Depends(get_current_user)) -> RequestContext:
    return context_for(user)
