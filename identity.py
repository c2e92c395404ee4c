from typing import Optional

from fastapi import Request
from jose import JWTError, jwt
from pydantic import BaseModel

from constants import JWT_SECRET, JWT_ALGORITHM
from errors import Unauthorized
from logging_config import get_logger

logger = get_logger(__name__)


class Identity(BaseModel):
    user_id: str
    username: str


def decode_token(token: str) -> Identity:
    """Verify a token issued by the auth service and return who it belongs to."""
    if not token:
        raise Unauthorized("Access denied. No token provided.")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"Rejected token: {e}")
        raise Unauthorized("Invalid or expired token.")

    user_id = payload.get("id") or payload.get("sub")
    username = payload.get("username")
    if not user_id or not username:
        raise Unauthorized("Token is missing the user identity.")
    return Identity(user_id=str(user_id), username=username)


def extract_token(headers, cookies, query_params=None) -> Optional[str]:
    # Same lookup order as the auth middleware: bearer header, cookie, then query string
    auth_header = headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip()
    if cookies.get("token"):
        return cookies.get("token")
    if query_params is not None and query_params.get("token"):
        return query_params.get("token")
    return None


async def get_current_identity(request: Request) -> Identity:
    """FastAPI dependency for routes that need an authenticated user."""
    identity = decode_token(extract_token(request.headers, request.cookies))
    request.app.state.backend.remember_user(identity.user_id, identity.username)
    return identity
