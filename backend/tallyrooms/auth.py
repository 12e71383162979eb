import secrets
import time
import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from .config import settings
from .errors import Unauthorized

security = HTTPBearer(auto_error=False)

# The token only proves which opaque session it belongs to; identity is the
# user row bound to that session id.
def new_session_id() -> str:
    return secrets.token_urlsafe(24)

def create_session_token(session_id: str, expires_minutes: int | None = None) -> str:
    payload = {
        "sub": session_id,
        "iat": int(time.time()),
        "exp": int(time.time()) + 60 * (expires_minutes or settings.session_expire_minutes),
    }
    return jwt.encode(payload, settings.session_secret_key, algorithm=settings.jwt_algorithm)

def decode_session_token(token: str) -> str:
    try:
        data = jwt.decode(token, settings.session_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Session expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid session")
    session_id = data.get("sub")
    if not session_id:
        raise Unauthorized("Invalid session")
    return session_id

def token_from_request(request: Request, creds: HTTPAuthorizationCredentials | None) -> str | None:
    if creds:
        return creds.credentials
    return request.cookies.get(settings.session_cookie_name)

async def get_optional_session_id(
    request: Request, creds: HTTPAuthorizationCredentials | None = Depends(security)
) -> str | None:
    token = token_from_request(request, creds)
    if not token:
        return None
    try:
        return decode_session_token(token)
    except Unauthorized:
        return None

async def get_session_id(
    request: Request, creds: HTTPAuthorizationCredentials | None = Depends(security)
) -> str:
    token = token_from_request(request, creds)
    if not token:
        raise Unauthorized()
    return decode_session_token(token)
