from dataclasses import dataclass

import jwt
from fastapi import HTTPException, Request


@dataclass
class SessionUser:
    user_id: str
    token: str


def user_id_from_token(token: str) -> str | None:
    """Read the user id claim (``sub``, else ``id``) from a JWT.

    The signature is not checked here: the backend verifies the token on
    every call we forward it to, and this id only keys the local buffers.
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    user_id = payload.get("sub") or payload.get("id")
    return str(user_id) if user_id else None


def session_required(request: Request) -> SessionUser:
    """FastAPI dependency: the caller's session from the auth cookie.

    Also hands the token to the heartbeat, which has no other way to get
    a credential for its background flushes.
    """
    state = request.app.state
    token = request.cookies.get(state.settings.auth_cookie_name)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized - no token found")

    user_id = user_id_from_token(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token format")

    state.heartbeat.set_token(token)
    return SessionUser(user_id=user_id, token=token)
