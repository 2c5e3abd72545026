from typing import Any, cast

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

from docrepo.config import settings


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def _jwt_secret() -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="JWT secret not configured")
    return settings.jwt_secret


def decode_access_token(token: str) -> dict:
    try:
        payload = cast(
            dict[Any, Any],
            jwt.decode(token, _jwt_secret(), algorithms=[settings.jwt_algorithm]),
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    typ = payload.get("typ")
    if typ is not None and typ != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")
    return payload


def require_user_auth(
    authorization: str | None = Header(default=None),
    request: Request = None,
):
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = decode_access_token(token)
    owner_id = payload.get("sub")
    if not owner_id:
        raise HTTPException(status_code=401, detail="Unauthorized")

    username = payload.get("username") or payload.get("preferred_username") or owner_id
    roles_value = payload.get("roles")
    roles = [str(role).lower() for role in roles_value] if isinstance(roles_value, list) else []
    if request is not None:
        request.state.actor_id = str(owner_id)
        request.state.actor_type = "user"
    return {
        "owner_id": str(owner_id),
        "owner_username": str(username),
        "roles": roles,
    }


def require_any_role(*role_names: str):
    allowed = {name.lower() for name in role_names}

    def _require_any_role(auth=Depends(require_user_auth)):
        if allowed & set(auth.get("roles") or []):
            return auth
        raise HTTPException(status_code=403, detail="Forbidden")

    return _require_any_role
