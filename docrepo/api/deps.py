from fastapi import Depends

from docrepo.db import get_db
from docrepo.services.auth_dependencies import require_any_role, require_user_auth


def get_current_user(auth=Depends(require_user_auth)):
    """Get current authenticated user info.

    Returns a dict with owner_id, owner_username and roles.
    """
    return auth


__all__ = [
    "get_db",
    "get_current_user",
    "require_any_role",
    "require_user_auth",
]
