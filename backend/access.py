from functools import wraps

from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request

from errors import ForbiddenError
from users import ROLE_ADMIN

ADMIN_REQUIRED_MESSAGE = "Administrator access required"


def current_user_id() -> str:
    return str(get_jwt_identity() or "")


def current_role() -> str:
    return str(get_jwt().get("role") or "")


def is_admin() -> bool:
    return current_role() == ROLE_ADMIN


def admin_required(view):
    """Require a valid token whose role claim is admin."""

    @wraps(view)
    def decorated(*args, **kwargs):
        verify_jwt_in_request()
        if not is_admin():
            raise ForbiddenError(ADMIN_REQUIRED_MESSAGE)
        return view(*args, **kwargs)

    return decorated
