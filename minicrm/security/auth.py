from functools import wraps

from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request

from minicrm.errors import PermissionDenied


def current_user_id():
    """The authenticated user's id; JWT identities are stringified ids."""
    identity = get_jwt_identity()
    try:
        return int(identity)
    except (TypeError, ValueError):
        raise PermissionDenied("Token identity is not a user id") from None


def admin_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        if get_jwt().get("role") != "admin":
            raise PermissionDenied("Admin access required")
        return fn(*args, **kwargs)
    return wrapper
