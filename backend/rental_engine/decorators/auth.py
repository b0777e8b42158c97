from functools import wraps
from flask import g
from flask_jwt_extended import verify_jwt_in_request, get_jwt_identity


def require_user(fn):
    """Verify the bearer token and expose the caller's id as ``g.user_id``."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        g.user_id = int(get_jwt_identity())
        return fn(*args, **kwargs)
    return wrapper
