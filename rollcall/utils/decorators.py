"""Custom decorators for authorization and validation."""
from functools import wraps
from flask import g
from flask_jwt_extended import get_jwt_identity, verify_jwt_in_request
from rollcall import db
from rollcall.models.user import User
from rollcall.utils.helpers import error_response

def _load_current_user():
    try:
        user_id = int(get_jwt_identity())
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user

def get_current_user() -> User:
    """User loaded by ``login_required`` for this request."""
    return g.current_user

def login_required(f):
    """Require a valid access token and an active user; exposes it as ``g.current_user``."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        verify_jwt_in_request()
        user = _load_current_user()

        if not user:
            return error_response("User not found", 404)

        g.current_user = user
        return f(*args, **kwargs)
    return decorated_function

def faculty_required(f):
    """Decorator to require faculty role or higher."""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not g.current_user.is_faculty():
            return error_response("Faculty access required", 403, 'Forbidden')

        return f(*args, **kwargs)
    return decorated_function

def student_required(f):
    """Decorator to require student role."""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not g.current_user.is_student():
            return error_response("Student access required", 403, 'Forbidden')

        return f(*args, **kwargs)
    return decorated_function
