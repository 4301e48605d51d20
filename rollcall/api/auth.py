"""Authentication API."""
from flask import Blueprint
from rollcall import limiter
from rollcall.services.auth_service import AuthService
from rollcall.utils.decorators import get_current_user, login_required
from rollcall.utils.helpers import error_response, get_json_body, success_response

auth_bp = Blueprint("auth", __name__)

@auth_bp.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint."""
    return success_response(message="Auth service is running")

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    """Exchange email and password for an access token."""
    data = get_json_body()

    if not data:
        return error_response("Request body must be JSON", 400)

    email = str(data.get("email") or "").strip()
    password = str(data.get("password") or "")

    if not email or not password:
        return error_response("Email and password are required", 400)

    result, error = AuthService.login(email, password)

    if error:
        return error_response(error, 401)

    return success_response(
        data=result,
        message="Login successful"
    )

@auth_bp.route("/me", methods=["GET"])
@login_required
def get_current_user_profile():
    """Get current user profile."""
    return success_response(data=get_current_user().to_dict())
