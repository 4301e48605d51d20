"""Authentication service for user management."""
from flask import current_app
from flask_jwt_extended import create_access_token, create_refresh_token
from rollcall import db
from rollcall.models.base import utcnow
from rollcall.models.user import User, UserRole
from rollcall.utils.validators import Validator

class AuthService:
    @staticmethod
    def validate_password(password: str) -> tuple:
        """Validate password strength."""
        if len(password) < 6:
            return False, "Password must be at least 6 characters long"
        return True, ""

    @staticmethod
    def login(email: str, password: str) -> tuple:
        """Authenticate user and return tokens."""
        if not email or not password:
            return None, "Email and password are required"

        if not Validator.validate_email(email):
            return None, "Invalid email format"

        user = User.query.filter_by(email=email.lower().strip()).first()

        if not user or not user.check_password(password):
            current_app.logger.warning('Failed login for %s', email)
            return None, "Invalid email or password"

        if not user.is_active:
            return None, "Account is deactivated"

        user.last_login = utcnow()
        user.save()

        # JWT subjects must be strings
        identity = str(user.id)
        return {
            "access_token": create_access_token(identity=identity),
            "refresh_token": create_refresh_token(identity=identity),
            "user": user.to_dict()
        }, None

    @staticmethod
    def create_user(email: str, password: str, name: str, role: str = "student",
                    student_id: str = None) -> tuple:
        """Create a user account."""
        if not all([email, password, name]):
            return None, "Email, password and name are required"

        if not Validator.validate_email(email):
            return None, "Invalid email format"

        is_valid, password_error = AuthService.validate_password(password)
        if not is_valid:
            return None, password_error

        email = email.lower().strip()
        if User.query.filter_by(email=email).first():
            return None, "Email already exists"

        try:
            user_role = UserRole(role.lower())
        except ValueError:
            return None, f"Invalid role: {role}"

        user = User(
            email=email,
            name=name.strip(),
            role=user_role,
            student_id=student_id
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()

        return user, None

    @staticmethod
    def get_user_by_id(user_id: int) -> User:
        """Get user by ID."""
        return db.session.get(User, user_id)
