"""Base configuration shared by every environment."""
import os
from datetime import timedelta

class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # JWT Configuration
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'jwt-secret-key-change-in-production'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=2)
    JWT_ALGORITHM = 'HS256'

    # CORS
    CORS_ORIGINS = ["http://localhost:*", "http://127.0.0.1:*"]

    # Rate Limiting
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'

    # Attendance tokens
    TOKEN_CHECKSUM_KEY = os.environ.get('TOKEN_CHECKSUM_KEY') or 'token-checksum-key-change-in-production'
    TOKEN_DEFAULT_TTL_MINUTES = 30
    TOKEN_MAX_TTL_MINUTES = 240

    # Attendance policy defaults for new meetings
    DEFAULT_LATE_ENTRY_CUTOFF_MINUTES = 15
    REQUIRE_APPROVAL_DEFAULT = True

    # Pagination
    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100

    # File Upload
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024  # 2MB roster files
    ALLOWED_EXTENSIONS = {'csv'}

    # Logging
    LOG_LEVEL = 'INFO'
    LOG_FILE = 'logs/app.log'
