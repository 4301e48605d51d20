"""Validation utilities for the application."""
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

class Validator:
    """Validation helper class."""

    @staticmethod
    def validate_email(email: str) -> bool:
        """Validate email format."""
        if not email:
            return False
        pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        return bool(re.match(pattern, email))

    @staticmethod
    def validate_required_fields(data: Dict, required_fields: List[str]) -> Dict[str, Any]:
        """Validate required fields in data."""
        errors = []

        for field in required_fields:
            if field not in data or data[field] in (None, ''):
                errors.append(f"{field} is required")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def parse_datetime(value: Any) -> Optional[datetime]:
        """Parse an ISO-8601 value into naive UTC, or None when it is not one."""
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str) and value:
            text = value[:-1] + '+00:00' if value.endswith('Z') else value
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                return None
        else:
            return None

        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    @staticmethod
    def validate_location(location: Any) -> Dict[str, Any]:
        """Validate a ``{lat, lng, accuracy?}`` mapping."""
        errors = []

        if not isinstance(location, dict):
            return {"is_valid": False, "errors": ["Location must be an object"]}

        lat = location.get('lat')
        lng = location.get('lng')
        if not isinstance(lat, (int, float)) or isinstance(lat, bool) or not -90 <= lat <= 90:
            errors.append("Latitude must be between -90 and 90")
        if not isinstance(lng, (int, float)) or isinstance(lng, bool) or not -180 <= lng <= 180:
            errors.append("Longitude must be between -180 and 180")

        accuracy = location.get('accuracy')
        if accuracy is not None and (not isinstance(accuracy, (int, float)) or accuracy < 0):
            errors.append("Accuracy must be a non-negative number")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def validate_notes(notes: Any, max_length: int = 500) -> Dict[str, Any]:
        """Validate optional free-text notes."""
        errors = []

        if notes is not None:
            if not isinstance(notes, str):
                errors.append("Notes must be a string")
            elif len(notes) > max_length:
                errors.append(f"Notes cannot exceed {max_length} characters")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }
