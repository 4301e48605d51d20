"""Models package with all models."""
from .base import BaseModel, utcnow
from .user import User, UserRole
from .meeting import Meeting, MeetingStatus, MeetingEnrollment
from .attendance import SubmissionRecord, AttendanceStatus
from .redemption_log import RedemptionLog, RedemptionScan

__all__ = [
    'BaseModel', 'utcnow', 'User', 'UserRole',
    'Meeting', 'MeetingStatus', 'MeetingEnrollment',
    'SubmissionRecord', 'AttendanceStatus',
    'RedemptionLog', 'RedemptionScan'
]
