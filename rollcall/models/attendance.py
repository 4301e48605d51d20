"""Submission record: one participant's presence claim for one meeting."""
from enum import Enum
from rollcall import db
from rollcall.models.base import BaseModel, utcnow

class AttendanceStatus(Enum):
    """Stored statuses. Late is derived from timing, never stored."""
    PRESENT = 'present'
    ABSENT = 'absent'
    EXCUSED = 'excused'

    @classmethod
    def parse(cls, value):
        """Return the member for ``value`` or None when it is not a valid status."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None

class SubmissionRecord(BaseModel):
    """Attendance ledger entry, unique per (participant, meeting)."""

    __tablename__ = 'submission_records'
    __table_args__ = (
        db.UniqueConstraint('participant_id', 'meeting_id', name='uq_submission_participant_meeting'),
        db.Index('ix_submission_meeting_status', 'meeting_id', 'status'),
    )

    participant_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    meeting_id = db.Column(db.Integer, db.ForeignKey('meetings.id'), nullable=False, index=True)
    status = db.Column(db.Enum(AttendanceStatus), nullable=False, default=AttendanceStatus.PRESENT)

    check_in_time = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    check_out_time = db.Column(db.DateTime, nullable=True)

    # Approval workflow
    is_approved = db.Column(db.Boolean, nullable=False, default=False)
    approved_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)

    # Submission
    submitted_at = db.Column(db.DateTime, nullable=True)
    is_pending_approval = db.Column(db.Boolean, nullable=False, default=True)

    # Reviewer verification
    verified_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)
    verification_notes = db.Column(db.String(500), nullable=True)

    # Redemption evidence
    token_checksum = db.Column(db.String(64), nullable=True)
    scanned_at = db.Column(db.DateTime, nullable=True)
    token_is_valid = db.Column(db.Boolean, nullable=False, default=True)

    # Location where check-in happened
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    location_accuracy = db.Column(db.Float, nullable=True)
    device_info = db.Column(db.JSON, nullable=True)

    is_proxy = db.Column(db.Boolean, nullable=False, default=False)
    proxy_reason = db.Column(db.String(200), nullable=True)

    # Tombstone, records are never hard-deleted
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    participant = db.relationship('User', foreign_keys=[participant_id])

    @property
    def counts_toward_attendance(self) -> bool:
        return self.is_active and self.status == AttendanceStatus.PRESENT and not self.is_pending_approval

    @property
    def is_late(self) -> bool:
        return self.status == AttendanceStatus.PRESENT and self.meeting.is_late_at(self.check_in_time)

    @property
    def display_status(self) -> str:
        """Status as shown to people: late is split out of present."""
        if self.is_late:
            return 'late'
        return self.status.value

    @property
    def duration_minutes(self):
        if self.check_in_time and self.check_out_time:
            return round((self.check_out_time - self.check_in_time).total_seconds() / 60)
        return None

    @property
    def attendance_status(self) -> str:
        if self.status == AttendanceStatus.PRESENT and self.check_out_time:
            duration = self.duration_minutes
            if duration < 30:
                return 'short-attendance'
            if duration > 240:
                return 'extended-attendance'
            return 'normal-attendance'
        return self.status.value

    def to_dict(self, exclude: list = None) -> dict:
        data = super().to_dict(exclude=exclude)
        data['display_status'] = self.display_status
        data['is_late'] = self.is_late
        data['duration_minutes'] = self.duration_minutes
        data['attendance_status'] = self.attendance_status
        return data

    def __repr__(self):
        return f'<SubmissionRecord {self.participant_id}-{self.meeting_id}>'
