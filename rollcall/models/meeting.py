"""Meeting model: one scheduled occurrence that needs proof of presence."""
from datetime import datetime, timedelta
from enum import Enum
from rollcall import db
from rollcall.models.base import BaseModel, utcnow

class MeetingStatus(Enum):
    """Lifecycle states of a meeting."""
    SCHEDULED = 'scheduled'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    POSTPONED = 'postponed'

class Meeting(BaseModel):
    """Scheduled meeting with its attendance settings and active token."""

    __tablename__ = 'meetings'

    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    subject = db.Column(db.String(100), nullable=True)
    course_code = db.Column(db.String(30), nullable=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    # Timing
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    actual_start_time = db.Column(db.DateTime, nullable=True)
    actual_end_time = db.Column(db.DateTime, nullable=True)

    # Location
    location = db.Column(db.String(255), nullable=False)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    status = db.Column(db.Enum(MeetingStatus), nullable=False, default=MeetingStatus.SCHEDULED, index=True)
    status_reason = db.Column(db.String(255), nullable=True)

    # Attendance settings
    late_entry_cutoff_minutes = db.Column(db.Integer, nullable=False, default=15)
    allow_late_entry = db.Column(db.Boolean, nullable=False, default=True)
    require_checkout = db.Column(db.Boolean, nullable=False, default=False)
    allow_proxy = db.Column(db.Boolean, nullable=False, default=False)
    location_verification = db.Column(db.Boolean, nullable=False, default=False)
    allowed_location_radius = db.Column(db.Integer, nullable=False, default=100)  # meters
    require_approval = db.Column(db.Boolean, nullable=False, default=True)

    # Active token, only set while status is ACTIVE
    token_code = db.Column(db.String(80), unique=True, nullable=True)
    token_checksum = db.Column(db.String(64), nullable=True)
    token_issued_at = db.Column(db.DateTime, nullable=True)
    token_expires_at = db.Column(db.DateTime, nullable=True)
    token_payload = db.Column(db.JSON, nullable=True)

    # Recomputed from the ledger, never incremented
    attendance_count = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Relationships
    owner = db.relationship('User', foreign_keys=[owner_id])
    enrollments = db.relationship(
        'MeetingEnrollment', backref='meeting', lazy='dynamic',
        cascade='all, delete-orphan'
    )
    records = db.relationship('SubmissionRecord', backref='meeting', lazy='dynamic')
    redemption_logs = db.relationship('RedemptionLog', backref='meeting', lazy='dynamic')

    @property
    def duration_minutes(self):
        return round((self.end_time - self.start_time).total_seconds() / 60)

    @property
    def late_cutoff_time(self) -> datetime:
        """Moment after which a check-in counts as late."""
        return self.start_time + timedelta(minutes=self.late_entry_cutoff_minutes)

    def is_late_at(self, moment: datetime) -> bool:
        return moment - self.start_time > timedelta(minutes=self.late_entry_cutoff_minutes)

    def has_token(self) -> bool:
        return self.token_payload is not None and self.token_expires_at is not None

    def roster_ids(self) -> set:
        return {enrollment.participant_id for enrollment in self.enrollments}

    def is_enrolled(self, participant_id: int) -> bool:
        return self.enrollments.filter_by(participant_id=participant_id).first() is not None

    def clear_token(self) -> None:
        self.token_code = None
        self.token_checksum = None
        self.token_issued_at = None
        self.token_expires_at = None
        self.token_payload = None

    def to_dict(self, include_token: bool = False) -> dict:
        """Convert to dictionary."""
        exclude = ['token_payload', 'token_checksum']
        if not include_token:
            exclude += ['token_code', 'token_issued_at', 'token_expires_at']
        data = super().to_dict(exclude=exclude)
        data['attendance_settings'] = {
            'late_entry_cutoff_minutes': data.pop('late_entry_cutoff_minutes'),
            'allow_late_entry': data.pop('allow_late_entry'),
            'require_checkout': data.pop('require_checkout'),
            'allow_proxy': data.pop('allow_proxy'),
            'location_verification': data.pop('location_verification'),
            'allowed_location_radius': data.pop('allowed_location_radius'),
            'require_approval': data.pop('require_approval'),
        }
        data['roster_size'] = self.enrollments.count()
        data['duration_minutes'] = self.duration_minutes
        if include_token and self.token_payload is not None:
            data['token_payload'] = self.token_payload
        return data

    def __repr__(self):
        return f'<Meeting {self.id} {self.status.value if self.status else None}>'

class MeetingEnrollment(db.Model):
    """Roster entry: one participant enrolled in one meeting."""

    __tablename__ = 'meeting_enrollments'
    __table_args__ = (
        db.UniqueConstraint('meeting_id', 'participant_id', name='uq_enrollment_meeting_participant'),
    )

    id = db.Column(db.Integer, primary_key=True)
    meeting_id = db.Column(db.Integer, db.ForeignKey('meetings.id'), nullable=False, index=True)
    participant_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    enrolled_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    participant = db.relationship('User')

    def __repr__(self):
        return f'<MeetingEnrollment {self.meeting_id}-{self.participant_id}>'
