"""Append-only audit of token usage."""
from rollcall import db
from rollcall.models.base import BaseModel, utcnow

class RedemptionLog(BaseModel):
    """One issued token and every scan made against it."""

    __tablename__ = 'redemption_logs'

    code = db.Column(db.String(80), unique=True, nullable=False)
    checksum = db.Column(db.String(64), nullable=False, index=True)
    meeting_id = db.Column(db.Integer, db.ForeignKey('meetings.id'), nullable=False, index=True)
    issued_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deactivated_at = db.Column(db.DateTime, nullable=True)

    scans = db.relationship(
        'RedemptionScan', backref='log', lazy='dynamic',
        order_by='RedemptionScan.scanned_at'
    )

    def status(self, now=None) -> str:
        if not self.is_active:
            return 'inactive'
        if (now or utcnow()) > self.expires_at:
            return 'expired'
        return 'active'

    def deactivate(self, now=None) -> None:
        if self.is_active:
            self.is_active = False
            self.deactivated_at = now or utcnow()

    def record_scan(self, participant_id, scanned_at, is_valid=True, reason=None, evidence=None):
        """Append a scan entry; the caller commits."""
        evidence = evidence or {}
        location = evidence.get('location') or {}
        scan = RedemptionScan(
            log=self,
            participant_id=participant_id,
            scanned_at=scanned_at,
            latitude=location.get('lat'),
            longitude=location.get('lng'),
            location_accuracy=location.get('accuracy'),
            device_info=evidence.get('device_info'),
            is_valid=is_valid,
            reason=reason
        )
        db.session.add(scan)
        return scan

    def to_dict(self, now=None) -> dict:
        data = super().to_dict(exclude=['payload', 'checksum'])
        data['status'] = self.status(now)
        data['scan_count'] = self.scans.count()
        return data

class RedemptionScan(db.Model):
    """A single redemption attempt, valid or not."""

    __tablename__ = 'redemption_scans'

    id = db.Column(db.Integer, primary_key=True)
    log_id = db.Column(db.Integer, db.ForeignKey('redemption_logs.id'), nullable=False, index=True)
    participant_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    scanned_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    location_accuracy = db.Column(db.Float, nullable=True)
    device_info = db.Column(db.JSON, nullable=True)
    is_valid = db.Column(db.Boolean, nullable=False, default=True)
    reason = db.Column(db.String(100), nullable=True)

    def __repr__(self):
        return f'<RedemptionScan {self.log_id}-{self.participant_id} valid={self.is_valid}>'
