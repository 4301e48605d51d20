"""Attendance token issuing and verification.

A token is a compact JSON payload bound to one meeting. Every field except
``checksum`` goes into a keyed SHA-256 over the sorted, compact JSON form, so
changing any field (or dropping one) breaks the checksum. This protects against
corrupted or naively edited payloads; it is not an identity credential.
"""
import base64
import hashlib
import hmac
import io
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

import qrcode

from rollcall.models.base import utcnow
from rollcall.services.errors import ChecksumMismatch, DomainError, Expired, MalformedPayload
from rollcall.utils.validators import Validator

TOKEN_TYPE = 'attendance_session'
TOKEN_VERSION = '1.0'
REQUIRED_FIELDS = ('type', 'timestamp', 'checksum')

@dataclass(frozen=True)
class Token:
    """Decoded, checksum-verified attendance token."""
    meeting_id: int
    title: str
    start_time: datetime
    end_time: datetime
    location: str
    issued_at: datetime
    expires_at: datetime
    checksum: str
    subject: Optional[str] = None
    course_code: Optional[str] = None
    version: str = TOKEN_VERSION
    type: str = TOKEN_TYPE

    def is_expired(self, now: datetime = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def to_payload(self) -> Dict[str, Any]:
        """Wire form, checksum last."""
        payload = _unsigned_fields(
            meeting_id=self.meeting_id,
            title=self.title,
            subject=self.subject,
            course_code=self.course_code,
            start_time=self.start_time,
            end_time=self.end_time,
            location=self.location,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            version=self.version,
        )
        payload['checksum'] = self.checksum
        return payload

    def serialize(self) -> str:
        return json.dumps(self.to_payload(), separators=(',', ':'))

def _unsigned_fields(meeting_id, title, subject, course_code, start_time, end_time,
                     location, issued_at, expires_at, version=TOKEN_VERSION) -> Dict[str, Any]:
    return {
        'type': TOKEN_TYPE,
        'version': version,
        'meetingId': meeting_id,
        'title': title,
        'subject': subject,
        'courseCode': course_code,
        'startTime': start_time.isoformat(),
        'endTime': end_time.isoformat(),
        'location': location,
        'timestamp': issued_at.isoformat(),
        'issuedAt': issued_at.isoformat(),
        'expiresAt': expires_at.isoformat(),
    }

class TokenCodec:
    """Builds and verifies token payloads. Pure apart from reading the clock."""

    def __init__(self, key: Union[str, bytes]):
        if not key:
            raise ValueError('TokenCodec needs a non-empty checksum key')
        self.key = key.encode() if isinstance(key, str) else key

    @classmethod
    def from_app(cls) -> 'TokenCodec':
        """Codec keyed from the current Flask app config."""
        from flask import current_app
        return cls(current_app.config['TOKEN_CHECKSUM_KEY'])

    def compute_checksum(self, fields: Dict[str, Any]) -> str:
        canonical = json.dumps(fields, sort_keys=True, separators=(',', ':'), default=str)
        return hmac.new(self.key, canonical.encode('utf-8'), hashlib.sha256).hexdigest()

    def issue(self, meeting, ttl_minutes: int, now: datetime = None) -> Token:
        """Issue a token for ``meeting`` valid for ``ttl_minutes`` from ``now``."""
        issued_at = now or utcnow()
        expires_at = issued_at + timedelta(minutes=ttl_minutes)

        fields = _unsigned_fields(
            meeting_id=meeting.id,
            title=meeting.title,
            subject=meeting.subject,
            course_code=meeting.course_code,
            start_time=meeting.start_time,
            end_time=meeting.end_time,
            location=meeting.location,
            issued_at=issued_at,
            expires_at=expires_at,
        )

        return Token(
            meeting_id=meeting.id,
            title=meeting.title,
            subject=meeting.subject,
            course_code=meeting.course_code,
            start_time=meeting.start_time,
            end_time=meeting.end_time,
            location=meeting.location,
            issued_at=issued_at,
            expires_at=expires_at,
            checksum=self.compute_checksum(fields),
        )

    def verify(self, raw_payload: Union[str, bytes, Dict[str, Any]],
               now: datetime = None) -> Tuple[Optional[Token], Optional[DomainError]]:
        """
        Verify a scanned payload.
        Returns: (token, error) with exactly one of them set.
        """
        try:
            return self._verify(raw_payload, now or utcnow()), None
        except DomainError as e:
            return None, e

    def _verify(self, raw_payload, now: datetime) -> Token:
        payload = self._parse(raw_payload)

        missing = [field for field in REQUIRED_FIELDS if not payload.get(field)]
        if missing:
            raise MalformedPayload(f"Missing required fields: {', '.join(missing)}")

        unsigned = {key: value for key, value in payload.items() if key != 'checksum'}
        checksum = payload['checksum']
        expected = self.compute_checksum(unsigned)
        if not isinstance(checksum, str) or not hmac.compare_digest(checksum, expected):
            raise ChecksumMismatch()

        expires_at = None
        if payload.get('expiresAt') is not None:
            expires_at = self._datetime_field(payload, 'expiresAt')
            if now > expires_at:
                raise Expired()

        return self._decode(payload, expires_at)

    @staticmethod
    def _parse(raw_payload) -> Dict[str, Any]:
        if isinstance(raw_payload, dict):
            return dict(raw_payload)
        if isinstance(raw_payload, bytes):
            try:
                raw_payload = raw_payload.decode('utf-8')
            except UnicodeDecodeError:
                raise MalformedPayload()
        if not isinstance(raw_payload, str):
            raise MalformedPayload()
        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError:
            raise MalformedPayload()
        if not isinstance(payload, dict):
            raise MalformedPayload()
        return payload

    @staticmethod
    def _datetime_field(payload: Dict[str, Any], name: str) -> datetime:
        value = Validator.parse_datetime(payload.get(name))
        if value is None:
            raise MalformedPayload(f"Invalid or missing field: {name}")
        return value

    def _decode(self, payload: Dict[str, Any], expires_at: Optional[datetime]) -> Token:
        if payload['type'] != TOKEN_TYPE:
            raise MalformedPayload('Invalid QR code type')

        meeting_id = payload.get('meetingId')
        if isinstance(meeting_id, bool) or not isinstance(meeting_id, int):
            raise MalformedPayload('Invalid or missing field: meetingId')

        if expires_at is None:
            raise MalformedPayload('Invalid or missing field: expiresAt')

        return Token(
            meeting_id=meeting_id,
            title=payload.get('title') or '',
            subject=payload.get('subject'),
            course_code=payload.get('courseCode'),
            start_time=self._datetime_field(payload, 'startTime'),
            end_time=self._datetime_field(payload, 'endTime'),
            location=payload.get('location') or '',
            issued_at=self._datetime_field(payload, 'issuedAt'),
            expires_at=expires_at,
            checksum=payload['checksum'],
            version=payload.get('version') or TOKEN_VERSION,
        )

    @staticmethod
    def generate_redemption_code(meeting_id: int, now: datetime = None) -> str:
        """Unique code correlating a token with its audit log."""
        stamp = format(int((now or utcnow()).timestamp() * 1000), 'x')
        return f"QR_{meeting_id}_{stamp}_{secrets.token_hex(5)}".upper()

    @staticmethod
    def render_qr(token: Token) -> str:
        """Render the serialized token as a PNG data URL."""
        qr = qrcode.QRCode(
            version=None,  # Auto-determine size
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=10,
            border=4,
        )
        qr.add_data(token.serialize())
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        img_str = base64.b64encode(buffered.getvalue()).decode()

        return f"data:image/png;base64,{img_str}"
