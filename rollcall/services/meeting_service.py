"""Meeting lifecycle service.

scheduled -(start)-> active -(end)-> completed
scheduled|active -(cancel)-> cancelled
scheduled|active -(postpone)-> postponed

Every transition is a conditional UPDATE on the current status, so when two
requests race on the same meeting exactly one of them changes the row and
the other sees ``InvalidTransition``.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from flask import current_app
from sqlalchemy import func, select

from rollcall import db
from rollcall.models.attendance import AttendanceStatus, SubmissionRecord
from rollcall.models.base import utcnow
from rollcall.models.meeting import Meeting, MeetingEnrollment, MeetingStatus
from rollcall.models.redemption_log import RedemptionLog
from rollcall.models.user import User
from rollcall.services.errors import (
    DomainError, Forbidden, InvalidTransition, MeetingNotFound, ValidationFailed
)
from rollcall.services.token_codec import Token, TokenCodec
from rollcall.utils.validators import Validator

SETTING_FIELDS = {
    'late_entry_cutoff_minutes': int,
    'allow_late_entry': bool,
    'require_checkout': bool,
    'allow_proxy': bool,
    'location_verification': bool,
    'allowed_location_radius': int,
    'require_approval': bool,
}

UPDATABLE_FIELDS = {
    'title', 'description', 'subject', 'course_code', 'location',
    'latitude', 'longitude', 'start_time', 'end_time', 'attendance_settings',
}

class MeetingService:
    """Service for the meeting state machine and its roster."""

    # ------------------------------------------------------------------
    # Lookup helpers shared with the ledger and approval services
    # ------------------------------------------------------------------

    @staticmethod
    def load_meeting(meeting_id: int) -> Meeting:
        meeting = db.session.get(Meeting, meeting_id) if meeting_id is not None else None
        if meeting is None or not meeting.is_active:
            raise MeetingNotFound()
        return meeting

    @staticmethod
    def load_for_review(meeting_id: int, actor: User) -> Meeting:
        """Load a meeting the actor owns (or any meeting for admins)."""
        meeting = MeetingService.load_meeting(meeting_id)
        if actor is None or not actor.can_review(meeting):
            raise Forbidden()
        return meeting

    @staticmethod
    def is_redeemable(meeting: Meeting, now: datetime = None) -> bool:
        """True iff the meeting is active and its token has not expired."""
        now = now or utcnow()
        return (
            meeting.status == MeetingStatus.ACTIVE
            and meeting.has_token()
            and now <= meeting.token_expires_at
        )

    @staticmethod
    def recount_attendance(meeting_id: int) -> int:
        """Recompute the cached attendance count from the ledger; the caller commits."""
        counted = select(func.count(SubmissionRecord.id)).where(
            SubmissionRecord.meeting_id == meeting_id,
            SubmissionRecord.is_active.is_(True),
            SubmissionRecord.status == AttendanceStatus.PRESENT,
            SubmissionRecord.is_pending_approval.is_(False),
        ).scalar_subquery()

        Meeting.query.filter(Meeting.id == meeting_id).update(
            {Meeting.attendance_count: counted}, synchronize_session=False
        )
        count = db.session.scalar(select(Meeting.attendance_count).where(Meeting.id == meeting_id))

        meeting = db.session.get(Meeting, meeting_id)
        if meeting is not None:
            db.session.expire(meeting, ['attendance_count'])
        return count or 0

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    @staticmethod
    def create_meeting(owner: User, data: Dict) -> Tuple[Optional[Meeting], Optional[DomainError]]:
        """Create a scheduled meeting owned by ``owner``."""
        try:
            if owner is None or not owner.is_faculty():
                raise Forbidden("Only faculty can create sessions")

            validation = Validator.validate_required_fields(
                data, ['title', 'location', 'start_time', 'end_time']
            )
            if not validation['is_valid']:
                raise ValidationFailed('; '.join(validation['errors']))

            start_time = Validator.parse_datetime(data['start_time'])
            end_time = Validator.parse_datetime(data['end_time'])
            if start_time is None or end_time is None:
                raise ValidationFailed("Invalid start or end time")
            if start_time >= end_time:
                raise ValidationFailed("End time must be after start time")

            title = str(data['title']).strip()
            if len(title) > 100:
                raise ValidationFailed("Session title cannot exceed 100 characters")

            settings = MeetingService._parse_settings(data.get('attendance_settings') or {})

            if data.get('latitude') is not None or data.get('longitude') is not None:
                position = Validator.validate_location({'lat': data.get('latitude'), 'lng': data.get('longitude')})
                if not position['is_valid']:
                    raise ValidationFailed('; '.join(position['errors']))

            meeting = Meeting(
                title=title,
                description=data.get('description'),
                subject=data.get('subject'),
                course_code=str(data.get('course_code') or '').strip().upper() or None,
                owner_id=owner.id,
                start_time=start_time,
                end_time=end_time,
                location=str(data['location']).strip(),
                latitude=data.get('latitude'),
                longitude=data.get('longitude'),
                status=MeetingStatus.SCHEDULED,
                **settings
            )

            if meeting.location_verification and (meeting.latitude is None or meeting.longitude is None):
                raise ValidationFailed("Location verification needs the session latitude and longitude")

            db.session.add(meeting)
            db.session.flush()

            participant_ids = data.get('participant_ids') or []
            if participant_ids:
                MeetingService._add_participants(meeting, participant_ids)

            db.session.commit()
            current_app.logger.info('Meeting %s created by user %s', meeting.id, owner.id)
            return meeting, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def _parse_settings(raw: Dict) -> Dict:
        config = current_app.config
        settings = {
            'late_entry_cutoff_minutes': config.get('DEFAULT_LATE_ENTRY_CUTOFF_MINUTES', 15),
            'require_approval': config.get('REQUIRE_APPROVAL_DEFAULT', True),
        }
        settings.update(MeetingService._check_settings(raw))
        return settings

    @staticmethod
    def _check_settings(raw: Dict) -> Dict:
        if not isinstance(raw, dict):
            raise ValidationFailed("attendance_settings must be an object")
        settings = {}
        for name, value in raw.items():
            expected = SETTING_FIELDS.get(name)
            if expected is None:
                raise ValidationFailed(f"Unknown attendance setting: {name}")
            if expected is bool and not isinstance(value, bool):
                raise ValidationFailed(f"{name} must be true or false")
            if expected is int and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                raise ValidationFailed(f"{name} must be a non-negative integer")
            settings[name] = value
        return settings

    @staticmethod
    def get_meeting(meeting_id: int, actor: User) -> Tuple[Optional[Meeting], Optional[DomainError]]:
        """Meeting visible to its reviewers and enrolled participants."""
        try:
            meeting = MeetingService.load_meeting(meeting_id)
            if actor is None:
                raise Forbidden()
            if not actor.can_review(meeting) and not meeting.is_enrolled(actor.id):
                raise Forbidden("You do not have permission to view this session")
            return meeting, None
        except DomainError as e:
            return None, e

    @staticmethod
    def list_meetings(actor: User, status: str = None, page: int = 1,
                      per_page: int = None) -> Tuple[Optional[Dict], Optional[DomainError]]:
        """Paginated meetings visible to ``actor``, newest first."""
        try:
            if actor is None:
                raise Forbidden()

            query = Meeting.query.filter(Meeting.is_active.is_(True))

            if actor.is_student():
                query = query.join(
                    MeetingEnrollment, MeetingEnrollment.meeting_id == Meeting.id
                ).filter(MeetingEnrollment.participant_id == actor.id)
            elif not actor.is_admin():
                query = query.filter(Meeting.owner_id == actor.id)

            if status:
                try:
                    query = query.filter(Meeting.status == MeetingStatus(status))
                except ValueError:
                    raise ValidationFailed("Invalid status filter")

            config = current_app.config
            per_page = min(per_page or config.get('DEFAULT_PAGE_SIZE', 20), config.get('MAX_PAGE_SIZE', 100))
            pagination = query.order_by(Meeting.start_time.desc()).paginate(
                page=max(page or 1, 1), per_page=per_page, error_out=False
            )

            return {
                'meetings': [meeting.to_dict() for meeting in pagination.items],
                'pagination': {
                    'page': pagination.page,
                    'per_page': pagination.per_page,
                    'total': pagination.total,
                    'pages': pagination.pages
                }
            }, None

        except DomainError as e:
            return None, e

    @staticmethod
    def update_meeting(meeting_id: int, actor: User, data: Dict) -> Tuple[Optional[Meeting], Optional[DomainError]]:
        """Edit details and settings of a meeting that has not started."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            if meeting.status != MeetingStatus.SCHEDULED:
                raise InvalidTransition("Only scheduled sessions can be edited")

            if not isinstance(data, dict) or not data:
                raise ValidationFailed("No changes supplied")
            unknown = set(data) - UPDATABLE_FIELDS
            if unknown:
                raise ValidationFailed(f"Cannot update: {', '.join(sorted(unknown))}")

            changes = {}
            for name in ('title', 'location'):
                if name in data:
                    value = str(data[name] or '').strip()
                    if not value:
                        raise ValidationFailed(f"{name} cannot be empty")
                    changes[name] = value
            if len(changes.get('title', '')) > 100:
                raise ValidationFailed("Session title cannot exceed 100 characters")

            for name in ('description', 'subject'):
                if name in data:
                    changes[name] = data[name]
            if 'course_code' in data:
                changes['course_code'] = str(data['course_code'] or '').strip().upper() or None

            for name in ('start_time', 'end_time'):
                if name in data:
                    parsed = Validator.parse_datetime(data[name])
                    if parsed is None:
                        raise ValidationFailed(f"Invalid {name}")
                    changes[name] = parsed
            if changes.get('start_time', meeting.start_time) >= changes.get('end_time', meeting.end_time):
                raise ValidationFailed("End time must be after start time")

            if 'latitude' in data or 'longitude' in data:
                latitude = data.get('latitude', meeting.latitude)
                longitude = data.get('longitude', meeting.longitude)
                if latitude is not None or longitude is not None:
                    position = Validator.validate_location({'lat': latitude, 'lng': longitude})
                    if not position['is_valid']:
                        raise ValidationFailed('; '.join(position['errors']))
                changes['latitude'] = latitude
                changes['longitude'] = longitude

            if 'attendance_settings' in data:
                changes.update(MeetingService._check_settings(data['attendance_settings']))

            if changes.get('location_verification', meeting.location_verification) and (
                changes.get('latitude', meeting.latitude) is None
                or changes.get('longitude', meeting.longitude) is None
            ):
                raise ValidationFailed("Location verification needs the session latitude and longitude")

            values = {getattr(Meeting, key): value for key, value in changes.items()}
            values[Meeting.updated_at] = utcnow()
            updated = Meeting.query.filter(
                Meeting.id == meeting.id,
                Meeting.status == MeetingStatus.SCHEDULED,
                Meeting.is_active.is_(True)
            ).update(values, synchronize_session=False)
            if updated != 1:
                raise InvalidTransition("Only scheduled sessions can be edited")

            db.session.commit()
            current_app.logger.info(
                'Meeting %s updated by user %s: %s', meeting.id, actor.id, ', '.join(sorted(changes))
            )
            return meeting, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def delete_meeting(meeting_id: int, actor: User) -> Tuple[Optional[Meeting], Optional[DomainError]]:
        """Tombstone a meeting that never ran or was called off."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            deletable = [MeetingStatus.SCHEDULED, MeetingStatus.CANCELLED, MeetingStatus.POSTPONED]
            if meeting.status not in deletable:
                raise InvalidTransition(f"Cannot delete a session while {meeting.status.value}")

            updated = Meeting.query.filter(
                Meeting.id == meeting.id,
                Meeting.status.in_(deletable),
                Meeting.is_active.is_(True)
            ).update({Meeting.is_active: False, Meeting.updated_at: utcnow()}, synchronize_session=False)
            if updated != 1:
                raise InvalidTransition("Session changed state; delete not applied")

            db.session.commit()
            current_app.logger.info('Meeting %s deleted by user %s', meeting.id, actor.id)
            return meeting, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(meeting: Meeting, allowed_from: Iterable[MeetingStatus],
                    target: MeetingStatus, values: Dict = None) -> None:
        """Move ``meeting`` to ``target`` if it is still in one of ``allowed_from``."""
        allowed_from = list(allowed_from)
        if meeting.status not in allowed_from:
            raise InvalidTransition(
                f"Session cannot become {target.value} while {meeting.status.value}"
            )

        changes = {Meeting.status: target, Meeting.updated_at: utcnow()}
        for key, value in (values or {}).items():
            changes[getattr(Meeting, key)] = value

        updated = Meeting.query.filter(
            Meeting.id == meeting.id,
            Meeting.status.in_(allowed_from)
        ).update(changes, synchronize_session=False)

        if updated != 1:
            raise InvalidTransition(f"Session cannot become {target.value} from its current status")

        db.session.refresh(meeting)

    @staticmethod
    def _deactivate_token(meeting: Meeting, now: datetime) -> None:
        for log in meeting.redemption_logs.filter_by(is_active=True):
            log.deactivate(now)
        meeting.clear_token()

    @staticmethod
    def _resolve_ttl(ttl_minutes) -> int:
        config = current_app.config
        if ttl_minutes is None:
            return config.get('TOKEN_DEFAULT_TTL_MINUTES', 30)
        if isinstance(ttl_minutes, bool) or not isinstance(ttl_minutes, int) or ttl_minutes <= 0:
            raise ValidationFailed("Token lifetime must be a positive number of minutes")
        return min(ttl_minutes, config.get('TOKEN_MAX_TTL_MINUTES', 240))

    @staticmethod
    def start(meeting_id: int, actor: User, ttl_minutes: int = None,
              now: datetime = None) -> Tuple[Optional[Tuple[Meeting, Token]], Optional[DomainError]]:
        """
        Activate a scheduled meeting and issue its token.
        Returns: ((meeting, token), error)
        """
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            ttl = MeetingService._resolve_ttl(ttl_minutes)
            now = now or utcnow()

            MeetingService._transition(
                meeting, [MeetingStatus.SCHEDULED], MeetingStatus.ACTIVE,
                {'actual_start_time': now, 'status_reason': None}
            )

            codec = TokenCodec.from_app()
            token = codec.issue(meeting, ttl, now=now)
            code = codec.generate_redemption_code(meeting.id, now)

            meeting.token_code = code
            meeting.token_checksum = token.checksum
            meeting.token_issued_at = token.issued_at
            meeting.token_expires_at = token.expires_at
            meeting.token_payload = token.to_payload()

            db.session.add(RedemptionLog(
                code=code,
                checksum=token.checksum,
                meeting_id=meeting.id,
                issued_by=actor.id,
                payload=token.to_payload(),
                expires_at=token.expires_at
            ))
            db.session.commit()

            current_app.logger.info(
                'Meeting %s started by user %s, token %s expires at %s',
                meeting.id, actor.id, code, token.expires_at.isoformat()
            )
            return (meeting, token), None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def end(meeting_id: int, actor: User, now: datetime = None) -> Tuple[Optional[Meeting], Optional[DomainError]]:
        """Complete an active meeting and retire its token."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            now = now or utcnow()

            MeetingService._transition(
                meeting, [MeetingStatus.ACTIVE], MeetingStatus.COMPLETED,
                {'actual_end_time': now}
            )
            MeetingService._deactivate_token(meeting, now)
            MeetingService.recount_attendance(meeting.id)
            db.session.commit()

            current_app.logger.info('Meeting %s ended by user %s', meeting.id, actor.id)
            return meeting, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def cancel(meeting_id: int, actor: User, reason: str = None,
               now: datetime = None) -> Tuple[Optional[Meeting], Optional[DomainError]]:
        """Cancel a scheduled or active meeting."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            now = now or utcnow()

            MeetingService._transition(
                meeting, [MeetingStatus.SCHEDULED, MeetingStatus.ACTIVE], MeetingStatus.CANCELLED,
                {'status_reason': reason}
            )
            MeetingService._deactivate_token(meeting, now)
            db.session.commit()

            current_app.logger.info('Meeting %s cancelled by user %s', meeting.id, actor.id)
            return meeting, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def postpone(meeting_id: int, actor: User, reason: str = None,
                 now: datetime = None) -> Tuple[Optional[Meeting], Optional[DomainError]]:
        """Postpone a scheduled or active meeting."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            now = now or utcnow()

            MeetingService._transition(
                meeting, [MeetingStatus.SCHEDULED, MeetingStatus.ACTIVE], MeetingStatus.POSTPONED,
                {'status_reason': reason}
            )
            MeetingService._deactivate_token(meeting, now)
            db.session.commit()

            current_app.logger.info('Meeting %s postponed by user %s', meeting.id, actor.id)
            return meeting, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def expire_stale_tokens(now: datetime = None) -> int:
        """Mark redemption logs past their expiry as inactive. Returns how many changed."""
        now = now or utcnow()
        stale = RedemptionLog.query.filter(
            RedemptionLog.is_active.is_(True),
            RedemptionLog.expires_at < now
        ).all()

        for log in stale:
            log.deactivate(now)
        db.session.commit()

        if stale:
            current_app.logger.info('Expired %d redemption token(s)', len(stale))
        return len(stale)

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    @staticmethod
    def _add_participants(meeting: Meeting, participant_ids: Iterable) -> Dict[str, List]:
        """Add unknown participants to the roster; the caller commits."""
        ids = []
        for raw in participant_ids:
            if isinstance(raw, bool) or not isinstance(raw, int):
                raise ValidationFailed("Participant ids must be integers")
            if raw not in ids:
                ids.append(raw)

        existing = meeting.roster_ids()
        known = {
            user_id for (user_id,) in db.session.query(User.id).filter(
                User.id.in_(ids), User.is_active.is_(True)
            )
        }

        summary = {'added': [], 'already_enrolled': [], 'not_found': []}
        for participant_id in ids:
            if participant_id in existing:
                summary['already_enrolled'].append(participant_id)
            elif participant_id not in known:
                summary['not_found'].append(participant_id)
            else:
                db.session.add(MeetingEnrollment(meeting_id=meeting.id, participant_id=participant_id))
                summary['added'].append(participant_id)
        return summary

    @staticmethod
    def enroll(meeting_id: int, actor: User, participant_ids: List[int]) -> Tuple[Optional[Dict], Optional[DomainError]]:
        """Enroll participants; already-enrolled ids are skipped."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            if not isinstance(participant_ids, list) or not participant_ids:
                raise ValidationFailed("participant_ids must be a non-empty list")

            summary = MeetingService._add_participants(meeting, participant_ids)
            db.session.commit()
            summary['roster_size'] = meeting.enrollments.count()
            return summary, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def unenroll(meeting_id: int, actor: User, participant_id: int) -> Tuple[Optional[Dict], Optional[DomainError]]:
        """Remove a participant from the roster. Existing records stay in the ledger."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            removed = meeting.enrollments.filter_by(participant_id=participant_id).delete(
                synchronize_session=False
            )
            db.session.commit()
            return {'removed': bool(removed), 'roster_size': meeting.enrollments.count()}, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def enroll_from_dataframe(meeting_id: int, actor: User, df) -> Tuple[Optional[Dict], Optional[DomainError]]:
        """Enroll participants listed in a roster DataFrame.

        Each row names a participant by ``participant_id``, ``email`` or
        ``student_id``; the first column present wins. Rows that do not
        resolve to an active user are reported and skipped.
        """
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)

            columns = [c for c in ('participant_id', 'email', 'student_id') if c in df.columns]
            if not columns:
                raise ValidationFailed("Roster needs a participant_id, email or student_id column")

            results = []
            resolved = []
            for index, row in df.iterrows():
                user = MeetingService._resolve_roster_row(row, columns)
                if user is None:
                    results.append({
                        'row': index + 2,  # spreadsheet row number
                        'success': False,
                        'error': 'Participant not found'
                    })
                else:
                    resolved.append(user.id)
                    results.append({'row': index + 2, 'success': True, 'participant_id': user.id})

            summary = MeetingService._add_participants(meeting, resolved) if resolved else {
                'added': [], 'already_enrolled': [], 'not_found': []
            }
            db.session.commit()

            summary['rows'] = results
            summary['roster_size'] = meeting.enrollments.count()
            return summary, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def _resolve_roster_row(row, columns: List[str]) -> Optional[User]:
        query = User.query.filter_by(is_active=True)
        for column in columns:
            value = row.get(column)
            if value is None or (isinstance(value, float) and value != value):  # NaN
                continue
            if column == 'participant_id':
                try:
                    return query.filter_by(id=int(value)).first()
                except (TypeError, ValueError):
                    return None
            if column == 'email':
                return query.filter_by(email=str(value).strip().lower()).first()
            return query.filter_by(student_id=str(value).strip()).first()
        return None

    # ------------------------------------------------------------------
    # Reporting feed
    # ------------------------------------------------------------------

    @staticmethod
    def attendance_summary(meeting_id: int, actor: User) -> Tuple[Optional[Dict], Optional[DomainError]]:
        """Read-only attendance feed for one meeting (count recomputed on read)."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            count = MeetingService.recount_attendance(meeting.id)
            db.session.commit()

            records = {
                record.participant_id: record
                for record in meeting.records.filter_by(is_active=True)
            }

            participants = []
            for enrollment in meeting.enrollments.order_by(MeetingEnrollment.participant_id):
                record = records.get(enrollment.participant_id)
                if record is None:
                    status = 'missing'
                elif record.is_pending_approval:
                    status = 'pending'
                else:
                    status = record.display_status
                participants.append({
                    'participant_id': enrollment.participant_id,
                    'name': enrollment.participant.name if enrollment.participant else None,
                    'status': status,
                    'record_id': record.id if record else None,
                    'check_in_time': record.check_in_time.isoformat() if record else None,
                })

            roster_size = len(participants)
            return {
                'meeting_id': meeting.id,
                'status': meeting.status.value,
                'attendance_count': count,
                'roster_size': roster_size,
                'attendance_percentage': round(count / roster_size * 100) if roster_size else 0,
                'participants': participants,
            }, None

        except DomainError as e:
            db.session.rollback()
            return None, e
