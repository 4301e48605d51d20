"""Submission ledger: turns token redemptions into presence records.

The (participant, meeting) pair is unique in the database. Redemption relies
on that constraint instead of a lock: the insert either succeeds or fails
with an IntegrityError, which is reported as ``AlreadySubmitted`` and never
retried.
"""
from datetime import datetime
from typing import Dict, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from rollcall import db
from rollcall.models.attendance import AttendanceStatus, SubmissionRecord
from rollcall.models.base import utcnow
from rollcall.models.meeting import Meeting
from rollcall.models.redemption_log import RedemptionLog
from rollcall.models.user import User
from rollcall.services.errors import (
    AlreadyCheckedOut, AlreadySubmitted, DomainError, Forbidden, LateEntryNotAllowed,
    LocationNotVerified, NotEnrolled, NotFound, SessionNotActive, ValidationFailed
)
from rollcall.services.location_service import LocationService
from rollcall.services.meeting_service import MeetingService
from rollcall.services.token_codec import TokenCodec
from rollcall.utils.validators import Validator

class SubmissionService:
    """Service for recording and reading presence claims."""

    @staticmethod
    def load_record(record_id: int) -> SubmissionRecord:
        record = db.session.get(SubmissionRecord, record_id) if record_id is not None else None
        if record is None or not record.is_active:
            raise NotFound("Attendance record not found")
        return record

    @staticmethod
    def _normalize_evidence(evidence: Optional[Dict]) -> Dict:
        evidence = evidence or {}
        if not isinstance(evidence, dict):
            raise ValidationFailed("Evidence must be an object")

        location = evidence.get('location')
        if location is not None:
            check = Validator.validate_location(location)
            if not check['is_valid']:
                raise ValidationFailed('; '.join(check['errors']))

        device_info = evidence.get('device_info')
        if device_info is not None and not isinstance(device_info, dict):
            raise ValidationFailed("Device info must be an object")

        return {'location': location, 'device_info': device_info}

    @staticmethod
    def redeem(raw_payload, participant_id: int, evidence: Dict = None,
               now: datetime = None) -> Tuple[Optional[SubmissionRecord], Optional[DomainError]]:
        """
        Redeem a scanned token on behalf of ``participant_id``.
        Returns: (record, error)
        """
        now = now or utcnow()
        log = None
        normalized = {}

        try:
            normalized = SubmissionService._normalize_evidence(evidence)

            token, error = TokenCodec.from_app().verify(raw_payload, now=now)
            if error:
                raise error

            meeting = MeetingService.load_meeting(token.meeting_id)
            log = RedemptionLog.query.filter_by(meeting_id=meeting.id, checksum=token.checksum).first()

            if not MeetingService.is_redeemable(meeting, now):
                raise SessionNotActive()

            if not meeting.is_enrolled(participant_id):
                raise NotEnrolled()

            if meeting.location_verification:
                result = LocationService.verify_location(normalized['location'], meeting)
                if not result['is_inside']:
                    raise LocationNotVerified(result['reason'])

            if not meeting.allow_late_entry and now > meeting.late_cutoff_time:
                raise LateEntryNotAllowed()

            location = normalized['location'] or {}
            record = SubmissionRecord(
                participant_id=participant_id,
                meeting_id=meeting.id,
                status=AttendanceStatus.PRESENT,
                check_in_time=now,
                submitted_at=now,
                is_pending_approval=True,
                is_approved=False,
                token_checksum=token.checksum,
                scanned_at=now,
                token_is_valid=True,
                latitude=location.get('lat'),
                longitude=location.get('lng'),
                location_accuracy=location.get('accuracy'),
                device_info=normalized['device_info'],
                created_by=participant_id
            )
            if not meeting.require_approval:
                record.is_pending_approval = False
                record.is_approved = True
                record.approved_at = now
                record.verified_at = now
                record.verification_notes = 'Accepted automatically'

            try:
                db.session.add(record)
                db.session.flush()

                if log is not None:
                    log.record_scan(participant_id, now, is_valid=True, evidence=normalized)
                if not meeting.require_approval:
                    MeetingService.recount_attendance(meeting.id)

                db.session.commit()
            except IntegrityError:
                raise AlreadySubmitted()

        except DomainError as e:
            db.session.rollback()
            current_app.logger.warning(
                'Rejected redemption by participant %s: %s', participant_id, e.kind
            )
            SubmissionService._record_rejection(log, participant_id, now, e, normalized)
            return None, e

        current_app.logger.info(
            'Participant %s redeemed token for meeting %s (record %s)',
            participant_id, record.meeting_id, record.id
        )
        return record, None

    @staticmethod
    def _record_rejection(log: Optional[RedemptionLog], participant_id: int,
                          now: datetime, error: DomainError, evidence: Dict) -> None:
        """Append an invalid scan for diagnostics when the token's log is known."""
        if log is None:
            return
        log.record_scan(participant_id, now, is_valid=False, reason=error.kind, evidence=evidence)
        db.session.commit()

    @staticmethod
    def checkout(record_id: int, actor: User, check_out_time: datetime = None,
                 now: datetime = None) -> Tuple[Optional[SubmissionRecord], Optional[DomainError]]:
        """Stamp the check-out time on a record."""
        try:
            record = SubmissionService.load_record(record_id)
            meeting = record.meeting

            if actor is None or (actor.id != record.participant_id and not actor.can_review(meeting)):
                raise Forbidden("You can only check out your own attendance")

            check_out_time = check_out_time or now or utcnow()
            if check_out_time < record.check_in_time:
                raise ValidationFailed("Check-out time cannot be before check-in time")

            if meeting.require_checkout:
                # No re-entry: only the first check-out sticks.
                updated = SubmissionRecord.query.filter(
                    SubmissionRecord.id == record.id,
                    SubmissionRecord.check_out_time.is_(None)
                ).update({SubmissionRecord.check_out_time: check_out_time}, synchronize_session=False)
                if updated != 1:
                    raise AlreadyCheckedOut()
            else:
                record.check_out_time = check_out_time

            db.session.commit()
            return record, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def mark_manual(meeting_id: int, participant_id: int, actor: User, status='present',
                    check_in_time: datetime = None, notes: str = None, is_proxy: bool = False,
                    proxy_reason: str = None,
                    now: datetime = None) -> Tuple[Optional[SubmissionRecord], Optional[DomainError]]:
        """Reviewer-entered record, created already approved."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            now = now or utcnow()

            final_status = AttendanceStatus.parse(status or 'present')
            if final_status is None:
                raise ValidationFailed("Invalid attendance status")

            notes_check = Validator.validate_notes(notes)
            if not notes_check['is_valid']:
                raise ValidationFailed('; '.join(notes_check['errors']))

            if not meeting.is_enrolled(participant_id):
                raise NotEnrolled("Participant is not enrolled in this session")

            if is_proxy and not meeting.allow_proxy:
                raise Forbidden("Proxy attendance is not allowed for this session")
            if proxy_reason and len(proxy_reason) > 200:
                raise ValidationFailed("Proxy reason cannot exceed 200 characters")

            record = SubmissionRecord(
                participant_id=participant_id,
                meeting_id=meeting.id,
                status=final_status,
                check_in_time=check_in_time or now,
                is_pending_approval=False,
                is_approved=True,
                approved_by=actor.id,
                approved_at=now,
                verified_by=actor.id,
                verified_at=now,
                verification_notes=notes,
                token_is_valid=False,
                is_proxy=bool(is_proxy),
                proxy_reason=proxy_reason if is_proxy else None,
                created_by=actor.id
            )

            try:
                db.session.add(record)
                db.session.flush()
                MeetingService.recount_attendance(meeting.id)
                db.session.commit()
            except IntegrityError:
                raise AlreadySubmitted("Attendance already marked for this participant")

            current_app.logger.info(
                'User %s marked participant %s %s for meeting %s',
                actor.id, participant_id, final_status.value, meeting.id
            )
            return record, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def list_records(actor: User, meeting_id: int = None, participant_id: int = None,
                     status: str = None, start: datetime = None, end: datetime = None,
                     page: int = 1, per_page: int = None) -> Tuple[Optional[Dict], Optional[DomainError]]:
        """Paginated records visible to ``actor``."""
        try:
            if actor is None:
                raise Forbidden()

            query = SubmissionRecord.query.filter(SubmissionRecord.is_active.is_(True))

            if actor.is_student():
                participant_id = actor.id
            elif not actor.is_admin():
                if meeting_id is not None:
                    MeetingService.load_for_review(meeting_id, actor)
                query = query.join(Meeting, SubmissionRecord.meeting_id == Meeting.id).filter(
                    Meeting.owner_id == actor.id
                )

            if meeting_id is not None:
                query = query.filter(SubmissionRecord.meeting_id == meeting_id)
            if participant_id is not None:
                query = query.filter(SubmissionRecord.participant_id == participant_id)
            if status:
                parsed = AttendanceStatus.parse(status)
                if parsed is None:
                    raise ValidationFailed("Invalid status filter")
                query = query.filter(SubmissionRecord.status == parsed)
            if start:
                query = query.filter(SubmissionRecord.check_in_time >= start)
            if end:
                query = query.filter(SubmissionRecord.check_in_time <= end)

            config = current_app.config
            per_page = min(per_page or config.get('DEFAULT_PAGE_SIZE', 20), config.get('MAX_PAGE_SIZE', 100))
            pagination = query.order_by(SubmissionRecord.check_in_time.desc()).paginate(
                page=max(page or 1, 1), per_page=per_page, error_out=False
            )

            return {
                'records': [record.to_dict() for record in pagination.items],
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
    def pending_for_meeting(meeting_id: int, actor: User) -> Tuple[Optional[list], Optional[DomainError]]:
        """Records in a meeting still awaiting review."""
        try:
            meeting = MeetingService.load_for_review(meeting_id, actor)
            records = meeting.records.filter_by(is_active=True, is_pending_approval=True).order_by(
                SubmissionRecord.check_in_time
            ).all()
            return records, None
        except DomainError as e:
            return None, e

    @staticmethod
    def soft_delete(record_id: int, actor: User) -> Tuple[Optional[SubmissionRecord], Optional[DomainError]]:
        """Tombstone a record; the row stays for the audit trail."""
        try:
            record = SubmissionService.load_record(record_id)
            if actor is None or actor.is_student():
                raise Forbidden("Students cannot delete attendance records")
            if not actor.can_review(record.meeting):
                raise Forbidden("You do not have permission to delete this attendance record")

            record.is_active = False
            db.session.flush()
            MeetingService.recount_attendance(record.meeting_id)
            db.session.commit()

            current_app.logger.info('User %s removed attendance record %s', actor.id, record.id)
            return record, None

        except DomainError as e:
            db.session.rollback()
            return None, e
