"""Reviewer-facing approval workflow over the submission ledger."""
from datetime import datetime
from typing import Dict, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from rollcall import db
from rollcall.models.attendance import AttendanceStatus, SubmissionRecord
from rollcall.models.base import utcnow
from rollcall.models.user import User
from rollcall.services.errors import DomainError, Forbidden, ValidationFailed
from rollcall.services.meeting_service import MeetingService
from rollcall.services.submission_service import SubmissionService
from rollcall.utils.validators import Validator

class ApprovalService:
    """Approve, reject, bulk-confirm and amend attendance records."""

    @staticmethod
    def _load_for_review(record_id: int, reviewer: User) -> SubmissionRecord:
        record = SubmissionService.load_record(record_id)
        if reviewer is None or not reviewer.can_review(record.meeting):
            raise Forbidden("You can only review attendance for your own sessions")
        return record

    @staticmethod
    def _parse_status(value, field: str = 'status') -> AttendanceStatus:
        status = AttendanceStatus.parse(value) if value is not None else None
        if status is None:
            raise ValidationFailed(f"Valid {field} is required (present, absent or excused)")
        return status

    @staticmethod
    def _check_notes(notes) -> None:
        check = Validator.validate_notes(notes)
        if not check['is_valid']:
            raise ValidationFailed('; '.join(check['errors']))

    @staticmethod
    def approve_one(record_id: int, final_status, reviewer: User, notes: str = None,
                    now: datetime = None) -> Tuple[Optional[SubmissionRecord], Optional[DomainError]]:
        """Confirm a record with ``final_status``. Repeating the same approval is a no-op."""
        try:
            record = ApprovalService._load_for_review(record_id, reviewer)
            status = ApprovalService._parse_status(final_status, 'final status')
            ApprovalService._check_notes(notes)
            now = now or utcnow()

            if record.is_approved and not record.is_pending_approval and record.status == status:
                return record, None

            record.status = status
            record.is_approved = True
            record.approved_by = reviewer.id
            record.approved_at = now
            record.is_pending_approval = False
            record.verified_by = reviewer.id
            record.verified_at = now
            if notes is not None:
                record.verification_notes = notes

            db.session.flush()
            MeetingService.recount_attendance(record.meeting_id)
            db.session.commit()

            current_app.logger.info(
                'User %s approved record %s as %s', reviewer.id, record.id, status.value
            )
            return record, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def reject_one(record_id: int, reviewer: User, reason: str = None,
                   now: datetime = None) -> Tuple[Optional[SubmissionRecord], Optional[DomainError]]:
        """Reject a claim: the record becomes an approved absence."""
        try:
            record = ApprovalService._load_for_review(record_id, reviewer)
            ApprovalService._check_notes(reason)
            now = now or utcnow()

            record.status = AttendanceStatus.ABSENT
            record.is_approved = True
            record.approved_by = reviewer.id
            record.approved_at = now
            record.is_pending_approval = False
            record.verified_by = reviewer.id
            record.verified_at = now
            record.verification_notes = reason or 'Rejected'

            db.session.flush()
            MeetingService.recount_attendance(record.meeting_id)
            db.session.commit()

            current_app.logger.info('User %s rejected record %s', reviewer.id, record.id)
            return record, None

        except DomainError as e:
            db.session.rollback()
            return None, e

    @staticmethod
    def bulk_approve_all_present(meeting_id: int, reviewer: User,
                                 now: datetime = None) -> Tuple[Optional[Dict], Optional[DomainError]]:
        """
        Reconcile every roster participant to an approved "present" record.

        Missing records are created and pending ones approved; records a
        reviewer already decided are left alone. Each participant is settled
        in its own short transaction and the count is recomputed at the end,
        so re-running after a partial failure converges on the same result.
        """
        try:
            meeting = MeetingService.load_for_review(meeting_id, reviewer)
        except DomainError as e:
            return None, e

        now = now or utcnow()
        summary = {'created': 0, 'approved': 0, 'unchanged': 0}
        approval = {
            SubmissionRecord.status: AttendanceStatus.PRESENT,
            SubmissionRecord.is_approved: True,
            SubmissionRecord.approved_by: reviewer.id,
            SubmissionRecord.approved_at: now,
            SubmissionRecord.is_pending_approval: False,
            SubmissionRecord.verified_by: reviewer.id,
            SubmissionRecord.verified_at: now,
            SubmissionRecord.updated_at: now,
        }

        for participant_id in sorted(meeting.roster_ids()):
            existing = SubmissionRecord.query.filter_by(
                meeting_id=meeting.id, participant_id=participant_id
            ).first()

            if existing is None:
                try:
                    db.session.add(SubmissionRecord(
                        participant_id=participant_id,
                        meeting_id=meeting.id,
                        status=AttendanceStatus.PRESENT,
                        check_in_time=now,
                        is_pending_approval=False,
                        is_approved=True,
                        approved_by=reviewer.id,
                        approved_at=now,
                        verified_by=reviewer.id,
                        verified_at=now,
                        verification_notes='Bulk approved',
                        token_is_valid=False,
                        created_by=reviewer.id
                    ))
                    db.session.commit()
                    summary['created'] += 1
                    continue
                except IntegrityError:
                    # A redemption landed first; settle the record it created.
                    db.session.rollback()

            # Only a pending row no reviewer has touched is settled.
            updated = SubmissionRecord.query.filter(
                SubmissionRecord.meeting_id == meeting.id,
                SubmissionRecord.participant_id == participant_id,
                SubmissionRecord.is_active.is_(True),
                SubmissionRecord.is_pending_approval.is_(True),
                SubmissionRecord.verified_by.is_(None)
            ).update(approval, synchronize_session=False)
            db.session.commit()

            if updated:
                summary['approved'] += 1
            else:
                summary['unchanged'] += 1

        summary['attendance_count'] = MeetingService.recount_attendance(meeting.id)
        db.session.commit()

        # Rows were changed behind the ORM's back.
        db.session.expire_all()

        current_app.logger.info(
            'User %s bulk approved meeting %s: %s', reviewer.id, meeting.id, summary
        )
        summary['meeting_id'] = meeting.id
        return summary, None

    @staticmethod
    def modify(record_id: int, new_status, reviewer: User, notes: str = None,
               now: datetime = None) -> Tuple[Optional[SubmissionRecord], Optional[DomainError]]:
        """Amend a record after submission. Never reopens pending approval."""
        try:
            record = ApprovalService._load_for_review(record_id, reviewer)
            status = ApprovalService._parse_status(new_status, 'new status')
            ApprovalService._check_notes(notes)
            now = now or utcnow()

            record.status = status
            record.verified_by = reviewer.id
            record.verified_at = now
            if notes is not None:
                record.verification_notes = notes

            db.session.flush()
            MeetingService.recount_attendance(record.meeting_id)
            db.session.commit()

            current_app.logger.info(
                'User %s modified record %s to %s', reviewer.id, record.id, status.value
            )
            return record, None

        except DomainError as e:
            db.session.rollback()
            return None, e
