"""Reviewer approval, rejection, bulk confirmation and amendment."""
from datetime import timedelta

import pytest

from rollcall import db
from rollcall.models.attendance import AttendanceStatus, SubmissionRecord
from rollcall.services.approval_service import ApprovalService
from rollcall.services.errors import Forbidden, MeetingNotFound, NotFound, ValidationFailed
from rollcall.services.submission_service import SubmissionService

from conftest import BASE_TIME

def at(minutes):
    return BASE_TIME + timedelta(minutes=minutes)

@pytest.fixture
def pending(started, users):
    """Alice's self-submitted record, still awaiting review."""
    _, token = started
    record, error = SubmissionService.redeem(token.serialize(), users['alice'].id, now=at(0))
    assert error is None
    return record

def snapshot(record_id):
    db.session.expire_all()
    return db.session.get(SubmissionRecord, record_id).to_dict()

def test_bulk_approve_scenario(started, pending, users):
    meeting, _ = started

    summary, error = ApprovalService.bulk_approve_all_present(meeting.id, users['owner'], now=at(5))

    assert error is None
    assert summary['created'] == 2
    assert summary['approved'] == 1
    assert summary['unchanged'] == 0
    assert summary['attendance_count'] == 3
    assert meeting.attendance_count == 3

    records = SubmissionRecord.query.filter_by(meeting_id=meeting.id).all()
    assert {r.participant_id for r in records} == {users['alice'].id, users['bob'].id, users['carol'].id}
    for record in records:
        assert record.status == AttendanceStatus.PRESENT
        assert record.is_approved is True
        assert record.is_pending_approval is False
        assert record.approved_by == users['owner'].id

    alice = db.session.get(SubmissionRecord, pending.id)
    assert alice.check_in_time == at(0)
    assert alice.token_checksum is not None

def test_bulk_approve_is_idempotent(started, pending, users):
    meeting, _ = started
    ApprovalService.bulk_approve_all_present(meeting.id, users['owner'], now=at(5))
    first = {r.participant_id: r.to_dict() for r in SubmissionRecord.query.all()}

    summary, error = ApprovalService.bulk_approve_all_present(meeting.id, users['owner'], now=at(9))

    assert error is None
    assert summary['created'] == 0
    assert summary['approved'] == 0
    assert summary['unchanged'] == 3
    assert summary['attendance_count'] == 3
    second = {r.participant_id: r.to_dict() for r in SubmissionRecord.query.all()}
    assert second == first

def test_bulk_approve_leaves_reviewed_records_alone(started, pending, users):
    meeting, _ = started
    ApprovalService.reject_one(pending.id, users['owner'], reason='Not in the room')

    summary, _ = ApprovalService.bulk_approve_all_present(meeting.id, users['owner'], now=at(5))

    assert summary['unchanged'] == 1
    assert summary['attendance_count'] == 2
    assert db.session.get(SubmissionRecord, pending.id).status == AttendanceStatus.ABSENT

def test_bulk_approve_forbidden(started, pending, users):
    meeting, _ = started

    summary, error = ApprovalService.bulk_approve_all_present(meeting.id, users['other_faculty'])

    assert summary is None
    assert isinstance(error, Forbidden)
    assert SubmissionRecord.query.count() == 1

    _, error = ApprovalService.bulk_approve_all_present(9999, users['owner'])
    assert isinstance(error, MeetingNotFound)

def test_admin_can_bulk_approve(started, users):
    meeting, _ = started

    summary, error = ApprovalService.bulk_approve_all_present(meeting.id, users['admin'])

    assert error is None
    assert summary['created'] == 3

def test_approve_one(started, pending, users):
    meeting, _ = started

    record, error = ApprovalService.approve_one(pending.id, 'present', users['owner'], notes='Seen in class', now=at(8))

    assert error is None
    assert record.is_approved is True
    assert record.is_pending_approval is False
    assert record.approved_by == users['owner'].id
    assert record.approved_at == at(8)
    assert record.verified_by == users['owner'].id
    assert record.verification_notes == 'Seen in class'
    assert meeting.attendance_count == 1

def test_approve_one_repeat_is_noop(started, pending, users):
    ApprovalService.approve_one(pending.id, 'present', users['owner'], now=at(8))
    before = snapshot(pending.id)

    record, error = ApprovalService.approve_one(pending.id, 'present', users['owner'], now=at(12))

    assert error is None
    assert record.approved_at == at(8)
    assert snapshot(pending.id) == before

def test_approve_one_as_excused(started, pending, users):
    meeting, _ = started

    record, error = ApprovalService.approve_one(pending.id, 'excused', users['owner'])

    assert error is None
    assert record.status == AttendanceStatus.EXCUSED
    assert meeting.attendance_count == 0

def test_approve_one_by_stranger_changes_nothing(started, pending, users):
    before = snapshot(pending.id)

    record, error = ApprovalService.approve_one(pending.id, 'present', users['other_faculty'])

    assert record is None
    assert isinstance(error, Forbidden)
    assert error.status_code == 403
    assert snapshot(pending.id) == before

def test_approve_one_validation(started, pending, users):
    _, error = ApprovalService.approve_one(pending.id, 'late', users['owner'])
    assert isinstance(error, ValidationFailed)

    _, error = ApprovalService.approve_one(pending.id, None, users['owner'])
    assert isinstance(error, ValidationFailed)

    _, error = ApprovalService.approve_one(pending.id, 'present', users['owner'], notes='x' * 501)
    assert isinstance(error, ValidationFailed)

    _, error = ApprovalService.approve_one(4242, 'present', users['owner'])
    assert isinstance(error, NotFound)

    assert db.session.get(SubmissionRecord, pending.id).is_pending_approval is True

def test_reject_one(started, pending, users):
    meeting, _ = started
    ApprovalService.approve_one(pending.id, 'present', users['owner'])
    assert meeting.attendance_count == 1

    record, error = ApprovalService.reject_one(pending.id, users['owner'], reason='Left after five minutes')

    assert error is None
    assert record.status == AttendanceStatus.ABSENT
    assert record.is_approved is True
    assert record.is_pending_approval is False
    assert record.verification_notes == 'Left after five minutes'
    assert meeting.attendance_count == 0

def test_reject_one_forbidden(started, pending, users):
    _, error = ApprovalService.reject_one(pending.id, users['alice'])

    assert isinstance(error, Forbidden)
    assert db.session.get(SubmissionRecord, pending.id).status == AttendanceStatus.PRESENT

def test_modify_never_reopens_pending(started, pending, users):
    meeting, _ = started
    ApprovalService.approve_one(pending.id, 'present', users['owner'], now=at(5))

    record, error = ApprovalService.modify(pending.id, 'excused', users['admin'], notes='Doctor note', now=at(60))

    assert error is None
    assert record.status == AttendanceStatus.EXCUSED
    assert record.is_pending_approval is False
    assert record.verified_by == users['admin'].id
    assert record.verified_at == at(60)
    assert record.approved_by == users['owner'].id
    assert meeting.attendance_count == 0

def test_modify_pending_record(started, pending, users):
    record, error = ApprovalService.modify(pending.id, 'absent', users['owner'])

    assert error is None
    assert record.status == AttendanceStatus.ABSENT
    assert record.is_pending_approval is True

def test_bulk_approve_keeps_modified_pending_record(started, pending, users):
    meeting, _ = started
    ApprovalService.modify(pending.id, 'absent', users['owner'], notes='Left after 2 minutes', now=at(3))

    summary, error = ApprovalService.bulk_approve_all_present(meeting.id, users['owner'], now=at(5))

    assert error is None
    assert summary['created'] == 2
    assert summary['approved'] == 0
    assert summary['unchanged'] == 1
    assert summary['attendance_count'] == 2
    record = db.session.get(SubmissionRecord, pending.id)
    assert record.status == AttendanceStatus.ABSENT
    assert record.verification_notes == 'Left after 2 minutes'
    assert record.verified_at == at(3)

def test_modify_validation(started, pending, users):
    _, error = ApprovalService.modify(pending.id, 'gone', users['owner'])
    assert isinstance(error, ValidationFailed)

    _, error = ApprovalService.modify(pending.id, 'absent', users['other_faculty'])
    assert isinstance(error, Forbidden)
