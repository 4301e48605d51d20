"""Meeting state machine, roster and reporting feed."""
from datetime import timedelta

import pandas as pd

from rollcall import db
from rollcall.models.base import utcnow
from rollcall.models.meeting import MeetingStatus
from rollcall.models.redemption_log import RedemptionLog
from rollcall.services.errors import Forbidden, InvalidTransition, MeetingNotFound, ValidationFailed
from rollcall.services.approval_service import ApprovalService
from rollcall.services.meeting_service import MeetingService
from rollcall.services.submission_service import SubmissionService

from conftest import BASE_TIME, meeting_data

def test_create_meeting_defaults(meeting, users):
    assert meeting.status == MeetingStatus.SCHEDULED
    assert meeting.owner_id == users['owner'].id
    assert meeting.course_code == 'CS401'
    assert meeting.require_approval is True
    assert meeting.allow_late_entry is True
    assert meeting.late_entry_cutoff_minutes == 15
    assert meeting.roster_ids() == {users['alice'].id, users['bob'].id, users['carol'].id}
    assert meeting.attendance_count == 0
    assert not meeting.has_token()

def test_create_meeting_requires_faculty(users):
    meeting, error = MeetingService.create_meeting(users['alice'], meeting_data([]))

    assert meeting is None
    assert isinstance(error, Forbidden)

def test_create_meeting_validation(users):
    owner = users['owner']

    _, error = MeetingService.create_meeting(owner, meeting_data([], duration_minutes=0))
    assert isinstance(error, ValidationFailed)

    data = meeting_data([])
    del data['location']
    _, error = MeetingService.create_meeting(owner, data)
    assert isinstance(error, ValidationFailed)
    assert 'location is required' in error.message

    _, error = MeetingService.create_meeting(owner, meeting_data([], settings={'snooze': True}))
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.create_meeting(owner, meeting_data([], settings={'allow_late_entry': 'no'}))
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.create_meeting(owner, meeting_data([], settings={'location_verification': True}))
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.create_meeting(owner, meeting_data(['1']))
    assert isinstance(error, ValidationFailed)

def test_create_meeting_rejects_bad_times(users):
    data = meeting_data([])
    data['start_time'] = 'tomorrow morning'

    _, error = MeetingService.create_meeting(users['owner'], data)
    assert isinstance(error, ValidationFailed)

def test_create_meeting_settings(make_meeting):
    meeting = make_meeting(
        settings={'allow_late_entry': False, 'late_entry_cutoff_minutes': 10, 'require_approval': False}
    )

    assert meeting.allow_late_entry is False
    assert meeting.late_entry_cutoff_minutes == 10
    assert meeting.require_approval is False
    assert meeting.late_cutoff_time == BASE_TIME + timedelta(minutes=10)

def test_start_issues_token(started, users):
    meeting, token = started

    assert meeting.status == MeetingStatus.ACTIVE
    assert meeting.actual_start_time == BASE_TIME
    assert meeting.token_checksum == token.checksum
    assert meeting.token_expires_at == BASE_TIME + timedelta(minutes=30)
    assert meeting.token_code.startswith(f'QR_{meeting.id}_')
    assert token.meeting_id == meeting.id

    log = RedemptionLog.query.filter_by(meeting_id=meeting.id).one()
    assert log.code == meeting.token_code
    assert log.issued_by == users['owner'].id
    assert log.status(BASE_TIME) == 'active'

def test_start_twice_is_invalid(started, users):
    meeting, token = started

    result, error = MeetingService.start(meeting.id, users['owner'], now=BASE_TIME + timedelta(minutes=1))

    assert result is None
    assert isinstance(error, InvalidTransition)
    assert meeting.token_checksum == token.checksum
    assert RedemptionLog.query.filter_by(meeting_id=meeting.id).count() == 1

def test_start_by_non_owner_is_forbidden(meeting, users):
    result, error = MeetingService.start(meeting.id, users['other_faculty'], now=BASE_TIME)

    assert result is None
    assert isinstance(error, Forbidden)
    db.session.refresh(meeting)
    assert meeting.status == MeetingStatus.SCHEDULED
    assert RedemptionLog.query.count() == 0

def test_admin_can_start(meeting, users):
    result, error = MeetingService.start(meeting.id, users['admin'], now=BASE_TIME)

    assert error is None
    assert result[0].status == MeetingStatus.ACTIVE

def test_start_unknown_meeting(users):
    _, error = MeetingService.start(9999, users['owner'])
    assert isinstance(error, MeetingNotFound)
    assert error.status_code == 404

def test_start_ttl(make_meeting, users):
    capped = make_meeting()
    (meeting, _), error = MeetingService.start(capped.id, users['owner'], ttl_minutes=10000, now=BASE_TIME)
    assert error is None
    assert meeting.token_expires_at == BASE_TIME + timedelta(minutes=240)

    invalid = make_meeting()
    result, error = MeetingService.start(invalid.id, users['owner'], ttl_minutes=0, now=BASE_TIME)
    assert result is None
    assert isinstance(error, ValidationFailed)
    assert invalid.status == MeetingStatus.SCHEDULED

def test_is_redeemable(started):
    meeting, token = started

    assert MeetingService.is_redeemable(meeting, BASE_TIME)
    assert MeetingService.is_redeemable(meeting, token.expires_at)
    assert not MeetingService.is_redeemable(meeting, token.expires_at + timedelta(seconds=1))

def test_end_clears_token(started, users):
    meeting, _ = started

    ended, error = MeetingService.end(meeting.id, users['owner'], now=BASE_TIME + timedelta(minutes=50))

    assert error is None
    assert ended.status == MeetingStatus.COMPLETED
    assert ended.actual_end_time == BASE_TIME + timedelta(minutes=50)
    assert not ended.has_token()
    assert ended.token_code is None
    assert not MeetingService.is_redeemable(ended, BASE_TIME + timedelta(minutes=51))

    log = RedemptionLog.query.filter_by(meeting_id=meeting.id).one()
    assert log.is_active is False
    assert log.status() == 'inactive'

def test_end_requires_active(meeting, users):
    _, error = MeetingService.end(meeting.id, users['owner'])
    assert isinstance(error, InvalidTransition)

def test_cancel(started, users):
    meeting, _ = started

    cancelled, error = MeetingService.cancel(meeting.id, users['owner'], reason='Fire drill')

    assert error is None
    assert cancelled.status == MeetingStatus.CANCELLED
    assert cancelled.status_reason == 'Fire drill'
    assert not cancelled.has_token()

    _, error = MeetingService.cancel(meeting.id, users['owner'])
    assert isinstance(error, InvalidTransition)

    _, error = MeetingService.start(meeting.id, users['owner'])
    assert isinstance(error, InvalidTransition)

def test_postpone(make_meeting, users):
    scheduled = make_meeting()
    postponed, error = MeetingService.postpone(scheduled.id, users['owner'], reason='Instructor ill')
    assert error is None
    assert postponed.status == MeetingStatus.POSTPONED
    assert postponed.status_reason == 'Instructor ill'

    active = make_meeting()
    MeetingService.start(active.id, users['owner'], now=BASE_TIME)
    postponed, error = MeetingService.postpone(active.id, users['owner'], now=BASE_TIME + timedelta(minutes=2))
    assert error is None
    assert postponed.status == MeetingStatus.POSTPONED
    assert not postponed.has_token()

    _, error = MeetingService.postpone(active.id, users['owner'])
    assert isinstance(error, InvalidTransition)

def test_completed_meeting_cannot_be_cancelled(started, users):
    meeting, _ = started
    MeetingService.end(meeting.id, users['owner'])

    _, error = MeetingService.cancel(meeting.id, users['owner'])
    assert isinstance(error, InvalidTransition)

def test_expire_stale_tokens(started):
    meeting, token = started

    assert MeetingService.expire_stale_tokens(now=BASE_TIME + timedelta(minutes=10)) == 0
    assert MeetingService.expire_stale_tokens(now=token.expires_at + timedelta(minutes=1)) == 1
    assert MeetingService.expire_stale_tokens(now=token.expires_at + timedelta(minutes=2)) == 0

    log = RedemptionLog.query.filter_by(meeting_id=meeting.id).one()
    assert log.status() == 'inactive'

def test_expire_tokens_command(app, make_meeting, users):
    meeting = make_meeting()
    MeetingService.start(meeting.id, users['owner'], ttl_minutes=5, now=utcnow() - timedelta(hours=1))
    runner = app.test_cli_runner()

    result = runner.invoke(args=['expire-tokens'])

    assert result.exit_code == 0
    assert 'Expired 1 token(s).' in result.output

def test_get_meeting_visibility(meeting, users):
    for name in ('owner', 'admin', 'alice'):
        found, error = MeetingService.get_meeting(meeting.id, users[name])
        assert error is None
        assert found.id == meeting.id

    for name in ('other_faculty', 'dave'):
        _, error = MeetingService.get_meeting(meeting.id, users[name])
        assert isinstance(error, Forbidden)

def test_enroll_and_unenroll(meeting, users):
    summary, error = MeetingService.enroll(
        meeting.id, users['owner'], [users['dave'].id, users['alice'].id, 9999]
    )

    assert error is None
    assert summary['added'] == [users['dave'].id]
    assert summary['already_enrolled'] == [users['alice'].id]
    assert summary['not_found'] == [9999]
    assert summary['roster_size'] == 4

    summary, error = MeetingService.unenroll(meeting.id, users['owner'], users['dave'].id)
    assert error is None
    assert summary == {'removed': True, 'roster_size': 3}

    summary, _ = MeetingService.unenroll(meeting.id, users['owner'], users['dave'].id)
    assert summary['removed'] is False

def test_enroll_validation(meeting, users):
    _, error = MeetingService.enroll(meeting.id, users['owner'], [])
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.enroll(meeting.id, users['other_faculty'], [users['dave'].id])
    assert isinstance(error, Forbidden)
    assert not meeting.is_enrolled(users['dave'].id)

def test_enroll_from_dataframe(make_meeting, users):
    meeting = make_meeting(participants=('alice',))
    df = pd.DataFrame({
        'email': ['bob@example.com', 'nobody@example.com', None],
        'student_id': [None, None, 'S-003'],
    })

    summary, error = MeetingService.enroll_from_dataframe(meeting.id, users['owner'], df)

    assert error is None
    assert summary['added'] == [users['bob'].id, users['carol'].id]
    assert summary['roster_size'] == 3
    assert summary['rows'][0] == {'row': 2, 'success': True, 'participant_id': users['bob'].id}
    assert summary['rows'][1]['success'] is False

def test_enroll_from_dataframe_needs_identifier_column(meeting, users):
    _, error = MeetingService.enroll_from_dataframe(
        meeting.id, users['owner'], pd.DataFrame({'name': ['Bob']})
    )
    assert isinstance(error, ValidationFailed)

def test_attendance_summary(started, users):
    meeting, token = started
    SubmissionService.redeem(token.serialize(), users['alice'].id, now=BASE_TIME + timedelta(minutes=1))
    record, _ = SubmissionService.redeem(
        token.serialize(), users['bob'].id, now=BASE_TIME + timedelta(minutes=20)
    )
    ApprovalService.approve_one(record.id, 'present', users['owner'])

    summary, error = MeetingService.attendance_summary(meeting.id, users['owner'])

    assert error is None
    assert summary['attendance_count'] == 1
    assert summary['roster_size'] == 3
    assert summary['attendance_percentage'] == 33
    statuses = {row['participant_id']: row['status'] for row in summary['participants']}
    assert statuses == {
        users['alice'].id: 'pending',
        users['bob'].id: 'late',
        users['carol'].id: 'missing',
    }

    _, error = MeetingService.attendance_summary(meeting.id, users['other_faculty'])
    assert isinstance(error, Forbidden)

def test_update_scheduled_meeting(meeting, users):
    new_start = BASE_TIME + timedelta(days=1)

    updated, error = MeetingService.update_meeting(meeting.id, users['owner'], {
        'title': 'Distributed Systems (moved)',
        'course_code': 'cs402',
        'start_time': new_start.isoformat(),
        'end_time': (new_start + timedelta(minutes=90)).isoformat(),
        'attendance_settings': {'allow_late_entry': False, 'late_entry_cutoff_minutes': 5},
    })

    assert error is None
    assert updated.title == 'Distributed Systems (moved)'
    assert updated.course_code == 'CS402'
    assert updated.start_time == new_start
    assert updated.duration_minutes == 90
    assert updated.allow_late_entry is False
    assert updated.late_entry_cutoff_minutes == 5
    assert updated.require_approval is True
    assert updated.roster_ids() == {users['alice'].id, users['bob'].id, users['carol'].id}

def test_update_meeting_validation(meeting, users):
    owner = users['owner']

    _, error = MeetingService.update_meeting(
        meeting.id, owner, {'end_time': (BASE_TIME - timedelta(minutes=1)).isoformat()}
    )
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.update_meeting(meeting.id, owner, {'status': 'completed'})
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.update_meeting(meeting.id, owner, {'title': '  '})
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.update_meeting(meeting.id, owner, {})
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.update_meeting(
        meeting.id, owner, {'attendance_settings': {'location_verification': True}}
    )
    assert isinstance(error, ValidationFailed)

    _, error = MeetingService.update_meeting(meeting.id, users['other_faculty'], {'title': 'Mine now'})
    assert isinstance(error, Forbidden)

    db.session.refresh(meeting)
    assert meeting.title == 'Distributed Systems'
    assert meeting.end_time == BASE_TIME + timedelta(minutes=60)

def test_update_started_meeting_is_invalid(started, users):
    meeting, _ = started

    _, error = MeetingService.update_meeting(meeting.id, users['owner'], {'title': 'Too late'})

    assert isinstance(error, InvalidTransition)
    assert meeting.title == 'Distributed Systems'

def test_delete_meeting(make_meeting, users):
    scheduled = make_meeting()

    deleted, error = MeetingService.delete_meeting(scheduled.id, users['owner'])

    assert error is None
    assert deleted.is_active is False
    _, error = MeetingService.get_meeting(scheduled.id, users['owner'])
    assert isinstance(error, MeetingNotFound)
    _, error = MeetingService.start(scheduled.id, users['owner'], now=BASE_TIME)
    assert isinstance(error, MeetingNotFound)
    _, error = MeetingService.delete_meeting(scheduled.id, users['owner'])
    assert isinstance(error, MeetingNotFound)

def test_delete_called_off_meeting(make_meeting, users):
    cancelled = make_meeting()
    MeetingService.cancel(cancelled.id, users['owner'])
    postponed = make_meeting()
    MeetingService.postpone(postponed.id, users['owner'])

    for meeting in (cancelled, postponed):
        _, error = MeetingService.delete_meeting(meeting.id, users['owner'])
        assert error is None

def test_delete_meeting_that_ran_is_invalid(started, users):
    meeting, _ = started

    _, error = MeetingService.delete_meeting(meeting.id, users['owner'])
    assert isinstance(error, InvalidTransition)

    MeetingService.end(meeting.id, users['owner'], now=BASE_TIME + timedelta(minutes=50))
    _, error = MeetingService.delete_meeting(meeting.id, users['owner'])
    assert isinstance(error, InvalidTransition)
    assert meeting.is_active is True

def test_delete_meeting_forbidden(meeting, users):
    _, error = MeetingService.delete_meeting(meeting.id, users['other_faculty'])

    assert isinstance(error, Forbidden)
    assert meeting.is_active is True

def test_list_meetings(make_meeting, users):
    first = make_meeting()
    second = make_meeting(participants=('dave',), start_time=BASE_TIME + timedelta(days=1))
    gone = make_meeting()
    MeetingService.delete_meeting(gone.id, users['owner'])
    MeetingService.start(first.id, users['owner'], now=BASE_TIME)

    result, error = MeetingService.list_meetings(users['owner'])
    assert error is None
    assert [m['id'] for m in result['meetings']] == [second.id, first.id]
    assert result['pagination']['total'] == 2

    result, _ = MeetingService.list_meetings(users['owner'], status='active')
    assert [m['id'] for m in result['meetings']] == [first.id]

    result, _ = MeetingService.list_meetings(users['owner'], per_page=1, page=2)
    assert [m['id'] for m in result['meetings']] == [first.id]
    assert result['pagination']['pages'] == 2

    result, _ = MeetingService.list_meetings(users['alice'])
    assert [m['id'] for m in result['meetings']] == [first.id]

    result, _ = MeetingService.list_meetings(users['other_faculty'])
    assert result['meetings'] == []

    result, _ = MeetingService.list_meetings(users['admin'])
    assert result['pagination']['total'] == 2

    _, error = MeetingService.list_meetings(users['owner'], status='sleeping')
    assert isinstance(error, ValidationFailed)
