"""Meeting lifecycle and roster API."""
import pandas as pd
from flask import Blueprint, current_app, request
from rollcall import limiter
from rollcall.services.approval_service import ApprovalService
from rollcall.services.meeting_service import MeetingService
from rollcall.services.submission_service import SubmissionService
from rollcall.services.token_codec import TokenCodec
from rollcall.utils.decorators import faculty_required, get_current_user, login_required
from rollcall.utils.helpers import (
    domain_error_response, error_response, get_int_arg, get_json_body, success_response
)

meetings_bp = Blueprint('meetings', __name__)

def _allowed_file(filename: str) -> bool:
    allowed = current_app.config.get('ALLOWED_EXTENSIONS', {'csv'})
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in allowed

@meetings_bp.route('/', methods=['POST'])
@faculty_required
def create_meeting():
    """Create a scheduled meeting owned by the caller."""
    data = get_json_body()
    if data is None:
        return error_response("Request body must be JSON", 400)

    meeting, error = MeetingService.create_meeting(get_current_user(), data)
    if error:
        return domain_error_response(error)

    return success_response(
        data=meeting.to_dict(),
        message="Session created successfully",
        status_code=201
    )

@meetings_bp.route('/', methods=['GET'])
@login_required
def list_meetings():
    """Paginated meetings visible to the caller."""
    result, error = MeetingService.list_meetings(
        get_current_user(),
        status=request.args.get('status'),
        page=get_int_arg('page', 1),
        per_page=get_int_arg('per_page')
    )
    if error:
        return domain_error_response(error)

    return success_response(
        data=result['meetings'],
        meta={'pagination': result['pagination']}
    )

@meetings_bp.route('/<int:meeting_id>', methods=['GET'])
@login_required
def get_meeting(meeting_id):
    """Meeting detail; the token is only shown to reviewers."""
    user = get_current_user()
    meeting, error = MeetingService.get_meeting(meeting_id, user)
    if error:
        return domain_error_response(error)

    return success_response(data=meeting.to_dict(include_token=user.can_review(meeting)))

@meetings_bp.route('/<int:meeting_id>', methods=['PUT'])
@faculty_required
def update_meeting(meeting_id):
    """Edit a meeting that has not started yet."""
    data = get_json_body()
    if data is None:
        return error_response("Request body must be JSON", 400)

    meeting, error = MeetingService.update_meeting(meeting_id, get_current_user(), data)
    if error:
        return domain_error_response(error)

    return success_response(data=meeting.to_dict(), message="Session updated successfully")

@meetings_bp.route('/<int:meeting_id>', methods=['DELETE'])
@faculty_required
def delete_meeting(meeting_id):
    """Soft delete; only meetings that never ran or were called off."""
    _, error = MeetingService.delete_meeting(meeting_id, get_current_user())
    if error:
        return domain_error_response(error)

    return success_response(message="Session deleted successfully")

@meetings_bp.route('/<int:meeting_id>/start', methods=['POST'])
@faculty_required
def start_meeting(meeting_id):
    """Start a meeting and hand back its token and QR image."""
    data = get_json_body() or {}

    result, error = MeetingService.start(meeting_id, get_current_user(), data.get('ttl_minutes'))
    if error:
        return domain_error_response(error)

    meeting, token = result
    return success_response(
        data={
            'meeting': meeting.to_dict(include_token=True),
            'token': token.to_payload(),
            'token_string': token.serialize(),
            'qr_image': TokenCodec.render_qr(token),
            'expires_at': token.expires_at.isoformat()
        },
        message="Session started"
    )

@meetings_bp.route('/<int:meeting_id>/end', methods=['POST'])
@faculty_required
def end_meeting(meeting_id):
    meeting, error = MeetingService.end(meeting_id, get_current_user())
    if error:
        return domain_error_response(error)

    return success_response(data=meeting.to_dict(), message="Session ended")

@meetings_bp.route('/<int:meeting_id>/cancel', methods=['POST'])
@faculty_required
def cancel_meeting(meeting_id):
    data = get_json_body() or {}

    meeting, error = MeetingService.cancel(meeting_id, get_current_user(), data.get('reason'))
    if error:
        return domain_error_response(error)

    return success_response(data=meeting.to_dict(), message="Session cancelled")

@meetings_bp.route('/<int:meeting_id>/postpone', methods=['POST'])
@faculty_required
def postpone_meeting(meeting_id):
    data = get_json_body() or {}

    meeting, error = MeetingService.postpone(meeting_id, get_current_user(), data.get('reason'))
    if error:
        return domain_error_response(error)

    return success_response(data=meeting.to_dict(), message="Session postponed")

@meetings_bp.route('/<int:meeting_id>/participants', methods=['POST'])
@faculty_required
def enroll_participants(meeting_id):
    """Enroll participants by user id."""
    data = get_json_body()
    if data is None:
        return error_response("Request body must be JSON", 400)

    summary, error = MeetingService.enroll(meeting_id, get_current_user(), data.get('participant_ids'))
    if error:
        return domain_error_response(error)

    return success_response(
        data=summary,
        message=f"Enrolled {len(summary['added'])} participant(s)"
    )

@meetings_bp.route('/<int:meeting_id>/participants/import', methods=['POST'])
@limiter.limit("10 per hour")
@faculty_required
def import_participants(meeting_id):
    """Enroll participants from an uploaded CSV roster."""
    if 'file' not in request.files:
        return error_response("No file provided", 400)

    file = request.files['file']
    if not file.filename:
        return error_response("No file selected", 400)
    if not _allowed_file(file.filename):
        return error_response("Only CSV files are allowed", 400)

    try:
        df = pd.read_csv(file, dtype=str)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        return error_response(f"Could not read roster file: {e}", 400)

    df.columns = [str(column).strip().lower() for column in df.columns]

    summary, error = MeetingService.enroll_from_dataframe(meeting_id, get_current_user(), df)
    if error:
        return domain_error_response(error)

    failed = sum(1 for row in summary['rows'] if not row['success'])
    return success_response(
        data=summary,
        message=f"Import completed: {len(summary['added'])} enrolled, {failed} failed"
    )

@meetings_bp.route('/<int:meeting_id>/participants/<int:participant_id>', methods=['DELETE'])
@faculty_required
def unenroll_participant(meeting_id, participant_id):
    summary, error = MeetingService.unenroll(meeting_id, get_current_user(), participant_id)
    if error:
        return domain_error_response(error)

    if not summary['removed']:
        return error_response("Participant is not enrolled in this session", 404, 'NotFound')

    return success_response(data=summary, message="Participant removed")

@meetings_bp.route('/<int:meeting_id>/attendance', methods=['GET'])
@faculty_required
def meeting_attendance(meeting_id):
    """Attendance feed for one meeting."""
    summary, error = MeetingService.attendance_summary(meeting_id, get_current_user())
    if error:
        return domain_error_response(error)

    return success_response(data=summary)

@meetings_bp.route('/<int:meeting_id>/pending', methods=['GET'])
@faculty_required
def pending_records(meeting_id):
    records, error = SubmissionService.pending_for_meeting(meeting_id, get_current_user())
    if error:
        return domain_error_response(error)

    return success_response(
        data={'records': [record.to_dict() for record in records], 'total': len(records)}
    )

@meetings_bp.route('/<int:meeting_id>/bulk-approve', methods=['POST'])
@faculty_required
def bulk_approve(meeting_id):
    """Mark every enrolled participant present and approved."""
    summary, error = ApprovalService.bulk_approve_all_present(meeting_id, get_current_user())
    if error:
        return domain_error_response(error)

    return success_response(
        data=summary,
        message=f"Attendance confirmed for {summary['attendance_count']} participant(s)"
    )
