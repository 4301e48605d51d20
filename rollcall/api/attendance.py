"""Attendance API: token redemption, manual entry and review."""
from flask import Blueprint, request
from rollcall import limiter
from rollcall.services.approval_service import ApprovalService
from rollcall.services.submission_service import SubmissionService
from rollcall.utils.decorators import (
    faculty_required, get_current_user, login_required, student_required
)
from rollcall.utils.helpers import (
    domain_error_response, error_response, get_int_arg, get_json_body, success_response
)
from rollcall.utils.validators import Validator

attendance_bp = Blueprint('attendance', __name__)

def _is_id(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)

@attendance_bp.route('/submit-qr', methods=['POST'])
@limiter.limit("10 per minute")
@student_required
def submit_qr():
    """Redeem a scanned session token."""
    data = get_json_body()
    if not data or not data.get('tokenPayload'):
        return error_response("tokenPayload is required", 400, 'MalformedPayload')

    evidence = {
        'location': data.get('location'),
        'device_info': data.get('deviceInfo'),
    }

    record, error = SubmissionService.redeem(
        data['tokenPayload'], get_current_user().id, evidence=evidence
    )
    if error:
        return domain_error_response(error)

    return success_response(
        data={
            'recordId': record.id,
            'status': 'pending_approval' if record.is_pending_approval else 'approved',
            'submittedAt': record.submitted_at.isoformat()
        },
        message="Attendance submitted",
        status_code=201
    )

@attendance_bp.route('/mark-manual', methods=['POST'])
@faculty_required
def mark_manual():
    """Record attendance on a participant's behalf."""
    data = get_json_body()
    if data is None:
        return error_response("Request body must be JSON", 400)

    validation = Validator.validate_required_fields(data, ['meeting_id', 'participant_id'])
    if not validation['is_valid']:
        return error_response('; '.join(validation['errors']), 400, 'ValidationFailed')

    if not _is_id(data['meeting_id']) or not _is_id(data['participant_id']):
        return error_response("meeting_id and participant_id must be integers", 400, 'ValidationFailed')

    check_in_time = None
    if data.get('check_in_time'):
        check_in_time = Validator.parse_datetime(data['check_in_time'])
        if check_in_time is None:
            return error_response("Invalid check_in_time", 400, 'ValidationFailed')

    record, error = SubmissionService.mark_manual(
        data['meeting_id'],
        data['participant_id'],
        get_current_user(),
        status=data.get('status', 'present'),
        check_in_time=check_in_time,
        notes=data.get('notes'),
        is_proxy=bool(data.get('is_proxy', False)),
        proxy_reason=data.get('proxy_reason')
    )
    if error:
        return domain_error_response(error)

    return success_response(
        data=record.to_dict(),
        message="Attendance marked successfully",
        status_code=201
    )

@attendance_bp.route('/', methods=['GET'])
@login_required
def list_records():
    """Paginated attendance records visible to the caller."""
    start = end = None
    if request.args.get('start_date'):
        start = Validator.parse_datetime(request.args['start_date'])
        if start is None:
            return error_response("Invalid start_date", 400, 'ValidationFailed')
    if request.args.get('end_date'):
        end = Validator.parse_datetime(request.args['end_date'])
        if end is None:
            return error_response("Invalid end_date", 400, 'ValidationFailed')

    result, error = SubmissionService.list_records(
        get_current_user(),
        meeting_id=get_int_arg('meeting_id'),
        participant_id=get_int_arg('participant_id'),
        status=request.args.get('status'),
        start=start,
        end=end,
        page=get_int_arg('page', 1),
        per_page=get_int_arg('per_page')
    )
    if error:
        return domain_error_response(error)

    return success_response(
        data=result['records'],
        meta={'pagination': result['pagination']}
    )

@attendance_bp.route('/<int:record_id>/approve', methods=['POST'])
@faculty_required
def approve_record(record_id):
    data = get_json_body() or {}

    record, error = ApprovalService.approve_one(
        record_id, data.get('finalStatus'), get_current_user(), notes=data.get('notes')
    )
    if error:
        return domain_error_response(error)

    return success_response(data=record.to_dict(), message="Attendance approved")

@attendance_bp.route('/<int:record_id>/reject', methods=['POST'])
@faculty_required
def reject_record(record_id):
    data = get_json_body() or {}

    record, error = ApprovalService.reject_one(record_id, get_current_user(), reason=data.get('reason'))
    if error:
        return domain_error_response(error)

    return success_response(data=record.to_dict(), message="Attendance rejected")

@attendance_bp.route('/<int:record_id>', methods=['PUT'])
@faculty_required
def modify_record(record_id):
    data = get_json_body()
    if data is None:
        return error_response("Request body must be JSON", 400)

    record, error = ApprovalService.modify(
        record_id, data.get('newStatus'), get_current_user(), notes=data.get('notes')
    )
    if error:
        return domain_error_response(error)

    return success_response(data=record.to_dict(), message="Attendance updated successfully")

@attendance_bp.route('/<int:record_id>', methods=['DELETE'])
@login_required
def delete_record(record_id):
    """Soft delete; the row is kept for auditing."""
    record, error = SubmissionService.soft_delete(record_id, get_current_user())
    if error:
        return domain_error_response(error)

    return success_response(message="Attendance record deleted successfully")

@attendance_bp.route('/<int:record_id>/checkout', methods=['POST'])
@login_required
def checkout(record_id):
    data = get_json_body() or {}

    check_out_time = None
    if data.get('checkOutTime'):
        check_out_time = Validator.parse_datetime(data['checkOutTime'])
        if check_out_time is None:
            return error_response("Invalid checkOutTime", 400, 'ValidationFailed')

    record, error = SubmissionService.checkout(record_id, get_current_user(), check_out_time)
    if error:
        return domain_error_response(error)

    return success_response(data=record.to_dict(), message="Checked out successfully")
