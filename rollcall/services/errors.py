"""Typed domain errors.

Services hand these back as the second element of a ``(result, error)`` tuple.
They subclass ``Exception`` so helpers deep inside an operation can ``raise``
one; the public service method catches ``DomainError`` and returns it.
"""

class DomainError(Exception):
    """Expected business outcome that is reported to the requester verbatim."""

    kind = 'DomainError'
    status_code = 400
    default_message = 'Request could not be completed'

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'errorKind': self.kind, 'message': self.message}

    def __repr__(self):
        return f'<{self.kind}: {self.message}>'

class MalformedPayload(DomainError):
    kind = 'MalformedPayload'
    status_code = 400
    default_message = 'Invalid QR code format'

class ChecksumMismatch(DomainError):
    kind = 'ChecksumMismatch'
    status_code = 400
    default_message = 'Invalid checksum - data may be corrupted'

class Expired(DomainError):
    kind = 'Expired'
    status_code = 410
    default_message = 'QR code has expired'

class MeetingNotFound(DomainError):
    kind = 'MeetingNotFound'
    status_code = 404
    default_message = 'Meeting not found'

class SessionNotActive(DomainError):
    kind = 'SessionNotActive'
    status_code = 409
    default_message = 'Session is not active'

class NotEnrolled(DomainError):
    kind = 'NotEnrolled'
    status_code = 403
    default_message = 'You are not enrolled in this session'

class AlreadySubmitted(DomainError):
    kind = 'AlreadySubmitted'
    status_code = 409
    default_message = 'Attendance already submitted for this session'

class LateEntryNotAllowed(DomainError):
    kind = 'LateEntryNotAllowed'
    status_code = 403
    default_message = 'Late entry is not allowed for this session'

class AlreadyCheckedOut(DomainError):
    kind = 'AlreadyCheckedOut'
    status_code = 409
    default_message = 'Already checked out'

class InvalidTransition(DomainError):
    kind = 'InvalidTransition'
    status_code = 409
    default_message = 'Session cannot change to that status from its current status'

class Forbidden(DomainError):
    kind = 'Forbidden'
    status_code = 403
    default_message = 'You do not have permission to act on this session'

class NotFound(DomainError):
    kind = 'NotFound'
    status_code = 404
    default_message = 'Record not found'

class ValidationFailed(DomainError):
    kind = 'ValidationFailed'
    status_code = 400
    default_message = 'Validation failed'

class LocationNotVerified(DomainError):
    kind = 'LocationNotVerified'
    status_code = 403
    default_message = 'Your location could not be verified for this session'
