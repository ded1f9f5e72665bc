"""
Typed failures raised by the MedShare workflow.

Each error carries the HTTP status the API layer answers with; the message
is what the client sees.
"""


class MedShareError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(MedShareError):
    status_code = 400
    default_message = "Invalid input"


class Unauthorized(MedShareError):
    status_code = 401
    default_message = "Could not validate credentials"


class Forbidden(MedShareError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(MedShareError):
    status_code = 404
    default_message = "Not found"


class Conflict(MedShareError):
    # The HTTP contract answers workflow conflicts with 400
    status_code = 400
    default_message = "Conflict"


class InvalidState(Conflict):
    default_message = "Medicine is not available"


class SelfRequest(Conflict):
    default_message = "Cannot request your own medicine"


class DuplicateRequest(Conflict):
    default_message = "You already have a request for this medicine"


class AlreadyProcessed(Conflict):
    default_message = "Request already processed"


class EmailTaken(Conflict):
    status_code = 409
    default_message = "Email already registered"


class Unavailable(MedShareError):
    status_code = 503
    default_message = "Service temporarily unavailable"
