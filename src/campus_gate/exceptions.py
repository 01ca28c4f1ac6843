# src/campus_gate/exceptions.py


class CampusGateError(Exception):
    """Base error. Carries enough context for the UI to render a specific message."""
    code = "CAMPUS_GATE_ERROR"
    http_status = 400

    def __init__(self, message, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self):
        body = {"success": False, "error": self.code, "message": self.message}
        body.update(self.context)
        return body


class ValidationError(CampusGateError):
    code = "VALIDATION_ERROR"


class NotAuthorizedError(CampusGateError):
    code = "NOT_AUTHORIZED"
    http_status = 403


class DuplicateIdentifierError(CampusGateError):
    code = "DUPLICATE_IDENTIFIER"
    http_status = 409

    def __init__(self, message, field=None, **context):
        super().__init__(message, field=field, **context)
        self.field = field


class InvalidStateError(CampusGateError):
    code = "INVALID_STATE"
    http_status = 409

    def __init__(self, message, current_state=None, requested_state=None, **context):
        super().__init__(message, current_state=current_state, requested_state=requested_state, **context)
        self.current_state = current_state
        self.requested_state = requested_state


class NotFoundError(CampusGateError):
    code = "NOT_FOUND"
    http_status = 404


class ExpiredGatePassError(CampusGateError):
    code = "GATEPASS_EXPIRED"
    http_status = 410


class AlreadyVerifiedError(CampusGateError):
    code = "ALREADY_VERIFIED"
    http_status = 409


class CodeRequiredError(CampusGateError):
    code = "CODE_REQUIRED"
    http_status = 428


class InvalidCodeError(CampusGateError):
    code = "INVALID_CODE"
    http_status = 400
