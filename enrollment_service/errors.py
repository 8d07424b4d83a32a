class ServiceError(Exception):
    """Base for every failure the service reports to callers."""

    status_code = 500
    kind = "ServiceError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "kind": self.kind, "message": self.message}


class ValidationError(ServiceError):
    status_code = 400
    kind = "ValidationError"


class NotFound(ServiceError):
    status_code = 404
    kind = "NotFound"


class Forbidden(ServiceError):
    status_code = 403
    kind = "Forbidden"


class Conflict(ServiceError):
    status_code = 409
    kind = "Conflict"


class InvalidSignature(ServiceError):
    status_code = 400
    kind = "InvalidSignature"


class GatewayError(ServiceError):
    """Upstream payment provider failure. Retryable with a new purchase call."""

    status_code = 502
    kind = "GatewayError"
    retryable = True
