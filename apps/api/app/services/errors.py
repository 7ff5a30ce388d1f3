"""Error taxonomy shared by the settlement and tracking services.

Routers never build HTTP responses for these by hand; ``app.main`` registers a
single exception handler that renders ``status_code`` and ``code``.
"""

from fastapi import status

from app.integrations.errors import IntegrationError


class EngineError(Exception):
    code = "ENGINE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(EngineError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(EngineError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(EngineError):
    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class Rejected(EngineError):
    code = "REJECTED"
    status_code = status.HTTP_400_BAD_REQUEST


class PaymentRejected(Rejected):
    code = "PAYMENT_NOT_COMPLETED"


class UpstreamTimeout(EngineError):
    code = "UPSTREAM_TIMEOUT"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class UpstreamError(EngineError):
    code = "UPSTREAM_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY


class DataIntegrityError(EngineError):
    code = "DATA_INTEGRITY_ERROR"
    status_code = 422


def translate_integration_error(err: IntegrationError) -> EngineError:
    if err.code == "NOT_FOUND":
        return NotFound(err.message)
    if err.code == "BAD_SIGNATURE":
        return ValidationError(err.message)
    if err.retryable:
        return UpstreamTimeout(f"{err.service}: {err.message}")
    return UpstreamError(f"{err.service}: {err.message}")
