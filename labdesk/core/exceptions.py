from typing import Dict, Any, Optional
from datetime import datetime
from fastapi import status
from pydantic import BaseModel
import logging

logger = logging.getLogger(__name__)


class BaseCustomException(Exception):
    """Base class for custom exceptions"""

    default_message = "An unexpected error occurred"
    default_error_code = "UNEXPECTED_ERROR"
    default_status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        self.message = message or self.default_message
        self.status_code = status_code or self.default_status_code
        self.details = details or {}
        self.error_code = error_code or self.default_error_code
        super().__init__(self.message)


class ValidationError(BaseCustomException):
    """A value does not fit the shape of its sub-test"""
    default_message = "Validation failed"
    default_error_code = "VALIDATION_ERROR"
    default_status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class AuthorizationError(BaseCustomException):
    """Results cannot be authorized in their current state"""
    default_message = "Authorization refused"
    default_error_code = "AUTHORIZATION_ERROR"
    default_status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(BaseCustomException):
    """Exception for resource not found errors"""
    default_message = "Resource not found"
    default_error_code = "NOT_FOUND_ERROR"
    default_status_code = status.HTTP_404_NOT_FOUND


class ConflictError(BaseCustomException):
    """A write targets a row that no longer matches the test definition"""
    default_message = "Resource conflict"
    default_error_code = "CONFLICT_ERROR"
    default_status_code = status.HTTP_409_CONFLICT


class BusinessLogicError(BaseCustomException):
    """Exception for business logic errors"""
    default_message = "Business logic error"
    default_error_code = "BUSINESS_LOGIC_ERROR"
    default_status_code = status.HTTP_400_BAD_REQUEST


class ExternalServiceError(BaseCustomException):
    """Exception for external service errors"""
    default_message = "External service error"
    default_error_code = "EXTERNAL_SERVICE_ERROR"
    default_status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class TransportError(ExternalServiceError):
    """Timeout or disconnect while talking to the lab backend"""
    default_message = "Lab backend unreachable"
    default_error_code = "TRANSPORT_ERROR"


class ConfigurationError(BaseCustomException):
    """Exception for configuration errors"""
    default_message = "Configuration error"
    default_error_code = "CONFIGURATION_ERROR"


# Response models for errors
class ErrorResponse(BaseModel):
    """Standard error response model"""
    error: str
    message: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    request_id: Optional[str] = None


def create_error_response(
    exception: BaseCustomException,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create standardized error response"""
    response = {
        "error": exception.__class__.__name__.replace("Error", " Error"),
        "message": exception.message,
        "error_code": exception.error_code,
        "timestamp": datetime.utcnow().isoformat(),
        "request_id": request_id
    }

    if exception.details:
        response["details"] = exception.details

    return response


# Status codes the lab backend answers with, mapped back for the client
STATUS_CODE_MAPPING = {
    status.HTTP_400_BAD_REQUEST: BusinessLogicError,
    status.HTTP_403_FORBIDDEN: AuthorizationError,
    status.HTTP_404_NOT_FOUND: NotFoundError,
    status.HTTP_409_CONFLICT: ConflictError,
    status.HTTP_422_UNPROCESSABLE_ENTITY: ValidationError,
    status.HTTP_502_BAD_GATEWAY: TransportError,
    status.HTTP_503_SERVICE_UNAVAILABLE: TransportError,
    status.HTTP_504_GATEWAY_TIMEOUT: TransportError,
}


def exception_from_response(status_code: int, payload: Optional[Dict[str, Any]]) -> BaseCustomException:
    """Rebuild a custom exception from an error response body"""
    payload = payload or {}
    exception_class = STATUS_CODE_MAPPING.get(status_code, BaseCustomException)

    message = payload.get("message")
    if message is None and isinstance(payload.get("detail"), str):
        message = payload["detail"]

    details = payload.get("details") or {}
    if exception_class is ValidationError and isinstance(payload.get("detail"), list):
        # FastAPI request validation failures
        details = {"errors": payload["detail"]}

    return exception_class(
        message=message,
        status_code=status_code,
        details=details,
        error_code=payload.get("error_code")
    )


def error_from_row(child_test_id: int, exception: BaseCustomException) -> Dict[str, Any]:
    """Serialize a per-row failure inside a batch response"""
    return {
        "child_test_id": child_test_id,
        "error_code": exception.error_code,
        "message": exception.message,
        "details": exception.details or None,
    }


ROW_ERROR_CODES = {
    "VALIDATION_ERROR": ValidationError,
    "CONFLICT_ERROR": ConflictError,
    "BUSINESS_LOGIC_ERROR": BusinessLogicError,
    "RESULTS_LOCKED": BusinessLogicError,
    "RESULT_AUTHORIZED": BusinessLogicError,
    "AUTHORIZATION_ERROR": AuthorizationError,
    "NOT_FOUND_ERROR": NotFoundError,
}


def row_error_to_exception(error_code: Optional[str], message: str, details: Optional[Dict[str, Any]] = None) -> BaseCustomException:
    """Map a per-row error entry back to its exception class"""
    exception_class = ROW_ERROR_CODES.get(error_code or "", BaseCustomException)
    return exception_class(message=message, details=details, error_code=error_code)


def handle_transport_error(error: Exception, operation: str = "request") -> TransportError:
    """Convert a low-level transport failure into a TransportError"""
    logger.error(f"Transport error during {operation}: {error}")

    error_message = "Lab backend unreachable"
    if "timeout" in type(error).__name__.lower() or "timeout" in str(error).lower():
        error_message = "Lab backend request timed out"

    return TransportError(
        message=error_message,
        details={"operation": operation, "original_error": str(error)},
    )
