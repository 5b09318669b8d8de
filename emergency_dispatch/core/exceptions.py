"""
Custom exceptions and error handling
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import structlog

logger = structlog.get_logger()


class APIError(Exception):
    """Base API error"""
    status_code = 400

    def __init__(self, error_code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ErrorCodes:
    """Error code constants"""
    # Authentication Errors
    INVALID_TOKEN = "AUTH_001"
    EXPIRED_TOKEN = "AUTH_002"
    INSUFFICIENT_PERMISSIONS = "AUTH_003"

    # Geographic Errors
    INVALID_COORDINATES = "GEO_002"

    # Request Errors
    REQUEST_NOT_FOUND = "REQ_002"
    INVALID_SERVICE_TYPE = "REQ_003"
    RESPONDER_NOT_FOUND = "REQ_004"

    # Validation Errors
    VALIDATION_ERROR = "VAL_001"

    # Dispatch Errors
    ASSIGNMENT_CONFLICT = "DSP_001"
    INVALID_TRANSITION = "DSP_002"

    # External collaborators
    EXTERNAL_DEPENDENCY = "EXT_001"


class ValidationError(APIError):
    """Malformed or missing required input"""
    status_code = 422

    def __init__(self, message: str = "Invalid input", field: Optional[str] = None,
                 error_code: str = ErrorCodes.VALIDATION_ERROR):
        details = {"field": field} if field else {}
        super().__init__(error_code, message, details)
        self.field = field


class NotFoundError(APIError):
    """Referenced request or responder does not exist"""
    status_code = 404

    def __init__(self, message: str = "Resource not found", error_code: str = ErrorCodes.REQUEST_NOT_FOUND):
        super().__init__(error_code, message)


class ConflictError(APIError):
    """Atomic assignment precondition failed"""
    status_code = 409

    def __init__(self, message: str = "Request was already handled", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCodes.ASSIGNMENT_CONFLICT, message, details)


class StateTransitionError(APIError):
    """Requested status change violates the request state machine"""
    status_code = 409

    def __init__(self, current_status: str, new_status: str, message: Optional[str] = None):
        super().__init__(
            ErrorCodes.INVALID_TRANSITION,
            message or f"Cannot change status from '{current_status}' to '{new_status}'",
            {"current_status": current_status, "requested_status": new_status}
        )
        self.current_status = current_status
        self.new_status = new_status


class ExternalDependencyError(APIError):
    """A collaborator outside the dispatch core failed"""
    status_code = 502

    def __init__(self, message: str = "External dependency failed", dependency: Optional[str] = None):
        super().__init__(ErrorCodes.EXTERNAL_DEPENDENCY, message, {"dependency": dependency} if dependency else {})


class PermissionDeniedError(APIError):
    """Principal is not allowed to perform the operation"""
    status_code = 403

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(ErrorCodes.INSUFFICIENT_PERMISSIONS, message)


def create_error_response(
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create standardized error response"""
    return {
        "error_code": error_code,
        "message": message,
        "details": details or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id
    }


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")


def setup_exception_handlers(app: FastAPI):
    """Setup global exception handlers"""

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        logger.warning("Validation error", errors=errors, path=request.url.path)
        return JSONResponse(
            status_code=422,
            content=create_error_response(
                error_code=ErrorCodes.VALIDATION_ERROR,
                message="Request validation failed",
                details={"errors": errors},
                request_id=_request_id(request)
            )
        )

    @app.exception_handler(APIError)
    async def api_exception_handler(request: Request, exc: APIError):
        logger.warning("API error", error_code=exc.error_code, message=exc.message, path=request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content=create_error_response(
                error_code=exc.error_code,
                message=exc.message,
                details=exc.details,
                request_id=_request_id(request)
            )
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning("HTTP error", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content=create_error_response(
                error_code=f"HTTP_{exc.status_code}",
                message=exc.detail,
                request_id=_request_id(request)
            ),
            headers=exc.headers
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception", error=str(exc), path=request.url.path, exc_info=True)
        return JSONResponse(
            status_code=500,
            content=create_error_response(
                error_code="INTERNAL_ERROR",
                message="Internal server error",
                request_id=_request_id(request)
            )
        )
