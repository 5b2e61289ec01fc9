"""
karate_scoring/errors.py
Centralized error envelope and FastAPI handlers

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 400: Invalid input (score out of range, negative tally, unknown participant)
- 404: Performance / match / round does not exist
- 409: State conflict (incomplete round, already finalized, tie, lock conflict)
- 422: Request body validation (Pydantic)
- 500: NEVER caused by user input (internal only)
"""
import logging
import uuid
from typing import Optional, Dict, Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    NOT_FOUND = "NOT_FOUND"
    PERFORMANCE_NOT_FOUND = "PERFORMANCE_NOT_FOUND"
    MATCH_NOT_FOUND = "MATCH_NOT_FOUND"
    ROUND_NOT_FOUND = "ROUND_NOT_FOUND"

    STATE_TRANSITION_INVALID = "STATE_TRANSITION_INVALID"
    INCOMPLETE_ROUND = "INCOMPLETE_ROUND"
    INSUFFICIENT_CANDIDATES = "INSUFFICIENT_CANDIDATES"
    ALREADY_FINALIZED = "ALREADY_FINALIZED"
    TIE = "TIE"
    INCOMPLETE_DATA = "INCOMPLETE_DATA"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standard error response model"""
    success: bool = False
    error: str
    message: str
    code: str
    details: Optional[Dict[str, Any]] = None


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(
            status_code=self.status_code,
            content=jsonable_encoder(self.to_dict())
        )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the engine's error envelope to a FastAPI application."""

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        logger.warning(f"API error on {request.url.path}: {exc.code} - {exc.message}")
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

        error_details = [
            {
                "loc": error.get("loc"),
                "msg": error.get("msg"),
                "type": error.get("type")
            }
            for error in exc.errors()
        ]

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=jsonable_encoder({
                "success": False,
                "error": "Validation Error",
                "message": "Request body failed validation",
                "code": ErrorCode.VALIDATION_ERROR,
                "details": {"errors": error_details}
            })
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"HTTP exception on {request.url.path}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": "Error",
                "message": str(exc.detail),
                "code": ErrorCode.NOT_FOUND if exc.status_code == 404 else (
                    ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.INVALID_INPUT
                )
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        log_id = str(uuid.uuid4())[:8]
        logger.error(
            f"[{log_id}] Unhandled exception on {request.url.path}: "
            f"{type(exc).__name__}: {str(exc)}"
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Internal Error",
                "message": "An unexpected error occurred. Please try again later.",
                "code": ErrorCode.INTERNAL_ERROR,
                "details": {"log_id": log_id}
            }
        )
