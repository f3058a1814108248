from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse

from chapter_tutor.core.observability.correlation import get_correlation_id
from chapter_tutor.domain.exceptions import TutorError

logger = structlog.get_logger(__name__)


def _error_example(code: str, message: str, details: Any) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": "f6a4c304-1ce0-4cf5-9d8f-5d4deca4f51f",
        }
    }


def _response(description: str, code: str, message: str, details: Any = None) -> dict[str, Any]:
    return {
        "description": description,
        "content": {"application/json": {"example": _error_example(code, message, details)}},
    }


ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad Request", "EMPTY_QUESTION", "No message or audio provided"),
    401: _response("Unauthorized", "UNAUTHORIZED", "Unauthorized"),
    404: _response("Not Found", "CHAPTER_NOT_FOUND", "Chapter not found", {"chapterId": "english-grammar-basics"}),
    422: _response(
        "Unprocessable Entity",
        "FRONTEND_CONTRACT_BREACH",
        "Request validation failed",
        [{"loc": ["body", "chapterId"], "msg": "Field required"}],
    ),
    500: _response("Internal Server Error", "INTERNAL_ERROR", "Failed to process chat request"),
    502: _response("Bad Gateway", "GENERATION_FAILED", "Failed to generate a tutor response"),
    503: _response("Service Unavailable", "CACHE_UNAVAILABLE", "Cache store unavailable"),
}


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        super().__init__(message)
        self.status_code = int(status_code)
        self.code = code
        self.message = message
        self.details = details

    @classmethod
    def from_tutor_error(cls, exc: TutorError) -> "ApiError":
        return cls(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


def error_body(code: str, message: str, details: Any = None) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
            "request_id": get_correlation_id(),
        }
    }


async def api_error_exception_handler(_: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message, exc.details))


async def tutor_error_exception_handler(request: Request, exc: TutorError) -> JSONResponse:
    """Domain errors that escape a router keep their own status and code."""
    logger.warning("tutor_error_unhandled_in_router", endpoint=str(request.url), code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message, exc.details))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Usually a web client that is out of sync with the form contract.
    logger.warning(
        "frontend_contract_breach",
        direction="inbound_backend",
        endpoint=str(request.url),
        validation_errors=exc.errors(),
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body("FRONTEND_CONTRACT_BREACH", "Request validation failed", jsonable_encoder(exc.errors())),
    )


async def response_validation_exception_handler(request: Request, exc: ResponseValidationError) -> JSONResponse:
    logger.error(
        "backend_contract_breach",
        direction="outbound_backend",
        endpoint=str(request.url),
        validation_errors=exc.errors(),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            "BACKEND_CONTRACT_BREACH",
            "Internal Server Error: Data Contract Breach",
            jsonable_encoder(exc.errors()),
        ),
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_exception_handler)
    app.add_exception_handler(TutorError, tutor_error_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, response_validation_exception_handler)
