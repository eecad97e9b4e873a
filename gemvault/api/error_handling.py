from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from gemvault.api.schemas import Envelope, ErrorBody
from gemvault.logging import get_logger
from gemvault.service.errors import ServiceError
from gemvault.storage.errors import ConstraintViolation, TransactionFailure

logger = get_logger(__name__)

# stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _validation_details(exc: RequestValidationError) -> list[dict]:
    # pydantic error contexts can carry exception objects; keep the serializable parts
    return [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(TransactionFailure)
    async def handle_transaction_failure(request: Request, exc: TransactionFailure):
        # storage detail stays in the log
        logger.error(
            "transaction_failure",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(500, "internal server error", code="server_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code >= 500:
            return _error_response(exc.status_code, "internal server error", code=error_code)
        return _error_response(exc.status_code, exc.message, exc.detail, code=error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[".".join(d["loc"]) for d in details],
        )
        return _error_response(422, "request validation failed", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # envelopes built by routes._http_error
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            error_obj = exc.detail["error"]
            if isinstance(error_obj, dict):
                message = error_obj.get("message", "http error")
                code = error_obj.get("code")
                details = error_obj.get("details")
                if exc.status_code >= 500:
                    logger.error(
                        "http_error",
                        path=request.url.path,
                        method=request.method,
                        status_code=exc.status_code,
                        error_code=code,
                        message=message,
                    )
                elif exc.status_code >= 400:
                    logger.warning(
                        "http_client_error",
                        path=request.url.path,
                        method=request.method,
                        status_code=exc.status_code,
                        error_code=code,
                        message=message,
                    )
                response = _error_response(exc.status_code, message, details, code=code)
                if exc.headers:
                    response.headers.update(exc.headers)
                return response
        # plain HTTPException, e.g. 404/405 from routing
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")


__all__ = ["register_exception_handlers"]
