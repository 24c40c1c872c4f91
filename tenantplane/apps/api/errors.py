from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantplane.apps.api.response import error_response
from tenantplane.core.errors import (
    AccountNotRoutableError,
    ConflictError,
    DataStoreError,
    IntegrationUnavailableError,
    NotFoundError,
    ParameterStoreError,
    ProviderConfigError,
    ProvisioningFailure,
    StackOperationError,
    TenantPlaneError,
    ValidationError,
)


logger = logging.getLogger(__name__)


_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_FAILURE",
    503: "SERVICE_UNAVAILABLE",
}

# Ordered most specific first; the first isinstance match wins.
_DOMAIN_ERROR_STATUS: list[tuple[type[TenantPlaneError], int, str]] = [
    (ValidationError, 422, "VALIDATION_ERROR"),
    (AccountNotRoutableError, 409, "ACCOUNT_NOT_ROUTABLE"),
    (ConflictError, 409, "CONFLICT"),
    (NotFoundError, 404, "NOT_FOUND"),
    (ProvisioningFailure, 502, "PROVISIONING_FAILED"),
    (StackOperationError, 502, "STACK_OPERATION_FAILED"),
    (IntegrationUnavailableError, 503, "INTEGRATION_UNAVAILABLE"),
    (ParameterStoreError, 503, "SERVICE_UNAVAILABLE"),
    (DataStoreError, 503, "SERVICE_UNAVAILABLE"),
    (ProviderConfigError, 500, "PROVIDER_MISCONFIGURED"),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def classify_domain_error(exc: TenantPlaneError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers FastAPI HTTPException (a subclass) and router-level 404/405.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Keep structured field errors so clients can highlight the bad input.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_errors(exc)},
    )
    return JSONResponse(content=payload, status_code=422)


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    # Pydantic may attach exception objects under ``ctx``; stringify them.
    errors = []
    for error in exc.errors():
        cleaned = {key: value for key, value in error.items() if key != "ctx"}
        if "ctx" in error:
            cleaned["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(cleaned)
    return errors


async def domain_exception_handler(request: Request, exc: TenantPlaneError) -> JSONResponse:
    status_code, code = classify_domain_error(exc)
    details: dict[str, Any] | None = None
    if isinstance(exc, AccountNotRoutableError):
        # Not routable is transient while provisioning settles.
        details = {"account_id": exc.account_id, "status": exc.status, "retryable": True}
    elif isinstance(exc, ProvisioningFailure):
        details = {"account_id": exc.account_id, "error_code": exc.error_code}
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
