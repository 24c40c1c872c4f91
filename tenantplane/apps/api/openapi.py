from __future__ import annotations

from typing import Any

from tenantplane.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: _error_response("Not found", "NOT_FOUND", "No provisioning status found for account acc-1"),
    409: _error_response("Conflict", "CONFLICT", "Provisioning already in progress for account acc-1"),
    422: _error_response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _error_response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    502: _error_response("Upstream failure", "PROVISIONING_FAILED", "Failed to provision account acc-1"),
    503: _error_response("Service unavailable", "INTEGRATION_UNAVAILABLE", "Integration unavailable"),
}
