from __future__ import annotations

from typing import Any

from genflow.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Invalid request or workflow configuration", "VALIDATION_ERROR", "invalid workflow configuration"),
    401: _response("Missing caller identity", "AUTH_UNAUTHORIZED", "Missing X-User-Id header"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}

WORKFLOW_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    402: _response(
        "Balance below the estimated cost",
        "INSUFFICIENT_CREDITS",
        "Insufficient credits: balance 5, required 25",
        {"balance": 5, "required": 25},
    ),
    403: _response("Workflow owned by another user", "FORBIDDEN", "workflow belongs to another user"),
    404: _response("Unknown workflow", "NOT_FOUND", "workflow 'wf_123' not found"),
    409: _response("Workflow already finished", "INVALID_TRANSITION", "cannot cancel a COMPLETED workflow"),
    412: _response(
        "Provider credential missing",
        "CREDENTIAL_MISSING",
        "No credential stored for provider 'openai'",
        {"provider": "openai"},
    ),
    422: _response("Stored credential failed authentication", "CREDENTIAL_AUTH_FAILED", "authentication failed"),
}

CREDENTIAL_VALIDATION_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    412: WORKFLOW_ERROR_RESPONSES[412],
    422: WORKFLOW_ERROR_RESPONSES[422],
    502: _response(
        "Provider could not confirm the key",
        "PROVIDER_FAILURE",
        "openai.chat could not check the API key (429)",
        {"provider": "openai.chat", "status_code": 429},
    ),
}
