"""Uniform JSON error bodies for the approval API.

Every error response has the shape::

    {"error": "<human message>", "code": "ERR_...", "details": {...}?}

Guard denials reuse the guard's reason as ``error`` so clients can show it
verbatim:

    return api_error(E.FORBIDDEN, "Cannot approve own request",
                     details={"status": "PENDING"})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes."""

    # missing field / malformed query value
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    # well-formed input rejected by a service rule (ValidationError)
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # no X-User-Id, bad cron secret
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    # guard denial, non-applicant submit
    FORBIDDEN = "ERR_FORBIDDEN"

    NOT_FOUND = "ERR_NOT_FOUND"

    # concurrent decision on the same (request, approver, level)
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.INTERNAL: 500,
}


def status_for(code: str) -> int:
    """HTTP status for an error code; unknown codes map to 400."""
    return _STATUS_BY_CODE.get(code, 400)


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a Flask view or error handler."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or status_for(code)
