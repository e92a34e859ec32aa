"""Standardised API error responses.

Usage
-----
    from pipetrak.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Component not found")
    return api_error(E.VALIDATION_REQUIRED, "component_ids is required")
    return api_error(E.SEQUENCE_BLOCKED, "Weld requires Fit-up Ready to be complete",
                     details={"milestone_id": 31})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • SEQUENCE_ prefix for milestone sequencing refusals
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Sequencing – HTTP 409
    SEQUENCE_BLOCKED = "SEQUENCE_BLOCKED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.SEQUENCE_BLOCKED: 409,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """JSON error body for the milestone API: ``{"error", "code"[, "details"]}``.

    ``message`` is shown to the foreman verbatim, so sequencing refusals pass
    the rule engine's reason text unchanged ("Connect requires Receive to be
    complete"). ``details`` carries the offending identifiers or values:

        SEQUENCE_BLOCKED            {"milestone_id": 31}
        ERR_VALIDATION_INVALID      {"value": 150} or {"value": 30, "quantity_total": 20}
                                    or {"workflow_type": "MILESTONE_DISCRETE"}

    ``status`` overrides the code's default from ``_DEFAULT_STATUS`` (400
    when the code has none). Returns ``(response, status)`` for a Flask view.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
