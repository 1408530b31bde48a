"""
FastAPI exception handler for MeterBillError.

Catches MeterBillError, looks up the registry, and returns a structured
JSON error response. Unknown codes get a safe fallback.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from meterbill.core.errors import MeterBillError
from meterbill.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


def error_payload(exc: MeterBillError) -> tuple[int, dict]:
    """Return (http_status, body) for *exc* using the registry."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail},
        )
        return 500, {
            "error": {
                "code": exc.code,
                "title": "Internal error",
                "message": "An unexpected error occurred.",
                "retryable": False,
                "user_action_required": False,
                "remediation": [],
            }
        }

    return entry.http_status, {
        "error": {
            "code": entry.code,
            "title": entry.title,
            "message": entry.safe_message,
            "retryable": entry.retryable,
            "user_action_required": entry.user_action_required,
            "remediation": entry.remediation,
        }
    }


async def meterbill_error_handler(request: Request, exc: MeterBillError) -> JSONResponse:
    """Convert MeterBillError into a structured JSON response."""
    entry = error_registry.get(exc.code)
    if entry is not None:
        log_extra = {
            "error.code": exc.code,
            "error.kind": type(exc).__name__,
            "error.message_safe": entry.safe_message,
            "error.message": exc.detail,
            "error.retryable": entry.retryable,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        }
        _severity_to_log_fn(entry.severity)(entry.title, extra=log_extra)

    status_code, body = error_payload(exc)
    return JSONResponse(status_code=status_code, content=body)


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
