"""
Error code system.

MeterBillError is the base exception for all structured errors.
Raise it (or one of the typed subclasses below) with an error code from the
registry, and the error middleware will produce a structured JSON response.

Usage:
    from meterbill.core.errors import AccountNotFound
    raise AccountNotFound(detail="acct_123", context={"account_id": "acct_123"})
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^MBL-[A-Z]{2,6}-\d{3}$")


class MeterBillError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "MBL-LED-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    # Consulted by RetryPolicy to classify transient failures
    retryable: bool = False

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class _CodedError(MeterBillError):
    """A MeterBillError whose code is fixed by the subclass."""

    code_value: str = ""

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(self.code_value, detail=detail, context=context)


def registered_codes() -> list[str]:
    """Codes of every typed error; each must have a registry entry."""
    return [cls.code_value for cls in _CodedError.__subclasses__()]


class AccountNotFound(_CodedError):
    code_value = "MBL-ACC-001"


class MissingCustomerReference(_CodedError):
    code_value = "MBL-INV-001"


class ExternalInvoiceError(_CodedError):
    """Processor rejected or failed a request. ``processor_message`` is raw."""

    code_value = "MBL-INV-002"

    def __init__(
        self,
        processor_message: str,
        status_code: int | None = None,
        context: dict | None = None,
    ) -> None:
        self.processor_message = processor_message
        self.status_code = status_code
        ctx = {"status_code": status_code, **(context or {})}
        super().__init__(detail=processor_message, context=ctx)


class ConcurrentModification(_CodedError):
    code_value = "MBL-LED-001"
    retryable = True


class InvalidAmount(_CodedError):
    code_value = "MBL-LED-002"


class InsufficientBalance(_CodedError):
    code_value = "MBL-LED-003"


class InvalidSignature(_CodedError):
    code_value = "MBL-WHK-001"


class UnresolvedEventTarget(_CodedError):
    code_value = "MBL-WHK-002"


class AccountSelectionFailed(_CodedError):
    code_value = "MBL-DB-001"


class ConfigurationError(_CodedError):
    code_value = "MBL-CFG-001"


__all__ = [
    "CODE_PATTERN",
    "MeterBillError",
    "AccountNotFound",
    "MissingCustomerReference",
    "ExternalInvoiceError",
    "ConcurrentModification",
    "InvalidAmount",
    "InsufficientBalance",
    "InvalidSignature",
    "UnresolvedEventTarget",
    "AccountSelectionFailed",
    "ConfigurationError",
    "registered_codes",
]
