"""
Error registry for the billing engine.

``registry.yaml`` (next to this module) is the single list of error codes
the API can return. Each entry maps a code to its HTTP status, the message
that is safe to show callers, and whether retrying can help. Typed
exceptions in ``meterbill.core.errors`` only carry the code; everything a
response needs comes from here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from meterbill.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")

# ACC accounts, INV invoicing/processor, LED wallet ledger, WHK webhooks
VALID_DOMAINS = frozenset({"ACC", "CFG", "DB", "INV", "LED", "WHK", "SYS"})
VALID_SEVERITIES = frozenset({"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"})
REQUIRED_FIELDS = frozenset({
    "code", "domain", "title", "severity", "retryable",
    "user_action_required", "http_status", "safe_message", "remediation",
})


class RegistryValidationError(Exception):
    """registry.yaml is structurally invalid."""


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    docs_url: Optional[str] = None

    @classmethod
    def from_mapping(cls, position: int, raw: Mapping[str, Any]) -> "ErrorEntry":
        label = f"entry {position} ({raw.get('code', '?')})"
        missing = REQUIRED_FIELDS - set(raw)
        if missing:
            raise RegistryValidationError(f"{label}: missing fields {sorted(missing)}")

        code = raw["code"]
        if not CODE_PATTERN.match(code):
            raise RegistryValidationError(f"{label}: invalid code format")

        domain = raw["domain"]
        if domain != code.split("-")[1]:
            raise RegistryValidationError(f"{label}: domain {domain!r} does not match the code")
        if domain not in VALID_DOMAINS:
            raise RegistryValidationError(f"{label}: unknown domain {domain!r}")
        if raw["severity"] not in VALID_SEVERITIES:
            raise RegistryValidationError(f"{label}: unknown severity {raw['severity']!r}")

        http_status = int(raw["http_status"])
        if not 200 <= http_status <= 599:
            raise RegistryValidationError(f"{label}: http_status {http_status} out of range")

        return cls(
            code=code,
            domain=domain,
            title=raw["title"],
            severity=raw["severity"],
            retryable=bool(raw["retryable"]),
            user_action_required=bool(raw["user_action_required"]),
            http_status=http_status,
            safe_message=raw["safe_message"],
            remediation=list(raw.get("remediation") or []),
            tags=list(raw.get("tags") or []),
            docs_url=raw.get("docs_url"),
        )


class ErrorRegistry:
    """Code → ErrorEntry lookup, filled by ``load()``."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: str | None = None) -> None:
        with open(path or DEFAULT_PATH, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for position, raw in enumerate(raw_entries):
            entry = ErrorEntry.from_mapping(position, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"duplicate code {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = data.get("schema_version", 0)
        logger.info(
            "error_registry_loaded",
            extra={"count": len(entries), "schema_version": self.schema_version},
        )

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(f"Unknown error code: {code!r}")
        return entry

    def unregistered(self, codes: Iterable[str]) -> List[str]:
        """The subset of *codes* with no registry entry."""
        return sorted(code for code in set(codes) if code not in self._entries)

    def all_codes(self) -> list[str]:
        return list(self._entries)

    def codes_for_domain(self, domain: str) -> list[str]:
        return [code for code, entry in self._entries.items() if entry.domain == domain]

    def __len__(self) -> int:
        return len(self._entries)


error_registry = ErrorRegistry()
