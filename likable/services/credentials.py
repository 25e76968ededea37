"""Turn the backend stack's status output into a ``Credentials`` record.

The backend CLI has changed its status format across releases: newer
versions print JSON with ``-o json`` and call the public key a
"publishable key", older ones print aligned ``label: value`` text and call
it the "anon key".  Extraction tries the structured form first, then falls
back through text patterns and finally through the bare shape of the two
known key formats.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict

DEFAULT_API_URL = "http://127.0.0.1:54321"
PLACEHOLDER_ANON_KEY = "your-anon-key-here"

# Ordered newest name first.
URL_FIELDS: tuple[str, ...] = ("API_URL", "api_url", "apiUrl", "SUPABASE_URL", "url")
KEY_FIELDS: tuple[str, ...] = (
    "PUBLISHABLE_KEY",
    "publishable_key",
    "publishableKey",
    "ANON_KEY",
    "anon_key",
    "anonKey",
)

_SEP = r"\s*[:│|]\s*"
_URL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"(?:API URL|Project URL){_SEP}(https?://[^\s│|]+)", re.IGNORECASE),
)
_KEY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"Publishable(?: key)?{_SEP}([^\s│|]+)", re.IGNORECASE),
    re.compile(rf"anon key{_SEP}([^\s│|]+)", re.IGNORECASE),
)
_PREFIXED_TOKEN_RE = re.compile(r"\bsb_publishable_[A-Za-z0-9_-]+")
_DOTTED_TOKEN_RE = re.compile(
    r"(?<![\w.-])[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}(?![\w.-])"
)


class Credentials(BaseModel):
    """Base URL and public API key of the running backend stack."""

    model_config = ConfigDict(frozen=True)

    url: str
    anon_key: str

    @property
    def has_key(self) -> bool:
        """``False`` when extraction fell back to the placeholder key."""
        return bool(self.anon_key) and self.anon_key != PLACEHOLDER_ANON_KEY

    def masked_key(self, visible: int = 20) -> str:
        """Key prefix suitable for printing."""
        if not self.has_key:
            return self.anon_key
        return f"{self.anon_key[:visible]}..."


# ---------------------------------------------------------------------------
# Structured output
# ---------------------------------------------------------------------------


def parse_status_json(raw: str) -> dict[str, Any] | None:
    """Parse structured status output, tolerating log lines around the JSON.

    Returns ``None`` when no JSON object can be recovered.
    """
    raw = raw.strip()
    if not raw:
        return None

    # Strategy 1: the whole output is JSON
    try:
        data = json.loads(raw)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass

    # Strategy 2: outermost braces (CLI may print notices before the JSON)
    first_brace = raw.find("{")
    last_brace = raw.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        try:
            data = json.loads(raw[first_brace : last_brace + 1])
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    # Strategy 3: one JSON object per line, last one wins
    for line in reversed(raw.splitlines()):
        line = line.strip()
        if line.startswith("{"):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data

    return None


def _first_field(data: dict[str, Any], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def structured_api_url(raw: str) -> str | None:
    """Return the externally reachable base URL from structured status output.

    A response that parses but lacks a URL field (for example one that only
    reports the database connection string) yields ``None``.
    """
    data = parse_status_json(raw)
    if data is None:
        return None
    return _first_field(data, URL_FIELDS)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _search(patterns: tuple[re.Pattern[str], ...], text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def _token_anywhere(text: str) -> str | None:
    for pattern in (_PREFIXED_TOKEN_RE, _DOTTED_TOKEN_RE):
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


def extract_credentials(status_output: str, default_url: str = DEFAULT_API_URL) -> Credentials:
    """Build ``Credentials`` from the backend stack's status output.

    Never raises.  A missing URL becomes *default_url*; a missing key
    becomes ``PLACEHOLDER_ANON_KEY`` so callers can detect the failure
    with ``Credentials.has_key``.
    """
    url: str | None = None
    key: str | None = None

    data = parse_status_json(status_output)
    if data is not None:
        url = _first_field(data, URL_FIELDS)
        key = _first_field(data, KEY_FIELDS)
    else:
        url = _search(_URL_PATTERNS, status_output)
        key = _search(_KEY_PATTERNS, status_output) or _token_anywhere(status_output)

    return Credentials(url=url or default_url, anon_key=key or PLACEHOLDER_ANON_KEY)
