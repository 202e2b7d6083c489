"""Utility helpers shared across modules."""

from __future__ import annotations

import base64
import logging
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Iterable

logger = logging.getLogger(__name__)


def clamp_confidence(value: float) -> float:
    """Pin a model confidence into [0, 1], warning when it was outside."""
    if value < 0.0 or value > 1.0:
        logger.warning("Confidence %s outside [0, 1]; clamping", value)
        return min(max(value, 0.0), 1.0)
    return value


def parse_header_date(value: str | None) -> datetime | None:
    """Parse an RFC 2822 ``Date`` header; junk yields None."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return ensure_utc(parsed)


def ensure_utc(dt: datetime) -> datetime:
    """Force a datetime into UTC without altering instant."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def decode_base64url(data: str) -> bytes:
    """Gmail bodies are base64url without padding."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def split_csv(value: str | Iterable[str] | None) -> list[str]:
    """Turn delimiter-separated strings into cleaned lists, keeping case."""
    if value is None:
        return []
    items = re.split(r"[;,]", value) if isinstance(value, str) else list(value)
    return [item.strip() for item in items if item and item.strip()]


def first_match(haystack: str, needles: Iterable[str]) -> str | None:
    """Return the first needle contained in haystack (case-insensitive)."""
    lowered = haystack.lower()
    for needle in needles:
        if needle.lower() in lowered:
            return needle
    return None
