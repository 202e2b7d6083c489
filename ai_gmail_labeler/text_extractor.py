"""Turn Gmail API message payloads into plain text."""

from __future__ import annotations

import binascii
import html
import logging
import re
from typing import Any

from .utils import decode_base64url

logger = logging.getLogger(__name__)

TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")
MIN_USABLE_LENGTH = 10
MIN_ALPHANUMERIC_RATIO = 0.3


def strip_html(markup: str) -> str:
    if not markup:
        return ""
    without_tags = TAG_PATTERN.sub(" ", markup)
    return WHITESPACE_PATTERN.sub(" ", html.unescape(without_tags)).strip()


def extract_text(payload: dict[str, Any] | None, max_chars: int, message_id: str = "") -> str:
    """Concatenate the text parts of a payload, capped at ``max_chars``."""
    if not payload:
        logger.debug("Message %s has no payload", message_id)
        return ""

    text = _extract_part(payload)
    if len(text) > max_chars:
        logger.debug("Clamped message %s body to %s characters", message_id, max_chars)
        text = text[:max_chars]
    logger.debug("Extracted %s characters from message %s", len(text), message_id)
    return text


def _extract_part(part: dict[str, Any]) -> str:
    chunks: list[str] = []
    mime_type = part.get("mimeType") or ""
    data = (part.get("body") or {}).get("data")

    if data:
        try:
            content = decode_base64url(data).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError) as exc:
            logger.warning("Failed to decode body data for %s part: %s", mime_type, exc)
        else:
            if "html" in mime_type.lower():
                content = strip_html(content)
            chunks.append(content)

    for sub_part in part.get("parts") or []:
        if (sub_part.get("mimeType") or "").lower().startswith(("text/", "multipart/")):
            chunks.append(_extract_part(sub_part))

    return "\n".join(chunk for chunk in chunks if chunk).strip()


def has_usable_text(text: str | None, min_length: int = MIN_USABLE_LENGTH) -> bool:
    """Long enough and at least 30% letters or digits."""
    if not text or not text.strip():
        return False
    trimmed = text.strip()
    if len(trimmed) < min_length:
        return False
    alphanumeric = sum(1 for char in trimmed if char.isalnum())
    return alphanumeric >= len(trimmed) * MIN_ALPHANUMERIC_RATIO
