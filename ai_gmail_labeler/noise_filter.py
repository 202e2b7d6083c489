"""Heuristics that decide whether a message is machine noise or bulk mail."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import MessageHeaders
from .utils import first_match

logger = logging.getLogger(__name__)

AUTOMATED_SENDER_PATTERNS = (
    "noreply",
    "no-reply",
    "donotreply",
    "do-not-reply",
    "automatic",
    "automated",
    "system generated",
    "delivery status notification",
    "mail delivery subsystem",
    "postmaster",
    "mailer-daemon",
)
AUTOMATED_SUBJECT_PATTERNS = (
    "out of office",
    "auto-reply",
    "automatic reply",
    "vacation response",
    "delivery failure",
    "undelivered mail",
    "mail delivery failed",
    "receipt",
    "confirmation",
    "notification",
)
AUTOMATED_BODY_PATTERNS = (
    "this is an automated message",
    "automatically generated",
    "please do not reply",
    "unsubscribe",
    "manage your preferences",
    "delivery has failed",
    "message could not be delivered",
)
BULK_SENDER_PATTERNS = (
    "newsletter",
    "marketing",
    "noreply",
    "no-reply",
    "info@",
    "news@",
    "updates@",
    "alerts@",
)
BULK_BODY_PATTERNS = (
    "newsletter",
    "mailing list",
    "bulk mail",
    "marketing",
    "unsubscribe",
    "manage preferences",
    "view this email in your browser",
    "if you no longer wish to receive",
    "update your email preferences",
)


class NoiseHeuristics:
    """Evaluate sender/subject/body patterns to spot automated and bulk mail."""

    def __init__(
        self,
        automated_senders: Iterable[str] = AUTOMATED_SENDER_PATTERNS,
        automated_subjects: Iterable[str] = AUTOMATED_SUBJECT_PATTERNS,
        automated_bodies: Iterable[str] = AUTOMATED_BODY_PATTERNS,
        bulk_senders: Iterable[str] = BULK_SENDER_PATTERNS,
        bulk_bodies: Iterable[str] = BULK_BODY_PATTERNS,
    ) -> None:
        self.automated_senders = [pattern.lower() for pattern in automated_senders]
        self.automated_subjects = [pattern.lower() for pattern in automated_subjects]
        self.automated_bodies = [pattern.lower() for pattern in automated_bodies]
        self.bulk_senders = [pattern.lower() for pattern in bulk_senders]
        self.bulk_bodies = [pattern.lower() for pattern in bulk_bodies]

    def automated_reason(self, headers: MessageHeaders, body: str) -> str | None:
        """Return a description of the first automated-mail match, if any."""
        match = first_match(headers.sender or "", self.automated_senders)
        if match:
            logger.debug("Sender '%s' matched automated pattern '%s'", headers.sender, match)
            return f"sender contains '{match}'"

        match = first_match(headers.subject or "", self.automated_subjects)
        if match:
            logger.debug("Subject matched automated pattern '%s'", match)
            return f"subject contains '{match}'"

        match = first_match(body or "", self.automated_bodies)
        if match:
            logger.debug("Body matched automated pattern '%s'", match)
            return f"body contains '{match}'"
        return None

    def bulk_reason(self, headers: MessageHeaders, body: str) -> str | None:
        match = first_match(headers.sender or "", self.bulk_senders)
        if match:
            return f"sender contains '{match}'"
        match = first_match(body or "", self.bulk_bodies)
        if match:
            return f"body contains '{match}'"
        return None
