"""Typed containers shared across the pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from .resilience import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class MessageHeaders:
    """Headers the stages care about; any of them may be missing."""

    subject: Optional[str] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None
    date: Optional[datetime] = None


@dataclass
class ClassificationVerdict:
    """The model's judgment for one message."""

    is_phishing: bool = False
    confidence: float = 0.0
    reason: str = ""
    raw_response: str = ""
    is_error: bool = False
    error_message: Optional[str] = None

    @classmethod
    def error(cls, message: str, raw_response: str = "") -> "ClassificationVerdict":
        return cls(is_error=True, error_message=message, raw_response=raw_response)


@dataclass
class MessageContext:
    """Everything known about one message for the length of one pipeline run."""

    message_id: str
    thread_id: str
    headers: MessageHeaders
    body_text: str
    cancel: CancellationToken = field(default_factory=CancellationToken)
    verdict: Optional[ClassificationVerdict] = None

    def attach_verdict(self, verdict: ClassificationVerdict) -> None:
        if self.verdict is not None:
            logger.warning(
                "Replacing unconsumed verdict on message %s", self.message_id
            )
        self.verdict = verdict

    def clear_verdict(self) -> None:
        self.verdict = None


class StageStatus(str, Enum):
    HANDLED = "Handled"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    STOP_CHAIN = "StopChain"


@dataclass(frozen=True)
class StageOutcome:
    """What a single stage decided about a message."""

    status: StageStatus
    added_labels: frozenset[str] = frozenset()
    removed_labels: frozenset[str] = frozenset()
    notes: Optional[str] = None

    @classmethod
    def handled(
        cls,
        notes: str | None = None,
        added: Iterable[str] = (),
        removed: Iterable[str] = (),
    ) -> "StageOutcome":
        return cls(StageStatus.HANDLED, frozenset(added), frozenset(removed), notes)

    @classmethod
    def skipped(cls, notes: str | None = None) -> "StageOutcome":
        return cls(StageStatus.SKIPPED, notes=notes)

    @classmethod
    def failed(cls, notes: str | None = None) -> "StageOutcome":
        return cls(StageStatus.FAILED, notes=notes)

    @classmethod
    def stop_chain(cls, notes: str | None = None, added: Iterable[str] = ()) -> "StageOutcome":
        return cls(StageStatus.STOP_CHAIN, frozenset(added), notes=notes)


@dataclass
class PipelineResult:
    """Summary of one message's trip through the pipeline."""

    success: bool
    stages_executed: list[str] = field(default_factory=list)
    added_labels: set[str] = field(default_factory=set)
    removed_labels: set[str] = field(default_factory=set)
    notes: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
