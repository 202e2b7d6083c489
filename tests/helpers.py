from __future__ import annotations

from typing import Iterable

from ai_gmail_labeler.config import Settings
from ai_gmail_labeler.models import ClassificationVerdict, MessageContext, MessageHeaders
from ai_gmail_labeler.resilience import CancellationToken

PROCESSED = "[AI]: Processed"
PHISHING = "[AI]: Phishing Possible"

PHISHY_BODY = (
    "Your account has been suspended. Verify your password within 24 hours "
    "by visiting the secure portal or lose access permanently."
)


def make_settings(**overrides) -> Settings:
    values = {
        "processor_order_raw": "Deduplicate,NoiseFilter,PhishingClassifier,PhishingLabeler",
        "backoff_min_seconds": 1,
        "backoff_max_seconds": 1,
        "message_delay_seconds": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_context(
    *,
    body: str = PHISHY_BODY,
    subject: str | None = "Account notice",
    sender: str | None = "Security Team <security@bank-example.test>",
    message_id: str = "msg-1",
    cancel: CancellationToken | None = None,
) -> MessageContext:
    return MessageContext(
        message_id=message_id,
        thread_id="thread-1",
        headers=MessageHeaders(subject=subject, sender=sender, recipient="me@example.test"),
        body_text=body,
        cancel=cancel or CancellationToken(),
    )


class FakeMailbox:
    """In-memory stand-in for GmailClient's label operations."""

    def __init__(self, labels: Iterable[str] = (), fail_on_apply: int | None = None) -> None:
        self.labels = set(labels)
        self.applied: list[tuple[str, set[str], set[str]]] = []
        self.label_reads = 0
        self.fail_on_apply = fail_on_apply

    def get_label_names(self, message_id, cancel=None) -> set[str]:
        self.label_reads += 1
        return set(self.labels)

    def apply_label_changes(self, message_id, to_add, to_remove, cancel=None) -> None:
        if self.fail_on_apply is not None and len(self.applied) == self.fail_on_apply:
            raise RuntimeError("modify failed")
        to_add, to_remove = set(to_add), set(to_remove)
        self.applied.append((message_id, to_add, to_remove))
        self.labels |= to_add
        self.labels -= to_remove


class FakeClassifier:
    def __init__(self, verdict: ClassificationVerdict | None = None, error: Exception | None = None) -> None:
        self.verdict = verdict or ClassificationVerdict(
            is_phishing=True, confidence=0.9, reason="asks for password"
        )
        self.error = error
        self.calls: list[str] = []

    def classify(self, message_text, cancel=None) -> ClassificationVerdict:
        self.calls.append(message_text)
        if self.error is not None:
            raise self.error
        return self.verdict
