"""Pipeline stages and the registry that maps configured names onto them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from .config import Settings, StageSettings
from .models import ClassificationVerdict, MessageContext, StageOutcome
from .noise_filter import NoiseHeuristics
from .resilience import CancellationToken, OperationCancelledError
from .text_extractor import has_usable_text
from .utils import clamp_confidence

logger = logging.getLogger(__name__)

TEST_KEYWORDS = ("TEST", "DEMO", "URGENT", "WINNER", "CONGRATULATIONS")
TEST_KEYWORD_LABEL = "[TEST]: Keyword Match"


class LabelReader(Protocol):
    def get_label_names(
        self, message_id: str, cancel: CancellationToken | None = None
    ) -> set[str]: ...


class Classifier(Protocol):
    def classify(
        self, message_text: str, cancel: CancellationToken | None = None
    ) -> ClassificationVerdict: ...


@dataclass
class StageServices:
    """Collaborators stages may need; tests pass fakes."""

    mailbox: LabelReader | None = None
    classifier: Classifier | None = None
    noise: NoiseHeuristics | None = None


class Stage:
    """Base class: handles the enabled switch and maps errors to ``Failed``."""

    name = "Stage"
    error_prefix = "Stage error"

    def __init__(self, settings: Settings, services: StageServices) -> None:
        self.settings = settings
        self.services = services

    @property
    def stage_settings(self) -> StageSettings:
        return self.settings.stage_settings(self.name)

    def process(self, context: MessageContext) -> StageOutcome:
        if not self.stage_settings.enabled:
            return StageOutcome.skipped(f"{self.name} processor is disabled")
        try:
            return self.run(context)
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.exception("%s failed on message %s", self.name, context.message_id)
            return StageOutcome.failed(f"{self.error_prefix}: {exc}")

    def run(self, context: MessageContext) -> StageOutcome:
        raise NotImplementedError


class DeduplicateStage(Stage):
    name = "Deduplicate"
    error_prefix = "Error checking duplicates"

    def run(self, context: MessageContext) -> StageOutcome:
        processed = self.settings.ai_processed_label.lower()
        labels = self.services.mailbox.get_label_names(context.message_id, context.cancel)
        if processed in {label.lower() for label in labels}:
            logger.debug(
                "Message %s already has processed label '%s'",
                context.message_id,
                self.settings.ai_processed_label,
            )
            return StageOutcome.stop_chain("Message already processed")
        return StageOutcome.handled("Message is not a duplicate")


class NoiseFilterStage(Stage):
    name = "NoiseFilter"
    error_prefix = "Noise filter error"

    def run(self, context: MessageContext) -> StageOutcome:
        body = context.body_text or ""
        if not has_usable_text(body):
            logger.debug(
                "Message %s has insufficient text content (length: %s)",
                context.message_id,
                len(body),
            )
            return StageOutcome.stop_chain("Message lacks sufficient text content for analysis")

        noise = self.services.noise or NoiseHeuristics()
        reason = noise.automated_reason(context.headers, body)
        if reason:
            logger.debug("Message %s appears to be automated (%s)", context.message_id, reason)
            return StageOutcome.stop_chain(f"Message appears to be automated: {reason}")

        reason = noise.bulk_reason(context.headers, body)
        if reason:
            logger.debug("Message %s appears to be bulk mail (%s)", context.message_id, reason)
            return StageOutcome.handled(
                f"Message is bulk email ({reason}), proceeding with caution"
            )
        return StageOutcome.handled("Message has sufficient content for analysis")


class PhishingClassifierStage(Stage):
    name = "PhishingClassifier"
    error_prefix = "Classification error"

    def run(self, context: MessageContext) -> StageOutcome:
        if not (context.body_text or "").strip():
            logger.warning("Message %s has no content for classification", context.message_id)
            return StageOutcome.skipped("Message has no content for classification")

        text = self.prepare_text(context)
        logger.debug("Classifying message %s with %s characters", context.message_id, len(text))
        verdict = self.services.classifier.classify(text, context.cancel)

        if verdict.is_error:
            logger.error(
                "Classification failed for message %s: %s",
                context.message_id,
                verdict.error_message,
            )
            return StageOutcome.failed(f"Classification error: {verdict.error_message}")

        threshold = self.settings.classifier_threshold()
        logger.info(
            "Message %s classified: phishing=%s, confidence=%.3f, threshold=%.3f, reason='%s'",
            context.message_id,
            verdict.is_phishing,
            verdict.confidence,
            threshold,
            verdict.reason,
        )
        context.attach_verdict(verdict)
        kind = "phishing" if verdict.is_phishing else "benign"
        return StageOutcome.handled(
            f"Classified as {kind} with {verdict.confidence:.3f} confidence: {verdict.reason}"
        )

    @staticmethod
    def prepare_text(context: MessageContext) -> str:
        lines = []
        if context.headers.subject:
            lines.append(f"Subject: {context.headers.subject}")
        if context.headers.sender:
            lines.append(f"From: {context.headers.sender}")
        lines.append("---")
        lines.append(context.body_text)
        return "\n".join(lines)


class PhishingLabelerStage(Stage):
    name = "PhishingLabeler"
    error_prefix = "Labeling error"

    def run(self, context: MessageContext) -> StageOutcome:
        try:
            verdict = context.verdict
            if verdict is None:
                logger.warning(
                    "No classification result for message %s, cannot apply phishing label",
                    context.message_id,
                )
                return StageOutcome.skipped("No classification result available")

            threshold = self.settings.labeler_threshold()
            confidence = clamp_confidence(verdict.confidence)

            if verdict.is_phishing and confidence >= threshold:
                logger.info(
                    "Message %s meets phishing criteria (%.3f >= %.3f), applying label",
                    context.message_id,
                    confidence,
                    threshold,
                )
                return StageOutcome.handled(
                    "Applied phishing label based on classification "
                    f"(confidence: {confidence:.3f})",
                    added=[self.settings.ai_phishing_label],
                )
            if verdict.is_phishing:
                logger.info(
                    "Message %s classified as phishing but %.3f below threshold %.3f",
                    context.message_id,
                    confidence,
                    threshold,
                )
                return StageOutcome.handled(
                    f"Phishing detected but confidence {confidence:.3f} "
                    f"below threshold {threshold:.3f}"
                )
            return StageOutcome.handled(
                f"Message classified as benign (confidence: {confidence:.3f})"
            )
        finally:
            context.clear_verdict()


class TestKeywordStage(Stage):
    """Demo stage: tags messages mentioning a handful of trigger words."""

    __test__ = False

    name = "TestKeyword"
    error_prefix = "TestKeyword processor error"

    def run(self, context: MessageContext) -> StageOutcome:
        combined = f"{context.headers.subject or ''} {context.body_text or ''}".upper()
        found = [keyword for keyword in TEST_KEYWORDS if keyword in combined]
        if not found:
            return StageOutcome.handled("No test keywords found")

        logger.info(
            "TestKeyword found keywords in message %s: %s", context.message_id, ", ".join(found)
        )
        return StageOutcome.handled(
            f"Found test keywords: {', '.join(found)}", added=[TEST_KEYWORD_LABEL]
        )


StageFactory = Callable[[Settings, StageServices], Stage]

STAGE_REGISTRY: dict[str, StageFactory] = {
    stage.name: stage
    for stage in (
        DeduplicateStage,
        NoiseFilterStage,
        PhishingClassifierStage,
        PhishingLabelerStage,
        TestKeywordStage,
    )
}


def build_stages(names: Iterable[str], settings: Settings, services: StageServices) -> list[Stage]:
    """Instantiate stages in configured order; unknown names are logged and dropped."""
    stages: list[Stage] = []
    for name in names:
        factory = STAGE_REGISTRY.get(name)
        if factory is None:
            logger.warning("Unknown processor name: %s, skipping", name)
            continue
        stages.append(factory(settings, services))
    return stages
