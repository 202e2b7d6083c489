"""Poll loop: fetch a batch of messages and push each through the pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from .config import Settings
from .gmail_client import GmailClient
from .pipeline import LabelWriter, PipelineCoordinator
from .resilience import CancellationToken, OperationCancelledError

logger = logging.getLogger(__name__)


@dataclass
class CycleStats:
    processed: int = 0
    errors: int = 0


class DryRunLabelWriter:
    """Logs the label writes the pipeline would have made."""

    def apply_label_changes(
        self,
        message_id: str,
        to_add: Iterable[str],
        to_remove: Iterable[str],
        cancel: CancellationToken | None = None,
    ) -> None:
        logger.info(
            "[DRY-RUN] Would change labels on message %s: +%s -%s",
            message_id,
            sorted(to_add),
            sorted(to_remove),
        )


class MailboxWorker:
    """Single sequential worker over the Gmail inbox."""

    def __init__(
        self,
        settings: Settings,
        gmail: GmailClient,
        coordinator: PipelineCoordinator,
        writer: LabelWriter | None = None,
        max_messages: int | None = None,
    ) -> None:
        self.settings = settings
        self.gmail = gmail
        self.coordinator = coordinator
        self.writer = writer or gmail
        self.max_messages = max_messages

    def start(self, cancel: CancellationToken) -> None:
        """Authenticate and make sure our labels exist; errors here are fatal."""
        logger.info(
            "AI Gmail Labeler starting: poll interval=%ss, max results=%s, model=%s",
            self.settings.poll_interval_seconds,
            self.settings.max_results,
            self.settings.ollama_model,
        )
        if self.writer is not self.gmail:
            logger.info("[DRY-RUN] Skipping label setup")
            return
        self.gmail.ensure_label_exists(self.settings.ai_phishing_label, cancel)
        self.gmail.ensure_label_exists(self.settings.ai_processed_label, cancel)
        logger.info("Gmail authentication and label setup completed")

    def run(self, cancel: CancellationToken) -> None:
        logger.info("Starting email processing loop")
        while not cancel.cancelled:
            try:
                self.run_cycle(cancel)
                logger.debug("Waiting %s seconds until next poll", self.settings.poll_interval_seconds)
                cancel.wait(self.settings.poll_interval_seconds)
            except OperationCancelledError:
                logger.info("Email processing cancelled")
                break
            except Exception:
                logger.exception("Error in email processing loop")
                backoff = min(self.settings.backoff_min_seconds * 2, self.settings.backoff_max_seconds)
                logger.info("Waiting %s seconds before retrying due to error", backoff)
                try:
                    cancel.wait(backoff)
                except OperationCancelledError:
                    break
        logger.info("Email processing loop stopped")

    def run_cycle(self, cancel: CancellationToken) -> CycleStats:
        stats = CycleStats()
        message_ids = self.gmail.list_recent_message_ids(cancel, self.max_messages)
        if not message_ids:
            logger.debug("No new messages found")
            return stats

        logger.info("Processing %s messages", len(message_ids))
        for message_id in message_ids:
            try:
                self.process_one(message_id, cancel)
                stats.processed += 1
                cancel.wait(self.settings.message_delay_seconds)
            except OperationCancelledError:
                raise
            except Exception:
                stats.errors += 1
                logger.exception("Failed to process message %s", message_id)

        logger.info(
            "Completed processing batch: %s processed, %s errors", stats.processed, stats.errors
        )
        return stats

    def process_one(self, message_id: str, cancel: CancellationToken) -> None:
        logger.debug("Processing message %s", message_id)
        context = self.gmail.get_full_message(message_id, cancel)

        if self.settings.verbose_mode:
            logger.info(
                "Processing message %s: subject='%s', from='%s', body length=%s",
                context.message_id,
                context.headers.subject,
                context.headers.sender,
                len(context.body_text),
            )
        else:
            logger.info(
                "Processing message %s: subject length=%s, body length=%s",
                context.message_id,
                len(context.headers.subject or ""),
                len(context.body_text),
            )

        result = self.coordinator.process_message(context, self.writer)
        if result.success:
            logger.info(
                "Processed message %s: processors=[%s], added=[%s], removed=[%s]",
                message_id,
                ", ".join(result.stages_executed),
                ", ".join(sorted(result.added_labels)),
                ", ".join(sorted(result.removed_labels)),
            )
        else:
            logger.warning("Failed to process message %s: %s", message_id, result.error_message)

        for note in result.notes:
            logger.debug("Processing note for message %s: %s", message_id, note)
