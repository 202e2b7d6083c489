"""Drives the configured stages over one message and applies the net label delta."""

from __future__ import annotations

import logging
import time
from typing import Iterable, Protocol

from .config import Settings
from .models import MessageContext, PipelineResult, StageOutcome, StageStatus
from .resilience import CancellationToken, OperationCancelledError
from .stages import Stage, StageServices, build_stages

logger = logging.getLogger(__name__)


class LabelWriter(Protocol):
    def apply_label_changes(
        self,
        message_id: str,
        to_add: Iterable[str],
        to_remove: Iterable[str],
        cancel: CancellationToken | None = None,
    ) -> None: ...


def merge_labels(added: set[str], removed: set[str], outcome: StageOutcome) -> None:
    """Fold one outcome into the running sets; the latest mention of a label wins."""
    for label in outcome.added_labels:
        added.add(label)
        removed.discard(label)
    for label in outcome.removed_labels:
        removed.add(label)
        added.discard(label)


class PipelineCoordinator:
    """Run stages in order for a message and report a single result."""

    def __init__(
        self,
        settings: Settings,
        services: StageServices | None = None,
        stages: list[Stage] | None = None,
    ) -> None:
        self.settings = settings
        if stages is None:
            stages = build_stages(settings.processor_order, settings, services or StageServices())
        self.stages = stages

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def process_message(self, context: MessageContext, mailbox: LabelWriter) -> PipelineResult:
        """Never raises for processing failures; cancellation still propagates."""
        added: set[str] = set()
        removed: set[str] = set()
        notes: list[str] = []
        executed: list[str] = []

        logger.info(
            "Starting pipeline for message %s with %s processors: %s",
            context.message_id,
            len(self.stages),
            ", ".join(self.stage_names),
        )

        try:
            for stage in self.stages:
                context.cancel.raise_if_cancelled()
                outcome = self._run_stage(stage, context, executed)
                merge_labels(added, removed, outcome)
                if outcome.notes:
                    notes.append(f"{stage.name}: {outcome.notes}")

                if outcome.status is StageStatus.FAILED:
                    logger.warning("Processor %s failed: %s", stage.name, outcome.notes)
                elif outcome.status is StageStatus.STOP_CHAIN:
                    logger.info(
                        "Processor %s stopped the chain: %s", stage.name, outcome.notes
                    )
                    break
                else:
                    logger.debug("Processor %s returned %s", stage.name, outcome.status.value)

            if added or removed:
                mailbox.apply_label_changes(context.message_id, added, removed, context.cancel)
                logger.info(
                    "Applied label changes to message %s: +[%s] -[%s]",
                    context.message_id,
                    ", ".join(sorted(added)),
                    ", ".join(sorted(removed)),
                )
            else:
                logger.debug("No label changes to apply for message %s", context.message_id)

            try:
                mailbox.apply_label_changes(
                    context.message_id, {self.settings.ai_processed_label}, set(), context.cancel
                )
            except OperationCancelledError:
                raise
            except Exception:
                logger.error(
                    "Failed to apply processed label to message %s; it will be reprocessed",
                    context.message_id,
                )
                raise
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.exception("Pipeline processing failed for message %s", context.message_id)
            return PipelineResult(
                success=False,
                stages_executed=executed,
                added_labels=added,
                removed_labels=removed,
                notes=notes,
                error_message=str(exc),
            )

        logger.info(
            "Pipeline completed for message %s: %s labels added, %s labels removed",
            context.message_id,
            len(added),
            len(removed),
        )
        return PipelineResult(
            success=True,
            stages_executed=executed,
            added_labels=added,
            removed_labels=removed,
            notes=notes,
        )

    @staticmethod
    def _run_stage(stage: Stage, context: MessageContext, executed: list[str]) -> StageOutcome:
        started = time.perf_counter()
        try:
            outcome = stage.process(context)
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.exception("Processor %s raised", stage.name)
            return StageOutcome.failed(f"Exception in {stage.name}: {exc}")
        executed.append(stage.name)
        logger.debug(
            "Processor %s completed in %.0fms with status %s",
            stage.name,
            (time.perf_counter() - started) * 1000,
            outcome.status.value,
        )
        return outcome
