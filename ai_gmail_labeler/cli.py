"""Command line entry point for the Gmail phishing labeler."""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from pydantic import ValidationError

from .config import Settings
from .gmail_client import GmailClient
from .noise_filter import NoiseHeuristics
from .ollama_client import OllamaClient
from .pipeline import PipelineCoordinator
from .resilience import CancellationToken, OperationCancelledError
from .stages import StageServices
from .worker import DryRunLabelWriter, MailboxWorker

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Label likely phishing mail in Gmail using a local Ollama model."
    )
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    parser.add_argument("--max-messages", type=int, help="Limit how many messages each cycle inspects")
    parser.add_argument("--dry-run", action="store_true", help="Log label changes without writing them")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def install_signal_handlers(cancel: CancellationToken) -> None:
    def _handle(signum, _frame):
        logger.info("Received signal %s, shutting down", signum)
        cancel.cancel()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def build_worker(settings: Settings, args: argparse.Namespace) -> MailboxWorker:
    gmail = GmailClient(settings)
    services = StageServices(
        mailbox=gmail,
        classifier=OllamaClient(settings),
        noise=NoiseHeuristics(),
    )
    coordinator = PipelineCoordinator(settings, services)
    writer = DryRunLabelWriter() if args.dry_run else gmail
    return MailboxWorker(settings, gmail, coordinator, writer=writer, max_messages=args.max_messages)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Configuration Error: {exc}", file=sys.stderr)
        return 1
    configure_logging(settings.log_level)

    cancel = CancellationToken()
    install_signal_handlers(cancel)

    try:
        worker = build_worker(settings, args)
        worker.start(cancel)
        if args.once:
            stats = worker.run_cycle(cancel)
            logging.info("Run complete: processed=%s errors=%s", stats.processed, stats.errors)
        else:
            worker.run(cancel)
    except OperationCancelledError:
        logging.info("Cancelled before completion")
    except Exception as exc:
        logging.exception("Fatal Error: %s", exc)
        return 1
    return 0
