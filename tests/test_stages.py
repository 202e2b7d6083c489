from __future__ import annotations

from unittest.mock import Mock

import pytest

from ai_gmail_labeler.models import ClassificationVerdict, StageStatus
from ai_gmail_labeler.resilience import CancellationToken, OperationCancelledError
from ai_gmail_labeler.stages import (
    STAGE_REGISTRY,
    DeduplicateStage,
    NoiseFilterStage,
    PhishingClassifierStage,
    PhishingLabelerStage,
    TestKeywordStage,
    StageServices,
    build_stages,
)
from tests.helpers import (
    PHISHING,
    PROCESSED,
    FakeClassifier,
    FakeMailbox,
    make_context,
    make_settings,
)


def labeler(**settings) -> PhishingLabelerStage:
    return PhishingLabelerStage(make_settings(**settings), StageServices())


def with_verdict(is_phishing: bool, confidence: float):
    context = make_context()
    context.attach_verdict(
        ClassificationVerdict(is_phishing=is_phishing, confidence=confidence, reason="r")
    )
    return context


@pytest.mark.parametrize(
    ("stage_cls", "flag"),
    [
        (DeduplicateStage, "deduplicate_enabled"),
        (NoiseFilterStage, "noise_filter_enabled"),
        (PhishingClassifierStage, "phishing_classifier_enabled"),
        (PhishingLabelerStage, "phishing_labeler_enabled"),
        (TestKeywordStage, "test_keyword_enabled"),
    ],
)
def test_disabled_stage_skips_without_side_effects(stage_cls, flag) -> None:
    mailbox = FakeMailbox()
    classifier = FakeClassifier()
    stage = stage_cls(make_settings(**{flag: False}), StageServices(mailbox, classifier))
    context = with_verdict(True, 0.99)

    outcome = stage.process(context)

    assert outcome.status is StageStatus.SKIPPED
    assert mailbox.label_reads == 0
    assert classifier.calls == []
    assert context.verdict is not None


def test_deduplicate_matches_processed_label_case_insensitively() -> None:
    stage = DeduplicateStage(make_settings(), StageServices(mailbox=FakeMailbox({PROCESSED.upper()})))

    assert stage.process(make_context()).status is StageStatus.STOP_CHAIN


def test_deduplicate_handles_fresh_message() -> None:
    stage = DeduplicateStage(make_settings(), StageServices(mailbox=FakeMailbox({"INBOX"})))

    outcome = stage.process(make_context())

    assert outcome.status is StageStatus.HANDLED
    assert outcome.notes == "Message is not a duplicate"


def test_deduplicate_mailbox_error_is_failed_outcome() -> None:
    mailbox = Mock()
    mailbox.get_label_names.side_effect = RuntimeError("503")
    stage = DeduplicateStage(make_settings(), StageServices(mailbox=mailbox))

    outcome = stage.process(make_context())

    assert outcome.status is StageStatus.FAILED
    assert outcome.notes == "Error checking duplicates: 503"


@pytest.mark.parametrize("body", ["", "   ", "too short", "!!!! ???? #### $$$$ %%%% a"])
def test_noise_filter_stops_on_unusable_body(body) -> None:
    stage = NoiseFilterStage(make_settings(), StageServices())

    assert stage.process(make_context(body=body)).status is StageStatus.STOP_CHAIN


@pytest.mark.parametrize(
    ("sender", "subject"),
    [
        ("No-Reply <noreply@shop.test>", "Hello"),
        ("Mail Delivery Subsystem <postmaster@mx.test>", "Hello"),
        ("Friend <friend@example.test>", "Out of Office: back Monday"),
    ],
)
def test_noise_filter_stops_on_automated_mail(sender, subject) -> None:
    stage = NoiseFilterStage(make_settings(), StageServices())

    outcome = stage.process(make_context(sender=sender, subject=subject))

    assert outcome.status is StageStatus.STOP_CHAIN
    assert outcome.notes.startswith("Message appears to be automated")


def test_noise_filter_lets_bulk_mail_through_with_caution() -> None:
    stage = NoiseFilterStage(make_settings(), StageServices())
    body = "Our monthly newsletter has arrived with plenty of stories for you to read."

    outcome = stage.process(make_context(sender="Shop <news@shop.test>", body=body))

    assert outcome.status is StageStatus.HANDLED
    assert "proceeding with caution" in outcome.notes


def test_classifier_builds_prompt_and_attaches_verdict() -> None:
    classifier = FakeClassifier()
    stage = PhishingClassifierStage(make_settings(), StageServices(classifier=classifier))
    context = make_context(body="Please confirm your bank login today.")

    outcome = stage.process(context)

    assert outcome.status is StageStatus.HANDLED
    assert outcome.added_labels == frozenset() and outcome.removed_labels == frozenset()
    assert outcome.notes == "Classified as phishing with 0.900 confidence: asks for password"
    assert classifier.calls == [
        "Subject: Account notice\n"
        "From: Security Team <security@bank-example.test>\n"
        "---\n"
        "Please confirm your bank login today."
    ]
    assert context.verdict is classifier.verdict


def test_classifier_omits_missing_headers() -> None:
    classifier = FakeClassifier()
    stage = PhishingClassifierStage(make_settings(), StageServices(classifier=classifier))

    stage.process(make_context(subject=None, sender=None, body="body text here"))

    assert classifier.calls == ["---\nbody text here"]


def test_classifier_skips_blank_body() -> None:
    classifier = FakeClassifier()
    stage = PhishingClassifierStage(make_settings(), StageServices(classifier=classifier))

    outcome = stage.process(make_context(body="  \n "))

    assert outcome.status is StageStatus.SKIPPED
    assert classifier.calls == []


def test_classifier_transport_error_is_failed() -> None:
    classifier = FakeClassifier(error=ConnectionError("refused"))
    stage = PhishingClassifierStage(make_settings(), StageServices(classifier=classifier))
    context = make_context()

    outcome = stage.process(context)

    assert outcome.status is StageStatus.FAILED
    assert outcome.notes == "Classification error: refused"
    assert context.verdict is None


def test_classifier_lets_cancellation_through() -> None:
    classifier = FakeClassifier(error=OperationCancelledError("stop"))
    stage = PhishingClassifierStage(make_settings(), StageServices(classifier=classifier))

    with pytest.raises(OperationCancelledError):
        stage.process(make_context())


def test_labeler_applies_label_above_threshold() -> None:
    context = with_verdict(True, 0.8)

    outcome = labeler().process(context)

    assert outcome.status is StageStatus.HANDLED
    assert outcome.added_labels == frozenset({PHISHING})
    assert context.verdict is None


def test_labeler_below_threshold_notes_but_does_not_label() -> None:
    context = with_verdict(True, 0.5)

    outcome = labeler().process(context)

    assert outcome.added_labels == frozenset()
    assert outcome.notes == "Phishing detected but confidence 0.500 below threshold 0.600"
    assert context.verdict is None


def test_labeler_benign() -> None:
    context = with_verdict(False, 0.99)

    outcome = labeler().process(context)

    assert outcome.status is StageStatus.HANDLED
    assert outcome.added_labels == frozenset()
    assert outcome.notes == "Message classified as benign (confidence: 0.990)"


def test_labeler_clamps_confidence_above_one() -> None:
    over = labeler(classify_confidence_threshold=1.0).process(with_verdict(True, 1.7))
    exact = labeler(classify_confidence_threshold=1.0).process(with_verdict(True, 1.0))

    assert over == exact
    assert over.added_labels == frozenset({PHISHING})


def test_labeler_override_beats_global_threshold() -> None:
    stage = labeler(classify_confidence_threshold=0.6, phishing_labeler_confidence=0.9)

    assert stage.process(with_verdict(True, 0.75)).added_labels == frozenset()


def test_labeler_falls_back_to_classifier_override() -> None:
    stage = labeler(classify_confidence_threshold=0.9, phishing_classifier_confidence=0.7)

    assert stage.process(with_verdict(True, 0.75)).added_labels == frozenset({PHISHING})


def test_labeler_without_verdict_skips() -> None:
    assert labeler().process(make_context()).status is StageStatus.SKIPPED


def test_labeler_clears_verdict_on_error() -> None:
    context = make_context()
    context.attach_verdict(ClassificationVerdict(is_phishing=True, confidence="high"))  # type: ignore[arg-type]

    outcome = labeler().process(context)

    assert outcome.status is StageStatus.FAILED
    assert outcome.notes.startswith("Labeling error:")
    assert context.verdict is None


def test_keyword_stage_matches_case_insensitively() -> None:
    stage = TestKeywordStage(make_settings(), StageServices())

    outcome = stage.process(make_context(subject="You are a winner", body="test mail"))

    assert outcome.status is StageStatus.HANDLED
    assert outcome.added_labels == frozenset({"[TEST]: Keyword Match"})
    assert outcome.notes == "Found test keywords: TEST, WINNER"


def test_keyword_stage_without_match() -> None:
    stage = TestKeywordStage(make_settings(), StageServices())

    outcome = stage.process(make_context(subject="Lunch", body="See you at noon"))

    assert outcome.status is StageStatus.HANDLED
    assert outcome.added_labels == frozenset()
    assert outcome.notes == "No test keywords found"


def test_registry_covers_all_stages() -> None:
    assert sorted(STAGE_REGISTRY) == [
        "Deduplicate",
        "NoiseFilter",
        "PhishingClassifier",
        "PhishingLabeler",
        "TestKeyword",
    ]


def test_build_stages_preserves_order() -> None:
    stages = build_stages(
        ["PhishingLabeler", "Nope", "Deduplicate"], make_settings(), StageServices()
    )

    assert [stage.name for stage in stages] == ["PhishingLabeler", "Deduplicate"]


def test_deduplicate_passes_context_cancel_token() -> None:
    seen = []
    mailbox = FakeMailbox()
    mailbox.get_label_names = lambda message_id, cancel=None: seen.append(cancel) or set()
    token = CancellationToken()

    DeduplicateStage(make_settings(), StageServices(mailbox=mailbox)).process(
        make_context(cancel=token)
    )

    assert seen == [token]
