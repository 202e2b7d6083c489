"""Configuration management for the Gmail phishing labeler."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import split_csv

# Load .env early so BaseSettings can pick values up seamlessly.
load_dotenv()

DEFAULT_PROCESSOR_ORDER = "Deduplicate,TestKeyword,NoiseFilter,PhishingClassifier,PhishingLabeler"


@dataclass(frozen=True)
class StageSettings:
    """Per-stage switches resolved from the flat environment."""

    enabled: bool = True
    confidence: float | None = None


class Settings(BaseSettings):
    """App configuration derived from environment variables."""

    google_client_secrets_path: Path = Field(
        Path("./secrets/client_secret_desktop.json"), alias="GOOGLE_CLIENT_SECRETS_PATH"
    )
    gmail_token_store_dir: Path = Field(Path("./.tokens/gmail"), alias="GMAIL_TOKEN_STORE_DIR")
    gmail_query: str = Field('newer_than:2d -label:"[AI]: Processed"', alias="GMAIL_QUERY")
    max_results: int = Field(25, ge=1, le=1000, alias="MAX_RESULTS")

    ollama_base_url: str = Field("http://localhost:11434", alias="OLLAMA_BASE_URL")
    ollama_model: str = Field("llama3.1:8b", alias="OLLAMA_MODEL")

    poll_interval_seconds: int = Field(20, ge=1, alias="POLL_INTERVAL_SECONDS")
    message_delay_seconds: float = Field(0.1, ge=0, alias="MESSAGE_DELAY_SECONDS")
    ai_phishing_label: str = Field("[AI]: Phishing Possible", min_length=1, alias="AI_PHISHING_LABEL")
    ai_processed_label: str = Field("[AI]: Processed", min_length=1, alias="AI_PROCESSED_LABEL")
    classify_confidence_threshold: float = Field(
        0.6, ge=0.0, le=1.0, alias="CLASSIFY_CONFIDENCE_THRESHOLD"
    )

    http_timeout_seconds: int = Field(30, ge=1, alias="HTTP_TIMEOUT_SECONDS")
    backoff_min_seconds: int = Field(5, ge=1, alias="BACKOFF_MIN_SECONDS")
    backoff_max_seconds: int = Field(60, ge=1, alias="BACKOFF_MAX_SECONDS")
    gmail_max_attempts: int = Field(5, ge=1, alias="GMAIL_MAX_ATTEMPTS")
    ollama_max_attempts: int = Field(3, ge=1, alias="OLLAMA_MAX_ATTEMPTS")

    body_max_kb: int = Field(128, ge=1, alias="BODY_MAX_KB")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    verbose_mode: bool = Field(False, alias="VERBOSE_MODE")

    processor_order_raw: str = Field(DEFAULT_PROCESSOR_ORDER, alias="PROCESSOR_ORDER")
    deduplicate_enabled: bool = Field(True, alias="PROCESSOR_DEDUPLICATE_ENABLED")
    noise_filter_enabled: bool = Field(True, alias="PROCESSOR_NOISEFILTER_ENABLED")
    phishing_classifier_enabled: bool = Field(True, alias="PROCESSOR_PHISHINGCLASSIFIER_ENABLED")
    phishing_classifier_confidence: float | None = Field(
        None, ge=0.0, le=1.0, alias="PROCESSOR_PHISHINGCLASSIFIER_CONFIDENCE"
    )
    phishing_labeler_enabled: bool = Field(True, alias="PROCESSOR_PHISHINGLABELER_ENABLED")
    phishing_labeler_confidence: float | None = Field(
        None, ge=0.0, le=1.0, alias="PROCESSOR_PHISHINGLABELER_CONFIDENCE"
    )
    test_keyword_enabled: bool = Field(True, alias="PROCESSOR_TESTKEYWORD_ENABLED")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="after")
    def _validate_backoff(self):
        if self.backoff_max_seconds < self.backoff_min_seconds:
            raise ValueError("BACKOFF_MAX_SECONDS must be >= BACKOFF_MIN_SECONDS.")
        return self

    @field_validator(
        "phishing_classifier_confidence",
        "phishing_labeler_confidence",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("ollama_base_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value):
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @property
    def processor_order(self) -> list[str]:
        return split_csv(self.processor_order_raw)

    @property
    def gmail_token_path(self) -> Path:
        return self.gmail_token_store_dir / "token.json"

    @property
    def body_max_chars(self) -> int:
        return self.body_max_kb * 1024

    def stage_settings(self, stage_name: str) -> StageSettings:
        """Look up the enabled flag and confidence override for a stage."""
        key = stage_name.lower()
        if key == "deduplicate":
            return StageSettings(self.deduplicate_enabled)
        if key == "noisefilter":
            return StageSettings(self.noise_filter_enabled)
        if key == "phishingclassifier":
            return StageSettings(self.phishing_classifier_enabled, self.phishing_classifier_confidence)
        if key == "phishinglabeler":
            return StageSettings(self.phishing_labeler_enabled, self.phishing_labeler_confidence)
        if key == "testkeyword":
            return StageSettings(self.test_keyword_enabled)
        return StageSettings()

    def classifier_threshold(self) -> float:
        if self.phishing_classifier_confidence is not None:
            return self.phishing_classifier_confidence
        return self.classify_confidence_threshold

    def labeler_threshold(self) -> float:
        if self.phishing_labeler_confidence is not None:
            return self.phishing_labeler_confidence
        return self.classifier_threshold()
