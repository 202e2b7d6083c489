"""Ollama-backed phishing classifier."""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict

import requests

from .config import Settings
from .models import ClassificationVerdict
from .resilience import CancellationToken, ResilientCaller, is_classifier_retryable
from .utils import clamp_confidence

logger = logging.getLogger(__name__)

PHISHING_LABEL = "phishing_possible"
JSON_OBJECT_PATTERN = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", re.DOTALL)

PROMPT_TEMPLATE = """You are an email security analyzer. Analyze the following email content and determine if it appears to be a phishing attempt.

Consider these phishing indicators:
- Urgent language or threats
- Requests for personal information, passwords, or financial details
- Suspicious sender or mismatched domains
- Generic greetings instead of personal names
- Poor grammar or spelling
- Suspicious links or attachments mentioned
- Impersonation of legitimate companies or services
- Creating false sense of urgency or fear

Email content to analyze:
{message_text}

Respond with valid JSON in this exact format:
{{
  "label": "phishing_possible" or "benign",
  "confidence": 0.85,
  "reason": "Brief explanation of the classification decision"
}}

The confidence should be a number between 0.0 and 1.0. Only classify as "phishing_possible" if you have reasonable confidence it's suspicious.
"""


class OllamaClient:
    """Ask a local Ollama model whether a message looks like phishing."""

    def __init__(
        self,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        caller: ResilientCaller | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.base_url = settings.ollama_base_url.rstrip("/")
        self.caller = caller or ResilientCaller(
            max_attempts=settings.ollama_max_attempts,
            base_delay=settings.backoff_min_seconds,
            max_delay=settings.backoff_max_seconds,
            is_retryable=is_classifier_retryable,
        )

    def classify(
        self, message_text: str, cancel: CancellationToken | None = None
    ) -> ClassificationVerdict:
        """Classify prepared message text; malformed model output yields an error verdict."""
        prompt = PROMPT_TEMPLATE.format(message_text=message_text)
        response_text = self.caller.execute(
            lambda: self._generate(prompt), "classify message", cancel
        )
        return self.parse_verdict(response_text)

    def _generate(self, prompt: str) -> str:
        url = f"{self.base_url}/api/generate"
        data: Dict[str, Any] = {
            "model": self.settings.ollama_model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {"temperature": 0.0},
        }
        logger.debug(
            "Sending classification request to Ollama: model=%s, prompt_length=%s",
            self.settings.ollama_model,
            len(prompt),
        )
        response = self.session.post(url, json=data, timeout=self.settings.http_timeout_seconds)

        if response.status_code >= 400:
            logger.error("Ollama request failed (%s): %s", response.status_code, response.text)
            response.raise_for_status()

        payload = response.json()
        text = payload.get("response") if isinstance(payload, dict) else None
        if not text:
            raise ValueError("Ollama returned empty response")
        logger.debug("Received classification response from Ollama: length=%s", len(text))
        return text

    @staticmethod
    def parse_verdict(response_text: str) -> ClassificationVerdict:
        match = JSON_OBJECT_PATTERN.search(response_text or "")
        if not match:
            logger.warning("Could not find JSON in Ollama response: %s", response_text)
            return ClassificationVerdict.error("No JSON found in response", response_text)

        try:
            parsed = json.loads(match.group(0))
        except ValueError as exc:
            logger.error("Failed to parse JSON classification response: %s", response_text)
            return ClassificationVerdict.error(f"JSON parsing error: {exc}", response_text)

        label = parsed.get("label") if isinstance(parsed, dict) else None
        if not label:
            return ClassificationVerdict.error("Classification label is missing", response_text)

        try:
            confidence = float(parsed.get("confidence", 0.0))
        except (TypeError, ValueError):
            return ClassificationVerdict.error(
                f"Invalid confidence value: {parsed.get('confidence')!r}", response_text
            )
        if math.isnan(confidence):
            return ClassificationVerdict.error("Invalid confidence value: nan", response_text)

        reason = parsed.get("reason") or "No reason provided"
        logger.debug(
            "Parsed classification: label=%s, confidence=%s, reason=%s", label, confidence, reason
        )
        return ClassificationVerdict(
            is_phishing=str(label).lower() == PHISHING_LABEL,
            confidence=clamp_confidence(confidence),
            reason=str(reason),
            raw_response=response_text,
        )
