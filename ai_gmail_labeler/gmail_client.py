"""Gmail REST helper focused on message retrieval and label changes."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import quote

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from requests import Response

from .config import Settings
from .models import MessageContext, MessageHeaders
from .resilience import CancellationToken, ResilientCaller, is_mailbox_retryable
from .text_extractor import extract_text
from .utils import parse_header_date

logger = logging.getLogger(__name__)


class GmailClient:
    """Thin wrapper that authenticates with Gmail and reads/labels messages."""

    GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
    GMAIL_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

    def __init__(
        self,
        settings: Settings,
        *,
        credentials: Credentials | None = None,
        session: requests.Session | None = None,
        caller: ResilientCaller | None = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.caller = caller or ResilientCaller(
            max_attempts=settings.gmail_max_attempts,
            base_delay=settings.backoff_min_seconds,
            max_delay=settings.backoff_max_seconds,
            is_retryable=is_mailbox_retryable,
        )
        self._credentials = credentials
        self._label_cache: dict[str, str] = {}

    def list_recent_message_ids(
        self, cancel: CancellationToken | None = None, max_results: int | None = None
    ) -> list[str]:
        """Return ids of messages matching the configured query, newest first."""
        params = {
            "q": self.settings.gmail_query,
            "maxResults": max_results or self.settings.max_results,
        }

        def _list() -> list[str]:
            payload = self._request("GET", f"{self.GMAIL_BASE}/messages", params=params).json()
            return [raw["id"] for raw in payload.get("messages") or [] if raw.get("id")]

        message_ids = self.caller.execute(_list, "list recent messages", cancel)
        logger.info(
            "Found %s recent messages matching query: %s", len(message_ids), self.settings.gmail_query
        )
        return message_ids

    def get_full_message(
        self, message_id: str, cancel: CancellationToken | None = None
    ) -> MessageContext:
        """Fetch a message and turn it into a pipeline context."""
        url = f"{self.GMAIL_BASE}/messages/{quote(message_id)}"
        raw = self.caller.execute(
            lambda: self._request("GET", url, params={"format": "full"}).json(),
            f"get full message: {message_id}",
            cancel,
        )
        context = self._to_context(raw, self.settings.body_max_chars, cancel or CancellationToken())
        logger.debug(
            "Retrieved full message %s, body length %s", message_id, len(context.body_text)
        )
        return context

    def get_label_names(
        self, message_id: str, cancel: CancellationToken | None = None
    ) -> set[str]:
        """Names of the labels currently on a message."""
        url = f"{self.GMAIL_BASE}/messages/{quote(message_id)}"
        raw = self.caller.execute(
            lambda: self._request("GET", url, params={"format": "minimal"}).json(),
            f"get labels of message: {message_id}",
            cancel,
        )
        label_ids = raw.get("labelIds") or []
        if not label_ids:
            return set()
        id_to_name = {label["id"]: label["name"] for label in self._list_labels(cancel)}
        return {id_to_name[label_id] for label_id in label_ids if label_id in id_to_name}

    def ensure_label_exists(self, name: str, cancel: CancellationToken | None = None) -> str:
        """Return the id for ``name``, creating the label if needed."""
        cached = self._label_cache.get(name)
        if cached:
            return cached

        label_id = self._lookup_label_id(name, cancel)
        if label_id:
            logger.debug("Found existing label: %s (ID: %s)", name, label_id)
            return label_id

        body = {"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"}
        created = self.caller.execute(
            lambda: self._request("POST", f"{self.GMAIL_BASE}/labels", json=body).json(),
            f"create label: {name}",
            cancel,
        )
        self._label_cache[name] = created["id"]
        logger.info("Created new Gmail label: %s (ID: %s)", name, created["id"])
        return created["id"]

    def apply_label_changes(
        self,
        message_id: str,
        to_add: Iterable[str],
        to_remove: Iterable[str],
        cancel: CancellationToken | None = None,
    ) -> None:
        """Add and remove labels (by name) on a message in one modify call."""
        add_names = sorted(set(to_add))
        remove_names = sorted(set(to_remove))
        if not add_names and not remove_names:
            return

        add_ids = [self.ensure_label_exists(name, cancel) for name in add_names]
        remove_ids = []
        for name in remove_names:
            label_id = self._lookup_label_id(name, cancel)
            if label_id:
                remove_ids.append(label_id)
            else:
                logger.debug("Label %s does not exist; nothing to remove", name)

        if not add_ids and not remove_ids:
            return

        url = f"{self.GMAIL_BASE}/messages/{quote(message_id)}/modify"
        body: dict[str, list[str]] = {}
        if add_ids:
            body["addLabelIds"] = add_ids
        if remove_ids:
            body["removeLabelIds"] = remove_ids
        self.caller.execute(
            lambda: self._request("POST", url, json=body),
            f"apply label changes to message: {message_id}",
            cancel,
        )
        logger.info(
            "Applied label changes to message %s: +%s -%s",
            message_id,
            ",".join(add_names),
            ",".join(remove_names),
        )

    def _lookup_label_id(self, name: str, cancel: CancellationToken | None) -> str | None:
        cached = self._label_cache.get(name)
        if cached:
            return cached
        for label in self._list_labels(cancel):
            if (label.get("name") or "").lower() == name.lower():
                self._label_cache[name] = label["id"]
                return label["id"]
        return None

    def _list_labels(self, cancel: CancellationToken | None) -> list[dict[str, Any]]:
        payload = self.caller.execute(
            lambda: self._request("GET", f"{self.GMAIL_BASE}/labels").json(),
            "list labels",
            cancel,
        )
        return payload.get("labels") or []

    def _request(
        self, method: str, url: str, params: dict | None = None, json: dict | None = None
    ) -> Response:
        headers = {"Authorization": f"Bearer {self._acquire_token()}"}
        resp = self.session.request(
            method,
            url,
            headers=headers,
            params=params,
            json=json,
            timeout=self.settings.http_timeout_seconds,
        )
        if resp.status_code >= 400:
            logger.error("Gmail request failed (%s): %s", resp.status_code, resp.text)
            resp.raise_for_status()
        return resp

    def _acquire_token(self) -> str:
        if self._credentials is None:
            self._credentials = self._load_credentials()
        if not self._credentials.valid:
            self._credentials.refresh(GoogleRequest())
            self._persist_credentials()
        return self._credentials.token

    def _load_credentials(self) -> Credentials:
        secrets_path: Path = self.settings.google_client_secrets_path
        if not secrets_path.exists():
            raise FileNotFoundError(f"Google client secrets file not found at: {secrets_path}")

        token_path = self.settings.gmail_token_path
        logger.info("Using token store directory: %s", token_path.parent.resolve())
        credentials = None
        if token_path.exists():
            credentials = Credentials.from_authorized_user_file(str(token_path), self.GMAIL_SCOPES)

        if credentials and credentials.valid:
            return credentials
        if credentials and credentials.expired and credentials.refresh_token:
            credentials.refresh(GoogleRequest())
        else:
            logger.info("Gmail authorization required; opening browser for OAuth consent")
            flow = InstalledAppFlow.from_client_secrets_file(str(secrets_path), self.GMAIL_SCOPES)
            credentials = flow.run_local_server(port=0)
        self._credentials = credentials
        self._persist_credentials()
        logger.info("Gmail authentication successful")
        return credentials

    def _persist_credentials(self) -> None:
        if self._credentials is None:
            return
        token_path: Path = self.settings.gmail_token_path
        token_path.parent.mkdir(parents=True, exist_ok=True)
        token_path.write_text(self._credentials.to_json())

    @staticmethod
    def _to_context(
        raw: dict[str, Any], max_chars: int, cancel: CancellationToken
    ) -> MessageContext:
        payload = raw.get("payload") or {}
        headers: dict[str, str] = {}
        for header in payload.get("headers") or []:
            headers.setdefault((header.get("name") or "").lower(), header.get("value"))
        return MessageContext(
            message_id=raw["id"],
            thread_id=raw.get("threadId", ""),
            headers=MessageHeaders(
                subject=headers.get("subject"),
                sender=headers.get("from"),
                recipient=headers.get("to"),
                date=parse_header_date(headers.get("date")),
            ),
            body_text=extract_text(payload, max_chars, raw["id"]),
            cancel=cancel,
        )
