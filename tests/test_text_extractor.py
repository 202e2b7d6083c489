from __future__ import annotations

import base64

import pytest

from ai_gmail_labeler.text_extractor import extract_text, has_usable_text, strip_html


def b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def test_strip_html_removes_tags_and_entities() -> None:
    markup = "<html><body><p>Hello&nbsp;<b>there</b> &amp; welcome</p>\n<br/>bye</body></html>"

    assert strip_html(markup) == "Hello there & welcome bye"


def test_extract_text_from_single_html_part() -> None:
    payload = {"mimeType": "text/html", "body": {"data": b64("<p>Reset your <a>password</a></p>")}}

    assert extract_text(payload, max_chars=1000) == "Reset your password"


def test_extract_text_walks_nested_multipart() -> None:
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": b64("plain body")}},
                    {"mimeType": "text/html", "body": {"data": b64("<p>html body</p>")}},
                ],
            },
            {"mimeType": "application/pdf", "body": {"data": b64("%PDF")}},
        ],
    }

    assert extract_text(payload, max_chars=1000) == "plain body\nhtml body"


def test_extract_text_caps_length() -> None:
    payload = {"mimeType": "text/plain", "body": {"data": b64("x" * 50)}}

    assert extract_text(payload, max_chars=10) == "x" * 10


def test_extract_text_without_payload() -> None:
    assert extract_text(None, max_chars=10) == ""


def test_undecodable_part_is_skipped() -> None:
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {"mimeType": "text/plain", "body": {"data": "!!!"}},
            {"mimeType": "text/plain", "body": {"data": b64("still here")}},
        ],
    }

    assert extract_text(payload, max_chars=100) == "still here"


@pytest.mark.parametrize(
    ("text", "usable"),
    [
        (None, False),
        ("", False),
        ("   \n\t ", False),
        ("short", False),
        ("*** *** *** *** ok", False),
        ("Hello, this is a real sentence.", True),
    ],
)
def test_has_usable_text(text, usable) -> None:
    assert has_usable_text(text) is usable
