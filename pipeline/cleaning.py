"""Markup and boilerplate removal for feed text."""

from __future__ import annotations

import html
import re

from bs4 import BeautifulSoup

MAX_CONTENT_LENGTH = 10_000
MAX_TITLE_LENGTH = 500

_WS_RE = re.compile(r"\s+")
_URL_RE = re.compile(r"https?://\S+")
_SUBMITTED_RE = re.compile(
    r"submitted\s+by\s+/?u/\S+(?:\s+to\s+/?r/\S+)?", re.IGNORECASE
)
_BRACKET_ARTIFACT_RE = re.compile(r"\[(?:link|comments)\]", re.IGNORECASE)
_MARKDOWN_RES = (
    re.compile(r"\*\*(.*?)\*\*"),
    re.compile(r"\*(.*?)\*"),
    re.compile(r"~~(.*?)~~"),
    re.compile(r"\^\((.*?)\)"),
)


def clean_text(text: str | None) -> str:
    """Decode entities, drop URLs and markdown emphasis, collapse whitespace."""
    if not text:
        return ""
    text = html.unescape(text)
    text = _URL_RE.sub("", text)
    for pattern in _MARKDOWN_RES:
        text = pattern.sub(r"\1", text)
    return _WS_RE.sub(" ", text).strip()


def clean_html(markup: str | None) -> str:
    """Reduce an HTML description payload to plain text."""
    if not markup:
        return ""
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    text = _SUBMITTED_RE.sub(" ", text)
    text = _BRACKET_ARTIFACT_RE.sub(" ", text)
    return clean_text(text)[:MAX_CONTENT_LENGTH]


def clean_title(title: str | None) -> str:
    return clean_text(title)[:MAX_TITLE_LENGTH]


def clean_author(author: str | None) -> str:
    name = clean_text(author)
    for prefix in ("/u/", "u/"):
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    return name or "unknown"
