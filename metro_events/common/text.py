"""Free-text cleanup for scraped titles and descriptions."""

from __future__ import annotations

import html
import re
from functools import lru_cache

from bs4 import BeautifulSoup

_TAG_HINT_RE = re.compile(r"<[a-zA-Z/!][^>]*>")
_WHITESPACE_RE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")

_MARKDOWN_RULES = (
    (re.compile(r"\\([*\[\]()#>`~|_])"), r"\1"),
    (re.compile(r"!\[([^\]]*)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\*{1,2}([^*\n]+)\*{1,2}"), r"\1"),
    (re.compile(r"(?<!\w)_{1,2}([^_\n]+)_{1,2}(?!\w)"), r"\1"),
    (re.compile(r"^#{1,6}\s*", re.MULTILINE), ""),
    (re.compile(r"`{1,3}([^`]+)`{1,3}"), r"\1"),
    (re.compile(r"^>\s*", re.MULTILINE), ""),
    (re.compile(r"~~([^~]+)~~"), r"\1"),
    (re.compile(r"^[-*_]{3,}\s*$", re.MULTILINE), ""),
)


def decode_html_entities(text: str | None) -> str:
    """Strip markup and decode entities. Paragraph breaks survive as newlines."""
    if not text:
        return ""
    if _TAG_HINT_RE.search(text):
        soup = BeautifulSoup(text, "html.parser")
        for br in soup.find_all("br"):
            br.replace_with("\n")
        text = soup.get_text("\n")
    # Double-encoded feeds ("&amp;amp;") need a second pass.
    decoded = html.unescape(html.unescape(text)).replace("\xa0", " ")
    return collapse_whitespace(decoded)


def clean_markdown(text: str | None) -> str:
    if not text:
        return ""
    result = text
    for pattern, replacement in _MARKDOWN_RULES:
        result = pattern.sub(replacement, result)
    return result


def collapse_whitespace(text: str) -> str:
    lines = [_WHITESPACE_RE.sub(" ", line).strip() for line in text.split("\n")]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def clean_title(text: str | None) -> str:
    return " ".join(clean_markdown(decode_html_entities(text)).split())


def clean_description(text: str | None) -> str:
    return collapse_whitespace(clean_markdown(decode_html_entities(text)))


@lru_cache(maxsize=32)
def _location_rules(city: str, state: str | None) -> tuple[tuple[re.Pattern, str], ...]:
    c = re.escape(city)
    s = rf"(?:,?\s*{re.escape(state)})?" if state else ""
    return (
        (re.compile(rf",\s*{c}{s}\b", re.IGNORECASE), ","),
        (re.compile(rf"\s+in\s+{c}{s}\b", re.IGNORECASE), ""),
        (re.compile(rf",?\s*{c}{s}\)", re.IGNORECASE), ")"),
        (re.compile(r",\s*,"), ","),
        (re.compile(r",\s*\)"), ")"),
        (re.compile(r",\s*\."), "."),
        (re.compile(r",\s*$", re.MULTILINE), ""),
    )


def strip_location_phrases(text: str | None, city: str | None, state: str | None = None) -> str:
    """Remove redundant ", <City>, <ST>" style phrases; the venue is shown separately."""
    if not text:
        return ""
    if not city:
        return text
    result = text
    for pattern, replacement in _location_rules(city, state):
        result = pattern.sub(replacement, result)
    return result


def normalise_title_key(title: str) -> str:
    """Casefold, drop punctuation, collapse whitespace."""
    folded = title.casefold()
    folded = re.sub(r"[^\w\s]|_", " ", folded)
    return " ".join(folded.split())
