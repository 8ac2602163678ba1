from __future__ import annotations

import re

from bs4 import BeautifulSoup


_WHITESPACE_RE = re.compile(r"\s+")
# Their content is code or embedded documents, never customer text.
_DROP_TAGS = ["script", "style", "iframe", "object", "embed", "noscript", "template"]


def sanitize_text(value: str | None) -> str:
    """Strip all markup from inbound text and collapse whitespace runs to one space."""
    if not value:
        return ""
    soup = BeautifulSoup(value, "html.parser")
    for tag in soup(_DROP_TAGS):
        tag.decompose()
    return _WHITESPACE_RE.sub(" ", soup.get_text()).strip()
