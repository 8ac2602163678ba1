from __future__ import annotations

import pytest

from supportai.services.sanitize import sanitize_text


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("<script>alert(1)</script><b>refund</b>?", "refund?"),
        ("<p>Where is\n\n my   order?</p>", "Where is my order?"),
        ('<img src=x onerror="alert(1)">hello', "hello"),
        ("<style>p{color:red}</style>Fish &amp; chips", "Fish & chips"),
        ("Is 3 < 5 items enough?", "Is 3 < 5 items enough?"),
        ("  plain text  ", "plain text"),
        ("", ""),
    ],
)
def test_sanitize_text_strips_markup(raw: str, expected: str) -> None:
    assert sanitize_text(raw) == expected


def test_sanitize_text_handles_none() -> None:
    assert sanitize_text(None) == ""
