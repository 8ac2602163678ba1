from __future__ import annotations

import httpx
import pytest

from supportai.core.errors import ExtractionError
from supportai.ingestion.extraction import extract_file, extract_url, html_to_text


HTML = """
<html>
  <head><title>Shipping FAQ</title><style>.x{color:red}</style></head>
  <body>
    <nav>Home | Pricing</nav>
    <header>Logo</header>
    <main>
      <h1>Shipping</h1>
      <p>Orders   ship within
      two days.</p>
      <script>track()</script>
    </main>
    <footer>Copyright</footer>
  </body>
</html>
"""


def test_html_to_text_keeps_main_content() -> None:
    extracted = html_to_text(HTML)
    assert extracted.title == "Shipping FAQ"
    assert extracted.text == "Shipping Orders ship within two days."


def test_plain_text_files_decode_with_fallbacks() -> None:
    assert extract_file("café".encode("utf-8"), "notes.txt").text == "café"
    assert extract_file(b"\xef\xbb\xbfhello", "bom.md").text == "hello"
    assert extract_file("caf\xe9".encode("latin-1"), "legacy.txt").text == "caf\xe9"
    assert extract_file(b"\x93Quoted\x94 price \x805", "windows.txt").text == "\u201cQuoted\u201d price \u20ac5"
    # 0x81 is unmapped in Windows-1252.
    assert extract_file(b"caf\xe9\x81", "odd.txt").text == "caf\xe9\x81"


def test_unsupported_and_empty_files_fail() -> None:
    with pytest.raises(ExtractionError):
        extract_file(b"\x00\x01", "archive.zip")
    with pytest.raises(ExtractionError):
        extract_file(b"   \n ", "empty.txt")


@pytest.mark.asyncio
async def test_extract_url_uses_html_title() -> None:
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, html=HTML, headers={"content-type": "text/html; charset=utf-8"})
    )
    async with httpx.AsyncClient(transport=transport) as client:
        extracted = await extract_url("https://docs.example.com/shipping", client=client)
    assert extracted.title == "Shipping FAQ"
    assert "two days" in extracted.text


@pytest.mark.asyncio
async def test_extract_url_http_errors() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(404))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(ExtractionError, match="HTTP 404"):
            await extract_url("https://docs.example.com/missing", client=client)
