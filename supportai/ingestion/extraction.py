from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
import re

from bs4 import BeautifulSoup
import httpx

from supportai.core.config import get_settings
from supportai.core.errors import ExtractionError


logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_TEXT_EXTENSIONS = {".txt", ".md", ".markdown", ".csv", ".tsv", ".json", ".log"}
_HTML_EXTENSIONS = {".html", ".htm"}
_STRIP_TAGS = ["script", "style", "nav", "header", "footer", "aside", "iframe", "noscript"]
_STRIP_ROLES = ["navigation", "banner", "contentinfo"]


@dataclass(frozen=True)
class ExtractedText:
    text: str
    title: str | None = None


def _extension(filename: str | None) -> str:
    if filename and "." in filename:
        return "." + filename.rsplit(".", 1)[-1].lower()
    return ""


def _decode_bytes(data: bytes) -> str:
    # UTF-8 (with or without BOM), then Windows-1252, then latin-1 which never fails.
    if data.startswith(b"\xef\xbb\xbf"):
        return data.decode("utf-8-sig")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    try:
        return data.decode("cp1252")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _require_text(text: str, origin: str) -> str:
    if not text or not text.strip():
        raise ExtractionError(f"No text content could be extracted from {origin}")
    return text


def _extract_pdf(data: bytes) -> str:
    # PyMuPDF is heavy; load it only when a PDF shows up.
    import fitz

    try:
        with fitz.open(stream=data, filetype="pdf") as document:
            pages = [page.get_text() for page in document]
    except Exception as exc:  # noqa: BLE001 - PyMuPDF raises several unrelated types for bad input
        raise ExtractionError("Failed to read PDF document") from exc
    return "\n\n".join(page.strip() for page in pages if page.strip())


def _extract_docx(data: bytes) -> str:
    from docx import Document

    try:
        document = Document(BytesIO(data))
    except Exception as exc:  # noqa: BLE001 - python-docx surfaces zip and xml errors directly
        raise ExtractionError("Failed to read DOCX document") from exc
    parts = [paragraph.text for paragraph in document.paragraphs if paragraph.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n\n".join(parts)


def html_to_text(html: str) -> ExtractedText:
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else None
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    for role in _STRIP_ROLES:
        for tag in soup.find_all(attrs={"role": role}):
            tag.decompose()
    # Prefer the main content region over the whole body.
    root = soup.find("main") or soup.find("article") or soup.find(attrs={"role": "main"}) or soup.body or soup
    text = _WHITESPACE_RE.sub(" ", root.get_text(" ")).strip()
    return ExtractedText(text=text, title=title or None)


def extract_file(data: bytes, filename: str | None, content_type: str | None = None) -> ExtractedText:
    """Turn an uploaded file into plain text; raises ExtractionError when nothing usable remains."""
    extension = _extension(filename)
    ctype = (content_type or "").lower()
    if extension == ".pdf" or ctype == "application/pdf":
        text = _extract_pdf(data)
    elif extension == ".docx" or ctype.startswith(
        "application/vnd.openxmlformats-officedocument.wordprocessingml"
    ):
        text = _extract_docx(data)
    elif extension in _HTML_EXTENSIONS or ctype.startswith("text/html"):
        extracted = html_to_text(_decode_bytes(data))
        return ExtractedText(text=_require_text(extracted.text, filename or "file"), title=extracted.title)
    elif extension in _TEXT_EXTENSIONS or ctype.startswith("text/") or ctype == "application/json":
        text = _decode_bytes(data)
    else:
        raise ExtractionError(f"Unsupported file type: {extension or ctype or 'unknown'}")
    return ExtractedText(text=_require_text(text, filename or "file"), title=filename)


async def extract_url(url: str, *, client: httpx.AsyncClient | None = None) -> ExtractedText:
    """Fetch a URL with a hard timeout and extract readable text."""
    settings = get_settings()
    owns_client = client is None
    http = client or httpx.AsyncClient(
        timeout=settings.url_fetch_timeout_s,
        follow_redirects=True,
        headers={"User-Agent": settings.url_fetch_user_agent},
    )
    try:
        response = await http.get(url)
        response.raise_for_status()
    except httpx.TimeoutException as exc:
        raise ExtractionError(f"Timed out fetching {url}") from exc
    except httpx.HTTPStatusError as exc:
        raise ExtractionError(f"Fetching {url} returned HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise ExtractionError(f"Failed to fetch {url}") from exc
    finally:
        if owns_client:
            await http.aclose()

    ctype = response.headers.get("content-type", "").lower()
    if "application/pdf" in ctype:
        return ExtractedText(text=_require_text(_extract_pdf(response.content), url), title=url)
    if "html" in ctype or not ctype:
        extracted = html_to_text(response.text)
        return ExtractedText(text=_require_text(extracted.text, url), title=extracted.title or url)
    return ExtractedText(text=_require_text(response.text, url), title=url)
