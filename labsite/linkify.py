"""Turn bare URLs in free text into links."""

from __future__ import annotations

import html
import re

URL_RE = re.compile(r"(https?://[^\s<>\"{}|\\^`\[\]]+)|(www\.[^\s<>\"{}|\\^`\[\]]+)", re.IGNORECASE)
TRAILING_PUNCTUATION = ".,;:!?"


def _split_trailing(url: str):
    stripped = url.rstrip(TRAILING_PUNCTUATION)
    return stripped, url[len(stripped):]


def _anchor(url: str, label: str) -> str:
    href = f"https://{url}" if url.lower().startswith("www.") else url
    return (
        f'<a href="{html.escape(href, quote=True)}" target="_blank" '
        f'rel="noopener noreferrer" class="text-link">{label}</a>'
    )


def linkify_text(text: str) -> str:
    """Wrap URLs in ``text`` with anchors. ``text`` must already be safe HTML."""
    if not text:
        return ""

    def replace(match: re.Match) -> str:
        url, tail = _split_trailing(match.group(0))
        if not url:
            return match.group(0)
        return _anchor(html.unescape(url), url) + tail

    return URL_RE.sub(replace, text)


def linked_html(text: object) -> str:
    """Escape plain text for HTML, link its URLs, and keep its line breaks."""
    if text is None or text == "":
        return ""
    raw = str(text)
    out = []
    pos = 0
    for match in URL_RE.finditer(raw):
        url, tail = _split_trailing(match.group(0))
        out.append(html.escape(raw[pos:match.start()], quote=True))
        if url:
            out.append(_anchor(url, html.escape(url, quote=True)))
        out.append(html.escape(tail, quote=True))
        pos = match.end()
    out.append(html.escape(raw[pos:], quote=True))
    return "".join(out).replace("\r\n", "\n").replace("\n", "<br>")
