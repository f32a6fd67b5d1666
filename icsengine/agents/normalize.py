"""HTML normalisation and fingerprinting of extraction inputs."""

import hashlib
import json
import re
from urllib.parse import urlsplit, urlunsplit

from bs4 import BeautifulSoup, Comment

_STRIP_TAGS = ("style", "noscript", "svg", "iframe", "template", "link")
_KEEP_ATTRS = frozenset({"href", "datetime", "content", "itemprop", "alt"})
_WS_RE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")

_DEFAULT_PORTS = {"http": 80, "https": 443}


# ── HTML ─────────────────────────────────────────────────────────────


def normalize_html(html: str, max_chars: int) -> str:
    """Strip non-content markup and cap the length sent to the model.

    The page title and ``og:site_name`` are kept in a short header because
    the prompt uses them to name the presenting group.
    """
    soup = BeautifulSoup(html, "html.parser")

    header: list[str] = []
    site = soup.find("meta", attrs={"property": "og:site_name"})
    if site and site.get("content"):
        header.append(f"Site name: {site['content'].strip()}")
    if soup.title and soup.title.string:
        header.append(f"Page title: {soup.title.string.strip()}")

    # JSON-LD often carries the event itself and usually sits in <head>
    for tag in soup("script", attrs={"type": "application/ld+json"}):
        if tag.string and tag.string.strip():
            header.append(f"Structured data: {_WS_RE.sub(' ', tag.string.strip())}")

    for tag in soup(["script", *_STRIP_TAGS]):
        tag.decompose()
    for tag in soup.find_all(True):
        tag.attrs = {k: v for k, v in tag.attrs.items() if k in _KEEP_ATTRS}
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    body = soup.body or soup
    text = _WS_RE.sub(" ", str(body))
    text = _BLANK_LINES_RE.sub("\n", text).strip()

    content = "\n".join(header + [text]) if header else text
    if len(content) > max_chars:
        content = content[:max_chars] + "\n[truncated]"
    return content


# ── Fingerprint ──────────────────────────────────────────────────────


def normalize_url(url: str) -> str:
    """Lowercase scheme and host, drop default port and fragment."""
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    netloc = host
    if parts.port and parts.port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parts.port}"
    if parts.username:
        netloc = f"{parts.username}@{netloc}"
    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def fingerprint(
    url: str | None,
    text: str | None,
    instructions: str,
    model: str,
    multiday: bool = False,
) -> str:
    """Deterministic SHA-256 cache key over the extraction inputs."""
    data = {
        "url": normalize_url(url) if url else "",
        "text": (text or "").strip(),
        "instructions": instructions.strip(),
        "model": model,
        "multiday": multiday,
    }
    blob = json.dumps(data, sort_keys=True).encode()
    return hashlib.sha256(blob).hexdigest()
