from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Any, Optional
from urllib.parse import unquote_plus

import httpx
from bs4 import BeautifulSoup

from pageforge.config import settings
from pageforge.errors import CollaboratorError

logger = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0 (compatible; pageforge/1.0)"
_HEX_RE = re.compile(r"#(?:[0-9a-fA-F]{3}){1,2}\b")
_RGB_RE = re.compile(r"rgba?\(\s*\d+\s*,\s*\d+\s*,\s*\d+\s*(?:,\s*[\d.]+\s*)?\)", re.IGNORECASE)
_FONT_RE = re.compile(r"font-family\s*:\s*([^;}\"]+)", re.IGNORECASE)
_GOOGLE_FONT_RE = re.compile(r"fonts\.googleapis\.com/css2?\?family=([^\"&']+)", re.IGNORECASE)
_GENERIC_FONTS = {"inherit", "initial", "unset", "serif", "sans-serif", "monospace", "system-ui", "cursive"}
_MAX_TEXT_CHARS = 15000


def normalize_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        raise ValueError("URL is required")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


def extract_colors(html: str, limit: int = 20) -> list[str]:
    counts: Counter[str] = Counter()
    for match in _HEX_RE.findall(html):
        counts[match.lower()] += 1
    for match in _RGB_RE.findall(html):
        counts[re.sub(r"\s+", "", match.lower())] += 1
    return [color for color, _ in counts.most_common(limit)]


def extract_fonts(html: str, limit: int = 10) -> list[str]:
    fonts: list[str] = []
    for declaration in _FONT_RE.findall(html):
        primary = declaration.split(",")[0].strip().strip("\"'")
        if primary and primary.lower() not in _GENERIC_FONTS and primary not in fonts:
            fonts.append(primary)
    for family in _GOOGLE_FONT_RE.findall(html):
        name = unquote_plus(family.split(":")[0])
        if name and name not in fonts:
            fonts.append(name)
    return fonts[:limit]


def parse_website(html: str, url: str) -> dict[str, Any]:
    soup = BeautifulSoup(html, "html.parser")

    def meta_content(**attrs: str) -> str:
        tag = soup.find("meta", attrs=attrs)
        content = tag.get("content") if tag else None
        return content.strip() if isinstance(content, str) else ""

    title = soup.title.get_text(strip=True) if soup.title else ""
    headings = [h.get_text(" ", strip=True) for h in soup.find_all(["h1", "h2"])][:20]
    testimonials = [
        q.get_text(" ", strip=True)
        for q in soup.find_all("blockquote")
        if 30 < len(q.get_text(strip=True)) < 500
    ][:10]

    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()
    text = re.sub(r"\s+", " ", soup.get_text(" ", strip=True))[:_MAX_TEXT_CHARS]

    return {
        "url": url,
        "meta": {
            "title": title,
            "description": meta_content(name="description"),
            "og_title": meta_content(property="og:title"),
            "og_description": meta_content(property="og:description"),
            "og_image": meta_content(property="og:image"),
        },
        "headings": headings,
        "testimonials": testimonials,
        "colors": extract_colors(html),
        "fonts": extract_fonts(html),
        "text": text,
    }


def scrape_website(
    url: str,
    *,
    timeout_seconds: Optional[float] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> dict[str, Any]:
    url = normalize_url(url)
    timeout = float(timeout_seconds or settings.RESEARCH_TIMEOUT_SECONDS)
    try:
        with httpx.Client(timeout=timeout, follow_redirects=True, transport=transport) as client:
            resp = client.get(url, headers={"User-Agent": _USER_AGENT, "Accept": "text/html,application/xhtml+xml"})
    except httpx.TimeoutException as exc:
        raise CollaboratorError(f"Timed out fetching {url}", service="scraper", retryable=True) from exc
    except httpx.HTTPError as exc:
        raise CollaboratorError(f"Could not fetch {url}: {exc}", service="scraper") from exc
    if resp.status_code >= 400:
        raise CollaboratorError(f"Could not fetch {url}", service="scraper", status_code=resp.status_code)
    logger.info("scraper.fetched", extra={"url": url, "bytes": len(resp.content)})
    return parse_website(resp.text, str(resp.url))
