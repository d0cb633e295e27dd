from __future__ import annotations

import re

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from app.models.visibility import AuditPage

USER_AGENT = "Mozilla/5.0 (compatible; VisibilityBot/1.0; +https://optiview.ai/bot)"
MAX_FAQ_ITEMS = 10


def _normalize_text(text: str | None) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def _first_heading(soup: BeautifulSoup, tag: str) -> str | None:
    node = soup.find(tag)
    text = _normalize_text(node.get_text(" ")) if node else ""
    return text or None


def extract_page_seeds(url: str, html: str) -> AuditPage:
    """Title, first H1/H2 and question-shaped headings from one HTML page."""
    soup = BeautifulSoup(html, "html.parser")
    title = _normalize_text(soup.title.string) if soup.title and soup.title.string else None

    faq: list[str] = []
    for node in soup.find_all(["h2", "h3", "h4", "dt", "summary"]):
        text = _normalize_text(node.get_text(" "))
        if text.endswith("?") and 8 <= len(text) <= 160 and text not in faq:
            faq.append(text)
        if len(faq) >= MAX_FAQ_ITEMS:
            break

    location = None
    address = soup.find("address")
    if address:
        location = _normalize_text(address.get_text(" "))[:80] or None

    return AuditPage(
        audit_id="",
        url=url,
        title=title or None,
        h1=_first_heading(soup, "h1"),
        h2=_first_heading(soup, "h2"),
        faq=faq,
        location=location,
    )


async def fetch_homepage(url: str, *, timeout_s: float = 10.0) -> str | None:
    """GET the page HTML; None on any transport or status failure."""
    try:
        async with httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT, "Accept": "text/html"},
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning(f"Homepage fetch failed for {url}: {exc!r}")
        return None
    content_type = response.headers.get("content-type", "")
    if "html" not in content_type.lower():
        return None
    return response.text
