"""Citation extraction from assistant answers.

Provider output arrives either as structured JSON (a citations/sources array)
or as free text. Text is parsed in decreasing order of confidence:

1. bulleted ``- Title — https://url`` lines (em dash, en dash or spaced hyphen)
2. markdown links ``[Title](https://url)``
3. bare URLs that are not part of a markdown link

Every candidate goes through :func:`normalize_url`; duplicates collapse onto the
first occurrence, whose title is kept.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote, urlsplit, urlunsplit

from app.models.visibility import Citation, SourceRef
from app.services.domain import hostname_of, is_audited_url

_BULLET_RE = re.compile(
    r"^[ \t]*(?:[-*•]|\d{1,3}[.)])[ \t]+(?P<title>.+?)[ \t]*(?:—|–|[ \t]-)[ \t]*(?P<url>https?://\S+)[ \t\r]*$",
    re.MULTILINE,
)
_MARKDOWN_LINK_RE = re.compile(
    r"\[(?P<title>[^\]\n]*)\]\((?P<url>https?://[^\s()]+(?:\([^\s()]*\)[^\s()]*)*)\)"
)
_BARE_URL_RE = re.compile(r"https?://[^\s<>\"'`\[\]{}|\\^]+")
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\}|\[.*?\])\s*```", re.DOTALL)

_TRAILING_PUNCT = ".,;:!?'\"*>"
_BRACKETS = {")": "(", "]": "["}

_SOURCE_KEYS = ("citations", "sources", "references", "links", "search_results")
_URL_KEYS = ("url", "link", "href", "uri")
_TITLE_KEYS = ("title", "name", "label")
_SNIPPET_KEYS = ("snippet", "description", "text", "content")


@dataclass(slots=True)
class StructuredPayload:
    answer: str
    sources: list[SourceRef] = field(default_factory=list)


@dataclass(slots=True)
class TextPayload:
    text: str


Payload = StructuredPayload | TextPayload


def _trim_url(url: str) -> str:
    url = url.strip()
    while url:
        last = url[-1]
        if last in _TRAILING_PUNCT:
            url = url[:-1]
            continue
        opener = _BRACKETS.get(last)
        if opener and url.count(last) > url.count(opener):
            url = url[:-1]
            continue
        break
    return url


def normalize_url(url: str | None) -> str | None:
    """Canonical http(s) URL without fragment, or None when unusable."""
    if not isinstance(url, str):
        return None
    candidate = _trim_url(url)
    if not candidate:
        return None
    try:
        parts = urlsplit(candidate)
        host = parts.hostname
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not host or "." not in host:
        return None
    netloc = host.lower()
    if port:
        netloc = f"{netloc}:{port}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def synthesize_title(url: str) -> str:
    parts = urlsplit(url)
    segments = [unquote(s) for s in parts.path.split("/") if s]
    for segment in reversed(segments):
        stem = segment.rsplit(".", 1)[0] if "." in segment else segment
        stem = re.sub(r"[-_]+", " ", stem).strip()
        if len(stem) > 2:
            return stem
    return hostname_of(url) or url


def _clean_title(title: str | None) -> str | None:
    if not isinstance(title, str):
        return None
    cleaned = " ".join(title.split()).strip(" *_\"'`:")
    return cleaned or None


def _first_str(item: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def sources_from_structured(items: Any) -> list[SourceRef]:
    """Map a provider's citations array (URL strings or objects) to source refs."""
    if not isinstance(items, list):
        return []
    refs: list[SourceRef] = []
    for item in items:
        if isinstance(item, str):
            refs.append(SourceRef(url=item))
        elif isinstance(item, dict):
            url = _first_str(item, _URL_KEYS)
            if url:
                refs.append(
                    SourceRef(
                        url=url,
                        title=_clean_title(_first_str(item, _TITLE_KEYS)),
                        snippet=_first_str(item, _SNIPPET_KEYS),
                    )
                )
    return refs


def _structured_from_object(obj: dict[str, Any]) -> StructuredPayload | None:
    sources: list[SourceRef] = []
    found = False
    for key in _SOURCE_KEYS:
        if isinstance(obj.get(key), list):
            found = True
            sources.extend(sources_from_structured(obj[key]))
    answer = obj.get("answer")
    if not found and not isinstance(answer, str):
        return None
    return StructuredPayload(answer=answer if isinstance(answer, str) else "", sources=sources)


def decode_payload(raw: Any) -> Payload:
    """Decode a provider response into the structured or the free-text variant."""
    if isinstance(raw, dict):
        return _structured_from_object(raw) or TextPayload(text=json.dumps(raw))
    if not isinstance(raw, str):
        return TextPayload(text="" if raw is None else str(raw))

    text = raw.strip()
    candidates = [text] + [m.group(1) for m in _FENCED_JSON_RE.finditer(text)]
    for candidate in candidates:
        if not candidate.startswith(("{", "[")):
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            structured = _structured_from_object(parsed)
            if structured is not None:
                return structured
        if isinstance(parsed, list):
            refs = sources_from_structured(parsed)
            if refs:
                return StructuredPayload(answer="", sources=refs)
    return TextPayload(text=raw)


def parse_sources_block(text: str) -> list[SourceRef]:
    """Parse bullets, then markdown links, then bare URLs out of free text."""
    if not text:
        return []
    refs: list[SourceRef] = []

    for match in _BULLET_RE.finditer(text):
        refs.append(SourceRef(url=match.group("url"), title=_clean_title(match.group("title"))))

    for match in _MARKDOWN_LINK_RE.finditer(text):
        refs.append(SourceRef(url=match.group("url"), title=_clean_title(match.group("title"))))

    stripped = _MARKDOWN_LINK_RE.sub(" ", text)
    for match in _BARE_URL_RE.finditer(stripped):
        refs.append(SourceRef(url=match.group(0)))

    return merge_sources(refs)


def merge_sources(*groups: list[SourceRef]) -> list[SourceRef]:
    """Concatenate source lists, dedupe by normalized URL, fill titles."""
    merged: list[SourceRef] = []
    index: dict[str, SourceRef] = {}
    for group in groups:
        for ref in group:
            url = normalize_url(ref.url)
            if url is None:
                continue
            existing = index.get(url)
            if existing is not None:
                if not existing.title and ref.title:
                    existing.title = ref.title
                if not existing.snippet and ref.snippet:
                    existing.snippet = ref.snippet
                continue
            entry = SourceRef(url=url, title=_clean_title(ref.title), snippet=ref.snippet)
            index[url] = entry
            merged.append(entry)
    for entry in merged:
        if not entry.title:
            entry.title = synthesize_title(entry.url)
    return merged


def extract_sources(answer: str, structured: list[SourceRef] | None = None) -> list[SourceRef]:
    """Structured citations first, then whatever the answer text yields."""
    payload = decode_payload(answer)
    if isinstance(payload, StructuredPayload):
        text_refs = parse_sources_block(payload.answer)
        return merge_sources(structured or [], payload.sources, text_refs)
    return merge_sources(structured or [], parse_sources_block(payload.text))


def build_citations(
    sources: list[SourceRef],
    audited_host: str,
    aliases: list[str] | None = None,
) -> list[Citation]:
    citations: list[Citation] = []
    for ref in merge_sources(sources):
        citations.append(
            Citation(
                rank=len(citations) + 1,
                ref_url=ref.url,
                ref_domain=hostname_of(ref.url) or "",
                title=ref.title,
                snippet=ref.snippet,
                is_audited_domain=is_audited_url(ref.url, audited_host, aliases),
            )
        )
    return citations
