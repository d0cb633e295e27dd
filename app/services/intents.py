"""Weighted intent generation for a domain.

Seeds come from persisted audit pages (titles, headings, FAQ questions,
locations), an optional vertical seed file and an optional free-text site
description. Every category renders its templates from the template catalog.
"""

from __future__ import annotations

import json
import re
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from hashlib import sha1
from pathlib import Path
from typing import Any

from loguru import logger

from app.config import EngineConfig
from app.models.visibility import AuditPage, DomainInfo, Intent, IntentType
from app.services import page_seeds
from app.services.store import RunStore
from app.services.template_store import intent_templates, render_text

CATEGORY_WEIGHTS: dict[str, float] = {
    IntentType.BRAND: 1.3,
    IntentType.PRODUCT: 1.2,
    IntentType.HOW_TO: 1.0,
    IntentType.COMPARATIVE: 1.4,
    IntentType.LOCAL: 1.1,
    IntentType.EVIDENCE: 1.0,
    IntentType.DISCOVERY: 1.5,
}
DESCRIPTION_PRIMARY_WEIGHT = 1.4
DESCRIPTION_SECONDARY_WEIGHT = 1.3

MAX_PRODUCTS = 5
MAX_QUESTIONS = 5
MAX_LOCATIONS = 3

STOP_WORDS = frozenset(
    """
    a about above after again all also an and any are as at be because been before being
    best between both but by can could did do does doing down during each few for from
    further get gets had has have having help helps here how into its just like make
    makes more most need needs not now off once only other our ours out over own same
    should some such than that the their them then there these they this those through
    too under until very was way ways we were what when where which while who why will
    with within without would you your yours home page welcome official site website
    company online free new using use used services service solutions
    """.split()
)

# Keyword -> discovery category, checked in order.
DESCRIPTION_CATEGORIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("cancer", "screening"), "cancer screening tools"),
    (("seo", "search engine"), "SEO tools"),
    (("ecommerce", "e-commerce", "shop", "store"), "e-commerce platforms"),
    (("analytics", "data", "dashboard"), "analytics tools"),
    (("crm", "sales"), "CRM software"),
    (("hosting", "server", "cloud"), "cloud hosting providers"),
)
DEFAULT_CATEGORY = "tools"

PageFetcher = Callable[[str], Awaitable[str | None]]


@dataclass(slots=True)
class SiteSeeds:
    brand: str
    products: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    locations: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)


def normalize_query(query: str) -> str:
    return " ".join(query.split()).lower()


def intent_id(project_id: str, domain: str, query: str) -> str:
    material = f"{project_id}|{domain.lower()}|{normalize_query(query)}"
    return f"intent_{sha1(material.encode('utf-8')).hexdigest()[:16]}"


def extract_brand(domain_info: DomainInfo, pages: list[AuditPage]) -> str:
    """Most frequent title word seen more than once, else the domain label."""
    words: list[str] = []
    for page in pages:
        words.extend(re.findall(r"[a-z0-9][a-z0-9&'-]*", (page.title or "").lower()))
    counts = Counter(w for w in words if len(w) > 2 and w not in STOP_WORDS)
    common = [(w, n) for w, n in counts.most_common() if n > 1]
    if common:
        return common[0][0].capitalize()
    label = domain_info.etld1.split(".")[0]
    return label.capitalize()


def extract_products(pages: list[AuditPage]) -> list[str]:
    products: list[str] = []
    for page in pages:
        for heading in (page.h1, page.h2):
            text = " ".join((heading or "").split())
            if not text or len(text) >= 50 or text.endswith("?"):
                continue
            if text.lower().startswith("how to "):
                continue
            if text.lower() not in (p.lower() for p in products):
                products.append(text)
    return products[:10]


def extract_questions(pages: list[AuditPage]) -> list[str]:
    questions: list[str] = []
    for page in pages:
        candidates = list(page.faq) + [h for h in (page.h1, page.h2) if h and h.strip().endswith("?")]
        for question in candidates:
            text = " ".join(question.split())
            if text and text not in questions:
                questions.append(text)
    return questions


def extract_topics(pages: list[AuditPage]) -> list[str]:
    """Headings phrased as ``How to ...`` reduced to their task."""
    topics: list[str] = []
    for page in pages:
        for heading in (page.h1, page.h2):
            match = re.match(r"^\s*how to\s+(.+?)[\s?.!]*$", heading or "", re.IGNORECASE)
            if match:
                topic = " ".join(match.group(1).split())
                if topic and topic not in topics:
                    topics.append(topic)
    return topics


def description_keywords(description: str | None, limit: int = 4) -> list[str]:
    """Stop-word filtered keywords ranked by frequency, ties by first appearance."""
    if not description:
        return []
    tokens = re.findall(r"[a-z][a-z0-9-]{2,}", description.lower())
    tokens = [t for t in tokens if t not in STOP_WORDS]
    counts = Counter(tokens)
    first_seen = {t: i for i, t in reversed(list(enumerate(tokens)))}
    ranked = sorted(counts, key=lambda t: (-counts[t], first_seen[t]))
    return ranked[:limit]


def description_category(description: str | None) -> str | None:
    text = (description or "").lower()
    for keywords, category in DESCRIPTION_CATEGORIES:
        if any(k in text for k in keywords):
            return category
    return None


def build_site_seeds(
    domain_info: DomainInfo,
    pages: list[AuditPage],
    vertical_seeds: dict[str, Any] | None = None,
    site_description: str | None = None,
) -> SiteSeeds:
    vertical_seeds = vertical_seeds or {}
    locations = [p.location for p in pages if p.location]
    locations += [str(x) for x in vertical_seeds.get("locations", []) if isinstance(x, str)]
    categories: list[str] = []
    derived = description_category(site_description)
    if derived:
        categories.append(derived)
    categories += [str(x) for x in vertical_seeds.get("categories", []) if isinstance(x, str)]
    topics = extract_topics(pages)
    topics += [str(x) for x in vertical_seeds.get("topics", []) if isinstance(x, str)]
    return SiteSeeds(
        brand=extract_brand(domain_info, pages),
        products=extract_products(pages),
        questions=extract_questions(pages),
        topics=list(dict.fromkeys(topics)),
        locations=list(dict.fromkeys(locations)),
        categories=list(dict.fromkeys(categories)) or [DEFAULT_CATEGORY],
    )


def _render_category(
    category: str,
    intent_type: str,
    weight: float,
    values_list: list[dict[str, str]],
) -> list[tuple[str, float, str, str]]:
    rendered: list[tuple[str, float, str, str]] = []
    for template in intent_templates(category):
        placeholders = set(re.findall(r"\$(\w+)", template["query"]))
        for values in values_list:
            if not placeholders.issubset(values):
                continue
            query = render_text(template["query"], key=f"intents.{category}", **values)
            reason = render_text(template.get("reason", ""), key=f"intents.{category}", **values)
            rendered.append((intent_type, weight, query, reason))
    return rendered


def render_intents(
    project_id: str,
    domain_info: DomainInfo,
    seeds: SiteSeeds,
    site_description: str | None = None,
) -> list[Intent]:
    base = {"brand": seeds.brand, "domain": domain_info.etld1}
    rows: list[tuple[str, float, str, str]] = []

    rows += _render_category("brand", IntentType.BRAND, CATEGORY_WEIGHTS[IntentType.BRAND], [base])
    rows += _render_category(
        "product",
        IntentType.PRODUCT,
        CATEGORY_WEIGHTS[IntentType.PRODUCT],
        [{**base, "product": p} for p in seeds.products[:MAX_PRODUCTS]],
    )
    rows += _render_category(
        "how-to",
        IntentType.HOW_TO,
        CATEGORY_WEIGHTS[IntentType.HOW_TO],
        [{**base, "question": q} for q in seeds.questions[:MAX_QUESTIONS]]
        + [{**base, "topic": t} for t in seeds.topics[:MAX_QUESTIONS]],
    )
    rows += _render_category(
        "comparative",
        IntentType.COMPARATIVE,
        CATEGORY_WEIGHTS[IntentType.COMPARATIVE],
        [{**base, "category": seeds.categories[0]}],
    )
    if seeds.locations:
        rows += _render_category(
            "local",
            IntentType.LOCAL,
            CATEGORY_WEIGHTS[IntentType.LOCAL],
            [{**base, "location": loc, "category": seeds.categories[0]} for loc in seeds.locations[:MAX_LOCATIONS]],
        )
    rows += _render_category("evidence", IntentType.EVIDENCE, CATEGORY_WEIGHTS[IntentType.EVIDENCE], [base])
    rows += _render_category(
        "discovery",
        IntentType.DISCOVERY,
        CATEGORY_WEIGHTS[IntentType.DISCOVERY],
        [{**base, "category": c} for c in seeds.categories[:2]],
    )

    keywords = description_keywords(site_description)
    rows += _render_category(
        "description_primary",
        IntentType.DESCRIPTION,
        DESCRIPTION_PRIMARY_WEIGHT,
        [{**base, "keyword": k} for k in keywords[:2]],
    )
    rows += _render_category(
        "description_secondary",
        IntentType.DESCRIPTION,
        DESCRIPTION_SECONDARY_WEIGHT,
        [{**base, "keyword": k} for k in keywords[2:4]],
    )

    brand_lower = seeds.brand.lower()
    domain_lower = domain_info.etld1.lower()
    intents: list[Intent] = []
    for intent_type, weight, query, reason in rows:
        lowered = query.lower()
        branded = brand_lower in lowered or domain_lower in lowered
        intents.append(
            Intent(
                id=intent_id(project_id, domain_info.etld1, query),
                project_id=project_id,
                domain=domain_info.etld1,
                intent_type=str(intent_type),
                query=query,
                weight=weight,
                kind="branded" if branded else "non_branded",
                prompt_reason=reason,
            )
        )
    return intents


def dedupe_intents(intents: list[Intent]) -> list[Intent]:
    seen: set[str] = set()
    unique: list[Intent] = []
    for intent in intents:
        key = normalize_query(intent.query)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(intent)
    return unique


def load_vertical_seeds(path: str) -> dict[str, Any]:
    if not path:
        return {}
    seeds_path = Path(path)
    if not seeds_path.exists():
        logger.warning(f"Vertical seeds file not found: {path}")
        return {}
    try:
        payload = json.loads(seeds_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning(f"Vertical seeds unreadable ({path}): {exc}")
        return {}
    return payload if isinstance(payload, dict) else {}


class IntentGenerator:
    def __init__(
        self,
        store: RunStore,
        config: EngineConfig,
        *,
        page_fetcher: PageFetcher | None = None,
    ):
        self.store = store
        self.config = config
        self.page_fetcher = page_fetcher or page_seeds.fetch_homepage

    async def generate(
        self,
        project_id: str,
        domain_info: DomainInfo,
        *,
        max_intents: int | None = None,
        site_description: str | None = None,
    ) -> list[Intent]:
        limit = max_intents if max_intents and max_intents > 0 else self.config.max_intents
        pages = await self._site_pages(project_id, domain_info)
        seeds = build_site_seeds(
            domain_info,
            pages,
            load_vertical_seeds(self.config.vertical_seeds_path),
            site_description,
        )
        intents = dedupe_intents(render_intents(project_id, domain_info, seeds, site_description))[:limit]
        await self.store.upsert_intents(intents)
        logger.info(f"Generated {len(intents)} intents for {domain_info.etld1} (project {project_id})")
        return intents

    async def get_or_generate(
        self,
        project_id: str,
        domain_info: DomainInfo,
        *,
        max_intents: int | None = None,
        site_description: str | None = None,
        regenerate: bool = False,
    ) -> list[Intent]:
        limit = max_intents if max_intents and max_intents > 0 else self.config.max_intents
        if not regenerate:
            existing = await self.store.list_intents(project_id, domain_info.etld1)
            if existing:
                return existing[:limit]
        return await self.generate(
            project_id,
            domain_info,
            max_intents=limit,
            site_description=site_description,
        )

    async def _site_pages(self, project_id: str, domain_info: DomainInfo) -> list[AuditPage]:
        pages = await self.store.get_audit_pages(project_id, domain_info.etld1)
        if pages or not self.config.fetch_homepage_seeds:
            return pages
        html = await self.page_fetcher(domain_info.audited_url)
        if not html:
            return []
        return [page_seeds.extract_page_seeds(domain_info.audited_url, html)]
