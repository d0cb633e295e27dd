from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.models.visibility import Citation, Result

AUDITED_BASE = 70
TOP3_BONUS = 20
TOP10_BONUS = 10
MULTI_URL_BONUS = 5
COMPETITOR_PENALTY = 5
COMPETITOR_PENALTY_CAP = 10
RECENCY_WINDOW_HOURS = 24


@dataclass(slots=True)
class RunScore:
    score: float = 0.0
    coverage: float = 0.0
    recency: float = 0.0
    citations_count: int = 0
    unique_domains_count: int = 0
    source_coverage: dict[str, float] = field(default_factory=dict)


def _normalize_domain(value: str) -> str:
    value = (value or "").strip().lower().rstrip(".")
    return value[4:] if value.startswith("www.") else value


def matches_competitor(ref_domain: str, competitors: Iterable[str]) -> bool:
    domain = _normalize_domain(ref_domain)
    if not domain:
        return False
    for competitor in competitors:
        comp = _normalize_domain(competitor)
        if comp and (domain == comp or domain.endswith(f".{comp}")):
            return True
    return False


def calculate_intent_score(
    citations: list[Citation],
    audited_domain: str,
    competitors: list[str] | None = None,
) -> int:
    """Score one (intent, source) execution from its citation set, 0-100."""
    if not citations:
        return 0

    score = 0
    audited = [c for c in citations if c.is_audited_domain]
    if audited:
        score += AUDITED_BASE
        ranks = [c.rank for c in audited if c.rank and c.rank > 0]
        if any(r <= 3 for r in ranks):
            score += TOP3_BONUS
        elif any(r <= 10 for r in ranks):
            score += TOP10_BONUS
        if len({c.ref_url for c in audited}) > 1:
            score += MULTI_URL_BONUS

    audited_root = _normalize_domain(audited_domain)
    rivals = [c for c in (competitors or []) if _normalize_domain(c) != audited_root]
    hits = sum(
        1 for c in citations
        if not c.is_audited_domain and matches_competitor(c.ref_domain, rivals)
    )
    score -= min(COMPETITOR_PENALTY_CAP, hits * COMPETITOR_PENALTY)

    return max(0, min(100, score))


def aggregate_run_score(entries: Iterable[tuple[float, float]]) -> float:
    """Weighted mean over ``(score, weight)`` pairs; 0 when no weight is positive."""
    weighted_sum = 0.0
    total_weight = 0.0
    for score, weight in entries:
        if weight is None or weight <= 0:
            continue
        weighted_sum += score * weight
        total_weight += weight
    if total_weight <= 0:
        return 0.0
    return round(weighted_sum / total_weight, 2)


def coverage(scores: list[float]) -> float:
    if not scores:
        return 0.0
    return round(sum(1 for s in scores if s > 0) / len(scores), 2)


def recency_score(started_at: datetime | None, now: datetime | None = None) -> float:
    if started_at is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    hours = (now - started_at).total_seconds() / 3600
    return round(max(0.0, min(1.0, 1 - hours / RECENCY_WINDOW_HOURS)), 2)


def source_coverage(results: list[Result]) -> dict[str, float]:
    totals: dict[str, int] = defaultdict(int)
    covered: dict[str, int] = defaultdict(int)
    for result in results:
        totals[result.source] += 1
        if result.visibility_score > 0:
            covered[result.source] += 1
    return {source: round(covered[source] / total, 2) for source, total in totals.items()}


def score_run(
    results: list[Result],
    weights: dict[str, float],
    started_at: datetime | None,
    now: datetime | None = None,
) -> RunScore:
    """Bundle the run-level outputs without folding them into one number."""
    entries = [(r.visibility_score, weights.get(r.intent_id, 1.0)) for r in results]
    domains = {c.ref_domain for r in results for c in r.citations if c.ref_domain}
    return RunScore(
        score=aggregate_run_score(entries),
        coverage=coverage([r.visibility_score for r in results]),
        recency=recency_score(started_at, now),
        citations_count=sum(len(r.citations) for r in results),
        unique_domains_count=len(domains),
        source_coverage=source_coverage(results),
    )


def relative_competitor_score(
    results: list[Result],
    competitor: str,
) -> float:
    """Score the run's citations as if ``competitor`` were the audited domain.

    Only the citations already collected for the audited run are reused, so
    the number is indicative, not a measured competitor visibility.
    """
    scores: list[float] = []
    for result in results:
        rescored = [
            Citation(
                rank=c.rank,
                ref_url=c.ref_url,
                ref_domain=c.ref_domain,
                is_audited_domain=matches_competitor(c.ref_domain, [competitor]),
            )
            for c in result.citations
        ]
        scores.append(calculate_intent_score(rescored, competitor))
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 2)
