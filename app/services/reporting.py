"""Read-side views over a finished (or running) visibility run."""

from __future__ import annotations

import csv
import io
import json
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from app.models.visibility import Audit, Intent, Result, Run, utc_now
from app.services.citations import StructuredPayload, decode_payload
from app.services.domain import derive_aliases, etld1, hostname_of, is_audited_url
from app.services.scoring import aggregate_run_score, relative_competitor_score, source_coverage

CSV_COLUMNS = (
    "source",
    "query",
    "ref_domain",
    "ref_url",
    "rank",
    "is_audited_domain",
    "title",
    "snippet",
    "visibility_score",
)
TOP_N = 10


class DomainIntegrityError(Exception):
    """A resolved run does not belong to the audit that asked for it."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}


def check_domain_integrity(
    audit: Audit,
    run: Run,
    known_aliases: dict[str, list[str]] | None = None,
) -> bool:
    """Raise unless ``run`` matches the audit's project and domain.

    Returns True when the match only holds through a derived alias.
    """
    details = {
        "audit_id": audit.id,
        "audit_project_id": audit.project_id,
        "audit_domain": audit.domain,
        "run_id": run.id,
        "run_project_id": run.project_id,
        "run_domain": run.domain,
    }
    if run.project_id != audit.project_id:
        raise DomainIntegrityError("Project mismatch between audit and run", details)

    audit_host = hostname_of(audit.domain) or ""
    if etld1(audit_host) == etld1(run.domain):
        return False
    aliases = derive_aliases(audit_host, audit.site_description, known_aliases)
    if is_audited_url(f"https://{run.hostname or run.domain}", audit_host, aliases):
        return True
    raise DomainIntegrityError("Domain mismatch between audit and run", {**details, "aliases": aliases})


def flatten_citations(results: list[Result]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for result in results:
        for citation in result.citations:
            rows.append(
                {
                    "result_id": result.id,
                    "intent_id": result.intent_id,
                    "source": result.source,
                    "query": result.query,
                    "rank": citation.rank,
                    "ref_url": citation.ref_url,
                    "ref_domain": citation.ref_domain,
                    "title": citation.title,
                    "snippet": citation.snippet,
                    "is_audited_domain": citation.is_audited_domain,
                    "visibility_score": result.visibility_score,
                }
            )
    return rows


def top_domains(results: list[Result], limit: int = TOP_N) -> list[dict[str, Any]]:
    counts = Counter(c.ref_domain for r in results for c in r.citations if c.ref_domain)
    return [{"domain": d, "count": n} for d, n in counts.most_common(limit)]


def build_summary(run: Run, results: list[Result]) -> dict[str, Any]:
    overall = run.score
    if overall is None:
        overall = aggregate_run_score((r.visibility_score, 1.0) for r in results)
    citations = [c for r in results for c in r.citations]
    top_intents = sorted(
        (r for r in results if r.visibility_score > 0),
        key=lambda r: r.visibility_score,
        reverse=True,
    )[:TOP_N]
    return {
        "overall_score": overall,
        "coverage": source_coverage(results),
        "counts": {
            "total_citations": len(citations),
            "unique_domains": len({c.ref_domain for c in citations if c.ref_domain}),
            "mentions": sum(1 for c in citations if c.is_audited_domain),
            "assistants": len({r.source for r in results}),
        },
        "top_intents": [
            {
                "intent_id": r.intent_id,
                "query": r.query,
                "source": r.source,
                "visibility_score": r.visibility_score,
            }
            for r in top_intents
        ],
        "top_citations": top_domains(results),
    }


def build_results_view(run: Run, results: list[Result]) -> dict[str, Any]:
    return {
        "run": run.to_dict(),
        "summary": build_summary(run, results),
        "results": [r.to_dict() for r in results],
        "citations": flatten_citations(results),
    }


def build_grouped_view(
    audit: Audit,
    run: Run,
    results: list[Result],
    intents: list[Intent],
    source: str | None = None,
) -> dict[str, Any]:
    per_source = Counter()
    for result in results:
        per_source[result.source] += len(result.citations)
    sources = [{"source": s, "citations": per_source[s]} for s in sorted(per_source)]

    selected = source
    if not selected and per_source:
        # Most citations wins; ties go to the alphabetically first source.
        selected = sorted(per_source.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    intents_by_id = {i.id: i for i in intents}
    prompts: list[dict[str, Any]] = []
    for result in results:
        if result.source != selected:
            continue
        intent = intents_by_id.get(result.intent_id)
        prompts.append(
            {
                "intent_id": result.intent_id,
                "source": result.source,
                "kind": intent.kind if intent else None,
                "prompt_text": result.query,
                "prompt_reason": intent.prompt_reason if intent else None,
                "visibility_score": result.visibility_score,
                "citations": [
                    {
                        "rank": c.rank,
                        "title": c.title,
                        "ref_url": c.ref_url,
                        "ref_domain": c.ref_domain,
                        "was_audited": c.is_audited_domain,
                        "captured_at": result.created_at.isoformat(),
                    }
                    for c in result.citations
                ],
            }
        )

    return {
        "audit_id": audit.id,
        "run_id": run.id,
        "domain": run.domain,
        "selected_source": selected,
        "sources": sources,
        "prompts": prompts,
        "counts": {
            "prompts": len(prompts),
            "citations": sum(len(p["citations"]) for p in prompts),
            "audited": sum(1 for p in prompts for c in p["citations"] if c["was_audited"]),
        },
    }


def parser_mode(result: Result) -> str:
    """How the stored provider payload was decoded: error, empty, structured or text."""
    try:
        raw = json.loads(result.raw_payload) if result.raw_payload else None
    except json.JSONDecodeError:
        raw = None
    if isinstance(raw, dict) and raw.get("error"):
        return "error"
    if not result.citations:
        return "empty"
    content = raw.get("content") if isinstance(raw, dict) else None
    payload = decode_payload(content if isinstance(content, str) else raw)
    if isinstance(payload, StructuredPayload) and payload.sources:
        return "structured"
    return "text"


def build_provenance(audit: Audit, run: Run, results: list[Result], alias_match: bool) -> dict[str, Any]:
    counts_by_source = Counter()
    for result in results:
        counts_by_source[result.source] += len(result.citations)
    return {
        "audit": {"id": audit.id, "project_id": audit.project_id, "domain": audit.domain},
        "run": {
            "id": run.id,
            "domain": run.domain,
            "hostname": run.hostname,
            "status": run.status.value,
            "created_at": run.created_at.isoformat(),
            "alias_match": alias_match,
        },
        "counts_by_source": dict(counts_by_source),
        "top_domains": top_domains(results),
        "parser_modes": dict(Counter(parser_mode(r) for r in results)),
    }


def build_compare_view(run: Run, results: list[Result], competitors: list[str]) -> dict[str, Any]:
    audited_score = run.score
    if audited_score is None:
        audited_score = aggregate_run_score((r.visibility_score, 1.0) for r in results)
    return {
        "audited_domain": run.domain,
        "audited_score": audited_score,
        "authoritative": False,
        "note": "Competitor scores re-read the audited run's citations; no provider calls were made for competitors.",
        "competitors": [
            {
                "domain": competitor,
                "score": relative_competitor_score(results, competitor),
                "authoritative": False,
            }
            for competitor in competitors
        ],
    }


def export_csv(results: list[Result]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in flatten_citations(results):
        row = dict(row)
        row["is_audited_domain"] = "true" if row["is_audited_domain"] else "false"
        row["title"] = row["title"] or ""
        row["snippet"] = row["snippet"] or ""
        writer.writerow(row)
    return buffer.getvalue()


def health_view(
    counts: dict[str, int],
    sources_enabled: list[str] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    total = sum(counts.values())
    success = counts.get("success", 0)
    return {
        "status": "ok",
        "runs_24h": total,
        "by_status": counts,
        "success_rate": round(success / total, 2) if total else 0.0,
        "sources_enabled": list(sources_enabled or []),
        "timestamp": (now or utc_now()).isoformat(),
    }


def health_window_start(now: datetime | None = None) -> datetime:
    return (now or utc_now()) - timedelta(hours=24)
