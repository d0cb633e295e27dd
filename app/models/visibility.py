from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.ERROR)


class IntentType(StrEnum):
    BRAND = "brand"
    PRODUCT = "product"
    HOW_TO = "how-to"
    COMPARATIVE = "comparative"
    LOCAL = "local"
    EVIDENCE = "evidence"
    DISCOVERY = "discovery"
    DESCRIPTION = "description"


@dataclass(slots=True)
class DomainInfo:
    audited_url: str
    hostname: str
    etld1: str
    path: str = "/"


@dataclass(slots=True)
class Audit:
    id: str
    project_id: str
    domain: str
    site_description: str | None = None


@dataclass(slots=True)
class AuditPage:
    audit_id: str
    url: str
    title: str | None = None
    h1: str | None = None
    h2: str | None = None
    faq: list[str] = field(default_factory=list)
    location: str | None = None


@dataclass(slots=True)
class Run:
    id: str
    project_id: str
    audit_id: str | None
    domain: str
    audited_url: str
    hostname: str
    sources: list[str]
    mode: str = "on_demand"
    status: RunStatus = RunStatus.QUEUED
    intents_count: int = 0
    intent_ids: list[str] = field(default_factory=list)
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    score: float | None = None
    coverage: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for key in ("created_at", "started_at", "finished_at"):
            value = payload.get(key)
            payload[key] = value.isoformat() if isinstance(value, datetime) else None
        return payload


@dataclass(slots=True)
class Intent:
    id: str
    project_id: str
    domain: str
    intent_type: str
    query: str
    weight: float = 1.0
    source_hint: str = "generic"
    kind: str = "branded"
    prompt_reason: str = ""
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


@dataclass(slots=True)
class SourceRef:
    url: str
    title: str | None = None
    snippet: str | None = None


@dataclass(slots=True)
class ConnectorResult:
    answer: str = ""
    sources: list[SourceRef] = field(default_factory=list)
    raw: str = ""
    error: str | None = None

    @classmethod
    def failed(cls, source: str, error: str, **details: Any) -> "ConnectorResult":
        raw = json.dumps({"error": error, "source": source, **details}, ensure_ascii=True)
        return cls(answer="", sources=[], raw=raw, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": [asdict(s) for s in self.sources],
            "raw": self.raw,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ConnectorResult":
        sources = [
            SourceRef(url=s["url"], title=s.get("title"), snippet=s.get("snippet"))
            for s in payload.get("sources") or []
            if isinstance(s, dict) and isinstance(s.get("url"), str)
        ]
        return cls(
            answer=str(payload.get("answer") or ""),
            sources=sources,
            raw=str(payload.get("raw") or ""),
            error=payload.get("error"),
        )


@dataclass(slots=True)
class Citation:
    rank: int
    ref_url: str
    ref_domain: str
    title: str | None = None
    snippet: str | None = None
    is_audited_domain: bool = False
    id: str | None = None
    result_id: str | None = None


@dataclass(slots=True)
class Result:
    id: str
    run_id: str
    intent_id: str
    source: str
    query: str
    raw_payload: str
    visibility_score: float = 0.0
    from_cache: bool = False
    created_at: datetime = field(default_factory=utc_now)
    citations: list[Citation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "intent_id": self.intent_id,
            "source": self.source,
            "query": self.query,
            "raw_payload": self.raw_payload,
            "visibility_score": self.visibility_score,
            "from_cache": self.from_cache,
            "created_at": self.created_at.isoformat(),
            "citations_count": len(self.citations),
        }
