from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime

from app.models.visibility import (
    Audit,
    AuditPage,
    Intent,
    Result,
    Run,
    RunStatus,
    utc_now,
)
from app.services.domain import etld1_of


def _copy_result(result: Result) -> Result:
    return replace(result, citations=[replace(c) for c in result.citations])


class InMemoryRunStore:
    """Process-local run store.

    Every mutation happens under one ``asyncio.Lock`` so status transitions are
    compare-and-set operations, matching the conditional updates the
    PostgreSQL backend issues.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._audits: dict[str, Audit] = {}
        self._pages: dict[str, list[AuditPage]] = {}
        self._competitors: dict[str, list[str]] = {}
        self._runs: dict[str, Run] = {}
        self._intents: dict[str, Intent] = {}
        self._results: dict[str, Result] = {}

    # --- Audits ---

    async def save_audit(
        self,
        audit: Audit,
        pages: list[AuditPage] | None = None,
        competitors: list[str] | None = None,
    ) -> None:
        async with self._lock:
            self._audits[audit.id] = replace(audit)
            if pages is not None:
                self._pages[audit.id] = [replace(p) for p in pages]
            if competitors is not None:
                self._competitors[audit.project_id] = list(competitors)

    async def get_audit(self, audit_id: str) -> Audit | None:
        audit = self._audits.get(audit_id)
        return replace(audit) if audit else None

    async def get_audit_pages(self, project_id: str, domain: str) -> list[AuditPage]:
        pages: list[AuditPage] = []
        for audit in self._audits.values():
            if audit.project_id == project_id and etld1_of(audit.domain) == domain:
                pages.extend(replace(p) for p in self._pages.get(audit.id, []))
        return pages[:100]

    async def get_competitors(self, project_id: str) -> list[str]:
        return list(self._competitors.get(project_id, []))

    # --- Runs ---

    async def create_run(self, run: Run) -> Run:
        async with self._lock:
            self._runs[run.id] = replace(run, sources=list(run.sources), intent_ids=list(run.intent_ids))
        return replace(run)

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return replace(run) if run else None

    async def get_latest_run(self, audit_id: str) -> Run | None:
        runs = [r for r in self._runs.values() if r.audit_id == audit_id]
        if not runs:
            return None
        return replace(max(runs, key=lambda r: r.created_at))

    async def find_recent_run(self, project_id: str, domain: str, since: datetime) -> Run | None:
        runs = [
            r for r in self._runs.values()
            if r.project_id == project_id
            and r.domain == domain
            and r.status == RunStatus.SUCCESS
            and r.created_at >= since
        ]
        if not runs:
            return None
        return replace(max(runs, key=lambda r: r.created_at))

    async def claim_next_queued_run(self) -> Run | None:
        async with self._lock:
            queued = [r for r in self._runs.values() if r.status == RunStatus.QUEUED]
            if not queued:
                return None
            run = min(queued, key=lambda r: r.created_at)
            run.status = RunStatus.RUNNING
            run.started_at = utc_now()
            return replace(run)

    async def claim_run(self, run_id: str) -> Run | None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status != RunStatus.QUEUED:
                return None
            run.status = RunStatus.RUNNING
            run.started_at = utc_now()
            return replace(run)

    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        *,
        error: str | None = None,
        score: float | None = None,
        coverage: float | None = None,
    ) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status.terminal:
                return False
            run.status = status
            run.error = error
            run.finished_at = utc_now()
            if score is not None:
                run.score = score
            if coverage is not None:
                run.coverage = coverage
            return True

    async def list_stale_runs(self, started_before: datetime) -> list[Run]:
        return [
            replace(r) for r in self._runs.values()
            if r.status == RunStatus.RUNNING and r.started_at is not None and r.started_at < started_before
        ]

    async def count_runs_since(self, since: datetime) -> dict[str, int]:
        counts = Counter(r.status.value for r in self._runs.values() if r.created_at >= since)
        return {status.value: counts.get(status.value, 0) for status in RunStatus}

    # --- Intents ---

    async def upsert_intents(self, intents: list[Intent]) -> None:
        async with self._lock:
            for intent in intents:
                self._intents[intent.id] = replace(intent)

    async def list_intents(self, project_id: str, domain: str) -> list[Intent]:
        intents = [
            replace(i) for i in self._intents.values()
            if i.project_id == project_id and i.domain == domain
        ]
        intents.sort(key=lambda i: (-i.weight, i.created_at))
        return intents

    async def get_intents(self, intent_ids: list[str]) -> list[Intent]:
        return [replace(self._intents[i]) for i in intent_ids if i in self._intents]

    # --- Results ---

    async def insert_result(self, result: Result) -> Result:
        async with self._lock:
            stored = _copy_result(result)
            for citation in stored.citations:
                citation.id = citation.id or uuid.uuid4().hex
                citation.result_id = stored.id
            self._results[stored.id] = stored
            return _copy_result(stored)

    async def update_result_score(self, result_id: str, score: float) -> None:
        async with self._lock:
            result = self._results.get(result_id)
            if result is not None:
                result.visibility_score = score

    async def list_results(self, run_id: str, limit: int | None = None) -> list[Result]:
        results = [_copy_result(r) for r in self._results.values() if r.run_id == run_id]
        results.sort(key=lambda r: r.created_at)
        for result in results:
            result.citations.sort(key=lambda c: c.rank)
        return results[:limit] if limit else results
