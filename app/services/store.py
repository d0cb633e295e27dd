from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.config import settings
from app.models.visibility import Audit, AuditPage, Intent, Result, Run, RunStatus


class RunStore(Protocol):
    # Audit/project records written by the audit pipeline.
    async def save_audit(
        self,
        audit: Audit,
        pages: list[AuditPage] | None = None,
        competitors: list[str] | None = None,
    ) -> None: ...
    async def get_audit(self, audit_id: str) -> Audit | None: ...
    async def get_audit_pages(self, project_id: str, domain: str) -> list[AuditPage]: ...
    async def get_competitors(self, project_id: str) -> list[str]: ...

    # Runs
    async def create_run(self, run: Run) -> Run: ...
    async def get_run(self, run_id: str) -> Run | None: ...
    async def get_latest_run(self, audit_id: str) -> Run | None: ...
    async def find_recent_run(self, project_id: str, domain: str, since: datetime) -> Run | None: ...
    async def claim_next_queued_run(self) -> Run | None: ...
    async def claim_run(self, run_id: str) -> Run | None: ...
    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        *,
        error: str | None = None,
        score: float | None = None,
        coverage: float | None = None,
    ) -> bool: ...
    async def list_stale_runs(self, started_before: datetime) -> list[Run]: ...
    async def count_runs_since(self, since: datetime) -> dict[str, int]: ...

    # Intents
    async def upsert_intents(self, intents: list[Intent]) -> None: ...
    async def list_intents(self, project_id: str, domain: str) -> list[Intent]: ...
    async def get_intents(self, intent_ids: list[str]) -> list[Intent]: ...

    # Results + citations
    async def insert_result(self, result: Result) -> Result: ...
    async def update_result_score(self, result_id: str, score: float) -> None: ...
    async def list_results(self, run_id: str, limit: int | None = None) -> list[Result]: ...


_store: RunStore | None = None


def get_run_store() -> RunStore:
    global _store
    if _store is None:
        backend = settings.store_backend.lower().strip()
        if backend == "memory":
            from app.services.memory_store import InMemoryRunStore

            _store = InMemoryRunStore()
        elif backend == "postgres":
            from app.services.database import PostgresRunStore

            _store = PostgresRunStore(settings.database_url)
        else:
            raise ValueError(f"Unsupported STORE_BACKEND: {settings.store_backend}")
    return _store


def reset_run_store() -> None:
    global _store
    _store = None
