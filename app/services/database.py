"""PostgreSQL run store using asyncpg."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import asyncpg

from app.models.visibility import (
    Audit,
    AuditPage,
    Citation,
    Intent,
    Result,
    Run,
    RunStatus,
)
from app.services.domain import etld1_of
from app.services.logger import log_db_operation

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "sql" / "schema.sql"

RUN_COLUMNS = (
    "id, project_id, audit_id, domain, audited_url, hostname, mode, sources, status, "
    "intents_count, intent_ids, error, score, coverage, created_at, started_at, finished_at"
)


def _coerce_json_list(value: Any) -> list[Any]:
    """Normalize JSON-string columns into lists."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _row_to_run(row: asyncpg.Record) -> Run:
    data = dict(row)
    return Run(
        id=data["id"],
        project_id=data["project_id"],
        audit_id=data["audit_id"],
        domain=data["domain"],
        audited_url=data["audited_url"],
        hostname=data["hostname"],
        mode=data["mode"],
        sources=[str(s) for s in _coerce_json_list(data["sources"])],
        status=RunStatus(data["status"]),
        intents_count=data["intents_count"],
        intent_ids=[str(i) for i in _coerce_json_list(data["intent_ids"])],
        error=data["error"],
        score=data["score"],
        coverage=data["coverage"],
        created_at=data["created_at"],
        started_at=data["started_at"],
        finished_at=data["finished_at"],
    )


def _row_to_intent(row: asyncpg.Record) -> Intent:
    return Intent(**dict(row))


class PostgresRunStore:
    """Run store backed by a shared asyncpg pool.

    Run claims are single ``UPDATE ... RETURNING`` statements guarded by
    ``FOR UPDATE SKIP LOCKED`` so concurrent workers never claim the same row.
    """

    def __init__(self, database_url: str, *, min_size: int = 1, max_size: int = 10):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        log_db_operation("ensure_schema", "*", "success")

    # --- Audits ---

    async def save_audit(
        self,
        audit: Audit,
        pages: list[AuditPage] | None = None,
        competitors: list[str] | None = None,
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO audits (id, project_id, domain, domain_etld1, site_description)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (id) DO UPDATE
                    SET project_id = EXCLUDED.project_id,
                        domain = EXCLUDED.domain,
                        domain_etld1 = EXCLUDED.domain_etld1,
                        site_description = EXCLUDED.site_description
                    """,
                    audit.id,
                    audit.project_id,
                    audit.domain,
                    etld1_of(audit.domain),
                    audit.site_description,
                )
                if pages is not None:
                    await conn.execute("DELETE FROM audit_pages WHERE audit_id = $1", audit.id)
                    await conn.executemany(
                        """
                        INSERT INTO audit_pages (audit_id, url, title, h1, h2, faq, location)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        """,
                        [
                            (audit.id, p.url, p.title, p.h1, p.h2, json.dumps(p.faq), p.location)
                            for p in pages
                        ],
                    )
                if competitors is not None:
                    await conn.execute(
                        """
                        INSERT INTO project_competitors (project_id, competitors)
                        VALUES ($1, $2)
                        ON CONFLICT (project_id) DO UPDATE SET competitors = EXCLUDED.competitors
                        """,
                        audit.project_id,
                        json.dumps(competitors),
                    )
        log_db_operation("upsert", "audits", "success", details=audit.id)

    async def get_audit(self, audit_id: str) -> Audit | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id, project_id, domain, site_description FROM audits WHERE id = $1",
                audit_id,
            )
            return Audit(**dict(row)) if row else None

    async def get_audit_pages(self, project_id: str, domain: str) -> list[AuditPage]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT p.audit_id, p.url, p.title, p.h1, p.h2, p.faq, p.location
                FROM audit_pages p
                JOIN audits a ON a.id = p.audit_id
                WHERE a.project_id = $1 AND a.domain_etld1 = $2
                LIMIT 100
                """,
                project_id,
                domain,
            )
        pages: list[AuditPage] = []
        for r in rows:
            data = dict(r)
            data["faq"] = [str(q) for q in _coerce_json_list(data.get("faq"))]
            pages.append(AuditPage(**data))
        return pages

    async def get_competitors(self, project_id: str) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT competitors FROM project_competitors WHERE project_id = $1",
                project_id,
            )
        return [str(c) for c in _coerce_json_list(value)]

    # --- Runs ---

    async def create_run(self, run: Run) -> Run:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO visibility_runs
                    (id, project_id, audit_id, domain, audited_url, hostname, mode,
                     sources, status, intents_count, intent_ids, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                RETURNING {RUN_COLUMNS}
                """,
                run.id,
                run.project_id,
                run.audit_id,
                run.domain,
                run.audited_url,
                run.hostname,
                run.mode,
                json.dumps(run.sources),
                run.status.value,
                run.intents_count,
                json.dumps(run.intent_ids),
                run.created_at,
            )
        log_db_operation("insert", "visibility_runs", "success", details=run.id)
        return _row_to_run(row)

    async def get_run(self, run_id: str) -> Run | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {RUN_COLUMNS} FROM visibility_runs WHERE id = $1", run_id
            )
        return _row_to_run(row) if row else None

    async def get_latest_run(self, audit_id: str) -> Run | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {RUN_COLUMNS} FROM visibility_runs
                WHERE audit_id = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                audit_id,
            )
        return _row_to_run(row) if row else None

    async def find_recent_run(self, project_id: str, domain: str, since: datetime) -> Run | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {RUN_COLUMNS} FROM visibility_runs
                WHERE project_id = $1 AND domain = $2 AND status = 'success' AND created_at >= $3
                ORDER BY created_at DESC
                LIMIT 1
                """,
                project_id,
                domain,
                since,
            )
        return _row_to_run(row) if row else None

    async def claim_next_queued_run(self) -> Run | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE visibility_runs
                SET status = 'running', started_at = now()
                WHERE id = (
                    SELECT id FROM visibility_runs
                    WHERE status = 'queued'
                    ORDER BY created_at
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                AND status = 'queued'
                RETURNING {RUN_COLUMNS}
                """
            )
        if row is None:
            return None
        log_db_operation("claim", "visibility_runs", "success", details=row["id"])
        return _row_to_run(row)

    async def claim_run(self, run_id: str) -> Run | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE visibility_runs
                SET status = 'running', started_at = now()
                WHERE id = $1 AND status = 'queued'
                RETURNING {RUN_COLUMNS}
                """,
                run_id,
            )
        return _row_to_run(row) if row else None

    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        *,
        error: str | None = None,
        score: float | None = None,
        coverage: float | None = None,
    ) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE visibility_runs
                SET status = $2,
                    error = $3,
                    score = COALESCE($4, score),
                    coverage = COALESCE($5, coverage),
                    finished_at = now()
                WHERE id = $1 AND status IN ('queued', 'running')
                RETURNING id
                """,
                run_id,
                status.value,
                error,
                score,
                coverage,
            )
        log_db_operation(
            "finalize", "visibility_runs", "success" if row else "skipped", details=f"{run_id}:{status.value}"
        )
        return row is not None

    async def list_stale_runs(self, started_before: datetime) -> list[Run]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {RUN_COLUMNS} FROM visibility_runs
                WHERE status = 'running' AND started_at < $1
                ORDER BY started_at
                """,
                started_before,
            )
        return [_row_to_run(r) for r in rows]

    async def count_runs_since(self, since: datetime) -> dict[str, int]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS n FROM visibility_runs
                WHERE created_at >= $1
                GROUP BY status
                """,
                since,
            )
        counts = {r["status"]: int(r["n"]) for r in rows}
        return {status.value: counts.get(status.value, 0) for status in RunStatus}

    # --- Intents ---

    async def upsert_intents(self, intents: list[Intent]) -> None:
        if not intents:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO visibility_intents
                    (id, project_id, domain, intent_type, query, source_hint, weight,
                     kind, prompt_reason, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE
                SET intent_type = EXCLUDED.intent_type,
                    query = EXCLUDED.query,
                    source_hint = EXCLUDED.source_hint,
                    weight = EXCLUDED.weight,
                    kind = EXCLUDED.kind,
                    prompt_reason = EXCLUDED.prompt_reason,
                    created_at = EXCLUDED.created_at
                """,
                [
                    (
                        i.id, i.project_id, i.domain, i.intent_type, i.query, i.source_hint,
                        i.weight, i.kind, i.prompt_reason, i.created_at,
                    )
                    for i in intents
                ],
            )
        log_db_operation("upsert", "visibility_intents", "success", details=str(len(intents)))

    async def list_intents(self, project_id: str, domain: str) -> list[Intent]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, project_id, domain, intent_type, query, weight, source_hint,
                       kind, prompt_reason, created_at
                FROM visibility_intents
                WHERE project_id = $1 AND domain = $2
                ORDER BY weight DESC, created_at
                """,
                project_id,
                domain,
            )
        return [_row_to_intent(r) for r in rows]

    async def get_intents(self, intent_ids: list[str]) -> list[Intent]:
        if not intent_ids:
            return []
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, project_id, domain, intent_type, query, weight, source_hint,
                       kind, prompt_reason, created_at
                FROM visibility_intents
                WHERE id = ANY($1::text[])
                """,
                intent_ids,
            )
        by_id = {r["id"]: _row_to_intent(r) for r in rows}
        return [by_id[i] for i in intent_ids if i in by_id]

    # --- Results ---

    async def insert_result(self, result: Result) -> Result:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO visibility_results
                        (id, run_id, intent_id, source, query, raw_payload,
                         visibility_score, from_cache, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    result.id,
                    result.run_id,
                    result.intent_id,
                    result.source,
                    result.query,
                    result.raw_payload,
                    result.visibility_score,
                    result.from_cache,
                    result.created_at,
                )
                for citation in result.citations:
                    citation.id = citation.id or uuid.uuid4().hex
                    citation.result_id = result.id
                if result.citations:
                    await conn.executemany(
                        """
                        INSERT INTO visibility_citations
                            (id, result_id, rank, ref_url, ref_domain, title, snippet, is_audited_domain)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        """,
                        [
                            (
                                c.id, c.result_id, c.rank, c.ref_url, c.ref_domain,
                                c.title, c.snippet, c.is_audited_domain,
                            )
                            for c in result.citations
                        ],
                    )
        return result

    async def update_result_score(self, result_id: str, score: float) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE visibility_results SET visibility_score = $2 WHERE id = $1",
                result_id,
                score,
            )

    async def list_results(self, run_id: str, limit: int | None = None) -> list[Result]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, run_id, intent_id, source, query, raw_payload,
                       visibility_score, from_cache, created_at
                FROM visibility_results
                WHERE run_id = $1
                ORDER BY created_at
                LIMIT $2
                """,
                run_id,
                limit,
            )
            results = [Result(**dict(r)) for r in rows]
            if not results:
                return []
            cite_rows = await conn.fetch(
                """
                SELECT id, result_id, rank, ref_url, ref_domain, title, snippet, is_audited_domain
                FROM visibility_citations
                WHERE result_id = ANY($1::text[])
                ORDER BY result_id, rank
                """,
                [r.id for r in results],
            )
        by_result = {r.id: r for r in results}
        for row in cite_rows:
            by_result[row["result_id"]].citations.append(Citation(**dict(row)))
        return results
