from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from loguru import logger

from app.config import EngineConfig
from app.models.visibility import (
    Audit,
    ConnectorResult,
    Intent,
    Result,
    Run,
    RunStatus,
    utc_now,
)
from app.services.citations import build_citations
from app.services.domain import derive_aliases, normalize_from_url
from app.services.intents import IntentGenerator
from app.services.logger import log_run_event
from app.services.result_cache import ResultCache
from app.services.scoring import calculate_intent_score, score_run
from app.services.store import RunStore
from app.tools.assistant_provider import get_enabled_connector
from app.tools.connector_base import AssistantConnector

ConnectorFactory = Callable[[str, EngineConfig, list[str]], AssistantConnector | None]

TIMEOUT_ERROR = "timeout"
NO_PROMPTS_ERROR = "no prompts to process"


async def load_run_intents(store: RunStore, run: Run) -> list[Intent]:
    """Intents a run was created with, in creation order.

    Runs stored before intent ids were recorded fall back to the top
    ``intents_count`` intents of their domain.
    """
    if run.intent_ids:
        return await store.get_intents(run.intent_ids)
    intents = await store.list_intents(run.project_id, run.domain)
    return intents[: run.intents_count] if run.intents_count > 0 else intents


@dataclass(slots=True)
class RunCreation:
    run: Run
    intents: list[Intent]
    reused: bool = False


@dataclass(slots=True)
class ProcessOutcome:
    run_id: str | None
    status: str
    error: str | None = None
    results: int = 0
    skipped_sources: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCESS


@dataclass(slots=True)
class _RunContext:
    run: Run
    brand_hosts: list[str]
    competitors: list[str]
    connectors: dict[str, AssistantConnector]


class RunOrchestrator:
    """Creates, claims, executes and finalizes visibility runs.

    Status is the only cross-process signal: any number of orchestrators may
    share a store, and the store's conditional claims guarantee a run is
    executed by at most one of them.
    """

    def __init__(
        self,
        store: RunStore,
        config: EngineConfig,
        *,
        cache: ResultCache | None = None,
        connector_factory: ConnectorFactory = get_enabled_connector,
        intent_generator: IntentGenerator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config
        self.cache = cache
        if cache is None and config.cache_enabled:
            self.cache = ResultCache(config.cache_dir, config.cache_ttl_s)
        self.connector_factory = connector_factory
        self.intent_generator = intent_generator or IntentGenerator(store, config)
        self.clock = clock

    # --- Create ---

    async def create_run(
        self,
        audit: Audit,
        *,
        sources: list[str] | None = None,
        mode: str = "on_demand",
        max_intents: int | None = None,
        regenerate_intents: bool = False,
    ) -> RunCreation:
        domain_info = normalize_from_url(audit.domain)

        if not regenerate_intents and self.config.recency_hours > 0:
            since = self.clock() - timedelta(hours=self.config.recency_hours)
            recent = await self.store.find_recent_run(audit.project_id, domain_info.etld1, since)
            if recent is not None:
                intents = await load_run_intents(self.store, recent)
                log_run_event(recent.id, "reused", recent.status.value)
                return RunCreation(run=recent, intents=intents, reused=True)

        intents = await self.intent_generator.get_or_generate(
            audit.project_id,
            domain_info,
            max_intents=max_intents,
            site_description=audit.site_description,
            regenerate=regenerate_intents,
        )
        run = Run(
            id=uuid.uuid4().hex,
            project_id=audit.project_id,
            audit_id=audit.id,
            domain=domain_info.etld1,
            audited_url=domain_info.audited_url,
            hostname=domain_info.hostname,
            sources=list(sources or self.config.default_sources),
            mode=mode,
            intents_count=len(intents),
            intent_ids=[intent.id for intent in intents],
            created_at=self.clock(),
        )
        run = await self.store.create_run(run)
        log_run_event(run.id, "created", run.status.value, {"domain": run.domain, "sources": run.sources})
        return RunCreation(run=run, intents=intents)

    # --- Claim + guard ---

    def guard(self, run: Run) -> str | None:
        """Reason the run may not execute, or None."""
        if not self.config.enabled:
            return "Visibility intelligence is disabled"
        if not self.config.project_allowed(run.project_id):
            return f"Project {run.project_id} is not allow-listed for visibility runs"
        return None

    async def process_next(self) -> ProcessOutcome | None:
        """Claim the oldest queued run and execute it; None when the queue is empty."""
        run = await self.store.claim_next_queued_run()
        if run is None:
            return None
        return await self._run_claimed(run)

    async def process_run(self, run_id: str) -> ProcessOutcome:
        """Execute one specific run.

        Lookup and guard failures are reported without touching the run.
        """
        run = await self.store.get_run(run_id)
        if run is None:
            return ProcessOutcome(run_id=run_id, status="not_found", error="Run not found")
        reason = self.guard(run)
        if reason:
            return ProcessOutcome(run_id=run_id, status="rejected", error=reason)
        claimed = await self.store.claim_run(run_id)
        if claimed is None:
            return ProcessOutcome(
                run_id=run_id,
                status=run.status.value,
                error=f"Run is not queued (status: {run.status.value})",
            )
        return await self._execute(claimed)

    async def _run_claimed(self, run: Run) -> ProcessOutcome:
        reason = self.guard(run)
        if reason:
            await self._finalize_error(run.id, reason)
            return ProcessOutcome(run_id=run.id, status=RunStatus.ERROR.value, error=reason)
        return await self._execute(run)

    # --- Timeout ---

    async def evict_timed_out(self) -> list[str]:
        cutoff = self.clock() - timedelta(seconds=self.config.run_timeout_s)
        evicted: list[str] = []
        for run in await self.store.list_stale_runs(cutoff):
            if await self.store.finalize_run(run.id, RunStatus.ERROR, error=TIMEOUT_ERROR):
                log_run_event(run.id, "timed_out", RunStatus.ERROR.value, {"started_at": str(run.started_at)})
                evicted.append(run.id)
        return evicted

    async def tick(self) -> ProcessOutcome | None:
        await self.evict_timed_out()
        return await self.process_next()

    async def run_worker(self, stop: asyncio.Event | None = None) -> None:
        """Poll for queued runs until ``stop`` is set, capping concurrent runs."""
        stop = stop or asyncio.Event()
        active: set[asyncio.Task] = set()
        logger.info("Visibility worker started")
        while not stop.is_set():
            try:
                await self.evict_timed_out()
                while len(active) < max(self.config.max_concurrent_runs, 1):
                    run = await self.store.claim_next_queued_run()
                    if run is None:
                        break
                    task = asyncio.create_task(self._run_claimed(run))
                    active.add(task)
                    task.add_done_callback(active.discard)
            except Exception as exc:
                logger.exception(f"Visibility worker poll failed: {exc}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.worker_poll_s)
            except asyncio.TimeoutError:
                pass
        if active:
            await asyncio.gather(*active, return_exceptions=True)
        logger.info("Visibility worker stopped")

    # --- Execute ---

    async def _execute(self, run: Run) -> ProcessOutcome:
        log_run_event(run.id, "started", RunStatus.RUNNING.value, {"sources": run.sources})
        started_at = run.started_at or self.clock()
        elapsed = (self.clock() - started_at).total_seconds()
        remaining = self.config.run_timeout_s - elapsed
        if remaining <= 0:
            await self._finalize_error(run.id, TIMEOUT_ERROR)
            return ProcessOutcome(run_id=run.id, status=RunStatus.ERROR.value, error=TIMEOUT_ERROR)

        try:
            context = await self._build_context(run)
            intents = await load_run_intents(self.store, run)
            if not intents:
                await self._finalize_error(run.id, NO_PROMPTS_ERROR)
                return ProcessOutcome(run_id=run.id, status=RunStatus.ERROR.value, error=NO_PROMPTS_ERROR)

            skipped = [s for s in run.sources if s not in context.connectors]
            try:
                processed = await asyncio.wait_for(self._execute_pairs(context, intents), timeout=remaining)
            except asyncio.TimeoutError:
                await self._finalize_error(run.id, TIMEOUT_ERROR)
                return ProcessOutcome(run_id=run.id, status=RunStatus.ERROR.value, error=TIMEOUT_ERROR)

            await self._finalize_success(run, intents)
            return ProcessOutcome(
                run_id=run.id,
                status=RunStatus.SUCCESS.value,
                results=processed,
                skipped_sources=skipped,
            )
        except Exception as exc:
            detail = f"{type(exc).__name__}: {exc}"
            logger.exception(f"Run {run.id} failed: {detail}")
            await self._finalize_error(run.id, detail)
            return ProcessOutcome(run_id=run.id, status=RunStatus.ERROR.value, error=detail)

    async def _build_context(self, run: Run) -> _RunContext:
        description = None
        if run.audit_id:
            audit = await self.store.get_audit(run.audit_id)
            description = audit.site_description if audit else None
        aliases = derive_aliases(run.hostname, description, self.config.brand_aliases)
        brand_hosts = [run.hostname, *aliases]

        connectors: dict[str, AssistantConnector] = {}
        for source in dict.fromkeys(run.sources):
            connector = self.connector_factory(source, self.config, brand_hosts)
            if connector is None:
                log_run_event(run.id, "source_skipped", RunStatus.RUNNING.value, {"source": source})
                continue
            connectors[source] = connector

        return _RunContext(
            run=run,
            brand_hosts=brand_hosts,
            competitors=await self.store.get_competitors(run.project_id),
            connectors=connectors,
        )

    async def _execute_pairs(self, context: _RunContext, intents: list[Intent]) -> int:
        semaphore = asyncio.Semaphore(max(self.config.worker_concurrency, 1))
        pairs = [(intent, source) for intent in intents for source in context.connectors]

        async def run_pair(intent: Intent, source: str) -> bool:
            async with semaphore:
                try:
                    await self._execute_pair(context, intent, source)
                    return True
                except Exception as exc:
                    logger.warning(
                        f"Run {context.run.id}: {source} failed for intent {intent.id}: {exc!r}"
                    )
                    return False

        outcomes = await asyncio.gather(*(run_pair(i, s) for i, s in pairs))
        return sum(1 for ok in outcomes if ok)

    async def _execute_pair(self, context: _RunContext, intent: Intent, source: str) -> Result:
        run = context.run
        connector_result: ConnectorResult | None = None
        from_cache = False
        if self.cache is not None:
            connector_result = self.cache.load(source, run.domain, intent.query)
            from_cache = connector_result is not None
        if connector_result is None:
            connector_result = await context.connectors[source].ask(intent.query)
            if self.cache is not None:
                self.cache.save(source, run.domain, intent.query, connector_result)

        citations = build_citations(
            connector_result.sources,
            context.brand_hosts[0],
            context.brand_hosts[1:],
        )
        stored = await self.store.insert_result(
            Result(
                id=uuid.uuid4().hex,
                run_id=run.id,
                intent_id=intent.id,
                source=source,
                query=intent.query,
                raw_payload=connector_result.raw,
                from_cache=from_cache,
                created_at=self.clock(),
                citations=citations,
            )
        )
        score = calculate_intent_score(citations, run.domain, context.competitors)
        await self.store.update_result_score(stored.id, score)
        stored.visibility_score = score
        return stored

    # --- Finalize ---

    async def _finalize_success(self, run: Run, intents: list[Intent]) -> None:
        results = await self.store.list_results(run.id)
        weights = {intent.id: intent.weight for intent in intents}
        run_score = score_run(results, weights, run.started_at, self.clock())
        finalized = await self.store.finalize_run(
            run.id,
            RunStatus.SUCCESS,
            score=run_score.score,
            coverage=run_score.coverage,
        )
        log_run_event(
            run.id,
            "finished" if finalized else "finish_skipped",
            RunStatus.SUCCESS.value,
            {
                "results": len(results),
                "score": run_score.score,
                "coverage": run_score.coverage,
                "source_coverage": run_score.source_coverage,
            },
        )

    async def _finalize_error(self, run_id: str, reason: str) -> None:
        finalized = await self.store.finalize_run(run_id, RunStatus.ERROR, error=reason)
        log_run_event(run_id, "failed" if finalized else "fail_skipped", RunStatus.ERROR.value, {"error": reason})
