from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response

from app.api.deps import ApiError, get_engine_config, get_orchestrator, get_store, require_enabled
from app.config import EngineConfig
from app.models.schemas import (
    GenerateIntentsRequest,
    GenerateIntentsResponse,
    HealthResponse,
    IntentPreview,
    RunRequest,
    RunResponse,
)
from app.models.visibility import Run
from app.services import reporting
from app.services.domain import InvalidDomainError, normalize_from_url
from app.services.logger import log_event
from app.services.orchestrator import RunOrchestrator
from app.services.store import RunStore
from app.tools.assistant_provider import available_sources

router = APIRouter(prefix="/api/vi", tags=["visibility"], dependencies=[Depends(require_enabled)])


async def resolve_run(store: RunStore, audit_id: str | None, run_id: str | None) -> Run:
    if not audit_id and not run_id:
        raise ApiError(400, "audit_id or run_id is required")
    if run_id:
        run = await store.get_run(run_id)
        if run is None:
            raise ApiError(404, "Run not found", {"run_id": run_id})
        if audit_id and run.audit_id != audit_id:
            raise ApiError(400, "Run does not belong to audit", {"run_id": run_id, "audit_id": audit_id})
        return run
    run = await store.get_latest_run(audit_id)
    if run is None:
        raise ApiError(404, "No visibility run for audit", {"audit_id": audit_id})
    return run


@router.post("/run", status_code=201, response_model=RunResponse)
async def create_run(
    request: RunRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    store: RunStore = Depends(get_store),
    config: EngineConfig = Depends(get_engine_config),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    """Queue a run for the audit's domain, or return a recent successful one."""
    audit = await store.get_audit(request.audit_id)
    if audit is None:
        raise ApiError(404, "Audit not found", {"audit_id": request.audit_id})

    sources = [s.strip() for s in request.sources or [] if s.strip()] or None
    try:
        creation = await orchestrator.create_run(
            audit,
            sources=sources,
            mode=request.mode,
            max_intents=request.max_intents,
            regenerate_intents=request.regenerate_intents,
        )
    except InvalidDomainError as exc:
        raise ApiError(400, "Invalid audit domain", str(exc)) from exc

    run = creation.run
    if creation.reused:
        response.status_code = 200
    elif config.dispatch_on_create:
        background_tasks.add_task(orchestrator.process_run, run.id)

    log_event(
        event_type="vi_run_requested",
        message="Visibility run requested",
        run_id=run.id,
        audit_id=audit.id,
        reused=creation.reused,
    )
    return RunResponse(
        run_id=run.id,
        status=run.status.value,
        domain=run.domain,
        intents=len(creation.intents),
        reused=creation.reused,
    )


@router.get("/results")
async def get_results(
    audit_id: str | None = None,
    run_id: str | None = None,
    limit: int = Query(default=500, ge=1, le=5000),
    store: RunStore = Depends(get_store),
):
    run = await resolve_run(store, audit_id, run_id)
    results = await store.list_results(run.id, limit=limit)
    return reporting.build_results_view(run, results)


@router.get("/compare")
async def compare(
    audit_id: str,
    competitors: str | None = None,
    store: RunStore = Depends(get_store),
):
    run = await resolve_run(store, audit_id, None)
    names = [c.strip().lower() for c in (competitors or "").split(",") if c.strip()]
    if not names:
        names = await store.get_competitors(run.project_id)
    results = await store.list_results(run.id)
    return reporting.build_compare_view(run, results, names)


@router.get("/export.csv")
async def export_csv(run_id: str, store: RunStore = Depends(get_store)):
    run = await resolve_run(store, None, run_id)
    results = await store.list_results(run.id)
    return Response(
        content=reporting.export_csv(results),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="visibility-{run.id}.csv"'},
    )


@router.post("/intents:generate", response_model=GenerateIntentsResponse)
async def generate_intents(
    request: GenerateIntentsRequest,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    try:
        domain_info = normalize_from_url(request.domain)
    except InvalidDomainError as exc:
        raise ApiError(400, "Invalid domain", str(exc)) from exc

    intents = await orchestrator.intent_generator.generate(
        request.project_id,
        domain_info,
        max_intents=request.max_intents,
        site_description=request.site_description,
    )
    return GenerateIntentsResponse(
        success=True,
        intents_count=len(intents),
        intents=[
            IntentPreview(
                id=i.id,
                intent_type=i.intent_type,
                query=i.query,
                weight=i.weight,
                kind=i.kind,
                prompt_reason=i.prompt_reason,
            )
            for i in intents[:10]
        ],
    )


@router.get("/health", response_model=HealthResponse)
async def health(
    store: RunStore = Depends(get_store),
    config: EngineConfig = Depends(get_engine_config),
):
    counts = await store.count_runs_since(reporting.health_window_start())
    return reporting.health_view(counts, available_sources(config))
