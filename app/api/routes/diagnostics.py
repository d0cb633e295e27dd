from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import ApiError, get_engine_config, get_store, require_enabled
from app.api.routes.visibility import resolve_run
from app.config import EngineConfig
from app.services import reporting
from app.services.orchestrator import load_run_intents
from app.services.reporting import DomainIntegrityError
from app.services.store import RunStore

router = APIRouter(prefix="/api/vi", tags=["visibility-diagnostics"], dependencies=[Depends(require_enabled)])


@router.get("/results:grouped")
async def grouped_results(
    audit_id: str,
    run_id: str | None = None,
    source: str | None = None,
    store: RunStore = Depends(get_store),
    config: EngineConfig = Depends(get_engine_config),
):
    """Citations grouped by prompt for one source of the audit's run."""
    audit = await store.get_audit(audit_id)
    if audit is None:
        raise ApiError(404, "Audit not found", {"audit_id": audit_id})
    run = await resolve_run(store, None if run_id else audit_id, run_id)
    try:
        reporting.check_domain_integrity(audit, run, config.brand_aliases)
    except DomainIntegrityError as exc:
        raise ApiError(400, str(exc), exc.details) from exc

    results = await store.list_results(run.id)
    intents = await load_run_intents(store, run)
    return reporting.build_grouped_view(audit, run, results, intents, source)


@router.get("/debug/provenance")
async def provenance(
    audit_id: str,
    run_id: str | None = None,
    store: RunStore = Depends(get_store),
    config: EngineConfig = Depends(get_engine_config),
):
    audit = await store.get_audit(audit_id)
    if audit is None:
        raise ApiError(404, "Audit not found", {"audit_id": audit_id})
    run = await resolve_run(store, None if run_id else audit_id, run_id)
    try:
        alias_match = reporting.check_domain_integrity(audit, run, config.brand_aliases)
    except DomainIntegrityError as exc:
        raise ApiError(500, f"{exc}: refusing to serve provenance", exc.details) from exc

    results = await store.list_results(run.id)
    return reporting.build_provenance(audit, run, results, alias_match)
