from __future__ import annotations

from typing import Any

from fastapi import Depends

from app.config import EngineConfig
from app.services.orchestrator import RunOrchestrator
from app.services.store import RunStore, get_run_store


class ApiError(Exception):
    """Rendered as ``{"error": ..., "details": ...}`` with the given status."""

    def __init__(self, status_code: int, error: str, details: Any | None = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details


def get_engine_config() -> EngineConfig:
    return EngineConfig.from_settings()


def get_store() -> RunStore:
    return get_run_store()


def require_enabled(config: EngineConfig = Depends(get_engine_config)) -> EngineConfig:
    if not config.enabled:
        raise ApiError(403, "Visibility intelligence is disabled", {"flag": "VI_ENABLED"})
    return config


def get_orchestrator(
    store: RunStore = Depends(get_store),
    config: EngineConfig = Depends(get_engine_config),
) -> RunOrchestrator:
    return RunOrchestrator(store, config)
