from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# --- Requests ---


class RunRequest(BaseModel):
    audit_id: str
    mode: str = "on_demand"
    sources: list[str] | None = None
    max_intents: int | None = Field(default=None, ge=1, le=500)
    regenerate_intents: bool = False


class GenerateIntentsRequest(BaseModel):
    project_id: str
    domain: str
    max_intents: int | None = Field(default=None, ge=1, le=500)
    site_description: str | None = None


# --- Responses ---


class RunResponse(BaseModel):
    run_id: str
    status: str
    domain: str
    intents: int
    reused: bool = False


class IntentPreview(BaseModel):
    id: str
    intent_type: str
    query: str
    weight: float
    kind: str
    prompt_reason: str


class GenerateIntentsResponse(BaseModel):
    success: bool
    intents_count: int
    intents: list[IntentPreview]


class HealthResponse(BaseModel):
    status: str
    runs_24h: int
    by_status: dict[str, int]
    success_rate: float
    sources_enabled: list[str] = []
    timestamp: str


class ErrorResponse(BaseModel):
    error: str
    details: Any | None = None
