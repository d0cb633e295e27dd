from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import httpx
from loguru import logger

from app.config import EngineConfig
from app.models.visibility import ConnectorResult, SourceRef
from app.services import url_validator
from app.services.citations import extract_sources
from app.services.logger import log_connector_call


@dataclass(slots=True)
class Completion:
    answer: str
    sources: list[SourceRef] = field(default_factory=list)
    raw: str = ""


class AssistantConnector:
    """Uniform ``ask(query)`` contract over one assistant provider.

    Subclasses implement ``_complete``; this class applies the shared timeout,
    turns any provider failure into an empty result, merges structured and
    text-parsed citations and runs them through the URL validator.
    """

    source: str = ""

    def __init__(self, config: EngineConfig, brand_hosts: list[str] | None = None):
        self.config = config
        self.brand_hosts = list(brand_hosts or [])

    @property
    def api_key(self) -> str:
        return self.config.api_keys.get(self.source, "")

    @property
    def model(self) -> str:
        return ""

    async def _complete(self, query: str) -> Completion:
        raise NotImplementedError

    async def ask(self, query: str) -> ConnectorResult:
        started = time.perf_counter()
        timeout_s = self.config.connector_timeout_s
        try:
            completion = await asyncio.wait_for(self._complete(query), timeout=timeout_s)
        except asyncio.TimeoutError:
            return self._failed(query, started, "timeout", timeout_s=timeout_s)
        except httpx.HTTPStatusError as exc:
            return self._failed(
                query, started, f"http_{exc.response.status_code}", body=exc.response.text[:500]
            )
        except Exception as exc:
            # SDK errors, malformed payloads and transport failures alike.
            return self._failed(query, started, type(exc).__name__, message=str(exc)[:500])

        sources = extract_sources(completion.answer, completion.sources)
        if sources and self.config.validate_citations:
            accepted = set(
                await url_validator.validate_urls(
                    [s.url for s in sources],
                    self.brand_hosts,
                    budget_s=self.config.validate_budget_s,
                    concurrency=self.config.validate_concurrency,
                )
            )
            sources = [s for s in sources if s.url in accepted]

        log_connector_call(
            source=self.source,
            model=self.model,
            query=query,
            duration_ms=int((time.perf_counter() - started) * 1000),
            citations=len(sources),
        )
        return ConnectorResult(answer=completion.answer, sources=sources, raw=completion.raw)

    def _failed(self, query: str, started: float, error: str, **details) -> ConnectorResult:
        log_connector_call(
            source=self.source,
            model=self.model,
            query=query,
            duration_ms=int((time.perf_counter() - started) * 1000),
            status="error",
            error=error,
        )
        logger.debug(f"{self.source} failure details: {details}")
        return ConnectorResult.failed(self.source, error, **details)
