from __future__ import annotations

import json
from typing import Any

import httpx

from app.models.visibility import SourceRef
from app.services.citations import sources_from_structured
from app.services.template_store import render_template
from app.tools.connector_base import AssistantConnector, Completion


class PerplexityConnector(AssistantConnector):
    source = "perplexity"

    def __init__(self, *args: Any, client: httpx.AsyncClient | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._client = client

    @property
    def model(self) -> str:
        return self.config.perplexity_model

    async def _complete(self, query: str) -> Completion:
        if not self.api_key:
            raise RuntimeError("PERPLEXITY_API_KEY is not configured")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": render_template("connectors.perplexity_system")},
                {"role": "user", "content": query},
            ],
            "temperature": 0.2,
            "max_tokens": 800,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        url = f"{self.config.perplexity_base_url.rstrip('/')}/chat/completions"

        if self._client is not None:
            response = await self._client.post(url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.config.connector_timeout_s) as client:
                response = await client.post(url, json=body, headers=headers)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Perplexity returned a non-object payload")

        return Completion(
            answer=_answer_text(payload),
            sources=_structured_sources(payload),
            raw=json.dumps(payload, ensure_ascii=True)[:20000],
        )


def _answer_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    return content if isinstance(content, str) else ""


def _structured_sources(payload: dict[str, Any]) -> list[SourceRef]:
    """Citations can sit on the message, the top level, or in ``search_results``."""
    refs: list[SourceRef] = []
    choices = payload.get("choices") or []
    if choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        if isinstance(message, dict):
            refs.extend(sources_from_structured(message.get("citations")))
    refs.extend(sources_from_structured(payload.get("citations")))
    refs.extend(sources_from_structured(payload.get("search_results")))
    return refs
