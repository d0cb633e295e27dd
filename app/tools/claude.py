from __future__ import annotations

import json
from typing import Any

import anthropic

from app.models.visibility import SourceRef
from app.services.template_store import render_template
from app.tools.connector_base import AssistantConnector, Completion


class ClaudeConnector(AssistantConnector):
    source = "claude"

    def __init__(self, *args: Any, client: Any | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._client = client

    @property
    def model(self) -> str:
        return self.config.claude_model

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise RuntimeError("ANTHROPIC_API_KEY is not configured")
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.config.connector_timeout_s,
                max_retries=0,
            )
        return self._client

    async def _complete(self, query: str) -> Completion:
        response = await self._get_client().messages.create(
            model=self.model,
            max_tokens=self.config.claude_max_tokens,
            system=render_template("connectors.claude_system"),
            messages=[{"role": "user", "content": query}],
        )

        texts: list[str] = []
        sources: list[SourceRef] = []
        for block in getattr(response, "content", None) or []:
            if getattr(block, "type", None) != "text":
                continue
            texts.append(getattr(block, "text", "") or "")
            for cite in getattr(block, "citations", None) or []:
                url = getattr(cite, "url", None)
                if isinstance(url, str) and url:
                    sources.append(
                        SourceRef(
                            url=url,
                            title=getattr(cite, "title", None),
                            snippet=getattr(cite, "cited_text", None),
                        )
                    )

        answer = "".join(texts)
        raw = json.dumps(
            {
                "model": self.model,
                "stop_reason": getattr(response, "stop_reason", None),
                "content": answer,
            },
            ensure_ascii=True,
        )
        return Completion(answer=answer, sources=sources, raw=raw)
