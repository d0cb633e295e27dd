from __future__ import annotations

import json
from typing import Any

from openai import AsyncOpenAI

from app.services.citations import StructuredPayload, decode_payload
from app.services.template_store import render_template
from app.tools.connector_base import AssistantConnector, Completion

RESPONSE_SCHEMA: dict[str, Any] = {
    "name": "answer_with_citations",
    "strict": True,
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "required": ["answer", "citations"],
        "properties": {
            "answer": {"type": "string"},
            "citations": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "required": ["title", "url"],
                    "properties": {
                        "title": {"type": "string"},
                        "url": {"type": "string"},
                    },
                },
            },
        },
    },
}


class ChatGPTSearchConnector(AssistantConnector):
    source = "chatgpt_search"

    def __init__(self, *args: Any, client: Any | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._client = client

    @property
    def model(self) -> str:
        return self.config.openai_model

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise RuntimeError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                timeout=self.config.connector_timeout_s,
                max_retries=0,
            )
        return self._client

    async def _complete(self, query: str) -> Completion:
        response = await self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": render_template("connectors.chatgpt_system")},
                {"role": "user", "content": query},
            ],
            response_format={"type": "json_schema", "json_schema": RESPONSE_SCHEMA},
            temperature=0.2,
        )
        choices = getattr(response, "choices", None) or []
        content = ""
        if choices:
            message = getattr(choices[0], "message", None)
            content = getattr(message, "content", None) or ""

        raw = json.dumps({"model": self.model, "content": content}, ensure_ascii=True)
        payload = decode_payload(content)
        if isinstance(payload, StructuredPayload):
            return Completion(answer=payload.answer, sources=payload.sources, raw=raw)
        # Schema ignored: fall back to parsing the free text.
        return Completion(answer=payload.text, raw=raw)
