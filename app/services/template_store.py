from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any


TEMPLATES_PATH = Path(__file__).resolve().parents[1] / "prompts" / "templates.json"
_catalog_cache: dict[str, Any] | None = None
_catalog_mtime_ns: int | None = None


def _load_catalog() -> dict[str, Any]:
    global _catalog_cache, _catalog_mtime_ns
    mtime_ns = TEMPLATES_PATH.stat().st_mtime_ns
    if _catalog_cache is not None and _catalog_mtime_ns == mtime_ns:
        return _catalog_cache

    payload = json.loads(TEMPLATES_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Template catalog must be a JSON object.")
    _catalog_cache = payload
    _catalog_mtime_ns = mtime_ns
    return payload


def get_entry(key: str) -> Any:
    node: Any = _load_catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Template key not found: {key}")
        node = node[part]
    return node


def render_template(key: str, **values: Any) -> str:
    entry = get_entry(key)
    if not isinstance(entry, str):
        raise TypeError(f"Template key must map to a string: {key}")
    return render_text(entry, key=key, **values)


def render_text(text: str, *, key: str = "<inline>", **values: Any) -> str:
    try:
        return Template(text).substitute(**values)
    except KeyError as exc:
        missing = str(exc.args[0])
        raise KeyError(f"Missing template value '{missing}' for template '{key}'") from exc


def intent_templates(category: str) -> list[dict[str, str]]:
    """Query templates for one intent category as ``{"query", "reason"}`` dicts."""
    entry = get_entry(f"intents.{category}")
    if not isinstance(entry, list):
        raise TypeError(f"Intent templates must be a list: {category}")
    return [item for item in entry if isinstance(item, dict) and isinstance(item.get("query"), str)]


def clear_template_cache() -> None:
    global _catalog_cache, _catalog_mtime_ns
    _catalog_cache = None
    _catalog_mtime_ns = None
