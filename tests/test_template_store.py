from __future__ import annotations

import json

import pytest

from app.services import template_store
from app.services.template_store import intent_templates, render_template, render_text


def test_connector_system_prompts_render_without_values():
    for key in ("perplexity_system", "chatgpt_system", "claude_system"):
        prompt = render_template(f"connectors.{key}")
        assert "https://" in prompt


def test_intent_templates_return_query_and_reason():
    brand = intent_templates("brand")
    assert len(brand) == 5
    assert all("query" in item and "reason" in item for item in brand)
    assert render_text(brand[0]["query"], brand="Acme") == "What is Acme?"


def test_render_text_reports_missing_value_with_key():
    with pytest.raises(KeyError, match="location"):
        render_text("Best $category in $location", key="intents.local", category="cafes")


def test_render_template_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_template("missing.template.key")


def test_render_template_rejects_non_string_entries():
    with pytest.raises(TypeError):
        render_template("intents.brand")


def test_catalog_reloads_when_file_changes(monkeypatch, tmp_path):
    catalog = tmp_path / "templates.json"
    catalog.write_text(json.dumps({"connectors": {"x": "first $name"}}), encoding="utf-8")
    monkeypatch.setattr(template_store, "TEMPLATES_PATH", catalog)
    template_store.clear_template_cache()

    try:
        assert render_template("connectors.x", name="a") == "first a"
        catalog.write_text(json.dumps({"connectors": {"x": "second $name"}}), encoding="utf-8")
        template_store.clear_template_cache()
        assert render_template("connectors.x", name="b") == "second b"
    finally:
        template_store.clear_template_cache()
