from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.models.visibility import ConnectorResult, SourceRef
from app.services import result_cache
from app.services.result_cache import ResultCache, cache_key


def _result() -> ConnectorResult:
    return ConnectorResult(
        answer="Example is a tool.",
        sources=[SourceRef(url="https://example.com/", title="Example")],
        raw='{"ok": true}',
    )


def test_cache_key_normalizes_query_whitespace_and_case():
    assert cache_key("perplexity", "Example.com", "What is  Example?") == cache_key(
        "perplexity", "example.com", "what is example?"
    )
    assert cache_key("perplexity", "example.com", "q").startswith("vi:perplexity:example.com:")
    assert cache_key("claude", "example.com", "q") != cache_key("perplexity", "example.com", "q")


def test_cache_round_trip_within_ttl(tmp_path):
    cache = ResultCache(str(tmp_path), ttl_seconds=3600)
    cache.save("perplexity", "example.com", "What is Example?", _result())

    cached = cache.load("perplexity", "example.com", "what is example?")
    assert cached is not None
    assert cached.answer == "Example is a tool."
    assert cached.sources[0].url == "https://example.com/"
    assert cached.error is None


def test_cache_entry_expires_after_ttl(monkeypatch, tmp_path):
    cache = ResultCache(str(tmp_path), ttl_seconds=60)
    start = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
    monkeypatch.setattr(result_cache, "_utc_now", lambda: start)
    cache.save("claude", "example.com", "q", _result())

    monkeypatch.setattr(result_cache, "_utc_now", lambda: start + timedelta(seconds=59))
    assert cache.load("claude", "example.com", "q") is not None

    monkeypatch.setattr(result_cache, "_utc_now", lambda: start + timedelta(seconds=61))
    assert cache.load("claude", "example.com", "q") is None


def test_failed_and_empty_results_are_not_cached(tmp_path):
    cache = ResultCache(str(tmp_path), ttl_seconds=3600)
    cache.save("perplexity", "example.com", "q1", ConnectorResult.failed("perplexity", "timeout"))
    cache.save("perplexity", "example.com", "q2", ConnectorResult())

    assert cache.load("perplexity", "example.com", "q1") is None
    assert cache.load("perplexity", "example.com", "q2") is None
    assert list(tmp_path.iterdir()) == []


def test_disabled_cache_is_a_no_op(tmp_path):
    cache = ResultCache(str(tmp_path), ttl_seconds=3600, enabled=False)
    cache.save("perplexity", "example.com", "q", _result())
    assert cache.load("perplexity", "example.com", "q") is None
    assert list(tmp_path.iterdir()) == []


def test_corrupt_entry_is_a_miss(tmp_path):
    cache = ResultCache(str(tmp_path), ttl_seconds=3600)
    path = cache.path_for("perplexity", "example.com", "q")
    path.write_text("{not json", encoding="utf-8")
    assert cache.load("perplexity", "example.com", "q") is None
