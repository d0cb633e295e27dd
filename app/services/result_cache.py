from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from hashlib import sha256
from pathlib import Path

from loguru import logger

from app.models.visibility import ConnectorResult

CACHE_VERSION = 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _query_hash(query: str) -> str:
    normalized = " ".join(query.split()).lower()
    return sha256(normalized.encode("utf-8")).hexdigest()


def cache_key(provider: str, etld1: str, query: str) -> str:
    return f"vi:{provider}:{etld1.lower()}:{_query_hash(query)}"


class ResultCache:
    """File-backed TTL cache of connector results.

    Entries are best effort: unreadable, expired or empty files are misses.
    """

    def __init__(self, cache_dir: str, ttl_seconds: int, *, enabled: bool = True):
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = max(int(ttl_seconds), 0)
        self.enabled = enabled

    def path_for(self, provider: str, etld1: str, query: str) -> Path:
        material = f"v{CACHE_VERSION}|{cache_key(provider, etld1, query)}"
        return self.cache_dir / f"{sha256(material.encode('utf-8')).hexdigest()}.json"

    def load(self, provider: str, etld1: str, query: str) -> ConnectorResult | None:
        if not self.enabled or self.ttl_seconds == 0:
            return None

        path = self.path_for(provider, etld1, query)
        if not path.exists():
            return None

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict):
            return None

        fetched_at_raw = payload.get("fetched_at")
        if not isinstance(fetched_at_raw, str):
            return None
        try:
            fetched_at = datetime.fromisoformat(fetched_at_raw)
        except ValueError:
            return None
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)

        if _utc_now() > fetched_at + timedelta(seconds=self.ttl_seconds):
            return None

        result = payload.get("result")
        if not isinstance(result, dict):
            return None
        cached = ConnectorResult.from_dict(result)
        if not cached.answer and not cached.sources:
            return None
        return cached

    def save(self, provider: str, etld1: str, query: str, result: ConnectorResult) -> None:
        if not self.enabled or self.ttl_seconds == 0:
            return
        if result.error or (not result.answer and not result.sources):
            return

        path = self.path_for(provider, etld1, query)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = {
                "version": CACHE_VERSION,
                "key": cache_key(provider, etld1, query),
                "fetched_at": _utc_now().isoformat(),
                "result": result.to_dict(),
            }
            path.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Result cache write failed for {provider}/{etld1}: {exc}")
