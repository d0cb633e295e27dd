from __future__ import annotations

from loguru import logger

from app.config import EngineConfig
from app.tools.chatgpt_search import ChatGPTSearchConnector
from app.tools.claude import ClaudeConnector
from app.tools.connector_base import AssistantConnector
from app.tools.perplexity import PerplexityConnector

CONNECTORS: dict[str, type[AssistantConnector]] = {
    PerplexityConnector.source: PerplexityConnector,
    ChatGPTSearchConnector.source: ChatGPTSearchConnector,
    ClaudeConnector.source: ClaudeConnector,
}


def available_sources(config: EngineConfig) -> list[str]:
    return [source for source in CONNECTORS if config.provider_enabled(source)]


def get_enabled_connector(
    source: str,
    config: EngineConfig,
    brand_hosts: list[str] | None = None,
) -> AssistantConnector | None:
    """Connector for ``source``, or None when it is unknown, flagged off or has no key."""
    connector_cls = CONNECTORS.get(source)
    if connector_cls is None:
        logger.warning(f"Unknown visibility source: {source}")
        return None
    if not config.provider_enabled(source):
        logger.info(f"Visibility source disabled: {source}")
        return None
    return connector_cls(config, brand_hosts)
