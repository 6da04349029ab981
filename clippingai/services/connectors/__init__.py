from __future__ import annotations

from typing import Callable, Dict

from .base import BaseSearchConnector
from .tavily import TavilyConnector
from ...core.config import Settings, get_settings

# New providers register a settings-driven constructor here; the pipeline
# only ever sees BaseSearchConnector.
_CONNECTORS: Dict[str, Callable[[Settings], BaseSearchConnector]] = {
    "tavily": TavilyConnector.from_settings,
}


def get_search_connector(settings: Settings | None = None) -> BaseSearchConnector:
    settings = settings or get_settings()
    name = (settings.SEARCH_PROVIDER or "tavily").strip().lower()
    factory = _CONNECTORS.get(name)
    if factory is None:
        raise RuntimeError(
            f"Unknown SEARCH_PROVIDER '{name}'. Available: {', '.join(sorted(_CONNECTORS))}"
        )
    return factory(settings)


__all__ = ["BaseSearchConnector", "TavilyConnector", "get_search_connector"]
