"""
Enrichment source registry.

Maps the source names used in configuration to factories, and builds the
registered source list the orchestrator iterates.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx

from ..models import EnrichmentConfig, EnrichmentSourceConfig
from .base import EnrichmentSource, RegisteredSource
from .sources import LocalCatalogSource, WikipediaSource

logger = logging.getLogger(__name__)


@dataclass
class SourceEnvironment:
    """Shared settings handed to every source factory."""

    data_dir: Optional[Path] = None
    user_agent: str = "device-lens"
    timeout_seconds: float = 10.0
    client: Optional[httpx.AsyncClient] = None


SourceFactory = Callable[[EnrichmentSourceConfig, SourceEnvironment], EnrichmentSource]


def _build_local(config: EnrichmentSourceConfig, env: SourceEnvironment) -> EnrichmentSource:
    path = config.options.get("path")
    if path:
        return LocalCatalogSource(Path(path).expanduser(), name=config.name)
    if env.data_dir is not None and (env.data_dir / "catalog.yaml").exists():
        return LocalCatalogSource(env.data_dir / "catalog.yaml", name=config.name)
    return LocalCatalogSource(name=config.name)


def _build_wikipedia(config: EnrichmentSourceConfig, env: SourceEnvironment) -> EnrichmentSource:
    return WikipediaSource(
        timeout=env.timeout_seconds,
        user_agent=env.user_agent,
        client=env.client,
        name=config.name,
    )


SOURCE_FACTORIES: dict[str, SourceFactory] = {
    "local": _build_local,
    "wikipedia": _build_wikipedia,
}


def register_source_factory(kind: str, factory: SourceFactory) -> None:
    """Make a new source kind available to configuration."""
    SOURCE_FACTORIES[kind] = factory


def build_sources(config: EnrichmentConfig, env: SourceEnvironment) -> list[RegisteredSource]:
    """Instantiate every configured source; unknown kinds are skipped with a warning.

    A source entry may set options.kind to reuse a factory under another name.
    """
    registered: list[RegisteredSource] = []
    for source_config in config.sources:
        kind = source_config.options.get("kind", source_config.name)
        factory = SOURCE_FACTORIES.get(kind)
        if factory is None:
            logger.warning(f"Unknown enrichment source {kind!r}, skipping")
            continue

        source = factory(source_config, env)
        registered.append(
            RegisteredSource(source=source, priority=source_config.priority, enabled=source_config.enabled)
        )
        logger.info(f"Registered {source.name} source (priority {source_config.priority})")

    return sorted(registered, key=lambda r: r.priority)
