"""Device enrichment from pluggable external sources."""

from .base import EnrichmentSource, RegisteredSource
from .orchestrator import EnrichmentOrchestrator, merge_payloads
from .registry import build_sources

__all__ = [
    "EnrichmentOrchestrator",
    "EnrichmentSource",
    "RegisteredSource",
    "build_sources",
    "merge_payloads",
]
