"""
Enrichment source interface.

A source is anything with a name and an async query(identity) returning a
payload dict. supports(identity) is optional; sources without it are queried
for every device.

Keep the interface narrow so sources are easy to fake in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from ..models import DeviceIdentity, SourceDescriptor


class EnrichmentSource(Protocol):
    """Enrichment source interface."""

    name: str

    async def query(self, identity: DeviceIdentity) -> dict[str, Any]:
        """Return a payload for identity; raise if nothing usable was found."""


@dataclass(frozen=True)
class RegisteredSource:
    """A source plus the configuration the orchestrator needs to schedule it."""

    source: EnrichmentSource
    priority: int = 50
    enabled: bool = True

    @property
    def name(self) -> str:
        return self.source.name

    def supports(self, identity: DeviceIdentity) -> bool:
        check = getattr(self.source, "supports", None)
        if check is None:
            return True
        return bool(check(identity))

    def describe(self) -> SourceDescriptor:
        return SourceDescriptor(name=self.name, enabled=self.enabled, priority=self.priority)
