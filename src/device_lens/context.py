"""
Application context.

Builds every cache and collaborator once from the configuration and owns them
until shutdown. Operations receive the context explicitly instead of reaching
for module-level state.
"""

from __future__ import annotations
import logging
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

import httpx

from .config_manager import default_data_dir
from .device_cache import DeviceInfoCache, DeviceProber
from .enrichment import EnrichmentOrchestrator, RegisteredSource, build_sources
from .enrichment.registry import SourceEnvironment
from .errors import DataDirectoryError
from .id_database import DEFINITION_FILENAMES, IdDatabaseHandle, load_database
from .image_cache import HttpImageSource, ImageCache, ImageSource
from .models import AppConfig, BusKind
from .probe import UdevDeviceProber
from .updater import DatabaseUpdater, DefinitionSource, HttpDefinitionSource

logger = logging.getLogger(__name__)

MB = 1024 * 1024
SECONDS_PER_DAY = 24 * 60 * 60


def ensure_data_dir(path: Path) -> Path:
    """Create path if needed and check that it is writable.

    Raises:
        DataDirectoryError: if the directory cannot be created or written
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile(dir=path):
            pass
    except OSError as e:
        raise DataDirectoryError(f"Data directory {path} is not usable: {e}") from e
    return path


class DeviceLensContext:
    """Owns the ID databases, the caches and their remote collaborators.

    Layout of the data directory:
        hwids/usb.ids, hwids/pci.ids   downloaded definitions
        device_info/                   one record per device key
        images/                        image files plus index.json
        enrichment/                    one directory per device, one file per source

    If the data directory cannot be used, the context still starts with
    persistent=False: device and enrichment caches live in memory and images
    go to a temporary directory removed on close.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        data_dir: Optional[Path] = None,
        prober: Optional[DeviceProber] = None,
        definition_source: Optional[DefinitionSource] = None,
        image_source: Optional[ImageSource] = None,
        enrichment_sources: Optional[list[RegisteredSource]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or AppConfig()
        cfg = self.config

        requested = data_dir or (Path(cfg.data_dir).expanduser() if cfg.data_dir else default_data_dir())
        try:
            self.data_dir: Optional[Path] = ensure_data_dir(requested)
            self.persistent = True
        except DataDirectoryError as e:
            logger.error(f"{e}; running with in-memory caches only")
            self.data_dir = None
            self.persistent = False

        hwids_dir = self._subdir("hwids")
        self.id_handles = {
            kind: IdDatabaseHandle(
                load_database(kind, hwids_dir / DEFINITION_FILENAMES[kind] if hwids_dir else None)
            )
            for kind in BusKind
        }

        self.definition_source = definition_source or HttpDefinitionSource(
            urls={BusKind.USB: cfg.hwids.usb_url, BusKind.PCI: cfg.hwids.pci_url},
            timeout=cfg.hwids.timeout_seconds,
            user_agent=cfg.user_agent,
            client=http_client,
        )
        self.updater = DatabaseUpdater(
            hwids_dir,
            self.id_handles,
            self.definition_source,
            staleness_days=cfg.hwids.staleness_days,
            timeout_seconds=cfg.hwids.timeout_seconds,
        )

        self.prober = prober or UdevDeviceProber(id_handles=self.id_handles)
        self.device_cache = DeviceInfoCache(
            self._subdir("device_info"),
            self.prober,
            default_ttl=cfg.device_cache.ttl_hours * 60 * 60,
            probe_timeout=cfg.device_cache.probe_timeout_seconds,
            clock=clock,
        )

        self._scratch_dir: Optional[Path] = None
        images_dir = self._subdir("images")
        if images_dir is None:
            self._scratch_dir = Path(tempfile.mkdtemp(prefix="device-lens-images-"))
            images_dir = self._scratch_dir
        self.image_source = image_source or HttpImageSource(
            url_template=cfg.image_cache.url_template,
            timeout=cfg.image_cache.timeout_seconds,
            user_agent=cfg.user_agent,
            client=http_client,
        )
        self.image_cache = ImageCache(
            images_dir,
            self.image_source,
            max_total_bytes=int(cfg.image_cache.max_total_mb * MB),
            max_image_bytes=int(cfg.image_cache.max_image_mb * MB),
            max_age_seconds=cfg.image_cache.max_age_days * SECONDS_PER_DAY,
            timeout_seconds=cfg.image_cache.timeout_seconds,
            thumbnail_size=cfg.image_cache.thumbnail_size,
            clock=clock,
        )

        if enrichment_sources is None:
            enrichment_sources = build_sources(
                cfg.enrichment,
                SourceEnvironment(
                    data_dir=self.data_dir,
                    user_agent=cfg.user_agent,
                    timeout_seconds=cfg.enrichment.timeout_seconds,
                    client=http_client,
                ),
            )
        self.enrichment = EnrichmentOrchestrator(
            self._subdir("enrichment"),
            enrichment_sources,
            ttl_seconds=cfg.enrichment.ttl_days * SECONDS_PER_DAY,
            timeout_seconds=cfg.enrichment.timeout_seconds,
            clock=clock,
        )

        logger.info(
            f"device-lens context ready (data_dir={self.data_dir}, persistent={self.persistent}, "
            f"{len(enrichment_sources)} enrichment sources)"
        )

    def _subdir(self, name: str) -> Optional[Path]:
        if self.data_dir is None:
            return None
        return self.data_dir / name

    async def aclose(self) -> None:
        """Release HTTP clients and remove the scratch image directory."""
        closeables = [self.definition_source, self.image_source]
        closeables.extend(registered.source for registered in self.enrichment.sources)
        for resource in closeables:
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()

        if self._scratch_dir is not None:
            shutil.rmtree(self._scratch_dir, ignore_errors=True)
            self._scratch_dir = None
        logger.info("device-lens context closed")

    async def __aenter__(self) -> DeviceLensContext:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
