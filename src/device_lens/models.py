"""
Pydantic models for hardware identities, cache records and results.

Defines the data structures passed between the caches, the command layer and
the HTTP API, plus the application configuration schema.
"""

from __future__ import annotations
import time
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator


def normalize_code(value: Union[str, int, None]) -> Optional[str]:
    """Normalise a 16-bit hardware ID to 4 lower-case hex digits.

    Accepts "046D", "0x046d", "46d" or 0x046D. Returns None for anything
    that is not a valid 16-bit hex identifier.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        if 0 <= value <= 0xFFFF:
            return f"{value:04x}"
        return None

    text = str(value).strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if not text or len(text) > 4:
        return None
    try:
        int(text, 16)
    except ValueError:
        return None
    return text.zfill(4)


class BusKind(str, Enum):
    """Hardware ID namespaces. Each has its own independent database."""
    USB = "usb"
    PCI = "pci"


class HardwareIdEntry(BaseModel):
    """A single vendor or product definition."""

    code: str = Field(description="4-digit lower-case hex identifier")
    name: str


class DeviceIdentity(BaseModel):
    """Identifies a physical device for caching and enrichment."""

    bus: BusKind = Field(default=BusKind.USB)
    vendor_id: str = Field(description="Vendor ID in hex e.g. '046d'")
    product_id: str = Field(description="Product or PCI device ID in hex e.g. 'c52b'")

    # Disambiguation between identical models
    serial: Optional[str] = Field(default=None, description="Serial number")
    location: Optional[str] = Field(default=None, description="Port path or PCI slot e.g. '5-1.2'")

    # Human-readable hints, usually filled from the ID database
    manufacturer: Optional[str] = Field(default=None)
    model: Optional[str] = Field(default=None)
    device_type: Optional[str] = Field(default=None, description="Category e.g. 'mouse', 'gpu'")

    @field_validator("vendor_id", "product_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> str:
        code = normalize_code(value)
        if code is None:
            raise ValueError(f"Not a 16-bit hex identifier: {value!r}")
        return code

    @property
    def device_key(self) -> str:
        """Stable key for this device: bus, IDs, then serial or location."""
        key = f"{self.bus.value}:{self.vendor_id}:{self.product_id}"
        if self.serial:
            return f"{key}:sn={self.serial}"
        if self.location:
            return f"{key}:at={self.location}"
        return key


class IdLookup(BaseModel):
    """Names resolved for a vendor/product pair; either may be missing."""

    bus: BusKind
    vendor_id: str
    product_id: Optional[str] = None
    vendor_name: Optional[str] = None
    product_name: Optional[str] = None


class UpdateResult(BaseModel):
    """Outcome of one hardware-ID database update attempt."""

    updated: bool = False
    usb_updated: bool = False
    pci_updated: bool = False
    usb_entries: int = 0
    pci_entries: int = 0
    error: Optional[str] = None


class CachedDeviceRecord(BaseModel):
    """Deep device metadata held by the device info cache."""

    device_key: str
    deep_info: dict[str, Any] = Field(default_factory=dict)
    fetched_at: float = Field(default_factory=time.time)
    ttl: float = Field(description="Seconds the record stays live after fetched_at")

    @property
    def expires_at(self) -> float:
        return self.fetched_at + self.ttl

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


class ImageCacheEntry(BaseModel):
    """Index entry for one cached image file."""

    cache_key: str
    file_path: str
    fetched_at: float = Field(default_factory=time.time)
    size_bytes: int = 0
    source_url: Optional[str] = None
    content_type: Optional[str] = None
    thumbnail_path: Optional[str] = None
    thumbnail_bytes: int = 0


class ImageFetchResult(BaseModel):
    """Image fetch outcome as returned to the GUI."""

    cache_key: str
    file_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    is_cached: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.file_path is not None and self.error is None


class EnrichmentResult(BaseModel):
    """One source's payload for one device."""

    device_key: str
    source_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    fetched_at: float = Field(default_factory=time.time)
    ttl: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.fetched_at + self.ttl


class SourceState(str, Enum):
    """Per-source outcome of an enrichment call."""
    OK = "ok"
    CACHED = "cached"
    TIMEOUT = "timeout"
    ERROR = "error"
    UNSUPPORTED = "unsupported"


class SourceStatus(BaseModel):
    name: str
    status: SourceState
    error: Optional[str] = None
    elapsed_ms: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (SourceState.OK, SourceState.CACHED)


class SourceDescriptor(BaseModel):
    name: str
    enabled: bool = True
    priority: int = 50


class EnrichedDevice(BaseModel):
    """Merged enrichment payload plus the status of every source consulted."""

    device_key: str
    identity: Optional[DeviceIdentity] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    sources: list[SourceStatus] = Field(default_factory=list)
    fetched_at: float = Field(default_factory=time.time)

    @property
    def summary(self) -> str:
        """e.g. '3 of 4 sources succeeded'."""
        ok = sum(1 for s in self.sources if s.succeeded)
        return f"{ok} of {len(self.sources)} sources succeeded"

    def status_for(self, name: str) -> Optional[SourceStatus]:
        for status in self.sources:
            if status.name == name:
                return status
        return None


class CleanupCounts(BaseModel):
    removed: int = 0
    retained: int = 0


class DeviceCacheStats(BaseModel):
    entry_count: int = 0
    expired_count: int = 0
    valid_count: int = 0
    total_size_estimate: int = Field(default=0, description="Approximate bytes of serialized records")


class ImageCacheStats(BaseModel):
    entry_count: int = 0
    total_bytes: int = 0
    hits: int = 0
    misses: int = 0
    downloads: int = 0
    download_failures: int = 0
    cache_dir: Optional[str] = None


class IdDatabaseStats(BaseModel):
    kind: BusKind
    vendors: int = 0
    products: int = 0
    skipped_lines: int = 0
    source_version: str = ""
    loaded_at: float = 0.0


class HardwareIdsStatus(BaseModel):
    """State of one ID database as shown in the settings view."""

    kind: BusKind
    database: IdDatabaseStats
    needs_update: bool = False
    last_updated: Optional[float] = Field(default=None, description="mtime of the downloaded file")


class DeviceDatabaseStats(BaseModel):
    """Combined view returned by get_device_database_stats."""

    device_cache: DeviceCacheStats
    usb: IdDatabaseStats
    pci: IdDatabaseStats
    persistent: bool = True


class ServiceInfo(BaseModel):
    """An OS service as reported by a platform collaborator. Passed through unchanged."""

    name: str
    display_name: str
    status: str = Field(description="Running, Stopped, StartPending, StopPending")
    startup_type: str = Field(description="Automatic, Manual, Disabled")
    description: Optional[str] = None
    binary_path: Optional[str] = None
    service_account: Optional[str] = None
    pid: Optional[int] = None


class ServiceSummary(BaseModel):
    total: int = 0
    running: int = 0
    stopped: int = 0
    start_pending: int = 0
    stop_pending: int = 0


# Configuration


class HwidsConfig(BaseModel):
    """Hardware-ID database refresh policy."""

    staleness_days: float = Field(default=30.0)
    timeout_seconds: float = Field(default=60.0)
    usb_url: str = Field(default="http://www.linux-usb.org/usb.ids")
    pci_url: str = Field(default="https://pci-ids.ucw.cz/v2.2/pci.ids")


class DeviceCacheConfig(BaseModel):
    ttl_hours: float = Field(default=168.0)
    probe_timeout_seconds: float = Field(default=30.0)


class ImageCacheConfig(BaseModel):
    max_total_mb: float = Field(default=500.0)
    max_age_days: float = Field(default=90.0)
    max_image_mb: float = Field(default=10.0)
    thumbnail_size: int = Field(default=128, description="Longest edge of generated thumbnails in pixels")
    timeout_seconds: float = Field(default=30.0)
    url_template: Optional[str] = Field(
        default=None,
        description="e.g. 'https://images.example/{bus}/{vendor_id}/{product_id}.png'",
    )


class EnrichmentSourceConfig(BaseModel):
    name: str
    enabled: bool = True
    priority: int = 50
    options: dict[str, Any] = Field(default_factory=dict)


class EnrichmentConfig(BaseModel):
    ttl_days: float = Field(default=30.0)
    timeout_seconds: float = Field(default=10.0)
    sources: list[EnrichmentSourceConfig] = Field(
        default_factory=lambda: [
            EnrichmentSourceConfig(name="local", priority=10),
            EnrichmentSourceConfig(name="wikipedia", priority=50),
        ]
    )


class AppConfig(BaseModel):
    """Application configuration."""

    port: int = Field(default=8080)
    host: str = Field(default="127.0.0.1")
    data_dir: Optional[str] = Field(default=None, description="Writable root for all caches")
    user_agent: str = Field(default="device-lens/0.1 (hardware info cache)")
    hwids: HwidsConfig = Field(default_factory=HwidsConfig)
    device_cache: DeviceCacheConfig = Field(default_factory=DeviceCacheConfig)
    image_cache: ImageCacheConfig = Field(default_factory=ImageCacheConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
