"""
GUI-facing operations.

One function per operation the GUI shell can invoke, each taking the
DeviceLensContext first. Failures of network-bound work are turned into result
objects here; the HTTP layer only maps "not found" and bad input.
"""

from __future__ import annotations
import logging
from typing import Awaitable, Optional, Union

from .context import DeviceLensContext
from .errors import DeviceLensError
from .image_cache import cache_key, cache_key_for_url, device_cache_key, validate_cache_key
from .models import (
    BusKind,
    CachedDeviceRecord,
    CleanupCounts,
    DeviceDatabaseStats,
    DeviceIdentity,
    EnrichedDevice,
    HardwareIdEntry,
    HardwareIdsStatus,
    IdLookup,
    ImageCacheEntry,
    ImageCacheStats,
    ImageFetchResult,
    ServiceInfo,
    ServiceSummary,
    SourceDescriptor,
    UpdateResult,
    normalize_code,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
MB = 1024 * 1024

Code = Union[str, int]


# Hardware IDs


def _lookup(ctx: DeviceLensContext, bus: BusKind, vendor_id: Code, product_id: Optional[Code]) -> IdLookup:
    database = ctx.id_handles[bus].current
    vendor = normalize_code(vendor_id)
    product = normalize_code(product_id) if product_id is not None else None
    return IdLookup(
        bus=bus,
        vendor_id=vendor or str(vendor_id),
        product_id=product or (str(product_id) if product_id is not None else None),
        vendor_name=database.lookup_vendor(vendor_id),
        product_name=database.lookup_product(vendor_id, product_id) if product_id is not None else None,
    )


def lookup_usb(ctx: DeviceLensContext, vendor_id: Code, product_id: Optional[Code] = None) -> IdLookup:
    """Resolve a USB VID (and optionally PID) to names."""
    return _lookup(ctx, BusKind.USB, vendor_id, product_id)


def lookup_pci(ctx: DeviceLensContext, vendor_id: Code, device_id: Optional[Code] = None) -> IdLookup:
    """Resolve a PCI vendor (and optionally device) code to names."""
    return _lookup(ctx, BusKind.PCI, vendor_id, device_id)


def list_vendor_products(ctx: DeviceLensContext, bus: BusKind, vendor_id: Code) -> list[HardwareIdEntry]:
    return ctx.id_handles[bus].current.products_for(vendor_id)


async def update_hardware_ids(
    ctx: DeviceLensContext,
    force: bool = False,
    kind: Optional[BusKind] = None,
) -> UpdateResult:
    """Download fresh ID definitions; without force, fresh databases are skipped."""
    return await ctx.updater.update_databases(kind=kind, force=force)


def hardware_ids_status(ctx: DeviceLensContext) -> list[HardwareIdsStatus]:
    return [
        HardwareIdsStatus(
            kind=kind,
            database=ctx.id_handles[kind].current.stats(),
            needs_update=ctx.updater.needs_update(kind),
            last_updated=ctx.updater.last_modified(kind),
        )
        for kind in BusKind
    ]


def resolve_identity(ctx: DeviceLensContext, identity: DeviceIdentity) -> DeviceIdentity:
    """Fill a missing manufacturer or model from the ID database."""
    if identity.manufacturer and identity.model:
        return identity
    vendor_name, product_name = ctx.id_handles[identity.bus].lookup(identity.vendor_id, identity.product_id)
    return identity.model_copy(
        update={
            "manufacturer": identity.manufacturer or vendor_name,
            "model": identity.model or product_name,
        }
    )


# Device info cache


async def get_device_deep_info(
    ctx: DeviceLensContext,
    device_key: str,
    force_refresh: bool = False,
) -> CachedDeviceRecord:
    """Cached deep info for a device, probing it on a miss.

    Raises:
        DeviceNotFoundError: the prober found no such device
        FetchTimeout: the probe did not finish in time
    """
    return await ctx.device_cache.get_deep_info(device_key, force_refresh=force_refresh)


def search_device_info(ctx: DeviceLensContext, query: str) -> list[CachedDeviceRecord]:
    return list(ctx.device_cache.search(query))


def get_cached_devices(ctx: DeviceLensContext) -> list[CachedDeviceRecord]:
    return ctx.device_cache.all_records()


def clear_device_cache(ctx: DeviceLensContext, device_key: Optional[str] = None) -> int:
    """Clear one device, or every device when no key is given. Returns the count removed."""
    if device_key is None:
        return ctx.device_cache.clear_all()
    return 1 if ctx.device_cache.clear(device_key) else 0


def cleanup_device_cache(ctx: DeviceLensContext) -> CleanupCounts:
    return ctx.device_cache.cleanup()


def get_device_database_stats(ctx: DeviceLensContext) -> DeviceDatabaseStats:
    return DeviceDatabaseStats(
        device_cache=ctx.device_cache.stats(),
        usb=ctx.id_handles[BusKind.USB].current.stats(),
        pci=ctx.id_handles[BusKind.PCI].current.stats(),
        persistent=ctx.persistent,
    )


# Image cache


async def _image_result(ctx: DeviceLensContext, key: str, fetch: Awaitable[ImageCacheEntry]) -> ImageFetchResult:
    was_cached = ctx.image_cache.is_cached(key)
    try:
        entry = await fetch
    except DeviceLensError as e:
        return ImageFetchResult(cache_key=key, error=str(e))
    return ImageFetchResult(
        cache_key=key,
        file_path=entry.file_path,
        thumbnail_path=entry.thumbnail_path,
        is_cached=was_cached,
    )


async def fetch_device_image(ctx: DeviceLensContext, url: str) -> ImageFetchResult:
    """Download an image URL into the cache, keyed by the URL."""
    key = cache_key_for_url(url)
    return await _image_result(ctx, key, ctx.image_cache.fetch_url(url, key=key))


async def fetch_device_image_with_key(ctx: DeviceLensContext, url: str, key: str) -> ImageFetchResult:
    """Download an image URL into the cache under a caller-chosen key.

    Raises:
        InvalidCacheKeyError: if key is not usable as a cache file name
    """
    validate_cache_key(key)
    return await _image_result(ctx, key, ctx.image_cache.fetch_url(url, key=key))


async def fetch_identity_image(
    ctx: DeviceLensContext,
    identity: DeviceIdentity,
    hint: Optional[str] = None,
) -> ImageFetchResult:
    """Fetch the representative image for a device from the configured image source."""
    identity = resolve_identity(ctx, identity)
    key = cache_key(identity, hint)
    return await _image_result(ctx, key, ctx.image_cache.fetch(identity, hint, key=key))


def get_cached_image_path(ctx: DeviceLensContext, key: str) -> Optional[str]:
    path = ctx.image_cache.get_cached_path(key)
    return str(path) if path is not None else None


def get_cached_thumbnail_path(ctx: DeviceLensContext, key: str) -> Optional[str]:
    path = ctx.image_cache.get_thumbnail_path(key)
    return str(path) if path is not None else None


def is_image_cached(ctx: DeviceLensContext, key: str) -> bool:
    return ctx.image_cache.is_cached(key)


def generate_device_image_cache_key(
    ctx: DeviceLensContext,
    device_type: str,
    manufacturer: str,
    model: str,
) -> str:
    return device_cache_key(device_type, manufacturer, model)


def get_image_cache_stats(ctx: DeviceLensContext) -> ImageCacheStats:
    return ctx.image_cache.stats()


def cleanup_image_cache(
    ctx: DeviceLensContext,
    max_age_days: Optional[float] = None,
    max_total_mb: Optional[float] = None,
) -> CleanupCounts:
    """Apply the byte budget and the age limit; arguments override the configured values."""
    return ctx.image_cache.cleanup(
        max_total_bytes=int(max_total_mb * MB) if max_total_mb is not None else None,
        max_age=max_age_days * SECONDS_PER_DAY if max_age_days is not None else None,
    )


# Enrichment


async def enrich_device(
    ctx: DeviceLensContext,
    identity: DeviceIdentity,
    device_key: Optional[str] = None,
    force_refresh: bool = False,
) -> EnrichedDevice:
    """Enrich a device from every enabled source.

    Names missing from the identity are filled from the ID database first so
    that name-based sources have something to search for.
    """
    identity = resolve_identity(ctx, identity)
    return await ctx.enrichment.enrich(device_key or identity.device_key, identity, force_refresh=force_refresh)


def list_enrichment_sources(ctx: DeviceLensContext) -> list[SourceDescriptor]:
    return ctx.enrichment.list_sources()


def cleanup_enrichment_cache(
    ctx: DeviceLensContext,
    source: Optional[str] = None,
    max_age_days: Optional[float] = None,
) -> CleanupCounts:
    return ctx.enrichment.cleanup(
        source=source,
        max_age=max_age_days * SECONDS_PER_DAY if max_age_days is not None else None,
    )


# Services


def summarize_services(ctx: DeviceLensContext, services: list[ServiceInfo]) -> ServiceSummary:
    """Count services by status; the ServiceInfo records pass through unchanged."""
    summary = ServiceSummary(total=len(services))
    for service in services:
        status = service.status.replace("_", "").replace(" ", "").lower()
        if status == "running":
            summary.running += 1
        elif status == "stopped":
            summary.stopped += 1
        elif status == "startpending":
            summary.start_pending += 1
        elif status == "stoppending":
            summary.stop_pending += 1
    return summary
