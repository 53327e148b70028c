"""
device-lens - FastAPI Application.

HTTP surface the GUI shell calls into. Every route is a thin wrapper around a
function in commands.
"""

from __future__ import annotations
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.requests import Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ValidationError

from . import __version__, commands
from .config_manager import ConfigManager
from .context import DeviceLensContext
from .errors import DeviceNotFoundError, FetchTimeout, InvalidCacheKeyError
from .models import AppConfig, BusKind, DeviceIdentity, ServiceInfo

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _respond(value: Any) -> JSONResponse:
    return JSONResponse(_dump(value))


def get_context(request: Request) -> DeviceLensContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return context


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def _identity(data: Any) -> DeviceIdentity:
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Missing identity")
    try:
        return DeviceIdentity.model_validate(data)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid identity: {e.errors()[0]['msg']}")


def create_app(config: Optional[AppConfig] = None, context: Optional[DeviceLensContext] = None) -> FastAPI:
    """Build the FastAPI app.

    A context passed in is used as-is and left open on shutdown; otherwise the
    lifespan builds one from config (or the config file) and closes it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        owned: Optional[DeviceLensContext] = None
        if app.state.context is None:
            logger.info("Starting device-lens...")
            owned = DeviceLensContext(config or ConfigManager().config)
            app.state.context = owned

        yield

        if owned is not None:
            logger.info("Shutting down device-lens...")
            await owned.aclose()
            app.state.context = None
            logger.info("device-lens stopped")

    app = FastAPI(
        title="device-lens",
        description="Hardware ID lookup and device information caches",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context

    # Hardware IDs

    @app.get("/api/hwids/usb/{vendor_id}")
    async def lookup_usb(vendor_id: str, request: Request, product_id: Optional[str] = None):
        """Resolve a USB vendor and optional product ID."""
        return _respond(commands.lookup_usb(get_context(request), vendor_id, product_id))

    @app.get("/api/hwids/pci/{vendor_id}")
    async def lookup_pci(vendor_id: str, request: Request, device_id: Optional[str] = None):
        """Resolve a PCI vendor and optional device ID."""
        return _respond(commands.lookup_pci(get_context(request), vendor_id, device_id))

    @app.get("/api/hwids/{bus}/{vendor_id}/products")
    async def list_vendor_products(bus: BusKind, vendor_id: str, request: Request):
        return _respond(commands.list_vendor_products(get_context(request), bus, vendor_id))

    @app.get("/api/hwids/status")
    async def hardware_ids_status(request: Request):
        return _respond(commands.hardware_ids_status(get_context(request)))

    @app.post("/api/hwids/update")
    async def update_hardware_ids(request: Request, force: bool = False, kind: Optional[BusKind] = None):
        """Download fresh ID databases. Failures are reported in the result, not as errors."""
        result = await commands.update_hardware_ids(get_context(request), force=force, kind=kind)
        return _respond(result)

    # Device info cache

    @app.get("/api/devices")
    async def get_cached_devices(request: Request):
        return _respond(commands.get_cached_devices(get_context(request)))

    @app.get("/api/devices/search")
    async def search_device_info(request: Request, q: str = ""):
        return _respond(commands.search_device_info(get_context(request), q))

    @app.get("/api/devices/stats")
    async def get_device_database_stats(request: Request):
        return _respond(commands.get_device_database_stats(get_context(request)))

    @app.post("/api/devices/cleanup")
    async def cleanup_device_cache(request: Request):
        return _respond(commands.cleanup_device_cache(get_context(request)))

    @app.delete("/api/devices")
    async def clear_all_devices(request: Request):
        removed = commands.clear_device_cache(get_context(request))
        return JSONResponse({"removed": removed})

    @app.delete("/api/devices/{device_key:path}")
    async def clear_device(device_key: str, request: Request):
        removed = commands.clear_device_cache(get_context(request), device_key)
        if not removed:
            raise HTTPException(status_code=404, detail="Device not cached")
        return JSONResponse({"removed": removed})

    @app.get("/api/devices/{device_key:path}")
    async def get_device_deep_info(device_key: str, request: Request, force_refresh: bool = False):
        """Deep info for a device, probing it on a cache miss."""
        try:
            record = await commands.get_device_deep_info(get_context(request), device_key, force_refresh)
        except DeviceNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except FetchTimeout as e:
            raise HTTPException(status_code=504, detail=str(e))
        return _respond(record)

    # Image cache

    @app.post("/api/images/fetch")
    async def fetch_device_image(request: Request):
        """Cache an image URL, optionally under an explicit key."""
        data = await _json_body(request)
        url = data.get("url")
        if not url:
            raise HTTPException(status_code=400, detail="Missing url")

        context = get_context(request)
        key = data.get("key")
        if key:
            try:
                result = await commands.fetch_device_image_with_key(context, url, key)
            except InvalidCacheKeyError as e:
                raise HTTPException(status_code=400, detail=str(e))
        else:
            result = await commands.fetch_device_image(context, url)
        return _respond(result)

    @app.post("/api/images/fetch-device")
    async def fetch_identity_image(request: Request):
        """Cache the representative image for a device identity."""
        data = await _json_body(request)
        identity = _identity(data.get("identity"))
        result = await commands.fetch_identity_image(get_context(request), identity, data.get("hint"))
        return _respond(result)

    @app.get("/api/images/key")
    async def generate_device_image_cache_key(request: Request, device_type: str, manufacturer: str, model: str):
        key = commands.generate_device_image_cache_key(get_context(request), device_type, manufacturer, model)
        return JSONResponse({"key": key})

    @app.get("/api/images/stats")
    async def get_image_cache_stats(request: Request):
        return _respond(commands.get_image_cache_stats(get_context(request)))

    @app.post("/api/images/cleanup")
    async def cleanup_image_cache(
        request: Request,
        max_age_days: Optional[float] = None,
        max_total_mb: Optional[float] = None,
    ):
        counts = commands.cleanup_image_cache(get_context(request), max_age_days, max_total_mb)
        return _respond(counts)

    @app.get("/api/images/{key}")
    async def get_cached_image(key: str, request: Request):
        context = get_context(request)
        return JSONResponse({
            "key": key,
            "cached": commands.is_image_cached(context, key),
            "path": commands.get_cached_image_path(context, key),
        })

    @app.get("/api/images/{key}/file")
    async def get_cached_image_file(key: str, request: Request):
        """Serve the cached image file itself."""
        context = get_context(request)
        path = commands.get_cached_image_path(context, key)
        if path is None:
            raise HTTPException(status_code=404, detail="Image not cached")
        entry = context.image_cache.get_entry(key)
        media_type = entry.content_type if entry is not None else None
        return FileResponse(Path(path), media_type=media_type)

    @app.get("/api/images/{key}/thumbnail")
    async def get_cached_image_thumbnail(key: str, request: Request):
        path = commands.get_cached_thumbnail_path(get_context(request), key)
        if path is None:
            raise HTTPException(status_code=404, detail="Thumbnail not available")
        return FileResponse(Path(path), media_type="image/png")

    # Enrichment

    @app.get("/api/enrichment/sources")
    async def list_enrichment_sources(request: Request):
        return _respond(commands.list_enrichment_sources(get_context(request)))

    @app.post("/api/enrichment/enrich")
    async def enrich_device(request: Request):
        """Enrich a device; per-source failures are listed in the result."""
        data = await _json_body(request)
        identity = _identity(data.get("identity"))
        enriched = await commands.enrich_device(
            get_context(request),
            identity,
            device_key=data.get("device_key"),
            force_refresh=bool(data.get("force_refresh", False)),
        )
        body = enriched.model_dump(mode="json")
        body["summary"] = enriched.summary
        return JSONResponse(body)

    @app.post("/api/enrichment/cleanup")
    async def cleanup_enrichment_cache(
        request: Request,
        source: Optional[str] = None,
        max_age_days: Optional[float] = None,
    ):
        counts = commands.cleanup_enrichment_cache(get_context(request), source, max_age_days)
        return _respond(counts)

    # Services

    @app.post("/api/services/summary")
    async def summarize_services(request: Request):
        """Count a list of services by status."""
        try:
            data = await request.json()
            services = [ServiceInfo.model_validate(item) for item in data]
        except (ValueError, TypeError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid service list: {e}")
        return _respond(commands.summarize_services(get_context(request), services))

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        context = getattr(request.app.state, "context", None)
        return JSONResponse({
            "status": "healthy" if context is not None else "starting",
            "version": __version__,
            "persistent": context.persistent if context is not None else None,
        })

    return app


def run_server(host: str = "127.0.0.1", port: int = 8080, config: Optional[AppConfig] = None):
    """Run the server."""
    import uvicorn

    uvicorn.run(create_app(config), host=host, port=port, log_level="info")


if __name__ == "__main__":
    port = int(os.environ.get("DEVICE_LENS_PORT", "8080"))
    host = os.environ.get("DEVICE_LENS_HOST", "127.0.0.1")

    run_server(host=host, port=port)
