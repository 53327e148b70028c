"""Tests for the HTTP surface and the command layer behind it."""

from __future__ import annotations

import io

import httpx
import pytest
from PIL import Image

from device_lens import commands
from device_lens.context import DeviceLensContext
from device_lens.errors import NetworkError
from device_lens.image_cache import cache_key_for_url
from device_lens.main import create_app
from device_lens.models import AppConfig, DeviceIdentity

from .conftest import LOGITECH_KEY, PNG_BYTES, FakeImageSource, FakeProber, make_png

WEEK = 7 * 24 * 60 * 60


def make_client(context: DeviceLensContext) -> httpx.AsyncClient:
    app = create_app(context=context)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, context):
        async with make_client(context) as client:
            response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["persistent"] is True

    @pytest.mark.asyncio
    async def test_not_initialized(self):
        app = create_app()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
            health = await client.get("/api/health")
            lookup = await client.get("/api/hwids/usb/046d")

        assert health.json()["status"] == "starting"
        assert lookup.status_code == 503

    @pytest.mark.asyncio
    async def test_lifespan_builds_and_closes_context(self, tmp_path):
        config = AppConfig(data_dir=str(tmp_path / "data"))
        app = create_app(config)

        async with app.router.lifespan_context(app):
            assert app.state.context is not None
            assert app.state.context.data_dir == tmp_path / "data"

        assert app.state.context is None


class TestHardwareIds:
    @pytest.mark.asyncio
    async def test_usb_lookup(self, context):
        async with make_client(context) as client:
            response = await client.get("/api/hwids/usb/046D", params={"product_id": "C52B"})

        assert response.json() == {
            "bus": "usb",
            "vendor_id": "046d",
            "product_id": "c52b",
            "vendor_name": "Logitech",
            "product_name": "Unifying Receiver",
        }

    @pytest.mark.asyncio
    async def test_unknown_ids(self, context):
        async with make_client(context) as client:
            unknown = await client.get("/api/hwids/usb/fffe", params={"product_id": "0001"})
            invalid = await client.get("/api/hwids/usb/xyz")

        assert unknown.json()["vendor_name"] is None
        assert unknown.json()["product_name"] is None
        assert invalid.json()["vendor_name"] is None

    @pytest.mark.asyncio
    async def test_pci_lookup(self, context):
        async with make_client(context) as client:
            response = await client.get("/api/hwids/pci/10de", params={"device_id": "2684"})

        assert response.json()["vendor_name"] == "NVIDIA Corporation"
        assert response.json()["product_name"] == "GeForce RTX 4090"

    @pytest.mark.asyncio
    async def test_vendor_products(self, context):
        async with make_client(context) as client:
            usb = await client.get("/api/hwids/usb/046d/products")
            pci = await client.get("/api/hwids/pci/10de/products")
            bad_bus = await client.get("/api/hwids/firewire/046d/products")

        assert {"code": "c52b", "name": "Unifying Receiver"} in usb.json()
        assert [p["code"] for p in usb.json()] == sorted(p["code"] for p in usb.json())
        assert {"code": "2684", "name": "GeForce RTX 4090"} in pci.json()
        assert bad_bus.status_code == 422

    @pytest.mark.asyncio
    async def test_status(self, context):
        async with make_client(context) as client:
            response = await client.get("/api/hwids/status")

        statuses = response.json()
        assert [s["kind"] for s in statuses] == ["usb", "pci"]
        assert all(s["needs_update"] for s in statuses)
        assert statuses[0]["database"]["source_version"] == "baseline:2024.01.01-baseline"

    @pytest.mark.asyncio
    async def test_update_layers_over_baseline(self, context, definition_source):
        async with make_client(context) as client:
            update = await client.post("/api/hwids/update")
            acme = await client.get("/api/hwids/usb/1234", params={"product_id": "0001"})
            logitech = await client.get("/api/hwids/usb/046d", params={"product_id": "c52b"})
            intel = await client.get("/api/hwids/usb/8086")
            again = await client.post("/api/hwids/update")

        assert update.json()["updated"] is True
        assert update.json()["error"] is None
        assert acme.json()["product_name"] == "Acme Widget"
        assert logitech.json()["vendor_name"] == "Logitech, Inc."
        assert intel.json()["vendor_name"] == "Intel"
        assert (context.data_dir / "hwids" / "usb.ids").exists()

        # Fresh downloads are not fetched again without force
        assert again.json()["updated"] is False
        assert len(definition_source.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_update_keeps_database(self, context, definition_source):
        definition_source.error = NetworkError("HTTP error: 503", source="hwids")

        async with make_client(context) as client:
            update = await client.post("/api/hwids/update", params={"kind": "usb"})
            lookup = await client.get("/api/hwids/usb/046d")

        assert update.status_code == 200
        assert update.json()["updated"] is False
        assert "503" in update.json()["error"]
        assert lookup.json()["vendor_name"] == "Logitech"


class TestDevices:
    @pytest.mark.asyncio
    async def test_deep_info_cached_until_ttl(self, context, prober, clock):
        async with make_client(context) as client:
            first = await client.get(f"/api/devices/{LOGITECH_KEY}")
            second = await client.get(f"/api/devices/{LOGITECH_KEY}")
            clock.advance(WEEK + 1)
            third = await client.get(f"/api/devices/{LOGITECH_KEY}")

        assert first.status_code == 200
        assert first.json()["deep_info"]["probe_count"] == 1
        assert second.json()["deep_info"]["probe_count"] == 1
        assert third.json()["deep_info"]["probe_count"] == 2
        assert prober.calls == [LOGITECH_KEY, LOGITECH_KEY]

    @pytest.mark.asyncio
    async def test_force_refresh(self, context, prober):
        async with make_client(context) as client:
            await client.get(f"/api/devices/{LOGITECH_KEY}")
            refreshed = await client.get(f"/api/devices/{LOGITECH_KEY}", params={"force_refresh": "true"})

        assert refreshed.json()["deep_info"]["probe_count"] == 2

    @pytest.mark.asyncio
    async def test_unknown_device(self, context):
        async with make_client(context) as client:
            response = await client.get("/api/devices/usb:dead:beef")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_probe_timeout(self, data_dir, clock):
        config = AppConfig()
        config.device_cache.probe_timeout_seconds = 0.05
        context = DeviceLensContext(
            config,
            data_dir=data_dir,
            prober=FakeProber(delay=1.0),
            definition_source=None,
            image_source=FakeImageSource(),
            enrichment_sources=[],
            clock=clock,
        )
        async with make_client(context) as client:
            response = await client.get(f"/api/devices/{LOGITECH_KEY}")
        await context.aclose()

        assert response.status_code == 504

    @pytest.mark.asyncio
    async def test_search_list_and_stats(self, context):
        async with make_client(context) as client:
            await client.get(f"/api/devices/{LOGITECH_KEY}")
            hit = await client.get("/api/devices/search", params={"q": "usb receiver"})
            miss = await client.get("/api/devices/search", params={"q": "keyboard"})
            listed = await client.get("/api/devices")
            stats = await client.get("/api/devices/stats")

        assert [r["device_key"] for r in hit.json()] == [LOGITECH_KEY]
        assert miss.json() == []
        assert len(listed.json()) == 1
        assert stats.json()["device_cache"]["entry_count"] == 1
        assert stats.json()["usb"]["vendors"] > 0
        assert stats.json()["persistent"] is True

    @pytest.mark.asyncio
    async def test_clear(self, context):
        async with make_client(context) as client:
            await client.get(f"/api/devices/{LOGITECH_KEY}")
            removed = await client.delete(f"/api/devices/{LOGITECH_KEY}")
            missing = await client.delete(f"/api/devices/{LOGITECH_KEY}")
            await client.get(f"/api/devices/{LOGITECH_KEY}")
            cleared = await client.delete("/api/devices")

        assert removed.json() == {"removed": 1}
        assert missing.status_code == 404
        assert cleared.json() == {"removed": 1}

    @pytest.mark.asyncio
    async def test_cleanup(self, context, clock):
        async with make_client(context) as client:
            await client.get(f"/api/devices/{LOGITECH_KEY}")
            clock.advance(WEEK + 1)
            response = await client.post("/api/devices/cleanup")

        assert response.json() == {"removed": 1, "retained": 0}


class TestImages:
    URL = "https://img.test/receiver.png"

    @pytest.mark.asyncio
    async def test_fetch_and_serve(self, context, image_source):
        image_source.images[self.URL] = PNG_BYTES
        key = cache_key_for_url(self.URL)

        async with make_client(context) as client:
            first = await client.post("/api/images/fetch", json={"url": self.URL})
            second = await client.post("/api/images/fetch", json={"url": self.URL})
            info = await client.get(f"/api/images/{key}")
            served = await client.get(f"/api/images/{key}/file")

        assert first.json()["cache_key"] == key
        assert first.json()["is_cached"] is False
        assert first.json()["error"] is None
        assert second.json()["is_cached"] is True
        assert image_source.calls == [self.URL]
        assert info.json() == {"key": key, "cached": True, "path": first.json()["file_path"]}
        assert served.content == PNG_BYTES
        assert served.headers["content-type"] == "image/png"

    @pytest.mark.asyncio
    async def test_fetch_with_key(self, context, image_source):
        image_source.images[self.URL] = PNG_BYTES

        async with make_client(context) as client:
            response = await client.post("/api/images/fetch", json={"url": self.URL, "key": "receiver"})

        assert response.json()["cache_key"] == "receiver"
        assert commands.is_image_cached(context, "receiver")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["../../escaped", "nested/key", "x_thumb"])
    async def test_fetch_with_invalid_key_is_rejected(self, context, image_source, tmp_path, key):
        image_source.images[self.URL] = PNG_BYTES

        async with make_client(context) as client:
            response = await client.post("/api/images/fetch", json={"url": self.URL, "key": key})

        assert response.status_code == 400
        assert "Invalid image cache key" in response.json()["detail"]
        assert image_source.calls == []
        assert list(tmp_path.rglob("escaped*")) == []
        assert list(tmp_path.parent.glob("escaped*")) == []

    @pytest.mark.asyncio
    async def test_thumbnail_is_served(self, context, image_source):
        image_source.images[self.URL] = make_png(256, 256)

        async with make_client(context) as client:
            fetched = await client.post("/api/images/fetch", json={"url": self.URL, "key": "receiver"})
            thumb = await client.get("/api/images/receiver/thumbnail")
            missing = await client.get("/api/images/other/thumbnail")

        assert fetched.json()["thumbnail_path"].endswith("receiver_thumb.png")
        assert thumb.status_code == 200
        assert thumb.headers["content-type"] == "image/png"
        with Image.open(io.BytesIO(thumb.content)) as image:
            assert image.size == (128, 128)
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_failed_fetch_is_reported(self, context):
        async with make_client(context) as client:
            response = await client.post("/api/images/fetch", json={"url": "https://img.test/missing.png"})
            stats = await client.get("/api/images/stats")

        assert response.status_code == 200
        assert "404" in response.json()["error"]
        assert response.json()["file_path"] is None
        assert stats.json()["download_failures"] == 1

    @pytest.mark.asyncio
    async def test_bad_requests(self, context):
        async with make_client(context) as client:
            no_url = await client.post("/api/images/fetch", json={})
            not_json = await client.post("/api/images/fetch", content=b"not json")
            not_cached = await client.get("/api/images/nothing/file")

        assert no_url.status_code == 400
        assert not_json.status_code == 400
        assert not_cached.status_code == 404

    @pytest.mark.asyncio
    async def test_fetch_for_identity(self, context, image_source, logitech):
        image_source.images[FakeImageSource.url_for(logitech)] = PNG_BYTES

        async with make_client(context) as client:
            response = await client.post(
                "/api/images/fetch-device",
                json={"identity": {"vendor_id": "046d", "product_id": "c52b", "serial": "XYZ"}},
            )
            invalid = await client.post("/api/images/fetch-device", json={"identity": {"vendor_id": "zz"}})

        assert response.json()["file_path"].endswith(".png")
        assert invalid.status_code == 400

    @pytest.mark.asyncio
    async def test_generated_key(self, context):
        async with make_client(context) as client:
            response = await client.get(
                "/api/images/key", params={"device_type": "GPU", "manufacturer": "NVIDIA", "model": "RTX 4090"}
            )

        assert response.json()["key"] == commands.generate_device_image_cache_key(context, "gpu", "nvidia", "rtx 4090")

    @pytest.mark.asyncio
    async def test_cleanup(self, context, image_source, clock):
        image_source.images[self.URL] = PNG_BYTES

        async with make_client(context) as client:
            await client.post("/api/images/fetch", json={"url": self.URL})
            clock.advance(2 * 24 * 60 * 60)
            kept = await client.post("/api/images/cleanup", params={"max_age_days": 5})
            removed = await client.post("/api/images/cleanup", params={"max_age_days": 1})

        assert kept.json() == {"removed": 0, "retained": 1}
        assert removed.json() == {"removed": 1, "retained": 0}


class TestEnrichment:
    IDENTITY = {"vendor_id": "046d", "product_id": "c52b", "serial": "ABC123"}

    @pytest.mark.asyncio
    async def test_enrich(self, context):
        async with make_client(context) as client:
            response = await client.post("/api/enrichment/enrich", json={"identity": self.IDENTITY})

        body = response.json()
        assert body["device_key"] == LOGITECH_KEY
        assert body["summary"] == "2 of 2 sources succeeded"
        assert body["payload"]["description"] == "Receiver"
        assert body["identity"]["manufacturer"] == "Logitech"
        assert body["identity"]["model"] == "Unifying Receiver"

    @pytest.mark.asyncio
    async def test_slow_source_times_out(self, context, enrichment_sources):
        enrichment_sources[1].source.delay = 1.0

        async with make_client(context) as client:
            response = await client.post("/api/enrichment/enrich", json={"identity": self.IDENTITY})

        body = response.json()
        assert body["summary"] == "1 of 2 sources succeeded"
        assert [s["status"] for s in body["sources"]] == ["ok", "timeout"]
        assert body["payload"]["specs"] == {"radio": "2.4 GHz"}

    @pytest.mark.asyncio
    async def test_sources_and_cleanup(self, context, clock):
        async with make_client(context) as client:
            sources = await client.get("/api/enrichment/sources")
            await client.post("/api/enrichment/enrich", json={"identity": self.IDENTITY})
            clock.advance(31 * 24 * 60 * 60)
            cleanup = await client.post("/api/enrichment/cleanup", params={"source": "web"})

        assert [s["name"] for s in sources.json()] == ["catalog", "web"]
        assert cleanup.json() == {"removed": 1, "retained": 1}

    @pytest.mark.asyncio
    async def test_missing_identity(self, context):
        async with make_client(context) as client:
            response = await client.post("/api/enrichment/enrich", json={})

        assert response.status_code == 400


class TestServices:
    @pytest.mark.asyncio
    async def test_summary(self, context):
        services = [
            {"name": "sshd", "display_name": "OpenSSH", "status": "Running", "startup_type": "Automatic"},
            {"name": "cups", "display_name": "CUPS", "status": "Stopped", "startup_type": "Manual"},
            {"name": "bt", "display_name": "Bluetooth", "status": "start_pending", "startup_type": "Manual"},
        ]

        async with make_client(context) as client:
            response = await client.post("/api/services/summary", json=services)
            invalid = await client.post("/api/services/summary", json=[{"name": "x"}])

        assert response.json() == {"total": 3, "running": 1, "stopped": 1, "start_pending": 1, "stop_pending": 0}
        assert invalid.status_code == 400


class TestFallback:
    @pytest.mark.asyncio
    async def test_unusable_data_dir_runs_in_memory(self, tmp_path, prober, image_source, logitech, clock):
        blocked = tmp_path / "not-a-dir"
        blocked.write_text("a file, not a directory")
        image_source.images[FakeImageSource.url_for(logitech)] = PNG_BYTES

        context = DeviceLensContext(
            data_dir=blocked,
            prober=prober,
            image_source=image_source,
            enrichment_sources=[],
            clock=clock,
        )
        assert context.persistent is False

        record = await commands.get_device_deep_info(context, LOGITECH_KEY)
        again = await commands.get_device_deep_info(context, LOGITECH_KEY)
        image = await commands.fetch_identity_image(context, logitech)
        scratch = context.image_cache.root

        assert again == record
        assert image.file_path is not None
        assert commands.get_device_database_stats(context).persistent is False
        assert commands.lookup_usb(context, "046d").vendor_name == "Logitech"

        await context.aclose()
        assert not scratch.exists()


class TestCommands:
    def test_resolve_identity_fills_names(self, context):
        identity = commands.resolve_identity(context, DeviceIdentity(vendor_id="046d", product_id="c52b"))

        assert identity.manufacturer == "Logitech"
        assert identity.model == "Unifying Receiver"

    def test_resolve_identity_keeps_given_names(self, context):
        identity = DeviceIdentity(vendor_id="046d", product_id="c52b", manufacturer="Logi", model="Receiver")
        assert commands.resolve_identity(context, identity) == identity

    def test_lookup_with_integer_codes(self, context):
        lookup = commands.lookup_usb(context, 0x046D, 0xC52B)
        assert (lookup.vendor_id, lookup.product_name) == ("046d", "Unifying Receiver")

    @pytest.mark.asyncio
    async def test_enrich_uses_explicit_device_key(self, context, logitech):
        enriched = await commands.enrich_device(context, logitech, device_key="custom")
        assert enriched.device_key == "custom"
        assert context.enrichment.get_cached("custom", "catalog") is not None
