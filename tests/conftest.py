"""Shared fixtures and fake collaborators for device-lens tests."""

from __future__ import annotations

import asyncio
import io
from pathlib import Path
from typing import Any, Optional

import pytest
from PIL import Image

from device_lens.context import DeviceLensContext
from device_lens.enrichment import RegisteredSource
from device_lens.errors import DeviceNotFoundError, NetworkError
from device_lens.image_cache import ImageBlob
from device_lens.models import AppConfig, BusKind, DeviceIdentity

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 60


def make_png(width: int = 300, height: int = 200) -> bytes:
    """A decodable PNG; PNG_BYTES only carries the magic bytes."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (10, 20, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


LOGITECH_KEY = "usb:046d:c52b:sn=ABC123"

USB_PAYLOAD = b"""# Version: 2025.06.01
#
1234  Acme Devices
\t0001  Acme Widget
046d  Logitech, Inc.
\tc52b  Unifying Receiver
C 00  (Defined at Interface level)
"""

PCI_PAYLOAD = b"""# Version: 2025.06.01
abcd  Example Silicon
\t0001  Example Accelerator
"""


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProber:
    """DeviceProber that returns canned deep info and counts calls."""

    def __init__(self, devices: Optional[dict[str, dict[str, Any]]] = None, delay: float = 0.0):
        self.devices = devices if devices is not None else {
            LOGITECH_KEY: {"driver": "usb", "speed": "12M", "product": "USB Receiver"},
        }
        self.delay = delay
        self.calls: list[str] = []

    async def probe_device(self, device_key: str) -> dict[str, Any]:
        self.calls.append(device_key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if device_key not in self.devices:
            raise DeviceNotFoundError(f"No attached device matches {device_key}")
        return dict(self.devices[device_key], probe_count=len(self.calls))


class FakeDefinitionSource:
    """DefinitionSource serving fixed payloads, or raising a configured error."""

    def __init__(self, payloads: Optional[dict[BusKind, bytes]] = None, error: Optional[Exception] = None):
        self.payloads = payloads if payloads is not None else {BusKind.USB: USB_PAYLOAD, BusKind.PCI: PCI_PAYLOAD}
        self.error = error
        self.calls: list[BusKind] = []

    async def fetch_definitions(self, kind: BusKind) -> bytes:
        self.calls.append(kind)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.payloads[kind]


class FakeImageSource:
    """ImageSource serving bytes by URL; identities map to a URL built from their IDs."""

    def __init__(self, images: Optional[dict[str, bytes]] = None, delay: float = 0.0):
        self.images = images if images is not None else {}
        self.delay = delay
        self.calls: list[str] = []

    @staticmethod
    def url_for(identity: DeviceIdentity) -> str:
        return f"https://images.test/{identity.bus.value}/{identity.vendor_id}/{identity.product_id}.png"

    async def fetch_image(self, identity: DeviceIdentity, hint: Optional[str] = None) -> ImageBlob:
        return await self.fetch_url(hint if hint and hint.startswith("https://") else self.url_for(identity))

    async def fetch_url(self, url: str) -> ImageBlob:
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if url not in self.images:
            raise NetworkError(f"HTTP error: 404 for {url}", source="images")
        return ImageBlob(data=self.images[url], source_url=url)


class FakeSource:
    """EnrichmentSource with a fixed payload, delay or error."""

    def __init__(
        self,
        name: str,
        payload: Optional[dict[str, Any]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        supported: bool = True,
    ):
        self.name = name
        self.payload = payload if payload is not None else {}
        self.delay = delay
        self.error = error
        self.supported = supported
        self.calls = 0

    def supports(self, identity: DeviceIdentity) -> bool:
        return self.supported

    async def query(self, identity: DeviceIdentity) -> dict[str, Any]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.payload


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def logitech() -> DeviceIdentity:
    return DeviceIdentity(bus="usb", vendor_id="046D", product_id="C52B", serial="ABC123")


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def definition_source() -> FakeDefinitionSource:
    return FakeDefinitionSource()


@pytest.fixture
def image_source() -> FakeImageSource:
    return FakeImageSource()


@pytest.fixture
def enrichment_sources() -> list[RegisteredSource]:
    return [
        RegisteredSource(FakeSource("catalog", {"description": "Receiver", "specs": {"radio": "2.4 GHz"}}), priority=10),
        RegisteredSource(FakeSource("web", {"description": "Other", "image_url": "https://img.test/r.png"}), priority=50),
    ]


@pytest.fixture
def context(
    data_dir: Path,
    prober: FakeProber,
    definition_source: FakeDefinitionSource,
    image_source: FakeImageSource,
    enrichment_sources: list[RegisteredSource],
    clock: FakeClock,
) -> DeviceLensContext:
    config = AppConfig()
    config.enrichment.timeout_seconds = 0.2
    return DeviceLensContext(
        config,
        data_dir=data_dir,
        prober=prober,
        definition_source=definition_source,
        image_source=image_source,
        enrichment_sources=enrichment_sources,
        clock=clock,
    )
