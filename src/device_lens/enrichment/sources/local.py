"""
Local device catalog source.

Answers from a YAML (or JSON) catalog on disk, so well-known devices are
enriched without any network access. A device is matched by bus and IDs
first, then by manufacturer and model, then by a fuzzy model match.

Catalog format:

    version: "2024.01"
    devices:
      - bus: usb
        vendor_id: "046d"
        product_id: "c52b"
        manufacturer: Logitech
        model: Unifying Receiver
        info:
          description: ...
"""

from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from ...errors import DeviceNotFoundError
from ...models import DeviceIdentity, normalize_code

logger = logging.getLogger(__name__)

BUNDLED_CATALOG = Path(__file__).resolve().parent.parent.parent / "data" / "catalog.yaml"


def normalize_model(model: str) -> str:
    """Lower-case and keep only alphanumerics, for fuzzy comparison."""
    return "".join(c for c in model.lower() if c.isalnum())


def load_catalog(path: Path) -> list[dict[str, Any]]:
    """Read catalog entries; a missing or unreadable file yields an empty list."""
    if not path.exists():
        logger.info(f"No device catalog at {path}")
        return []
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load device catalog {path}: {e}")
        return []

    devices = data.get("devices", []) if isinstance(data, dict) else []
    entries = [d for d in devices if isinstance(d, dict)]
    logger.info(f"Loaded {len(entries)} catalog entries from {path}")
    return entries


class LocalCatalogSource:
    """EnrichmentSource backed by a catalog file."""

    def __init__(self, path: Optional[Path] = None, name: str = "local"):
        self.name = name
        self.path = path or BUNDLED_CATALOG
        self.entries = load_catalog(self.path)

    def supports(self, identity: DeviceIdentity) -> bool:
        return bool(self.entries)

    def _id_match(self, entry: dict[str, Any], identity: DeviceIdentity) -> bool:
        return (
            entry.get("bus", "usb") == identity.bus.value
            and normalize_code(entry.get("vendor_id")) == identity.vendor_id
            and normalize_code(entry.get("product_id")) == identity.product_id
        )

    def _exact_match(self, entry: dict[str, Any], identity: DeviceIdentity) -> bool:
        if not identity.manufacturer or not identity.model:
            return False
        return (
            str(entry.get("manufacturer", "")).lower() == identity.manufacturer.lower()
            and str(entry.get("model", "")).lower() == identity.model.lower()
        )

    def _fuzzy_match(self, entry: dict[str, Any], identity: DeviceIdentity) -> bool:
        if not identity.manufacturer or not identity.model:
            return False
        if str(entry.get("manufacturer", "")).lower() != identity.manufacturer.lower():
            return False
        catalog_model = normalize_model(str(entry.get("model", "")))
        wanted = normalize_model(identity.model)
        if not catalog_model or not wanted:
            return False
        return catalog_model in wanted or wanted in catalog_model

    def find(self, identity: DeviceIdentity) -> Optional[dict[str, Any]]:
        for matcher in (self._id_match, self._exact_match, self._fuzzy_match):
            for entry in self.entries:
                if matcher(entry, identity):
                    return entry
        return None

    async def query(self, identity: DeviceIdentity) -> dict[str, Any]:
        entry = self.find(identity)
        if entry is None:
            raise DeviceNotFoundError(f"{identity.device_key} is not in the local catalog")

        payload = dict(entry.get("info") or {})
        for field in ("manufacturer", "model", "device_type"):
            if entry.get(field):
                payload.setdefault(field, entry[field])
        return payload
