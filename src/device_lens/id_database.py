"""
USB and PCI vendor/product lookup from *.ids definition files.

Parses the usb.ids / pci.ids text format into immutable snapshots. A snapshot
is built from the baseline file shipped with the package, layered with the
full file downloaded into the data directory when one is present.
"""

from __future__ import annotations
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Union

from .errors import DefinitionParseError
from .models import BusKind, HardwareIdEntry, IdDatabaseStats, normalize_code

logger = logging.getLogger(__name__)

BASELINE_DIR = Path(__file__).resolve().parent / "data"

DEFINITION_FILENAMES = {
    BusKind.USB: "usb.ids",
    BusKind.PCI: "pci.ids",
}

_VERSION_RE = re.compile(r"^#\s*Version:\s*(\S+)")

Code = Union[str, int]


@dataclass
class ParsedDefinitions:
    """Raw result of parsing one definitions file."""
    vendors: dict[str, str] = field(default_factory=dict)
    products: dict[tuple[str, str], str] = field(default_factory=dict)
    skipped_lines: int = 0
    version: Optional[str] = None

    @property
    def entry_count(self) -> int:
        return len(self.vendors) + len(self.products)


def _split_id_line(text: str) -> Optional[tuple[str, str]]:
    """Split 'xxxx  Name' into ('xxxx', 'Name'), or None if malformed."""
    parts = text.strip().split(None, 1)
    if len(parts) < 2 or len(parts[0]) != 4:
        return None
    try:
        int(parts[0], 16)
    except ValueError:
        return None
    name = parts[1].strip()
    if not name:
        return None
    return parts[0].lower(), name


def parse_definitions(text: str) -> ParsedDefinitions:
    """Parse the usb.ids / pci.ids format.

    Format:
    # Comment lines start with #
    XXXX  Vendor Name
    <tab>YYYY  Product Name
    <tab><tab>...  Interface or subsystem (ignored)
    C XX  Class Name (vendor section ends here)

    Malformed vendor and product lines are skipped and counted; they never
    stop the rest of the file from loading.
    """
    parsed = ParsedDefinitions()
    current_vendor: Optional[str] = None

    for line in text.splitlines():
        if not line.strip():
            continue

        if line.startswith("#"):
            match = _VERSION_RE.match(line)
            if match and parsed.version is None:
                parsed.version = match.group(1)
            continue

        # Device classes and the other trailing sections come after all vendors
        if line.startswith("C "):
            break

        if line.startswith("\t\t"):
            continue

        if line.startswith("\t"):
            entry = _split_id_line(line)
            if current_vendor is None or entry is None:
                parsed.skipped_lines += 1
                continue
            parsed.products[(current_vendor, entry[0])] = entry[1]
            continue

        entry = _split_id_line(line)
        if entry is None or line[0].isspace():
            parsed.skipped_lines += 1
            current_vendor = None
            continue

        parsed.vendors[entry[0]] = entry[1]
        current_vendor = entry[0]

    return parsed


def read_definitions_file(path: Path) -> ParsedDefinitions:
    """Parse a definitions file from disk."""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return parse_definitions(f.read())


def decode_definitions(payload: bytes) -> ParsedDefinitions:
    """Parse a downloaded payload, rejecting anything without vendors.

    Raises:
        DefinitionParseError: if the payload is empty or has no usable entries
    """
    if not payload or not payload.strip():
        raise DefinitionParseError("Definition payload is empty")
    parsed = parse_definitions(payload.decode("utf-8", errors="replace"))
    if not parsed.vendors:
        raise DefinitionParseError(
            f"Definition payload has no vendor entries ({parsed.skipped_lines} malformed lines)"
        )
    return parsed


@dataclass(frozen=True)
class IdDatabase:
    """Immutable vendor/product snapshot for one bus kind.

    Never mutated after construction; an update builds a new instance.
    """

    kind: BusKind
    vendors: Mapping[str, str]
    products: Mapping[tuple[str, str], str]
    loaded_at: float
    source_version: str
    skipped_lines: int = 0

    @classmethod
    def build(
        cls,
        kind: BusKind,
        layers: list[ParsedDefinitions],
        source_version: str,
    ) -> IdDatabase:
        """Merge parsed layers in order; later layers win on conflicts."""
        vendors: dict[str, str] = {}
        products: dict[tuple[str, str], str] = {}
        skipped = 0
        for layer in layers:
            vendors.update(layer.vendors)
            products.update(layer.products)
            skipped += layer.skipped_lines
        return cls(
            kind=kind,
            vendors=MappingProxyType(vendors),
            products=MappingProxyType(products),
            loaded_at=time.time(),
            source_version=source_version,
            skipped_lines=skipped,
        )

    def lookup_vendor(self, code: Code) -> Optional[str]:
        """Get vendor name by ID.

        Args:
            code: hex vendor ID (e.g. "05E3", "0x05e3") or int

        Returns:
            Vendor name or None if not found
        """
        key = normalize_code(code)
        if key is None:
            return None
        return self.vendors.get(key)

    def lookup_product(self, vendor_code: Code, product_code: Code) -> Optional[str]:
        """Get product name by vendor and product ID, or None if not found."""
        vendor = normalize_code(vendor_code)
        product = normalize_code(product_code)
        if vendor is None or product is None:
            return None
        return self.products.get((vendor, product))

    def lookup(self, vendor_code: Code, product_code: Code) -> tuple[Optional[str], Optional[str]]:
        """Look up both vendor and product names; either may be None."""
        return (self.lookup_vendor(vendor_code), self.lookup_product(vendor_code, product_code))

    def products_for(self, vendor_code: Code) -> list[HardwareIdEntry]:
        """All products listed under a vendor, sorted by code."""
        vendor = normalize_code(vendor_code)
        if vendor is None:
            return []
        return [
            HardwareIdEntry(code=product, name=name)
            for (owner, product), name in sorted(self.products.items())
            if owner == vendor
        ]

    @property
    def entry_count(self) -> int:
        return len(self.vendors) + len(self.products)

    def stats(self) -> IdDatabaseStats:
        return IdDatabaseStats(
            kind=self.kind,
            vendors=len(self.vendors),
            products=len(self.products),
            skipped_lines=self.skipped_lines,
            source_version=self.source_version,
            loaded_at=self.loaded_at,
        )


def baseline_path(kind: BusKind) -> Path:
    return BASELINE_DIR / DEFINITION_FILENAMES[kind]


def load_database(
    kind: BusKind,
    override_path: Optional[Path] = None,
    extra_layers: Optional[list[ParsedDefinitions]] = None,
) -> IdDatabase:
    """Build a snapshot from the packaged baseline plus an optional override file.

    A missing or unreadable baseline raises; a broken override is logged and
    ignored so the baseline still loads.

    Args:
        kind: which namespace to load
        override_path: downloaded definitions file in the data directory
        extra_layers: already-parsed definitions layered on top (used right
            after an update so the payload is not parsed twice)
    """
    try:
        baseline = read_definitions_file(baseline_path(kind))
    except OSError as e:
        raise DefinitionParseError(f"Cannot read baseline {kind.value} definitions: {e}") from e

    layers = [baseline]
    version = f"baseline:{baseline.version or 'unknown'}"

    if extra_layers:
        layers.extend(extra_layers)
        version = extra_layers[-1].version or "downloaded"
    elif override_path is not None and override_path.exists():
        try:
            override = read_definitions_file(override_path)
            if override.vendors:
                layers.append(override)
                version = override.version or f"mtime:{int(override_path.stat().st_mtime)}"
            else:
                logger.warning(f"Ignoring {override_path}: no vendor entries")
        except OSError as e:
            logger.warning(f"Failed to read {override_path}, using baseline only: {e}")

    database = IdDatabase.build(kind, layers, version)
    logger.info(
        f"Loaded {kind.value} ID database: {len(database.vendors)} vendors, "
        f"{len(database.products)} products ({version}, {database.skipped_lines} lines skipped)"
    )
    return database


class IdDatabaseHandle:
    """Holds the active snapshot for one kind and swaps it atomically.

    Lookups read the current reference once, so a concurrent swap is seen
    either entirely or not at all.
    """

    def __init__(self, database: IdDatabase):
        self._database = database
        self._swap_lock = threading.Lock()

    @property
    def kind(self) -> BusKind:
        return self._database.kind

    @property
    def current(self) -> IdDatabase:
        return self._database

    def swap(self, database: IdDatabase) -> IdDatabase:
        """Publish a new snapshot and return the previous one."""
        if database.kind != self._database.kind:
            raise ValueError(f"Cannot replace {self._database.kind.value} database with {database.kind.value}")
        with self._swap_lock:
            previous = self._database
            self._database = database
        logger.info(
            f"Swapped {database.kind.value} ID database: {previous.source_version} -> {database.source_version}"
        )
        return previous

    def lookup_vendor(self, code: Code) -> Optional[str]:
        return self._database.lookup_vendor(code)

    def lookup_product(self, vendor_code: Code, product_code: Code) -> Optional[str]:
        return self._database.lookup_product(vendor_code, product_code)

    def lookup(self, vendor_code: Code, product_code: Code) -> tuple[Optional[str], Optional[str]]:
        return self._database.lookup(vendor_code, product_code)
