"""
Deep device probing using pyudev.

Enumerates USB and PCI devices through udev, derives the same device key the
caches use and collects the udev and sysfs details for the device that was
asked for.
"""

from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import pyudev

from .errors import DeviceNotFoundError
from .id_database import IdDatabaseHandle
from .models import BusKind, DeviceIdentity, normalize_code

logger = logging.getLogger(__name__)

# Child subsystems whose device nodes are reported with a USB device
_NODE_SUBSYSTEMS = ("tty", "block", "sound", "video4linux", "input", "hidraw")


def parse_speed(speed_str: str) -> str:
    """Convert speed value to human-readable format."""
    if not speed_str:
        return ""
    try:
        speed = int(speed_str)
        if speed >= 5000:
            return f"{speed // 1000}G"
        return f"{speed}M"
    except ValueError:
        return ""


def usb_port_path(device: Any) -> str:
    """Port path such as '5-1.2' from the sysfs path, or 'usbN' for a root hub."""
    busnum = device.get("BUSNUM")
    if not busnum:
        return ""
    bus_bare = str(int(busnum))
    for part in reversed(device.sys_path.split("/")):
        if part.startswith(bus_bare + "-") or part == f"usb{bus_bare}":
            return part
    return f"usb{bus_bare}"


def find_device_nodes(context: Any, device: Any) -> list[str]:
    """Find /dev/ nodes associated with a USB device (e.g., /dev/ttyACM0, /dev/sda)."""
    dev_nodes = []
    try:
        for subsystem in _NODE_SUBSYSTEMS:
            for child in context.list_devices(subsystem=subsystem, parent=device):
                if child.device_node:
                    dev_nodes.append(child.device_node)
    except Exception as e:
        logger.debug(f"Error finding device nodes: {e}")
    return sorted(set(dev_nodes))


def _read_sysfs(device: Any, attribute: str) -> Optional[str]:
    path = Path(device.sys_path) / attribute
    try:
        return path.read_text().strip()
    except OSError:
        return None


def usb_identity(device: Any) -> Optional[DeviceIdentity]:
    """Build a DeviceIdentity from a udev usb_device, or None if it has no IDs."""
    vendor_id = normalize_code(device.get("ID_VENDOR_ID"))
    product_id = normalize_code(device.get("ID_MODEL_ID"))
    if vendor_id is None or product_id is None:
        return None
    return DeviceIdentity(
        bus=BusKind.USB,
        vendor_id=vendor_id,
        product_id=product_id,
        serial=device.get("ID_SERIAL_SHORT") or None,
        location=usb_port_path(device) or None,
        manufacturer=device.get("ID_VENDOR_FROM_DATABASE") or device.get("ID_VENDOR"),
        model=device.get("ID_MODEL_FROM_DATABASE") or device.get("ID_MODEL"),
    )


def pci_identity(device: Any) -> Optional[DeviceIdentity]:
    """Build a DeviceIdentity from a udev PCI device using its PCI_ID property."""
    pci_id = device.get("PCI_ID", "")
    if ":" not in pci_id:
        return None
    vendor_id, product_id = (normalize_code(part) for part in pci_id.split(":", 1))
    if vendor_id is None or product_id is None:
        return None
    return DeviceIdentity(
        bus=BusKind.PCI,
        vendor_id=vendor_id,
        product_id=product_id,
        location=device.get("PCI_SLOT_NAME") or None,
        manufacturer=device.get("ID_VENDOR_FROM_DATABASE"),
        model=device.get("ID_MODEL_FROM_DATABASE"),
    )


class UdevDeviceProber:
    """DeviceProber backed by udev.

    Args:
        context: pyudev context; created on first use when not given
        id_handles: ID databases used to add vendor and product names
    """

    def __init__(
        self,
        context: Optional[Any] = None,
        id_handles: Optional[dict[BusKind, IdDatabaseHandle]] = None,
    ):
        self._context = context
        self.id_handles = id_handles or {}

    @property
    def context(self) -> Any:
        if self._context is None:
            self._context = pyudev.Context()
        return self._context

    def _candidates(self, bus: BusKind) -> list[tuple[DeviceIdentity, Any]]:
        if bus == BusKind.USB:
            devices = self.context.list_devices(subsystem="usb", DEVTYPE="usb_device")
            build = usb_identity
        else:
            devices = self.context.list_devices(subsystem="pci")
            build = pci_identity

        candidates = []
        for device in devices:
            identity = build(device)
            if identity is not None:
                candidates.append((identity, device))
        return candidates

    def list_identities(self) -> list[DeviceIdentity]:
        """Identities of every attached USB and PCI device."""
        identities = []
        for bus in BusKind:
            identities.extend(identity for identity, _ in self._candidates(bus))
        return identities

    def _names(self, identity: DeviceIdentity) -> tuple[Optional[str], Optional[str]]:
        handle = self.id_handles.get(identity.bus)
        if handle is None:
            return None, None
        return handle.lookup(identity.vendor_id, identity.product_id)

    def _usb_details(self, device: Any) -> dict[str, Any]:
        power_draw = 0
        max_power = device.get("bMaxPower", "")
        if max_power:
            try:
                power_draw = int(max_power.replace("mA", "").strip())
            except ValueError:
                pass

        num_ports = None
        maxchild = _read_sysfs(device, "maxchild")
        if maxchild:
            try:
                num_ports = int(maxchild) or None
            except ValueError:
                pass

        device_class = device.get("bDeviceClass") or _read_sysfs(device, "bDeviceClass")
        return {
            "port_path": usb_port_path(device),
            "speed": parse_speed(device.get("SPEED", "") or (_read_sysfs(device, "speed") or "")),
            "usb_version": device.get("bcdUSB") or _read_sysfs(device, "version") or "",
            "device_class": device_class,
            "power_draw_ma": power_draw,
            "num_ports": num_ports,
            "dev_nodes": find_device_nodes(self.context, device),
        }

    def _pci_details(self, device: Any) -> dict[str, Any]:
        return {
            "slot": device.get("PCI_SLOT_NAME"),
            "pci_class": device.get("PCI_CLASS"),
            "subsystem_id": device.get("PCI_SUBSYS_ID"),
            "modalias": device.get("MODALIAS"),
        }

    def probe_sync(self, device_key: str) -> dict[str, Any]:
        """Blocking probe; see probe_device."""
        bus_name = device_key.split(":", 1)[0]
        try:
            bus = BusKind(bus_name)
        except ValueError:
            raise DeviceNotFoundError(f"Unknown bus in device key {device_key!r}")

        candidates = self._candidates(bus)
        match = next((c for c in candidates if c[0].device_key == device_key), None)
        if match is None:
            # Keys built without serial or location still name a device
            match = next(
                (c for c in candidates if c[0].device_key.startswith(device_key + ":")),
                None,
            )
        if match is None:
            raise DeviceNotFoundError(f"No attached device matches {device_key}")

        identity, device = match
        vendor_name, product_name = self._names(identity)
        info: dict[str, Any] = {
            "identity": identity.model_dump(mode="json"),
            "vendor_name": vendor_name,
            "product_name": product_name,
            "manufacturer": device.get("ID_VENDOR") or identity.manufacturer,
            "product": device.get("ID_MODEL") or identity.model,
            "serial": identity.serial,
            "driver": device.get("DRIVER"),
            "sys_path": device.sys_path,
        }
        if bus == BusKind.USB:
            info.update(self._usb_details(device))
        else:
            info.update(self._pci_details(device))
        return info

    async def probe_device(self, device_key: str) -> dict[str, Any]:
        """Collect deep info for device_key from udev.

        Raises:
            DeviceNotFoundError: if no attached device has that key
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.probe_sync, device_key)
