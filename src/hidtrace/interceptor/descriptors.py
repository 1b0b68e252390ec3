"""
USB Descriptor data structures.

Immutable descriptors for one attachment point, full enumeration
snapshots, and extraction from PyUSB device objects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, NamedTuple

from hidtrace.interceptor.constants import LinkSpeed, USBClass, get_class_name


logger = logging.getLogger(__name__)


class DeviceIdentity(NamedTuple):
    """Attachment point of a device: stable only between consecutive snapshots."""

    bus: int
    address: int

    def __str__(self) -> str:
        return f"{self.bus}:{self.address}"


@dataclass(frozen=True)
class DeviceDescriptor:
    """USB Device Descriptor fields relevant to implant detection."""

    bus: int
    address: int
    vid: str  # Vendor ID (hex string)
    pid: str  # Product ID (hex string)
    max_power_ma: int
    speed: LinkSpeed
    device_class: int
    device_subclass: int = 0
    device_protocol: int = 0
    configuration: int = 1
    interface_classes: tuple[int, ...] = ()
    manufacturer: str | None = None
    product: str | None = None
    serial: str | None = None

    @property
    def identity(self) -> DeviceIdentity:
        """Get the (bus, address) attachment point."""
        return DeviceIdentity(self.bus, self.address)

    @property
    def class_name(self) -> str:
        """Get human-readable device class name."""
        return get_class_name(self.device_class)

    @property
    def vid_pid(self) -> str:
        return f"{self.vid}:{self.pid}"

    def candidate_classes(self) -> list[int]:
        """
        Classes this device claims, in the order they should be considered.

        A nonzero device class is authoritative; class 0x00 defers to the
        interface classes of the active configuration.
        """
        if self.device_class != USBClass.PER_INTERFACE:
            return [self.device_class]
        seen: list[int] = []
        for code in self.interface_classes:
            if code not in seen:
                seen.append(code)
        return seen

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "bus": self.bus,
            "address": self.address,
            "vid": self.vid,
            "pid": self.pid,
            "max_power_ma": self.max_power_ma,
            "speed": self.speed.value,
            "device_class": self.device_class,
            "device_subclass": self.device_subclass,
            "device_protocol": self.device_protocol,
            "configuration": self.configuration,
            "interface_classes": list(self.interface_classes),
            "manufacturer": self.manufacturer,
            "product": self.product,
            "serial": self.serial,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeviceDescriptor:
        """
        Create a descriptor from a dictionary (recordings, fixtures).

        Integer IDs are formatted as 4-digit hex; string IDs are
        normalised to lower case without a "0x" prefix.
        """
        return cls(
            bus=int(data["bus"]),
            address=int(data["address"]),
            vid=_normalise_id(data["vid"]),
            pid=_normalise_id(data.get("pid", 0)),
            max_power_ma=int(data.get("max_power_ma", 0)),
            speed=LinkSpeed.from_name(data.get("speed", "unknown")),
            device_class=int(data.get("device_class", 0)),
            device_subclass=int(data.get("device_subclass", 0)),
            device_protocol=int(data.get("device_protocol", 0)),
            configuration=int(data.get("configuration", 1)),
            interface_classes=tuple(int(c) for c in data.get("interface_classes", ())),
            manufacturer=data.get("manufacturer"),
            product=data.get("product"),
            serial=data.get("serial"),
        )


def _normalise_id(value: int | str) -> str:
    if isinstance(value, int):
        return f"{value:04x}"
    text = str(value).strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    return text.zfill(4)


@dataclass(frozen=True)
class DeviceSnapshot:
    """
    A complete enumeration of attached devices at one capture time.

    Always a full snapshot: the tracker is incremental only by diffing.
    """

    timestamp: datetime
    devices: Mapping[DeviceIdentity, DeviceDescriptor] = field(default_factory=dict)

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[DeviceDescriptor],
        timestamp: datetime | None = None,
    ) -> DeviceSnapshot:
        """Build a snapshot keyed by each descriptor's identity."""
        devices = {d.identity: d for d in descriptors}
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            devices=devices,
        )

    def __len__(self) -> int:
        return len(self.devices)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "devices": [self.devices[k].to_dict() for k in sorted(self.devices)],
        }


# bMaxPower is expressed in 2 mA units up to USB 2.0 and 8 mA units for SuperSpeed
POWER_UNIT_MA = 2
SUPERSPEED_POWER_UNIT_MA = 8


def max_power_ma(b_max_power: int, speed: LinkSpeed) -> int:
    """
    Convert a configuration's bMaxPower field to milliamps.

    Args:
        b_max_power: Raw bMaxPower value
        speed: Negotiated link speed (selects the unit)

    Returns:
        Advertised maximum power draw in mA
    """
    if speed in (LinkSpeed.SUPER, LinkSpeed.SUPER_PLUS):
        return b_max_power * SUPERSPEED_POWER_UNIT_MA
    return b_max_power * POWER_UNIT_MA


def _read_string(dev: Any, index: int) -> str | None:
    """Read a string descriptor, returning None when the device refuses."""
    import usb.core
    import usb.util

    if not index:
        return None
    try:
        return usb.util.get_string(dev, index)
    except (usb.core.USBError, ValueError, NotImplementedError) as e:
        logger.debug("Could not read string %d from %s:%s: %s", index, dev.bus, dev.address, e)
        return None


def extract_device_info(dev: Any, read_strings: bool = True) -> DeviceDescriptor:
    """
    Extract device information from a PyUSB device object.

    Args:
        dev: usb.core.Device object
        read_strings: Whether to read manufacturer/product/serial strings
            (requires opening the device)

    Returns:
        DeviceDescriptor with parsed information
    """
    speed = LinkSpeed.from_backend(getattr(dev, "speed", None))

    power = 0
    configuration = 0
    interface_classes: list[int] = []
    cfg = next(iter(dev), None)
    if cfg is not None:
        configuration = cfg.bConfigurationValue
        power = max_power_ma(cfg.bMaxPower, speed)
        for intf in cfg:
            interface_classes.append(intf.bInterfaceClass)

    strings: dict[str, str | None] = {"manufacturer": None, "product": None, "serial": None}
    if read_strings:
        strings["manufacturer"] = _read_string(dev, dev.iManufacturer)
        strings["product"] = _read_string(dev, dev.iProduct)
        strings["serial"] = _read_string(dev, dev.iSerialNumber)

    return DeviceDescriptor(
        bus=dev.bus,
        address=dev.address,
        vid=f"{dev.idVendor:04x}",
        pid=f"{dev.idProduct:04x}",
        max_power_ma=power,
        speed=speed,
        device_class=dev.bDeviceClass,
        device_subclass=dev.bDeviceSubClass,
        device_protocol=dev.bDeviceProtocol,
        configuration=configuration,
        interface_classes=tuple(interface_classes),
        **strings,
    )


def create_test_descriptor(
    bus: int = 1,
    address: int = 2,
    vid: str = "1234",
    pid: str = "5678",
    max_power_ma: int = 100,
    speed: LinkSpeed = LinkSpeed.FULL,
    device_class: int = USBClass.HID,
    **kwargs: Any,
) -> DeviceDescriptor:
    """
    Create a descriptor with sensible defaults for tests and fixtures.

    Any other DeviceDescriptor field may be passed as a keyword argument.
    """
    return DeviceDescriptor(
        bus=bus,
        address=address,
        vid=vid,
        pid=pid,
        max_power_ma=max_power_ma,
        speed=speed,
        device_class=device_class,
        **kwargs,
    )
