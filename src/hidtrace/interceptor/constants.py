"""
USB Constants and Reference Data.

USB class codes, negotiated link speeds and the reference names used
when classifying and reporting devices.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import NamedTuple


class USBClass(IntEnum):
    """USB Device/Interface Class Codes."""

    PER_INTERFACE = 0x00  # Class defined at interface level
    AUDIO = 0x01
    CDC_CONTROL = 0x02  # Communications Device Class
    HID = 0x03  # Human Interface Device
    PHYSICAL = 0x05
    IMAGE = 0x06
    PRINTER = 0x07
    MASS_STORAGE = 0x08
    HUB = 0x09
    CDC_DATA = 0x0A
    SMART_CARD = 0x0B
    CONTENT_SECURITY = 0x0D
    VIDEO = 0x0E
    PERSONAL_HEALTHCARE = 0x0F
    AUDIO_VIDEO = 0x10
    BILLBOARD = 0x11
    DIAGNOSTIC = 0xDC
    WIRELESS_CONTROLLER = 0xE0
    MISCELLANEOUS = 0xEF
    APPLICATION_SPECIFIC = 0xFE
    VENDOR_SPECIFIC = 0xFF


class LinkSpeed(str, Enum):
    """Negotiated USB link speed."""

    LOW = "low"
    FULL = "full"
    HIGH = "high"
    SUPER = "super"
    SUPER_PLUS = "super_plus"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value

    @property
    def mbps(self) -> int:
        """Nominal signalling rate in Mbit/s (0 when unknown)."""
        return _SPEED_MBPS[self]

    @property
    def rank(self) -> int:
        """Ordering used for floor/ceiling comparisons."""
        return _SPEED_ORDER.index(self)

    @classmethod
    def from_backend(cls, code: int | None) -> LinkSpeed:
        """
        Map a libusb speed code (as reported by PyUSB) to a LinkSpeed.

        Args:
            code: libusb speed constant, or None when the backend can't tell

        Returns:
            Matching LinkSpeed, UNKNOWN for anything unrecognised.
        """
        return _BACKEND_SPEEDS.get(code, cls.UNKNOWN)

    @classmethod
    def from_name(cls, name: str) -> LinkSpeed:
        """
        Parse a speed name as written in policy files or recordings.

        Accepts enum values ("high"), names ("SUPER_PLUS"), dashed
        variants ("super-plus") and nominal rates ("480").

        Raises:
            ValueError: If the name is not a known speed.
        """
        key = str(name).strip().lower().replace("-", "_").replace(" ", "_")
        for speed in cls:
            if key == speed.value or key == str(speed.mbps):
                return speed
        raise ValueError(f"Unknown link speed: {name}")


_SPEED_MBPS = {
    LinkSpeed.LOW: 1,
    LinkSpeed.FULL: 12,
    LinkSpeed.HIGH: 480,
    LinkSpeed.SUPER: 5000,
    LinkSpeed.SUPER_PLUS: 10000,
    LinkSpeed.UNKNOWN: 0,
}

_SPEED_ORDER = [
    LinkSpeed.UNKNOWN,
    LinkSpeed.LOW,
    LinkSpeed.FULL,
    LinkSpeed.HIGH,
    LinkSpeed.SUPER,
    LinkSpeed.SUPER_PLUS,
]

# libusb_speed values: UNKNOWN=0, LOW=1, FULL=2, HIGH=3, SUPER=4, SUPER_PLUS=5
_BACKEND_SPEEDS = {
    1: LinkSpeed.LOW,
    2: LinkSpeed.FULL,
    3: LinkSpeed.HIGH,
    4: LinkSpeed.SUPER,
    5: LinkSpeed.SUPER_PLUS,
}


class ClassInfo(NamedTuple):
    """Information about a USB class."""

    code: int
    name: str
    description: str


USB_CLASS_INFO: dict[int, ClassInfo] = {
    USBClass.PER_INTERFACE: ClassInfo(
        0x00, "Interface Defined", "Class defined at interface level"
    ),
    USBClass.AUDIO: ClassInfo(0x01, "Audio", "Speakers, microphones"),
    USBClass.CDC_CONTROL: ClassInfo(
        0x02, "Communications and CDC Control", "Modems, network adapters, serial ports"
    ),
    USBClass.HID: ClassInfo(
        0x03, "HID (Human Interface Device)", "Keyboards, mice - keystroke injection vector"
    ),
    USBClass.PHYSICAL: ClassInfo(0x05, "Physical", "Force feedback devices"),
    USBClass.IMAGE: ClassInfo(0x06, "Image", "Cameras, scanners"),
    USBClass.PRINTER: ClassInfo(0x07, "Printer", "Printers"),
    USBClass.MASS_STORAGE: ClassInfo(0x08, "Mass Storage", "USB drives"),
    USBClass.HUB: ClassInfo(0x09, "Hub", "USB hubs"),
    USBClass.CDC_DATA: ClassInfo(0x0A, "CDC-Data", "Data interface for CDC devices"),
    USBClass.SMART_CARD: ClassInfo(0x0B, "Smart Card", "Smart card readers"),
    USBClass.CONTENT_SECURITY: ClassInfo(0x0D, "Content Security", "Content protection"),
    USBClass.VIDEO: ClassInfo(0x0E, "Video", "Webcams"),
    USBClass.PERSONAL_HEALTHCARE: ClassInfo(0x0F, "Personal Healthcare", "Medical devices"),
    USBClass.AUDIO_VIDEO: ClassInfo(0x10, "Audio/Video Devices", "A/V streaming devices"),
    USBClass.BILLBOARD: ClassInfo(0x11, "Billboard Device", "Alternate mode billboards"),
    USBClass.DIAGNOSTIC: ClassInfo(0xDC, "Diagnostic Device", "Debug and test devices"),
    USBClass.WIRELESS_CONTROLLER: ClassInfo(
        0xE0, "Wireless Controller", "Bluetooth/WiFi adapters"
    ),
    USBClass.MISCELLANEOUS: ClassInfo(0xEF, "Miscellaneous", "Composite devices"),
    USBClass.APPLICATION_SPECIFIC: ClassInfo(
        0xFE, "Application Specific", "DFU, IRDA"
    ),
    USBClass.VENDOR_SPECIFIC: ClassInfo(0xFF, "Vendor Specific", "Unknown functionality"),
}

# Short names accepted in policy files
CLASS_ALIASES: dict[str, int] = {
    "audio": USBClass.AUDIO,
    "cdc": USBClass.CDC_CONTROL,
    "communications": USBClass.CDC_CONTROL,
    "hid": USBClass.HID,
    "physical": USBClass.PHYSICAL,
    "image": USBClass.IMAGE,
    "printer": USBClass.PRINTER,
    "mass_storage": USBClass.MASS_STORAGE,
    "storage": USBClass.MASS_STORAGE,
    "hub": USBClass.HUB,
    "cdc_data": USBClass.CDC_DATA,
    "smart_card": USBClass.SMART_CARD,
    "video": USBClass.VIDEO,
    "wireless": USBClass.WIRELESS_CONTROLLER,
    "miscellaneous": USBClass.MISCELLANEOUS,
    "application_specific": USBClass.APPLICATION_SPECIFIC,
    "vendor_specific": USBClass.VENDOR_SPECIFIC,
}


def get_class_info(class_code: int) -> ClassInfo | None:
    """
    Get information about a USB class.

    Args:
        class_code: USB class code

    Returns:
        ClassInfo or None if unknown
    """
    return USB_CLASS_INFO.get(class_code)


def get_class_name(class_code: int) -> str:
    """
    Get human-readable name for a USB class.

    Args:
        class_code: USB class code

    Returns:
        Class name string
    """
    info = USB_CLASS_INFO.get(class_code)
    if info:
        return info.name
    return f"Unknown (0x{class_code:02X})"


def parse_class_code(value: int | str) -> int:
    """
    Parse a class code from a policy value.

    Accepts integers, hex strings ("0x03"), decimal strings and the
    short aliases in CLASS_ALIASES ("hid", "mass_storage").

    Raises:
        ValueError: If the value is not a recognisable class.
    """
    if isinstance(value, bool):
        raise ValueError(f"Unknown device class: {value}")
    if isinstance(value, int):
        code = value
    else:
        text = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        if text in CLASS_ALIASES:
            return int(CLASS_ALIASES[text])
        try:
            code = int(text, 16) if text.startswith("0x") else int(text)
        except ValueError:
            raise ValueError(f"Unknown device class: {value}") from None
    if not 0 <= code <= 0xFF:
        raise ValueError(f"Class code out of range: {value}")
    return code
