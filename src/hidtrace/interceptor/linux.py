"""
Linux USB snapshot source.

Enumerates attached devices with libusb/PyUSB and produces full
snapshots on a poll interval. pyudev, when available, wakes the poller
as soon as the kernel reports a device add/remove.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator

import usb.core

from hidtrace.interceptor.descriptors import DeviceDescriptor, DeviceSnapshot, extract_device_info


logger = logging.getLogger(__name__)


class USBEnumerator:
    """
    USB device enumerator using PyUSB.

    Provides full enumeration of currently connected devices.
    """

    def __init__(self, read_strings: bool = True) -> None:
        self.read_strings = read_strings

    def enumerate_all(self) -> list[DeviceDescriptor]:
        """
        Enumerate all currently connected USB devices.

        Returns:
            List of DeviceDescriptor for each readable device.

        Raises:
            usb.core.NoBackendError: If libusb is not installed.
        """
        devices = []
        try:
            for dev in usb.core.find(find_all=True):
                try:
                    descriptor = extract_device_info(dev, read_strings=self.read_strings)
                    devices.append(descriptor)
                except usb.core.USBError as e:
                    logger.warning(
                        "Failed to read device %04x:%04x: %s",
                        dev.idVendor, dev.idProduct, e
                    )
        except usb.core.NoBackendError:
            logger.error("No USB backend available. Install libusb.")
            raise
        return devices

    def snapshot(self) -> DeviceSnapshot:
        """Capture a full snapshot stamped with the capture time."""
        timestamp = datetime.now(timezone.utc)
        return DeviceSnapshot.from_descriptors(self.enumerate_all(), timestamp=timestamp)


class USBMonitor:
    """
    USB add/remove notifications from udev.

    Used only as a wake-up: the poller re-enumerates on every
    notification rather than trusting udev for descriptor data.
    """

    def __init__(self) -> None:
        self._context = None
        self._monitor = None

    def _ensure_monitor(self) -> None:
        """Initialize pyudev monitor if needed."""
        if self._monitor is None:
            import pyudev
            self._context = pyudev.Context()
            self._monitor = pyudev.Monitor.from_netlink(self._context)
            self._monitor.filter_by(subsystem="usb", device_type="usb_device")
            self._monitor.start()

    def wait(self, timeout: float) -> str | None:
        """
        Block until a USB device event arrives or the timeout elapses.

        Returns:
            The udev action ("add", "remove", ...) or None on timeout.
        """
        self._ensure_monitor()
        device = self._monitor.poll(timeout=timeout)
        if device is None:
            return None
        logger.debug(
            "udev %s: bus %s device %s",
            device.action, device.get("BUSNUM"), device.get("DEVNUM"),
        )
        return device.action


class SnapshotPoller:
    """
    Async producer of full USB snapshots.

    Snapshots are taken every ``poll_interval`` seconds, or sooner when
    the udev monitor reports a change.
    """

    def __init__(
        self,
        enumerator: USBEnumerator | None = None,
        monitor: USBMonitor | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.enumerator = enumerator or USBEnumerator()
        self.monitor = monitor
        self.poll_interval = poll_interval
        self._running = False

    async def _wait(self) -> None:
        if self.monitor is None:
            await asyncio.sleep(self.poll_interval)
            return
        try:
            await asyncio.to_thread(self.monitor.wait, self.poll_interval)
        except (ImportError, OSError) as e:
            logger.warning("udev wake-up unavailable, polling only: %s", e)
            self.monitor = None
            await asyncio.sleep(self.poll_interval)

    async def snapshots(self) -> AsyncIterator[DeviceSnapshot]:
        """Yield snapshots until stopped."""
        self._running = True
        logger.info(
            "Polling USB devices every %.1fs%s",
            self.poll_interval, " (udev wake-up)" if self.monitor else "",
        )
        try:
            while self._running:
                snapshot = await asyncio.to_thread(self.enumerator.snapshot)
                yield snapshot
                await self._wait()
        finally:
            self._running = False
            logger.info("USB poller stopped")

    def stop(self) -> None:
        """Stop after the current poll."""
        self._running = False
