"""USB connection to a gs_usb adapter, backed by ``pyusb``.

This module only moves bytes: vendor control transfers on interface 0 and
bulk transfers on endpoints 0x02 (OUT) and 0x81 (IN). It knows nothing
about frames or bit timing.

Backend failures are raised as :class:`~gs_usb_can.errors.TransportError`
(tagged with the operation) or :class:`~gs_usb_can.errors.TransportTimeout`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import usb.core
import usb.util

from ..errors import DeviceNotFound, TransportError, TransportTimeout
from ..protocol.constants import (
    GS_USB_ENDPOINT_IN,
    GS_USB_ENDPOINT_OUT,
    GS_USB_INTERFACE,
    KNOWN_DEVICE_IDS,
    REQUEST_TYPE_IN,
    REQUEST_TYPE_OUT,
)

logger = logging.getLogger(__name__)


@dataclass
class UsbDeviceInfo:
    """Basic device identification from USB descriptors."""

    vendor_id: int = 0
    product_id: int = 0
    bus: int = 0
    address: int = 0
    manufacturer: str = ""
    product: str = ""
    serial_number: str = ""


def _wrap(operation: str, exc: usb.core.USBError) -> TransportError:
    if isinstance(exc, usb.core.USBTimeoutError):
        return TransportTimeout(operation, exc)
    return TransportError(operation, exc)


def find_devices(ids: tuple[tuple[int, int], ...] = KNOWN_DEVICE_IDS) -> list:
    """All attached devices matching one of the (vendor id, product id) pairs."""
    wanted = set(ids)
    found = usb.core.find(
        find_all=True,
        custom_match=lambda d: (d.idVendor, d.idProduct) in wanted,
    )
    return list(found or [])


class USBConnection:
    """Raw transfer primitives for one gs_usb device.

    Usage::

        conn = USBConnection.open()
        conn.claim_interface()
        conn.control_out(Request.MODE, 0, payload)
        data = conn.bulk_read(24, timeout_ms=100)
        conn.close()
    """

    def __init__(self, device, interface: int = GS_USB_INTERFACE) -> None:
        self._device = device
        self._interface = interface
        self._claimed = False

    @classmethod
    def open(
        cls,
        bus: int | None = None,
        address: int | None = None,
        ids: tuple[tuple[int, int], ...] = KNOWN_DEVICE_IDS,
    ) -> USBConnection:
        """Open the first matching device, optionally at a bus/address.

        Raises:
            DeviceNotFound: If no matching device is attached.
        """
        for dev in find_devices(ids):
            if bus is not None and dev.bus != bus:
                continue
            if address is not None and dev.address != address:
                continue
            logger.info(
                "Opened gs_usb device %04x:%04x (bus %s, addr %s)",
                dev.idVendor, dev.idProduct, dev.bus, dev.address,
            )
            return cls(dev)

        where = ""
        if bus is not None or address is not None:
            where = f" at bus {bus}, address {address}"
        raise DeviceNotFound(f"No gs_usb device found{where}")

    @classmethod
    def scan(cls, ids: tuple[tuple[int, int], ...] = KNOWN_DEVICE_IDS) -> list[USBConnection]:
        return [cls(dev) for dev in find_devices(ids)]

    # ─── descriptors ─────────────────────────────────────────────────

    @property
    def bus(self) -> int:
        return self._device.bus

    @property
    def address(self) -> int:
        return self._device.address

    @property
    def vendor_id(self) -> int:
        return self._device.idVendor

    @property
    def product_id(self) -> int:
        return self._device.idProduct

    @property
    def serial_number(self) -> str:
        if not self._device.iSerialNumber:
            return ""
        try:
            return usb.util.get_string(self._device, self._device.iSerialNumber) or ""
        except (usb.core.USBError, ValueError) as e:
            raise TransportError("get_string", e) from e

    def device_info(self) -> UsbDeviceInfo:
        def _string(index: int) -> str:
            if not index:
                return ""
            try:
                return usb.util.get_string(self._device, index) or ""
            except (usb.core.USBError, ValueError) as e:
                logger.debug("Reading string descriptor %d failed: %s", index, e)
                return ""

        return UsbDeviceInfo(
            vendor_id=self.vendor_id,
            product_id=self.product_id,
            bus=self.bus,
            address=self.address,
            manufacturer=_string(self._device.iManufacturer),
            product=_string(self._device.iProduct),
            serial_number=_string(self._device.iSerialNumber),
        )

    # ─── device management ───────────────────────────────────────────

    def reset(self) -> None:
        try:
            self._device.reset()
        except usb.core.USBError as e:
            raise _wrap("reset", e) from e
        self._claimed = False

    def is_kernel_driver_active(self, interface: int | None = None) -> bool:
        """Whether a kernel driver is bound to the interface.

        Platforms without kernel drivers (Windows backends) report False.
        """
        interface = self._interface if interface is None else interface
        try:
            return bool(self._device.is_kernel_driver_active(interface))
        except NotImplementedError:
            return False
        except usb.core.USBError as e:
            logger.debug("Kernel driver query failed: %s", e)
            return False

    def detach_kernel_driver(self, interface: int | None = None) -> None:
        interface = self._interface if interface is None else interface
        try:
            self._device.detach_kernel_driver(interface)
        except NotImplementedError:
            return
        except usb.core.USBError as e:
            raise _wrap("detach_kernel_driver", e) from e

    def claim_interface(self, interface: int | None = None) -> None:
        interface = self._interface if interface is None else interface
        try:
            usb.util.claim_interface(self._device, interface)
        except usb.core.USBError as e:
            raise _wrap("claim_interface", e) from e
        self._claimed = True

    def release_interface(self, interface: int | None = None) -> None:
        interface = self._interface if interface is None else interface
        try:
            usb.util.release_interface(self._device, interface)
        except usb.core.USBError as e:
            raise _wrap("release_interface", e) from e
        self._claimed = False

    def close(self) -> None:
        """Release the interface and free backend resources."""
        try:
            if self._claimed:
                self.release_interface()
            usb.util.dispose_resources(self._device)
        except (TransportError, usb.core.USBError) as e:
            logger.warning("Error closing device: %s", e)
        finally:
            self._claimed = False
            logger.info("Disconnected")

    # ─── transfers ───────────────────────────────────────────────────

    def control_out(self, request: int, value: int, data: bytes, timeout_ms: int) -> int:
        """Vendor control transfer, host to device (bmRequestType 0x41)."""
        try:
            written = self._device.ctrl_transfer(
                REQUEST_TYPE_OUT, request, value, 0, data, timeout_ms
            )
        except usb.core.USBError as e:
            raise _wrap("control_out", e) from e
        logger.debug("control_out req=%d value=%d len=%d", request, value, len(data))
        return written

    def control_in(self, request: int, value: int, length: int, timeout_ms: int) -> bytes:
        """Vendor control transfer, device to host (bmRequestType 0xC1)."""
        try:
            data = self._device.ctrl_transfer(
                REQUEST_TYPE_IN, request, value, 0, length, timeout_ms
            )
        except usb.core.USBError as e:
            raise _wrap("control_in", e) from e
        logger.debug("control_in req=%d value=%d got=%d/%d", request, value, len(data), length)
        return bytes(data)

    def bulk_write(self, data: bytes, timeout_ms: int) -> int:
        try:
            return self._device.write(GS_USB_ENDPOINT_OUT, data, timeout=timeout_ms)
        except usb.core.USBError as e:
            raise _wrap("bulk_write", e) from e

    def bulk_read(self, length: int, timeout_ms: int) -> bytes:
        try:
            data = self._device.read(GS_USB_ENDPOINT_IN, length, timeout=timeout_ms)
        except usb.core.USBError as e:
            raise _wrap("bulk_read", e) from e
        return bytes(data)

    def __repr__(self) -> str:
        return (
            f"USBConnection({self.vendor_id:04x}:{self.product_id:04x}, "
            f"bus={self.bus}, address={self.address})"
        )
