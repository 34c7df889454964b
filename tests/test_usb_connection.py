"""Tests for the pyusb transport, with the backend mocked out."""

from unittest.mock import MagicMock, patch

import pytest
import usb.core

from gs_usb_can.errors import DeviceNotFound, TransportError, TransportTimeout
from gs_usb_can.transport.usb_connection import USBConnection, find_devices


def _usb_device(vid=0x1D50, pid=0x606F, bus=1, address=4):
    dev = MagicMock()
    dev.idVendor = vid
    dev.idProduct = pid
    dev.bus = bus
    dev.address = address
    dev.iSerialNumber = 3
    return dev


def test_find_devices_matches_known_ids():
    """Only devices on the known vendor/product list are returned."""
    candle = _usb_device(0x1209, 0x2323)
    other = _usb_device(0x046D, 0xC52B)

    def fake_find(find_all, custom_match):
        return [d for d in (candle, other) if custom_match(d)]

    with patch("usb.core.find", side_effect=fake_find):
        assert find_devices() == [candle]


def test_open_picks_bus_and_address():
    first = _usb_device(bus=1, address=4)
    second = _usb_device(bus=2, address=7)
    with patch("gs_usb_can.transport.usb_connection.find_devices", return_value=[first, second]):
        conn = USBConnection.open(bus=2, address=7)
    assert conn.bus == 2
    assert conn.address == 7


def test_open_no_device():
    with patch("gs_usb_can.transport.usb_connection.find_devices", return_value=[]):
        with pytest.raises(DeviceNotFound):
            USBConnection.open()


def test_control_out_request_type():
    dev = _usb_device()
    dev.ctrl_transfer.return_value = 8
    conn = USBConnection(dev)
    assert conn.control_out(2, 0, b"\x01" * 8, 1000) == 8
    dev.ctrl_transfer.assert_called_once_with(0x41, 2, 0, 0, b"\x01" * 8, 1000)


def test_control_in_request_type():
    dev = _usb_device()
    dev.ctrl_transfer.return_value = bytearray(b"\x01\x02\x03\x04")
    conn = USBConnection(dev)
    assert conn.control_in(6, 0, 4, 1000) == b"\x01\x02\x03\x04"
    dev.ctrl_transfer.assert_called_once_with(0xC1, 6, 0, 0, 4, 1000)


def test_bulk_endpoints():
    dev = _usb_device()
    dev.read.return_value = bytearray(20)
    conn = USBConnection(dev)
    conn.bulk_write(b"\x00" * 20, 1000)
    dev.write.assert_called_once_with(0x02, b"\x00" * 20, timeout=1000)
    assert conn.bulk_read(20, 100) == bytes(20)
    dev.read.assert_called_once_with(0x81, 20, timeout=100)


def test_bulk_read_timeout_mapped():
    """Backend timeouts become TransportTimeout."""
    dev = _usb_device()
    dev.read.side_effect = usb.core.USBTimeoutError("timeout")
    conn = USBConnection(dev)
    with pytest.raises(TransportTimeout):
        conn.bulk_read(20, 10)


def test_bulk_read_error_mapped():
    dev = _usb_device()
    dev.read.side_effect = usb.core.USBError("pipe error")
    conn = USBConnection(dev)
    with pytest.raises(TransportError) as exc:
        conn.bulk_read(20, 10)
    assert not isinstance(exc.value, TransportTimeout)
    assert exc.value.operation == "bulk_read"


def test_kernel_driver_not_implemented():
    """Backends without kernel drivers report none active."""
    dev = _usb_device()
    dev.is_kernel_driver_active.side_effect = NotImplementedError
    assert USBConnection(dev).is_kernel_driver_active() is False


def test_claim_and_close_release():
    dev = _usb_device()
    conn = USBConnection(dev)
    with patch("usb.util.claim_interface") as claim, \
            patch("usb.util.release_interface") as release, \
            patch("usb.util.dispose_resources") as dispose:
        conn.claim_interface()
        conn.close()
    claim.assert_called_once_with(dev, 0)
    release.assert_called_once_with(dev, 0)
    dispose.assert_called_once_with(dev)


def test_close_logs_errors_instead_of_raising():
    dev = _usb_device()
    conn = USBConnection(dev)
    with patch("usb.util.dispose_resources", side_effect=usb.core.USBError("gone")):
        conn.close()


def test_serial_number():
    dev = _usb_device()
    with patch("usb.util.get_string", return_value="0042"):
        assert USBConnection(dev).serial_number == "0042"
