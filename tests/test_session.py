"""Tests for the device session state machine, using a mocked transport."""

from __future__ import annotations

import struct
from unittest.mock import MagicMock

import pytest

from gs_usb_can.errors import (
    BulkTransferError,
    ClaimInterfaceError,
    ControlTransferError,
    DetachKernelDriverError,
    FdNotSupported,
    FeatureNotSupported,
    GetStateNotSupported,
    InvalidResponse,
    ReadTimeout,
    TransportError,
    TransportTimeout,
    UnsupportedBitrate,
    WriteTimeout,
)
from gs_usb_can.models.device import BitTiming
from gs_usb_can.protocol.commands import Request
from gs_usb_can.protocol.constants import (
    GS_CAN_FLAG_FD,
    GS_USB_RX_ECHO_ID,
    Feature,
    ModeFlag,
)
from gs_usb_can.protocol.framing import GsUsbFrame
from gs_usb_can.session import GsUsbSession, SessionState

FEATURES_CLASSIC = Feature.LISTEN_ONLY | Feature.LOOP_BACK | Feature.HW_TIMESTAMP
FEATURES_FD = FEATURES_CLASSIC | Feature.FD | Feature.BT_CONST_EXT | Feature.GET_STATE


def _bt_const(feature: int, clock: int) -> bytes:
    return struct.pack("<10I", int(feature), clock, 1, 16, 1, 8, 4, 1, 1024, 1)


def _bt_const_ext(feature: int, clock: int) -> bytes:
    return _bt_const(feature, clock) + struct.pack("<8I", 1, 16, 1, 8, 4, 1, 32, 1)


def _make_transport(feature: int = FEATURES_CLASSIC, clock: int = 48_000_000) -> MagicMock:
    """Mock transport answering control reads like a real adapter."""
    responses = {
        Request.DEVICE_CONFIG: bytes([0, 0, 0, 0]) + struct.pack("<II", 20, 10),
        Request.BT_CONST: _bt_const(feature, clock),
        Request.BT_CONST_EXT: _bt_const_ext(feature, clock),
        Request.TIMESTAMP: struct.pack("<I", 123456),
        Request.GET_STATE: struct.pack("<3I", 1, 100, 3),
        Request.GET_TERMINATION: struct.pack("<I", 1),
        Request.GET_USER_ID: struct.pack("<I", 0xCAFE),
    }
    transport = MagicMock()
    transport.is_kernel_driver_active.return_value = False
    transport.control_in.side_effect = lambda request, value, length, timeout: responses[request]
    return transport


def _sent_requests(transport: MagicMock) -> list[int]:
    return [c.args[0] for c in transport.control_out.call_args_list]


def _mode_payload(transport: MagicMock) -> tuple[int, int]:
    for c in transport.control_out.call_args_list:
        if c.args[0] == Request.MODE:
            return struct.unpack("<2I", c.args[2])
    raise AssertionError("no MODE request sent")


# ─── construction ────────────────────────────────────────────────────

def test_new_session_is_idle():
    dev = GsUsbSession(_make_transport())
    assert dev.state == SessionState.IDLE
    assert not dev.started
    assert not dev.fd_mode
    assert dev.capability is None


def test_channel_out_of_range():
    with pytest.raises(ValueError):
        GsUsbSession(_make_transport(), channel=0x10000)


# ─── start / stop ────────────────────────────────────────────────────

def test_start_masks_unsupported_modes():
    """Mode bits the device or driver lacks are dropped silently."""
    transport = _make_transport(FEATURES_CLASSIC)
    dev = GsUsbSession(transport)
    requested = ModeFlag.LISTEN_ONLY | ModeFlag.ONE_SHOT | ModeFlag.FD | ModeFlag.HW_TIMESTAMP
    effective = dev.start(requested)
    assert effective == ModeFlag.LISTEN_ONLY | ModeFlag.HW_TIMESTAMP
    assert _mode_payload(transport) == (1, int(effective))
    assert dev.started
    assert dev.state == SessionState.RUNNING
    assert not dev.fd_mode


def test_start_never_passes_driver_unsupported_bits():
    """Bits outside the driver mask stay off even if the device has them."""
    transport = _make_transport(Feature.IDENTIFY | Feature.TRIPLE_SAMPLE | Feature.LOOP_BACK)
    dev = GsUsbSession(transport)
    effective = dev.start(ModeFlag.IDENTIFY | ModeFlag.TRIPLE_SAMPLE | ModeFlag.LOOP_BACK)
    assert effective == ModeFlag.LOOP_BACK


def test_start_enables_fd_mode():
    dev = GsUsbSession(_make_transport(FEATURES_FD, 40_000_000))
    dev.start(ModeFlag.FD)
    assert dev.fd_mode


def test_start_sequence():
    """Reset, claim, capability fetch, then MODE."""
    transport = _make_transport()
    dev = GsUsbSession(transport)
    dev.start()
    transport.reset.assert_called_once()
    transport.claim_interface.assert_called_once_with(0)
    assert transport.control_in.call_args_list[0].args[0] == Request.BT_CONST
    assert _sent_requests(transport) == [Request.MODE]


def test_start_detaches_active_kernel_driver():
    transport = _make_transport()
    transport.is_kernel_driver_active.return_value = True
    GsUsbSession(transport).start()
    transport.detach_kernel_driver.assert_called_once_with(0)


def test_start_skips_detach_when_inactive():
    transport = _make_transport()
    GsUsbSession(transport).start()
    transport.detach_kernel_driver.assert_not_called()


def test_detach_failure_mapped():
    transport = _make_transport()
    transport.is_kernel_driver_active.return_value = True
    transport.detach_kernel_driver.side_effect = TransportError("detach_kernel_driver")
    with pytest.raises(DetachKernelDriverError):
        GsUsbSession(transport).start()


def test_claim_failure_mapped():
    transport = _make_transport()
    transport.claim_interface.side_effect = TransportError("claim_interface")
    dev = GsUsbSession(transport)
    with pytest.raises(ClaimInterfaceError):
        dev.start()
    assert not dev.started


def test_stop_sends_reset():
    transport = _make_transport()
    dev = GsUsbSession(transport)
    dev.start()
    transport.control_out.reset_mock()
    dev.stop()
    assert _mode_payload(transport) == (0, 0)
    assert not dev.started
    assert dev.state == SessionState.STOPPED


def test_stop_never_raises():
    """Transfer errors while stopping are swallowed."""
    transport = _make_transport()
    dev = GsUsbSession(transport)
    dev.start()
    transport.control_out.side_effect = TransportError("control_out")
    dev.stop()
    assert not dev.started


def test_context_manager_stops_on_error():
    transport = _make_transport()
    with pytest.raises(RuntimeError):
        with GsUsbSession(transport) as dev:
            dev.start()
            raise RuntimeError("boom")
    assert not dev.started
    assert _mode_payload_last(transport) == (0, 0)
    transport.close.assert_called_once()


def _mode_payload_last(transport: MagicMock) -> tuple[int, int]:
    modes = [c for c in transport.control_out.call_args_list if c.args[0] == Request.MODE]
    return struct.unpack("<2I", modes[-1].args[2])


def test_close_is_idempotent():
    transport = _make_transport()
    dev = GsUsbSession(transport)
    dev.close()
    dev.close()
    transport.close.assert_called_once()


# ─── bit timing ──────────────────────────────────────────────────────

def test_set_bitrate_40mhz():
    """500 kbit/s on a 40 MHz clock uses brp 5."""
    transport = _make_transport(FEATURES_CLASSIC, 40_000_000)
    dev = GsUsbSession(transport)
    timing = dev.set_bitrate(500_000)
    assert timing == BitTiming(1, 12, 2, 1, 5)
    request, value, payload, _ = transport.control_out.call_args.args
    assert request == Request.BITTIMING
    assert value == 0
    assert struct.unpack("<5I", payload) == (1, 12, 2, 1, 5)
    assert dev.state == SessionState.CONFIGURED
    assert dev.last_timing == timing


def test_set_bitrate_unsupported():
    transport = _make_transport(FEATURES_CLASSIC, 16_000_000)
    dev = GsUsbSession(transport)
    with pytest.raises(UnsupportedBitrate):
        dev.set_bitrate(500_000)
    transport.control_out.assert_not_called()


def test_set_data_bitrate_40mhz():
    transport = _make_transport(FEATURES_FD, 40_000_000)
    dev = GsUsbSession(transport)
    timing = dev.set_data_bitrate(5_000_000)
    assert timing == BitTiming(1, 4, 2, 1, 1)
    assert transport.control_out.call_args.args[0] == Request.DATA_BITTIMING


@pytest.mark.parametrize("clock", [40_000_000, 80_000_000, 48_000_000, 16_000_000])
def test_set_data_bitrate_without_fd(clock):
    """FD is checked before the table, whatever the clock."""
    transport = _make_transport(FEATURES_CLASSIC, clock)
    dev = GsUsbSession(transport)
    with pytest.raises(FdNotSupported):
        dev.set_data_bitrate(5_000_000)
    transport.control_out.assert_not_called()


def test_channel_sent_in_wvalue():
    transport = _make_transport(FEATURES_CLASSIC, 48_000_000)
    dev = GsUsbSession(transport, channel=1)
    dev.set_bitrate(250_000)
    assert transport.control_out.call_args.args[1] == 1


# ─── data plane ──────────────────────────────────────────────────────

def test_send_classic_frame():
    transport = _make_transport()
    dev = GsUsbSession(transport)
    dev.start()
    dev.send(GsUsbFrame.with_data(0x123, b"\x01\x02"))
    data, timeout = transport.bulk_write.call_args.args
    assert len(data) == 20
    assert timeout == 1000


def test_send_uses_negotiated_layout():
    transport = _make_transport(FEATURES_FD, 40_000_000)
    dev = GsUsbSession(transport)
    dev.start(ModeFlag.FD | ModeFlag.HW_TIMESTAMP)
    dev.send(GsUsbFrame.with_fd_data(0x123, bytes(12)))
    assert len(transport.bulk_write.call_args.args[0]) == 80


def test_send_timeout():
    transport = _make_transport()
    transport.bulk_write.side_effect = TransportTimeout("bulk_write")
    dev = GsUsbSession(transport)
    with pytest.raises(WriteTimeout):
        dev.send(GsUsbFrame.with_data(0x1))


def test_send_failure():
    transport = _make_transport()
    transport.bulk_write.side_effect = TransportError("bulk_write")
    dev = GsUsbSession(transport)
    with pytest.raises(BulkTransferError) as exc:
        dev.send(GsUsbFrame.with_data(0x1))
    assert exc.value.direction == "out"


def test_read_timeout_keeps_session_usable():
    """A read timeout is its own error and the next read still works."""
    transport = _make_transport()
    dev = GsUsbSession(transport)
    dev.start()
    rx = GsUsbFrame(echo_id=GS_USB_RX_ECHO_ID, can_id=0x42, can_dlc=1, data=b"\x99").pack()
    transport.bulk_read.side_effect = [TransportTimeout("bulk_read"), rx]

    with pytest.raises(ReadTimeout) as exc:
        dev.read(timeout_ms=50)
    assert exc.value.is_timeout
    assert exc.value.timeout_ms == 50
    assert not isinstance(exc.value, BulkTransferError)

    frame = dev.read(timeout_ms=50)
    assert frame.is_rx_frame()
    assert frame.payload == b"\x99"
    assert dev.started


def test_read_failure():
    transport = _make_transport()
    transport.bulk_read.side_effect = TransportError("bulk_read")
    with pytest.raises(BulkTransferError) as exc:
        GsUsbSession(transport).read()
    assert exc.value.direction == "in"


def test_read_requests_mode_size():
    transport = _make_transport(FEATURES_FD, 40_000_000)
    transport.bulk_read.return_value = GsUsbFrame().pack(True, True)
    dev = GsUsbSession(transport)
    dev.start(ModeFlag.FD | ModeFlag.HW_TIMESTAMP)
    dev.read(timeout_ms=10)
    assert transport.bulk_read.call_args.args == (80, 10)


def test_read_classic_frame_in_fd_mode():
    """The flags byte, not the channel mode, decides the data width."""
    transport = _make_transport(FEATURES_FD, 40_000_000)
    classic = GsUsbFrame(echo_id=GS_USB_RX_ECHO_ID, can_id=0x7, can_dlc=2, data=b"\x01\x02", timestamp_us=77)
    transport.bulk_read.return_value = classic.pack(hw_timestamp=True, fd_mode=False)
    dev = GsUsbSession(transport)
    dev.start(ModeFlag.FD | ModeFlag.HW_TIMESTAMP)
    frame = dev.read()
    assert not frame.is_fd
    assert frame.payload == b"\x01\x02"
    assert frame.timestamp_us == 77


def test_read_fd_frame():
    transport = _make_transport(FEATURES_FD, 40_000_000)
    fd = GsUsbFrame(echo_id=GS_USB_RX_ECHO_ID, can_id=0x7, can_dlc=15, flags=GS_CAN_FLAG_FD, data=bytes(range(64)))
    transport.bulk_read.return_value = fd.pack(fd_mode=True)
    dev = GsUsbSession(transport)
    dev.start(ModeFlag.FD)
    frame = dev.read()
    assert frame.is_fd
    assert frame.payload == bytes(range(64))


# ─── queries ─────────────────────────────────────────────────────────

def test_capability_fetched_once():
    transport = _make_transport()
    dev = GsUsbSession(transport)
    first = dev.device_capability()
    second = dev.device_capability()
    assert first is second
    assert transport.control_in.call_count == 1


def test_capability_extended_replaces_cache():
    transport = _make_transport(FEATURES_FD, 80_000_000)
    dev = GsUsbSession(transport)
    assert not dev.device_capability().has_fd_timing
    ext = dev.device_capability_extended()
    assert ext.has_fd_timing
    assert dev.capability is ext
    assert dev.device_capability_extended() is ext
    requests = [c.args[0] for c in transport.control_in.call_args_list]
    assert requests == [Request.BT_CONST, Request.BT_CONST_EXT]


def test_capability_extended_unsupported():
    dev = GsUsbSession(_make_transport(FEATURES_CLASSIC))
    assert dev.device_capability_extended() is None


def test_short_control_response():
    """A short response is rejected, never zero filled."""
    transport = _make_transport()
    transport.control_in.side_effect = lambda request, value, length, timeout: bytes(length - 1)
    dev = GsUsbSession(transport)
    with pytest.raises(InvalidResponse):
        dev.device_capability()
    assert dev.capability is None


def test_control_failure_mapped():
    transport = _make_transport()
    transport.control_in.side_effect = TransportError("control_in")
    with pytest.raises(ControlTransferError) as exc:
        GsUsbSession(transport).device_info()
    assert exc.value.request == Request.DEVICE_CONFIG
    assert exc.value.is_usb_error


def test_device_info():
    info = GsUsbSession(_make_transport()).device_info()
    assert info.channel_count == 1
    assert info.firmware_version == 2.0


def test_get_state():
    transport = _make_transport(FEATURES_FD, 40_000_000)
    state = GsUsbSession(transport, channel=0).get_state()
    assert state.is_error_warning
    assert state.rxerr == 100
    assert transport.control_in.call_args.args[:3] == (Request.GET_STATE, 0, 12)


def test_get_state_not_supported():
    transport = _make_transport(FEATURES_CLASSIC)
    with pytest.raises(GetStateNotSupported):
        GsUsbSession(transport).get_state()
    assert Request.GET_STATE not in [c.args[0] for c in transport.control_in.call_args_list]


def test_get_timestamp():
    assert GsUsbSession(_make_transport()).get_timestamp() == 123456


def test_send_host_format_ignores_errors():
    transport = _make_transport()
    transport.control_out.side_effect = TransportError("control_out")
    GsUsbSession(transport).send_host_format()


def test_optional_features_gated():
    dev = GsUsbSession(_make_transport(FEATURES_CLASSIC))
    with pytest.raises(FeatureNotSupported):
        dev.identify()
    with pytest.raises(FeatureNotSupported):
        dev.set_termination(True)
    with pytest.raises(FeatureNotSupported):
        dev.get_user_id()


def test_optional_features():
    features = FEATURES_CLASSIC | Feature.IDENTIFY | Feature.TERMINATION | Feature.USER_ID
    transport = _make_transport(features)
    dev = GsUsbSession(transport)
    dev.identify(True)
    assert transport.control_out.call_args.args[:3] == (Request.IDENTIFY, 0, b"\x01\x00\x00\x00")
    assert dev.get_termination() is True
    assert dev.get_user_id() == 0xCAFE
    dev.set_user_id(7)
    assert transport.control_out.call_args.args[0] == Request.SET_USER_ID
