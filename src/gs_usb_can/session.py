"""Device session: capability discovery, bit timing, start/stop, send/read.

A session owns one transport (normally a
:class:`~gs_usb_can.transport.usb_connection.USBConnection`) and drives a
single CAN channel on it. It is synchronous and not thread safe: every call
blocks for at most its timeout and only one thread may use a session.

Usage::

    with GsUsbSession.open() as dev:
        dev.set_bitrate(500_000)
        dev.start(ModeFlag.HW_TIMESTAMP)
        dev.send(GsUsbFrame.with_data(0x123, b"\\x01\\x02"))
        while True:
            try:
                frame = dev.read(timeout_ms=100)
            except ReadTimeout:
                continue
            print(frame)

Leaving the ``with`` block always stops the channel and closes the device.
"""

from __future__ import annotations

import logging
from enum import Enum

from .errors import (
    BulkTransferError,
    ClaimInterfaceError,
    ControlTransferError,
    DetachKernelDriverError,
    DeviceNotFound,
    FdNotSupported,
    FeatureNotSupported,
    GetStateNotSupported,
    GsUsbError,
    ReadTimeout,
    TransportError,
    TransportTimeout,
    WriteTimeout,
)
from .models.device import BitTiming, DeviceCapability, DeviceInfo, DeviceState
from .protocol import bittiming
from .protocol.commands import (
    RESPONSE_SIZE,
    Request,
    build_bittiming,
    build_host_format,
    build_identify,
    build_reset,
    build_start,
    build_termination,
    build_user_id,
)
from .protocol.constants import (
    CONTROL_TIMEOUT_MS,
    DEFAULT_DATA_SAMPLE_POINT,
    DEFAULT_SAMPLE_POINT,
    DRIVER_SUPPORTED_MODES,
    GS_USB_INTERFACE,
    WRITE_TIMEOUT_MS,
    Feature,
    ModeFlag,
)
from .protocol.framing import GsUsbFrame, frame_size, is_fd_buffer
from .protocol.parser import (
    check_length,
    parse_bt_const,
    parse_bt_const_ext,
    parse_device_config,
    parse_state,
    parse_u32,
)
from .transport.usb_connection import USBConnection

logger = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT_MS = 1000


class SessionState(Enum):
    IDLE = "idle"              # handle open, interface not claimed
    CLAIMED = "claimed"        # interface claimed, channel not started
    CONFIGURED = "configured"  # bit timing applied
    RUNNING = "running"        # MODE=START sent
    STOPPED = "stopped"        # MODE=RESET sent


class GsUsbSession:
    """One gs_usb device channel.

    Args:
        transport: Object providing the transfer primitives of
            :class:`USBConnection`.
        channel: CAN channel number sent in ``wValue`` of channel requests.
    """

    def __init__(self, transport, channel: int = 0) -> None:
        if not 0 <= channel <= 0xFFFF:
            raise ValueError(f"Channel must be 0-65535, got {channel}")
        self._transport = transport
        self._channel = channel
        self._capability: DeviceCapability | None = None
        self._device_flags = ModeFlag.NORMAL
        self._fd_mode = False
        self._started = False
        self._state = SessionState.IDLE
        self._last_timing: BitTiming | None = None
        self._last_data_timing: BitTiming | None = None
        self._serial_number: str | None = None
        self._closed = False

    # ─── discovery ───────────────────────────────────────────────────

    @classmethod
    def open(cls, bus: int | None = None, address: int | None = None) -> GsUsbSession:
        """Open the first attached gs_usb device (or the one at bus/address).

        Raises:
            DeviceNotFound: If no matching device is attached.
        """
        return cls(USBConnection.open(bus=bus, address=address))

    @classmethod
    def scan(cls) -> list[GsUsbSession]:
        """Sessions for every attached gs_usb compatible device."""
        return [cls(conn) for conn in USBConnection.scan()]

    @classmethod
    def find(cls, bus: int, address: int) -> GsUsbSession | None:
        try:
            return cls.open(bus=bus, address=address)
        except DeviceNotFound:
            return None

    # ─── state ───────────────────────────────────────────────────────

    @property
    def transport(self):
        return self._transport

    @property
    def channel(self) -> int:
        return self._channel

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def started(self) -> bool:
        return self._started

    @property
    def fd_mode(self) -> bool:
        return self._fd_mode

    @property
    def device_flags(self) -> ModeFlag:
        """Mode flags negotiated by the last :meth:`start`."""
        return self._device_flags

    @property
    def hw_timestamp(self) -> bool:
        return bool(self._device_flags & ModeFlag.HW_TIMESTAMP)

    @property
    def last_timing(self) -> BitTiming | None:
        return self._last_timing

    @property
    def last_data_timing(self) -> BitTiming | None:
        return self._last_data_timing

    @property
    def bus(self) -> int:
        return self._transport.bus

    @property
    def address(self) -> int:
        return self._transport.address

    @property
    def serial_number(self) -> str:
        if self._serial_number is None:
            self._serial_number = self._transport.serial_number
        return self._serial_number

    # ─── lifecycle ───────────────────────────────────────────────────

    def start(self, flags: int = ModeFlag.NORMAL) -> ModeFlag:
        """Reset the device, claim it and start the channel.

        Requested mode bits the device or this driver does not support are
        dropped silently.

        Args:
            flags: Requested :class:`ModeFlag` bits.

        Returns:
            The mode flags actually sent to the device.
        """
        # A reset first makes repeated start() calls safe.
        self._transport.reset()
        self._detach_kernel_driver()
        try:
            self._transport.claim_interface(GS_USB_INTERFACE)
        except TransportError as e:
            raise ClaimInterfaceError(e) from e
        self._state = SessionState.CLAIMED

        capability = self.device_capability()
        requested = int(flags)
        effective = ModeFlag(requested & capability.feature & DRIVER_SUPPORTED_MODES)
        dropped = requested & ~int(effective)
        if dropped:
            logger.debug("Dropping unsupported mode flags 0x%08x", dropped)

        self._device_flags = effective
        self._fd_mode = bool(effective & ModeFlag.FD)

        self._control_out(Request.MODE, build_start(effective))
        self._started = True
        self._state = SessionState.RUNNING
        logger.info("Channel %d started (flags 0x%08x)", self._channel, int(effective))
        return effective

    def stop(self) -> None:
        """Reset the channel. Never raises.

        The device may already be stopped or unplugged, so transfer errors
        are logged and dropped.
        """
        try:
            self._control_out(Request.MODE, build_reset())
        except GsUsbError as e:
            logger.debug("Ignoring error while stopping channel %d: %s", self._channel, e)
        finally:
            was_started = self._started
            self._started = False
            self._state = SessionState.STOPPED
        if was_started:
            logger.info("Channel %d stopped", self._channel)

    def close(self) -> None:
        """Stop the channel and release the device. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self.stop()
        self._transport.close()

    def __enter__(self) -> GsUsbSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _detach_kernel_driver(self) -> None:
        is_active = getattr(self._transport, "is_kernel_driver_active", None)
        if is_active is None or not is_active(GS_USB_INTERFACE):
            return
        try:
            self._transport.detach_kernel_driver(GS_USB_INTERFACE)
        except TransportError as e:
            raise DetachKernelDriverError(e) from e
        logger.debug("Detached kernel driver from interface %d", GS_USB_INTERFACE)

    # ─── bit timing ──────────────────────────────────────────────────

    def set_bitrate(self, bitrate: int, sample_point: float = DEFAULT_SAMPLE_POINT) -> BitTiming:
        """Apply the nominal (arbitration) bitrate from the timing table.

        Raises:
            UnsupportedBitrate: If the device clock has no entry for it.
        """
        capability = self.device_capability()
        timing = bittiming.resolve(
            capability.fclk_can, bitrate, bittiming.sample_point_tenths(sample_point)
        )
        self.set_timing(timing)
        logger.info("Bitrate set to %d bit/s (clock %d Hz)", bitrate, capability.fclk_can)
        return timing

    def set_data_bitrate(
        self, bitrate: int, sample_point: float = DEFAULT_DATA_SAMPLE_POINT
    ) -> BitTiming:
        """Apply the CAN FD data phase bitrate from the timing table.

        Raises:
            FdNotSupported: If the device does not advertise CAN FD.
            UnsupportedDataBitrate: If the device clock has no entry for it.
        """
        capability = self.device_capability()
        if not capability.supports(Feature.FD):
            raise FdNotSupported()
        timing = bittiming.resolve_data(
            capability.fclk_can, bitrate, bittiming.sample_point_tenths(sample_point)
        )
        self.set_data_timing(timing)
        logger.info("Data bitrate set to %d bit/s (clock %d Hz)", bitrate, capability.fclk_can)
        return timing

    def set_timing(self, timing: BitTiming) -> None:
        """Send raw nominal timing values, bypassing the table."""
        self._control_out(Request.BITTIMING, build_bittiming(timing))
        self._last_timing = timing
        if not self._started:
            self._state = SessionState.CONFIGURED

    def set_data_timing(self, timing: BitTiming) -> None:
        """Send raw data phase timing values, bypassing the table."""
        self._control_out(Request.DATA_BITTIMING, build_bittiming(timing))
        self._last_data_timing = timing
        if not self._started:
            self._state = SessionState.CONFIGURED

    # ─── data plane ──────────────────────────────────────────────────

    def send(self, frame: GsUsbFrame) -> None:
        """Queue one frame for transmission.

        Raises:
            WriteTimeout: If the device did not accept it within 1 s.
            BulkTransferError: On any other transfer failure.
        """
        data = frame.pack(self.hw_timestamp, self._fd_mode)
        try:
            self._transport.bulk_write(data, WRITE_TIMEOUT_MS)
        except TransportTimeout as e:
            raise WriteTimeout(WRITE_TIMEOUT_MS) from e
        except TransportError as e:
            raise BulkTransferError("out", e) from e

    def read(self, timeout_ms: int = DEFAULT_READ_TIMEOUT_MS) -> GsUsbFrame:
        """Receive one frame (bus traffic or a TX echo).

        Raises:
            ReadTimeout: If nothing arrived in time; the session stays usable.
            BulkTransferError: On any other transfer failure.
        """
        size = frame_size(self.hw_timestamp, self._fd_mode)
        try:
            buf = self._transport.bulk_read(size, timeout_ms)
        except TransportTimeout as e:
            raise ReadTimeout(timeout_ms) from e
        except TransportError as e:
            raise BulkTransferError("in", e) from e
        return GsUsbFrame.from_bytes(buf, self.hw_timestamp, is_fd_buffer(buf))

    # ─── device queries ──────────────────────────────────────────────

    @property
    def capability(self) -> DeviceCapability | None:
        """Cached capability, ``None`` before the first fetch."""
        return self._capability

    def device_capability(self) -> DeviceCapability:
        """Bit-timing limits and feature bits (fetched once per session)."""
        if self._capability is None:
            self._capability = parse_bt_const(self._control_in(Request.BT_CONST))
            logger.debug("Capability: feature=0x%08x clock=%d",
                         self._capability.feature, self._capability.fclk_can)
        return self._capability

    def device_capability_extended(self) -> DeviceCapability | None:
        """Capability including CAN FD data phase limits.

        Returns:
            ``None`` if the device does not support BT_CONST_EXT.
        """
        capability = self.device_capability()
        if not capability.supports(Feature.BT_CONST_EXT):
            return None
        if capability.has_fd_timing:
            return capability
        self._capability = parse_bt_const_ext(self._control_in(Request.BT_CONST_EXT))
        return self._capability

    def supports_fd(self) -> bool:
        return self.device_capability().supports(Feature.FD)

    def supports_get_state(self) -> bool:
        return self.device_capability().supports(Feature.GET_STATE)

    def device_info(self) -> DeviceInfo:
        """Channel count and firmware/hardware versions."""
        return parse_device_config(self._control_in(Request.DEVICE_CONFIG, value=0))

    def get_state(self, channel: int | None = None) -> DeviceState:
        """Bus state and error counters.

        Raises:
            GetStateNotSupported: If the device lacks the GET_STATE feature.
        """
        if not self.supports_get_state():
            raise GetStateNotSupported()
        value = self._channel if channel is None else channel
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"Channel must be 0-65535, got {value}")
        return parse_state(self._control_in(Request.GET_STATE, value=value))

    def get_timestamp(self) -> int:
        """Current hardware timestamp counter in microseconds."""
        return parse_u32(Request.TIMESTAMP, self._control_in(Request.TIMESTAMP, value=0))

    def send_host_format(self) -> None:
        """Announce little-endian byte order (legacy firmware only).

        Newer firmware rejects the request, so failures are ignored.
        """
        try:
            self._control_out(Request.HOST_FORMAT, build_host_format(), value=0)
        except GsUsbError as e:
            logger.debug("HOST_FORMAT rejected: %s", e)

    def identify(self, on: bool = True) -> None:
        """Blink (or stop blinking) the channel LED."""
        self._require(Feature.IDENTIFY, "identify")
        self._control_out(Request.IDENTIFY, build_identify(on))

    def set_termination(self, on: bool) -> None:
        self._require(Feature.TERMINATION, "termination")
        self._control_out(Request.SET_TERMINATION, build_termination(on))

    def get_termination(self) -> bool:
        self._require(Feature.TERMINATION, "termination")
        return bool(parse_u32(Request.GET_TERMINATION, self._control_in(Request.GET_TERMINATION)))

    def get_user_id(self) -> int:
        self._require(Feature.USER_ID, "user id")
        return parse_u32(Request.GET_USER_ID, self._control_in(Request.GET_USER_ID))

    def set_user_id(self, user_id: int) -> None:
        self._require(Feature.USER_ID, "user id")
        self._control_out(Request.SET_USER_ID, build_user_id(user_id))

    def _require(self, feature: Feature, name: str) -> None:
        if not self.device_capability().supports(feature):
            raise FeatureNotSupported(name)

    # ─── control transfers ───────────────────────────────────────────

    def _control_out(self, request: Request, data: bytes, value: int | None = None) -> None:
        value = self._channel if value is None else value
        try:
            self._transport.control_out(int(request), value, data, CONTROL_TIMEOUT_MS)
        except TransportError as e:
            raise ControlTransferError(int(request), e) from e

    def _control_in(self, request: Request, value: int | None = None) -> bytes:
        """Read a fixed-size response.

        Raises:
            InvalidResponse: If the device returned fewer bytes than the
                request's structure needs.
        """
        value = self._channel if value is None else value
        try:
            data = self._transport.control_in(
                int(request), value, RESPONSE_SIZE[request], CONTROL_TIMEOUT_MS
            )
        except TransportError as e:
            raise ControlTransferError(int(request), e) from e
        return check_length(request, data)

    def __repr__(self) -> str:
        return (
            f"GsUsbSession(channel={self._channel}, state={self._state.value}, "
            f"fd_mode={self._fd_mode}, device_flags=0x{int(self._device_flags):08x})"
        )
