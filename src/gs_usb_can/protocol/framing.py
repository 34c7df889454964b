"""Host frame codec for the bulk endpoints.

Frame layout (little-endian)::

    +---------+--------+-----+---------+-------+----------+----------------+-----------+
    | echo_id | can_id | dlc | channel | flags | reserved |      data      | timestamp |
    | 4 bytes | 4 bytes| 1 B |   1 B   |  1 B  |   1 B    | 8 or 64 bytes  | 4 (opt.)  |
    +---------+--------+-----+---------+-------+----------+----------------+-----------+

- echo_id: 0xFFFFFFFF for frames received from the bus, anything else for
  the adapter's echo of a transmitted frame
- can_id: arbitration id with the EFF / RTR / ERR flag bits merged in
- data: zero padded beyond the logical length; 64 bytes when the channel
  runs in FD mode
- timestamp: microseconds, present only when hardware timestamps are on

Resulting sizes: 20, 24 (timestamp), 76 (FD), 80 (FD + timestamp).
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from ..errors import InvalidResponse
from .constants import (
    CAN_EFF_FLAG,
    CAN_EFF_MASK,
    CAN_ERR_FLAG,
    CAN_MAX_DLEN,
    CAN_RTR_FLAG,
    CANFD_DLC_TO_LEN,
    CANFD_MAX_DLC,
    CANFD_MAX_DLEN,
    FLAGS_OFFSET,
    GS_CAN_FLAG_BRS,
    GS_CAN_FLAG_ESI,
    GS_CAN_FLAG_FD,
    GS_CAN_FLAG_OVERFLOW,
    GS_USB_ECHO_ID,
    GS_USB_FRAME_SIZE,
    GS_USB_FRAME_SIZE_FD,
    GS_USB_FRAME_SIZE_FD_HW_TIMESTAMP,
    GS_USB_FRAME_SIZE_HW_TIMESTAMP,
    GS_USB_RX_ECHO_ID,
    HEADER_SIZE,
    TIMESTAMP_SIZE,
)

HEADER_FORMAT = "<IIBBBB"
TIMESTAMP_FORMAT = "<I"


def dlc_to_len(dlc: int, fd: bool) -> int:
    """Payload length for a DLC."""
    if fd:
        if dlc < len(CANFD_DLC_TO_LEN):
            return CANFD_DLC_TO_LEN[dlc]
        return CANFD_MAX_DLEN
    return min(dlc, CAN_MAX_DLEN)


def len_to_dlc(length: int, fd: bool) -> int:
    """Smallest DLC able to carry ``length`` bytes (saturating)."""
    if fd:
        for dlc, dlen in enumerate(CANFD_DLC_TO_LEN):
            if dlen >= length:
                return dlc
        return CANFD_MAX_DLC
    return min(length, CAN_MAX_DLEN)


def frame_size(hw_timestamp: bool, fd_mode: bool) -> int:
    if fd_mode:
        return GS_USB_FRAME_SIZE_FD_HW_TIMESTAMP if hw_timestamp else GS_USB_FRAME_SIZE_FD
    return GS_USB_FRAME_SIZE_HW_TIMESTAMP if hw_timestamp else GS_USB_FRAME_SIZE


def is_fd_buffer(data: bytes) -> bool:
    """Whether a received buffer carries an FD frame.

    A channel running in FD mode still delivers classic frames, so the
    flags byte decides how wide the data area is.
    """
    if len(data) <= FLAGS_OFFSET:
        return False
    return bool(data[FLAGS_OFFSET] & GS_CAN_FLAG_FD)


@dataclass
class GsUsbFrame:
    """A single CAN or CAN FD frame as exchanged with the adapter."""

    echo_id: int = GS_USB_ECHO_ID
    can_id: int = 0
    can_dlc: int = 0
    channel: int = 0
    flags: int = 0
    reserved: int = 0
    data: bytes = field(default=b"", repr=False)
    timestamp_us: int = 0

    @classmethod
    def with_data(cls, can_id: int, data: bytes = b"", channel: int = 0) -> GsUsbFrame:
        """Build a classic frame; payload beyond 8 bytes is dropped."""
        data = bytes(data)
        return cls(
            can_id=can_id,
            can_dlc=len_to_dlc(len(data), False),
            channel=channel,
            data=data[:CAN_MAX_DLEN],
        )

    @classmethod
    def with_fd_data(
        cls,
        can_id: int,
        data: bytes = b"",
        brs: bool = False,
        channel: int = 0,
    ) -> GsUsbFrame:
        """Build an FD frame; payload beyond 64 bytes is dropped.

        The DLC is rounded up to the next FD length, the gap is sent as
        zero bytes.
        """
        data = bytes(data)
        flags = GS_CAN_FLAG_FD
        if brs:
            flags |= GS_CAN_FLAG_BRS
        return cls(
            can_id=can_id,
            can_dlc=len_to_dlc(len(data), True),
            channel=channel,
            flags=flags,
            data=data[:CANFD_MAX_DLEN],
        )

    # ─── identifier / flag accessors ─────────────────────────────────

    @property
    def arbitration_id(self) -> int:
        return self.can_id & CAN_EFF_MASK

    @property
    def is_extended_id(self) -> bool:
        return bool(self.can_id & CAN_EFF_FLAG)

    @property
    def is_remote_frame(self) -> bool:
        return bool(self.can_id & CAN_RTR_FLAG)

    @property
    def is_error_frame(self) -> bool:
        return bool(self.can_id & CAN_ERR_FLAG)

    @property
    def is_fd(self) -> bool:
        return bool(self.flags & GS_CAN_FLAG_FD)

    @property
    def is_brs(self) -> bool:
        return bool(self.flags & GS_CAN_FLAG_BRS)

    @property
    def is_esi(self) -> bool:
        return bool(self.flags & GS_CAN_FLAG_ESI)

    @property
    def is_overflow(self) -> bool:
        return bool(self.flags & GS_CAN_FLAG_OVERFLOW)

    def is_echo_frame(self) -> bool:
        """True for every frame that is not the RX sentinel.

        Includes TX confirmations carrying a non-default echo id.
        """
        return self.echo_id != GS_USB_RX_ECHO_ID

    def is_rx_frame(self) -> bool:
        return self.echo_id == GS_USB_RX_ECHO_ID

    @property
    def data_length(self) -> int:
        return dlc_to_len(self.can_dlc, self.is_fd)

    @property
    def payload(self) -> bytes:
        """Data bytes covered by the DLC, zero filled if ``data`` is shorter."""
        length = self.data_length
        return self.data[:length].ljust(length, b"\x00")

    @property
    def timestamp(self) -> float:
        """Hardware timestamp in seconds."""
        return self.timestamp_us / 1_000_000.0

    # ─── wire format ─────────────────────────────────────────────────

    def pack(self, hw_timestamp: bool = False, fd_mode: bool = False) -> bytes:
        """Serialize to the host frame format.

        Args:
            hw_timestamp: Append the 4-byte timestamp field.
            fd_mode: Use the 64-byte data area.
        """
        data_len = CANFD_MAX_DLEN if fd_mode else CAN_MAX_DLEN
        buf = struct.pack(
            HEADER_FORMAT,
            self.echo_id,
            self.can_id,
            self.can_dlc,
            self.channel,
            self.flags,
            self.reserved,
        )
        buf += self.data[:data_len].ljust(data_len, b"\x00")
        if hw_timestamp:
            buf += struct.pack(TIMESTAMP_FORMAT, self.timestamp_us)
        return buf

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        hw_timestamp: bool = False,
        fd_mode: bool = False,
    ) -> GsUsbFrame:
        """Parse a host frame.

        A truncated data area is zero filled. The timestamp is read only if
        requested and present, otherwise it is 0.

        Raises:
            InvalidResponse: If the buffer cannot hold the 12-byte header.
        """
        if len(data) < HEADER_SIZE:
            raise InvalidResponse(expected=HEADER_SIZE, actual=len(data))

        echo_id, can_id, can_dlc, channel, flags, reserved = struct.unpack_from(
            HEADER_FORMAT, data
        )
        data_len = CANFD_MAX_DLEN if fd_mode else CAN_MAX_DLEN
        body = bytes(data[HEADER_SIZE : HEADER_SIZE + data_len]).ljust(data_len, b"\x00")

        timestamp_us = 0
        ts_offset = HEADER_SIZE + data_len
        if hw_timestamp and len(data) >= ts_offset + TIMESTAMP_SIZE:
            (timestamp_us,) = struct.unpack_from(TIMESTAMP_FORMAT, data, ts_offset)

        return cls(
            echo_id=echo_id,
            can_id=can_id,
            can_dlc=can_dlc,
            channel=channel,
            flags=flags,
            reserved=reserved,
            data=body,
            timestamp_us=timestamp_us,
        )

    def to_dict(self) -> dict:
        return {
            "echo_id": self.echo_id,
            "arbitration_id": self.arbitration_id,
            "extended": self.is_extended_id,
            "remote": self.is_remote_frame,
            "error": self.is_error_frame,
            "fd": self.is_fd,
            "brs": self.is_brs,
            "channel": self.channel,
            "dlc": self.can_dlc,
            "data": self.payload.hex(" "),
            "timestamp_us": self.timestamp_us,
            "rx": self.is_rx_frame(),
        }

    def __str__(self) -> str:
        fd = " FD" if self.is_fd else ""
        brs = " BRS" if self.is_brs else ""
        if self.is_remote_frame:
            body = "remote request"
        else:
            body = self.payload.hex(" ").upper()
        return f"{self.arbitration_id:>8X}{fd}{brs}   [{self.data_length}]  {body}"
