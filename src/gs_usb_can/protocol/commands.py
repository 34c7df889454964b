"""Control request codes and payload builders.

Every request is a vendor control transfer on interface 0. The request
code travels in ``bRequest`` and the channel number in ``wValue``.
"""

from __future__ import annotations

import struct
from enum import IntEnum

from ..models.device import BitTiming, DeviceMode
from .constants import HOST_FORMAT_MAGIC, DeviceModeValue


class Request(IntEnum):
    """gs_usb ``bRequest`` codes."""

    HOST_FORMAT = 0
    BITTIMING = 1
    MODE = 2
    BERR = 3
    BT_CONST = 4
    DEVICE_CONFIG = 5
    TIMESTAMP = 6
    IDENTIFY = 7
    GET_USER_ID = 8
    SET_USER_ID = 9
    DATA_BITTIMING = 10
    BT_CONST_EXT = 11
    SET_TERMINATION = 12
    GET_TERMINATION = 13
    GET_STATE = 14


# Fixed length of each device-to-host response
RESPONSE_SIZE: dict[Request, int] = {
    Request.DEVICE_CONFIG: 12,
    Request.BT_CONST: 40,
    Request.BT_CONST_EXT: 72,
    Request.TIMESTAMP: 4,
    Request.GET_USER_ID: 4,
    Request.GET_TERMINATION: 4,
    Request.GET_STATE: 12,
}


def build_host_format() -> bytes:
    """HOST_FORMAT payload announcing little-endian byte order."""
    return struct.pack("<I", HOST_FORMAT_MAGIC)


def build_bittiming(timing: BitTiming) -> bytes:
    """BITTIMING / DATA_BITTIMING payload (20 bytes)."""
    return timing.to_bytes()


def build_mode(mode: int, flags: int = 0) -> bytes:
    """MODE payload (8 bytes)."""
    return DeviceMode(mode=mode, flags=flags).to_bytes()


def build_start(flags: int) -> bytes:
    return build_mode(DeviceModeValue.START, flags)


def build_reset() -> bytes:
    return build_mode(DeviceModeValue.RESET, 0)


def build_identify(on: bool) -> bytes:
    """IDENTIFY payload: 1 starts blinking the channel LED, 0 stops it."""
    return struct.pack("<I", 1 if on else 0)


def build_termination(on: bool) -> bytes:
    """SET_TERMINATION payload."""
    return struct.pack("<I", 1 if on else 0)


def build_user_id(user_id: int) -> bytes:
    """SET_USER_ID payload.

    Args:
        user_id: 32-bit unsigned value.
    """
    if not 0 <= user_id <= 0xFFFFFFFF:
        raise ValueError(f"User ID must be 0-0xFFFFFFFF, got {user_id}")
    return struct.pack("<I", user_id)
