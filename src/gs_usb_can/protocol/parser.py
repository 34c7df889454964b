"""Response parsing for device-to-host control transfers."""

from __future__ import annotations

import struct

from ..errors import InvalidResponse
from ..models.device import DeviceCapability, DeviceInfo, DeviceState
from .commands import RESPONSE_SIZE, Request


def check_length(request: Request, data: bytes) -> bytes:
    """Reject responses shorter than the request's fixed size.

    Returns:
        ``data`` truncated to the expected size.

    Raises:
        InvalidResponse: If fewer bytes than expected were received.
    """
    expected = RESPONSE_SIZE[request]
    if len(data) < expected:
        raise InvalidResponse(expected=expected, actual=len(data))
    return bytes(data[:expected])


def parse_device_config(data: bytes) -> DeviceInfo:
    return DeviceInfo.from_bytes(check_length(Request.DEVICE_CONFIG, data))


def parse_bt_const(data: bytes) -> DeviceCapability:
    return DeviceCapability.from_bytes(check_length(Request.BT_CONST, data))


def parse_bt_const_ext(data: bytes) -> DeviceCapability:
    return DeviceCapability.from_bytes_extended(check_length(Request.BT_CONST_EXT, data))


def parse_state(data: bytes) -> DeviceState:
    return DeviceState.from_bytes(check_length(Request.GET_STATE, data))


def parse_u32(request: Request, data: bytes) -> int:
    """Parse a single-u32 response (TIMESTAMP, GET_TERMINATION, GET_USER_ID)."""
    return struct.unpack("<I", check_length(request, data))[0]


def parse_response(request: Request, data: bytes):
    """Dispatch a raw response to the parser for its request.

    Returns the parsed dataclass, an ``int`` for single-value responses,
    or the raw bytes if the request has no dedicated parser.
    """
    parsers = {
        Request.DEVICE_CONFIG: parse_device_config,
        Request.BT_CONST: parse_bt_const,
        Request.BT_CONST_EXT: parse_bt_const_ext,
        Request.GET_STATE: parse_state,
    }
    parser = parsers.get(request)
    if parser:
        return parser(data)
    if request in RESPONSE_SIZE:
        return parse_u32(request, data)
    return bytes(data)
