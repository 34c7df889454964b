"""Fixed protocol values: flag bits, identifier masks, frame sizes, USB ids.

Every value here is part of the wire contract with the adapter firmware
and must match it bit for bit.
"""

from __future__ import annotations

from enum import IntEnum, IntFlag


class ModeFlag(IntFlag):
    """Flags carried in the MODE request (``gs_device_mode.flags``)."""

    NORMAL = 0
    LISTEN_ONLY = 1 << 0
    LOOP_BACK = 1 << 1
    TRIPLE_SAMPLE = 1 << 2
    ONE_SHOT = 1 << 3
    HW_TIMESTAMP = 1 << 4
    IDENTIFY = 1 << 5
    USER_ID = 1 << 6
    PAD_PKTS_TO_MAX_PKT_SIZE = 1 << 7
    FD = 1 << 8
    BERR_REPORTING = 1 << 12


class Feature(IntFlag):
    """Feature bits advertised in the BT_CONST response."""

    LISTEN_ONLY = 1 << 0
    LOOP_BACK = 1 << 1
    TRIPLE_SAMPLE = 1 << 2
    ONE_SHOT = 1 << 3
    HW_TIMESTAMP = 1 << 4
    IDENTIFY = 1 << 5
    USER_ID = 1 << 6
    PAD_PKTS_TO_MAX_PKT_SIZE = 1 << 7
    FD = 1 << 8
    REQ_USB_QUIRK_LPC546XX = 1 << 9
    BT_CONST_EXT = 1 << 10
    TERMINATION = 1 << 11
    BERR_REPORTING = 1 << 12
    GET_STATE = 1 << 13


# Mode bits this driver knows how to handle; anything else is dropped at start.
DRIVER_SUPPORTED_MODES = (
    ModeFlag.LISTEN_ONLY
    | ModeFlag.LOOP_BACK
    | ModeFlag.ONE_SHOT
    | ModeFlag.HW_TIMESTAMP
    | ModeFlag.FD
)


class DeviceModeValue(IntEnum):
    RESET = 0
    START = 1


class CanState(IntEnum):
    """Channel state reported by GET_STATE."""

    ERROR_ACTIVE = 0
    ERROR_WARNING = 1  # TEC/REC > 96
    ERROR_PASSIVE = 2  # TEC/REC > 127
    BUS_OFF = 3        # TEC > 255
    STOPPED = 4
    SLEEPING = 5


def can_state_name(state: int) -> str:
    """Human-readable name for a raw GET_STATE value."""
    try:
        return CanState(state).name
    except ValueError:
        return "UNKNOWN"


# CAN identifier flag bits (merged into can_id)
CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_ERR_FLAG = 0x20000000

CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF
CAN_ERR_MASK = 0x1FFFFFFF

CAN_MAX_DLC = 8
CAN_MAX_DLEN = 8
CANFD_MAX_DLC = 15
CANFD_MAX_DLEN = 64

CANFD_DLC_TO_LEN = (0, 1, 2, 3, 4, 5, 6, 7, 8, 12, 16, 20, 24, 32, 48, 64)

# Host frame flags (gs_host_frame.flags)
GS_CAN_FLAG_OVERFLOW = 1 << 0
GS_CAN_FLAG_FD = 1 << 1
GS_CAN_FLAG_BRS = 1 << 2
GS_CAN_FLAG_ESI = 1 << 3

GS_USB_ECHO_ID = 0
GS_USB_RX_ECHO_ID = 0xFFFFFFFF

# Host frame layout
HEADER_SIZE = 12
FLAGS_OFFSET = 10
TIMESTAMP_SIZE = 4

GS_USB_FRAME_SIZE = 20
GS_USB_FRAME_SIZE_HW_TIMESTAMP = 24
GS_USB_FRAME_SIZE_FD = 76
GS_USB_FRAME_SIZE_FD_HW_TIMESTAMP = 80

# USB identification
GS_USB_ID_VENDOR = 0x1D50
GS_USB_ID_PRODUCT = 0x606F
GS_USB_CANDLELIGHT_VENDOR_ID = 0x1209
GS_USB_CANDLELIGHT_PRODUCT_ID = 0x2323
GS_USB_CES_CANEXT_FD_VENDOR_ID = 0x1CD2
GS_USB_CES_CANEXT_FD_PRODUCT_ID = 0x606F
GS_USB_ABE_CANDEBUGGER_FD_VENDOR_ID = 0x16D0
GS_USB_ABE_CANDEBUGGER_FD_PRODUCT_ID = 0x10B8

KNOWN_DEVICE_IDS: tuple[tuple[int, int], ...] = (
    (GS_USB_ID_VENDOR, GS_USB_ID_PRODUCT),
    (GS_USB_CANDLELIGHT_VENDOR_ID, GS_USB_CANDLELIGHT_PRODUCT_ID),
    (GS_USB_CES_CANEXT_FD_VENDOR_ID, GS_USB_CES_CANEXT_FD_PRODUCT_ID),
    (GS_USB_ABE_CANDEBUGGER_FD_VENDOR_ID, GS_USB_ABE_CANDEBUGGER_FD_PRODUCT_ID),
)

# USB transfer parameters
GS_USB_INTERFACE = 0
GS_USB_ENDPOINT_OUT = 0x02
GS_USB_ENDPOINT_IN = 0x81
REQUEST_TYPE_OUT = 0x41  # vendor, host-to-device, interface recipient
REQUEST_TYPE_IN = 0xC1   # vendor, device-to-host, interface recipient

CONTROL_TIMEOUT_MS = 1000
WRITE_TIMEOUT_MS = 1000

HOST_FORMAT_MAGIC = 0x0000BEEF

DEFAULT_SAMPLE_POINT = 87.5
DEFAULT_DATA_SAMPLE_POINT = 75.0
