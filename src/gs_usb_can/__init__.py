"""gs_usb (candleLight / CANable) USB-to-CAN adapter protocol.

Supported devices:

- GS-USB (VID 0x1D50, PID 0x606F)
- candleLight (VID 0x1209, PID 0x2323)
- CES CANext FD (VID 0x1CD2, PID 0x606F)
- ABE CANdebugger FD (VID 0x16D0, PID 0x10B8)
"""

from .errors import (
    GsUsbError,
    TransportError,
    TransportTimeout,
    DeviceNotFound,
    ClaimInterfaceError,
    DetachKernelDriverError,
    ControlTransferError,
    BulkTransferError,
    ProtocolError,
    InvalidResponse,
    UnsupportedBitrate,
    UnsupportedDataBitrate,
    FdNotSupported,
    GetStateNotSupported,
    FeatureNotSupported,
    ReadTimeout,
    WriteTimeout,
)
from .protocol.constants import (
    CAN_EFF_FLAG,
    CAN_ERR_FLAG,
    CAN_RTR_FLAG,
    CanState,
    Feature,
    ModeFlag,
)
from .protocol.framing import GsUsbFrame
from .models.device import BitTiming, DeviceCapability, DeviceInfo, DeviceMode, DeviceState
from .session import GsUsbSession, SessionState

__version__ = "0.1.0"
