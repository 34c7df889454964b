"""Protocol layer: wire constants, control requests, bit timing, frame codec."""

from .framing import GsUsbFrame, dlc_to_len, len_to_dlc, frame_size
from .commands import Request, build_mode, build_bittiming
from .bittiming import resolve, resolve_data
