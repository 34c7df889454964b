"""Control-transfer payload structures.

All structures are little-endian, fixed size, with no padding::

    DeviceMode        8 bytes   mode u32, flags u32
    BitTiming        20 bytes   prop_seg, phase_seg1, phase_seg2, sjw, brp (u32 each)
    DeviceInfo       12 bytes   3 reserved, icount u8, fw_version u32, hw_version u32
    DeviceCapability 40 bytes   feature, fclk_can, tseg1 min/max, tseg2 min/max,
                                sjw_max, brp min/max/inc (u32 each)
                     72 bytes   (BT_CONST_EXT) the above + 8 data-phase u32 fields
    DeviceState      12 bytes   state, rxerr, txerr (u32 each)

Values are passed through as read; range checking is left to the caller.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import ClassVar

from ..errors import InvalidResponse
from ..protocol.constants import CanState, Feature, can_state_name


def _require(data: bytes, size: int) -> None:
    if len(data) < size:
        raise InvalidResponse(expected=size, actual=len(data))


@dataclass(frozen=True)
class DeviceMode:
    """MODE request payload."""

    FORMAT: ClassVar[str] = "<2I"
    SIZE: ClassVar[int] = 8

    mode: int
    flags: int = 0

    def to_bytes(self) -> bytes:
        return struct.pack(self.FORMAT, self.mode, int(self.flags))

    @classmethod
    def from_bytes(cls, data: bytes) -> DeviceMode:
        _require(data, cls.SIZE)
        return cls(*struct.unpack_from(cls.FORMAT, data))


@dataclass(frozen=True)
class BitTiming:
    """Segment-register values for one bit-timing phase."""

    FORMAT: ClassVar[str] = "<5I"
    SIZE: ClassVar[int] = 20

    prop_seg: int
    phase_seg1: int
    phase_seg2: int
    sjw: int
    brp: int

    def to_bytes(self) -> bytes:
        return struct.pack(
            self.FORMAT,
            self.prop_seg,
            self.phase_seg1,
            self.phase_seg2,
            self.sjw,
            self.brp,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> BitTiming:
        _require(data, cls.SIZE)
        return cls(*struct.unpack_from(cls.FORMAT, data))

    def as_tuple(self) -> tuple[int, int, int, int, int]:
        return (self.prop_seg, self.phase_seg1, self.phase_seg2, self.sjw, self.brp)

    @property
    def time_quanta(self) -> int:
        """Bit length in time quanta (sync segment included)."""
        return 1 + self.prop_seg + self.phase_seg1 + self.phase_seg2

    def bitrate(self, clock_hz: int) -> float:
        """Bitrate these values produce for the given CAN clock."""
        return clock_hz / (self.brp * self.time_quanta)

    def sample_point(self) -> float:
        """Sample point in percent."""
        return 100.0 * (self.time_quanta - self.phase_seg2) / self.time_quanta

    def to_dict(self) -> dict:
        return {
            "prop_seg": self.prop_seg,
            "phase_seg1": self.phase_seg1,
            "phase_seg2": self.phase_seg2,
            "sjw": self.sjw,
            "brp": self.brp,
        }

    def __str__(self) -> str:
        return (
            f"Prop Seg: {self.prop_seg}\n"
            f"Phase Seg 1: {self.phase_seg1}\n"
            f"Phase Seg 2: {self.phase_seg2}\n"
            f"SJW: {self.sjw}\n"
            f"BRP: {self.brp}"
        )


@dataclass(frozen=True)
class DeviceInfo:
    """DEVICE_CONFIG response: channel count and version numbers."""

    FORMAT: ClassVar[str] = "<3BBII"
    SIZE: ClassVar[int] = 12

    reserved1: int
    reserved2: int
    reserved3: int
    icount: int
    fw_version: int
    hw_version: int

    @classmethod
    def from_bytes(cls, data: bytes) -> DeviceInfo:
        _require(data, cls.SIZE)
        return cls(*struct.unpack_from(cls.FORMAT, data))

    @property
    def channel_count(self) -> int:
        return self.icount + 1

    @property
    def firmware_version(self) -> float:
        return self.fw_version / 10.0

    @property
    def hardware_version(self) -> float:
        return self.hw_version / 10.0

    def to_dict(self) -> dict:
        return {
            "channel_count": self.channel_count,
            "firmware_version": self.firmware_version,
            "hardware_version": self.hardware_version,
        }

    def __str__(self) -> str:
        return (
            f"iCount: {self.icount}\n"
            f"FW Version: {self.firmware_version:.1f}\n"
            f"HW Version: {self.hardware_version:.1f}"
        )


@dataclass(frozen=True)
class DeviceCapability:
    """BT_CONST / BT_CONST_EXT response.

    The data-phase fields stay ``None`` until an extended fetch succeeds.
    """

    FORMAT: ClassVar[str] = "<10I"
    SIZE: ClassVar[int] = 40
    EXT_FORMAT: ClassVar[str] = "<18I"
    EXT_SIZE: ClassVar[int] = 72

    feature: int
    fclk_can: int
    tseg1_min: int
    tseg1_max: int
    tseg2_min: int
    tseg2_max: int
    sjw_max: int
    brp_min: int
    brp_max: int
    brp_inc: int
    dtseg1_min: int | None = None
    dtseg1_max: int | None = None
    dtseg2_min: int | None = None
    dtseg2_max: int | None = None
    dsjw_max: int | None = None
    dbrp_min: int | None = None
    dbrp_max: int | None = None
    dbrp_inc: int | None = None

    @classmethod
    def from_bytes(cls, data: bytes) -> DeviceCapability:
        _require(data, cls.SIZE)
        return cls(*struct.unpack_from(cls.FORMAT, data))

    @classmethod
    def from_bytes_extended(cls, data: bytes) -> DeviceCapability:
        _require(data, cls.EXT_SIZE)
        return cls(*struct.unpack_from(cls.EXT_FORMAT, data))

    @property
    def has_fd_timing(self) -> bool:
        return self.dtseg1_min is not None

    @property
    def clock_mhz(self) -> float:
        return self.fclk_can / 1_000_000.0

    def supports(self, feature: int) -> bool:
        return (self.feature & feature) == feature

    def feature_names(self) -> list[str]:
        return [f.name for f in Feature if f.name and self.feature & f]

    def to_dict(self) -> dict:
        result = {
            "feature": self.feature,
            "features": self.feature_names(),
            "fclk_can": self.fclk_can,
            "tseg1": [self.tseg1_min, self.tseg1_max],
            "tseg2": [self.tseg2_min, self.tseg2_max],
            "sjw_max": self.sjw_max,
            "brp": [self.brp_min, self.brp_max, self.brp_inc],
        }
        if self.has_fd_timing:
            result["data_phase"] = {
                "dtseg1": [self.dtseg1_min, self.dtseg1_max],
                "dtseg2": [self.dtseg2_min, self.dtseg2_max],
                "dsjw_max": self.dsjw_max,
                "dbrp": [self.dbrp_min, self.dbrp_max, self.dbrp_inc],
            }
        return result

    def __str__(self) -> str:
        text = (
            f"Feature bitfield: 0x{self.feature:08x}\n"
            f"Clock: {self.fclk_can} Hz ({self.clock_mhz:.1f} MHz)\n"
            f"TSEG1: {self.tseg1_min} - {self.tseg1_max}\n"
            f"TSEG2: {self.tseg2_min} - {self.tseg2_max}\n"
            f"SJW (max): {self.sjw_max}\n"
            f"BRP: {self.brp_min} - {self.brp_max} (inc: {self.brp_inc})"
        )
        if self.has_fd_timing:
            text += (
                "\nData Phase (CAN FD):\n"
                f"  DTSEG1: {self.dtseg1_min} - {self.dtseg1_max}\n"
                f"  DTSEG2: {self.dtseg2_min} - {self.dtseg2_max}\n"
                f"  DSJW (max): {self.dsjw_max}\n"
                f"  DBRP: {self.dbrp_min} - {self.dbrp_max} (inc: {self.dbrp_inc})"
            )
        return text


@dataclass(frozen=True)
class DeviceState:
    """GET_STATE response: bus state and error counters."""

    FORMAT: ClassVar[str] = "<3I"
    SIZE: ClassVar[int] = 12

    state: int
    rxerr: int
    txerr: int

    @classmethod
    def from_bytes(cls, data: bytes) -> DeviceState:
        _require(data, cls.SIZE)
        return cls(*struct.unpack_from(cls.FORMAT, data))

    @property
    def state_name(self) -> str:
        return can_state_name(self.state)

    @property
    def is_error_active(self) -> bool:
        return self.state == CanState.ERROR_ACTIVE

    @property
    def is_error_warning(self) -> bool:
        return self.state == CanState.ERROR_WARNING

    @property
    def is_error_passive(self) -> bool:
        return self.state == CanState.ERROR_PASSIVE

    @property
    def is_bus_off(self) -> bool:
        return self.state == CanState.BUS_OFF

    def to_dict(self) -> dict:
        return {
            "state": self.state_name,
            "rxerr": self.rxerr,
            "txerr": self.txerr,
        }

    def __str__(self) -> str:
        return (
            f"State: {self.state_name}\n"
            f"RX Error Counter: {self.rxerr}\n"
            f"TX Error Counter: {self.txerr}"
        )
