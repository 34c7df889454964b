"""Bit-timing lookup tables.

Segment values are looked up, never computed. Each table entry was
validated on real adapters; a clock, sample point or bitrate that is not
listed is rejected rather than approximated.

Tables are keyed by ``(clock_hz, sample_point_tenths)``; each maps a
bitrate to ``(phase_seg1, phase_seg2, brp)``. ``prop_seg`` and ``sjw``
are always 1.
"""

from __future__ import annotations

from ..errors import UnsupportedBitrate, UnsupportedDataBitrate
from ..models.device import BitTiming

PROP_SEG = 1
SJW = 1

NOMINAL_TIMINGS: dict[tuple[int, int], dict[int, tuple[int, int, int]]] = {
    # 48 MHz, 87.5 % (candleLight / STM32F0)
    (48_000_000, 875): {
        10_000: (12, 2, 300),
        20_000: (12, 2, 150),
        50_000: (12, 2, 60),
        100_000: (12, 2, 30),
        125_000: (12, 2, 24),
        250_000: (12, 2, 12),
        500_000: (12, 2, 6),
        800_000: (11, 2, 4),
        1_000_000: (12, 2, 3),
    },
    # 80 MHz, 87.5 %
    (80_000_000, 875): {
        10_000: (12, 2, 500),
        20_000: (12, 2, 250),
        50_000: (12, 2, 100),
        100_000: (12, 2, 50),
        125_000: (12, 2, 40),
        250_000: (12, 2, 20),
        500_000: (12, 2, 10),
        800_000: (7, 1, 10),
        1_000_000: (12, 2, 5),
    },
    # 40 MHz, 87.5 % (TCAN4550)
    (40_000_000, 875): {
        10_000: (12, 2, 250),
        20_000: (12, 2, 125),
        50_000: (12, 2, 50),
        100_000: (12, 2, 25),
        125_000: (12, 2, 20),
        250_000: (12, 2, 10),
        500_000: (12, 2, 5),
        800_000: (7, 1, 5),
        1_000_000: (5, 1, 5),
    },
}

DATA_TIMINGS: dict[tuple[int, int], dict[int, tuple[int, int, int]]] = {
    # 80 MHz, 75 %
    (80_000_000, 750): {
        2_000_000: (4, 2, 5),
        4_000_000: (1, 1, 5),
        5_000_000: (4, 2, 2),
        8_000_000: (2, 1, 2),
    },
    # 40 MHz, 75 % (TCAN4550)
    (40_000_000, 750): {
        2_000_000: (6, 2, 2),
        4_000_000: (2, 1, 2),
        5_000_000: (4, 2, 1),
        8_000_000: (2, 1, 1),
        10_000_000: (1, 1, 1),
    },
}


def sample_point_tenths(percent: float) -> int:
    """Convert a sample point in percent (87.5) to tenths (875).

    Fractions beyond one decimal place are truncated.
    """
    return int(percent * 10)


def _lookup(table, clock_hz: int, bitrate: int, sample_point: int) -> BitTiming | None:
    entry = table.get((clock_hz, sample_point), {}).get(bitrate)
    if entry is None:
        return None
    phase_seg1, phase_seg2, brp = entry
    return BitTiming(
        prop_seg=PROP_SEG,
        phase_seg1=phase_seg1,
        phase_seg2=phase_seg2,
        sjw=SJW,
        brp=brp,
    )


def resolve(clock_hz: int, bitrate: int, sample_point: int = 875) -> BitTiming:
    """Nominal (arbitration phase) timing for a bitrate.

    Args:
        clock_hz: CAN controller clock reported by BT_CONST.
        bitrate: Requested bitrate in bit/s.
        sample_point: Sample point in tenths of a percent.

    Raises:
        UnsupportedBitrate: If the combination is not in the table.
    """
    timing = _lookup(NOMINAL_TIMINGS, clock_hz, bitrate, sample_point)
    if timing is None:
        raise UnsupportedBitrate(bitrate=bitrate, clock_hz=clock_hz)
    return timing


def resolve_data(clock_hz: int, bitrate: int, sample_point: int = 750) -> BitTiming:
    """CAN FD data phase timing for a bitrate.

    Does not look at device features; callers check the FD bit first.

    Raises:
        UnsupportedDataBitrate: If the combination is not in the table.
    """
    timing = _lookup(DATA_TIMINGS, clock_hz, bitrate, sample_point)
    if timing is None:
        raise UnsupportedDataBitrate(bitrate=bitrate, clock_hz=clock_hz)
    return timing


def supported_bitrates(clock_hz: int, sample_point: int = 875) -> list[int]:
    return sorted(NOMINAL_TIMINGS.get((clock_hz, sample_point), {}))


def supported_data_bitrates(clock_hz: int, sample_point: int = 750) -> list[int]:
    return sorted(DATA_TIMINGS.get((clock_hz, sample_point), {}))
