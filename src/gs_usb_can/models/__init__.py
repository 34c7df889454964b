"""Data models for control-transfer payloads."""

from .device import (
    BitTiming,
    DeviceCapability,
    DeviceInfo,
    DeviceMode,
    DeviceState,
)
