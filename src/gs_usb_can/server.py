"""MCP server entry point for gs_usb CAN adapters.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from .errors import GsUsbError, ReadTimeout
from .protocol import bittiming
from .protocol.constants import (
    CAN_EFF_FLAG,
    CAN_EFF_MASK,
    CAN_RTR_FLAG,
    CAN_SFF_MASK,
    DEFAULT_DATA_SAMPLE_POINT,
    DEFAULT_SAMPLE_POINT,
    ModeFlag,
)
from .protocol.framing import GsUsbFrame
from .session import GsUsbSession

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "gs-usb-can",
    instructions="MCP server for gs_usb (candleLight, CANable) USB-to-CAN adapters",
)

# Global session state
_session: GsUsbSession | None = None


def _get_session() -> GsUsbSession:
    """Get the active session, raising if not connected."""
    if _session is None:
        raise RuntimeError(
            "Not connected to device. Use the 'connect' tool first."
        )
    return _session


def _error(e: Exception) -> dict[str, Any]:
    logger.debug("Tool failed: %s", e)
    return {"error": str(e), "type": type(e).__name__}


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_devices() -> dict[str, Any]:
    """List attached gs_usb compatible adapters with their bus and address."""
    devices = []
    for dev in GsUsbSession.scan():
        devices.append({
            "bus": dev.bus,
            "address": dev.address,
            "vendor_id": f"{dev.transport.vendor_id:04x}",
            "product_id": f"{dev.transport.product_id:04x}",
        })
    return {"devices": devices}


@mcp.tool()
def connect(bus: int | None = None, address: int | None = None) -> dict[str, Any]:
    """Open a gs_usb adapter.

    Picks the first attached adapter unless bus and address are given.
    Reads the device configuration and bit-timing capability to confirm
    the device answers.
    """
    global _session
    if _session is not None:
        return {
            "connected": True,
            "message": "Already connected",
            "bus": _session.bus,
            "address": _session.address,
        }

    try:
        session = GsUsbSession.open(bus=bus, address=address)
    except GsUsbError as e:
        return _error(e)

    try:
        info = session.device_info()
        capability = session.device_capability()
    except GsUsbError as e:
        session.close()
        return _error(e)

    _session = session
    logger.info("Connected to gs_usb device on bus %s address %s", session.bus, session.address)
    return {
        "connected": True,
        "bus": session.bus,
        "address": session.address,
        "channels": info.channel_count,
        "firmware_version": info.firmware_version,
        "hardware_version": info.hardware_version,
        "clock_hz": capability.fclk_can,
        "features": capability.feature_names(),
    }


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Stop the channel and close the adapter."""
    global _session
    if _session is None:
        return {"disconnected": True}
    _session.close()
    _session = None
    return {"disconnected": True}


@mcp.tool()
def get_device_info() -> dict[str, Any]:
    """Retrieve channel count, firmware and hardware version."""
    dev = _get_session()
    try:
        info = dev.device_info()
    except GsUsbError as e:
        return _error(e)
    result = info.to_dict()
    result["serial_number"] = dev.serial_number
    return result


@mcp.tool()
def get_capability(extended: bool = True) -> dict[str, Any]:
    """Report feature flags, CAN clock and bit-timing limits.

    Args:
        extended: Also fetch CAN FD data phase limits when available.
    """
    dev = _get_session()
    try:
        capability = dev.device_capability()
        if extended:
            capability = dev.device_capability_extended() or capability
    except GsUsbError as e:
        return _error(e)
    return capability.to_dict()


@mcp.tool()
def list_supported_bitrates() -> dict[str, Any]:
    """List the nominal and data bitrates available for the adapter's clock."""
    dev = _get_session()
    try:
        capability = dev.device_capability()
    except GsUsbError as e:
        return _error(e)
    clock = capability.fclk_can
    nominal = bittiming.supported_bitrates(
        clock, bittiming.sample_point_tenths(DEFAULT_SAMPLE_POINT)
    )
    data = []
    if dev.supports_fd():
        data = bittiming.supported_data_bitrates(
            clock, bittiming.sample_point_tenths(DEFAULT_DATA_SAMPLE_POINT)
        )
    return {"clock_hz": clock, "bitrates": nominal, "data_bitrates": data}


# ─── CONFIGURATION TOOLS ─────────────────────────────────────────────

@mcp.tool()
def set_bitrate(bitrate: int) -> dict[str, Any]:
    """Set the nominal (arbitration) bitrate, e.g. 500000.

    Must be called before 'start'.
    """
    dev = _get_session()
    try:
        timing = dev.set_bitrate(bitrate)
    except GsUsbError as e:
        return _error(e)
    return {"bitrate": bitrate, "timing": timing.to_dict()}


@mcp.tool()
def set_data_bitrate(bitrate: int) -> dict[str, Any]:
    """Set the CAN FD data phase bitrate, e.g. 2000000.

    Only available on adapters that support CAN FD.
    """
    dev = _get_session()
    try:
        timing = dev.set_data_bitrate(bitrate)
    except GsUsbError as e:
        return _error(e)
    return {"data_bitrate": bitrate, "timing": timing.to_dict()}


@mcp.tool()
def start(
    listen_only: bool = False,
    loopback: bool = False,
    one_shot: bool = False,
    hw_timestamp: bool = True,
    fd: bool = False,
) -> dict[str, Any]:
    """Start the CAN channel.

    Modes the adapter does not support are dropped; the response lists
    the modes that were actually enabled.
    """
    flags = ModeFlag.NORMAL
    if listen_only:
        flags |= ModeFlag.LISTEN_ONLY
    if loopback:
        flags |= ModeFlag.LOOP_BACK
    if one_shot:
        flags |= ModeFlag.ONE_SHOT
    if hw_timestamp:
        flags |= ModeFlag.HW_TIMESTAMP
    if fd:
        flags |= ModeFlag.FD

    dev = _get_session()
    try:
        effective = dev.start(flags)
    except GsUsbError as e:
        return _error(e)
    return {
        "started": True,
        "flags": int(effective),
        "modes": [f.name for f in ModeFlag if f and effective & f],
        "fd_mode": dev.fd_mode,
    }


@mcp.tool()
def stop() -> dict[str, bool]:
    """Stop the CAN channel."""
    dev = _get_session()
    dev.stop()
    return {"stopped": True}


@mcp.tool()
def identify(on: bool = True) -> dict[str, Any]:
    """Blink the adapter LED to tell several adapters apart."""
    dev = _get_session()
    try:
        dev.identify(on)
    except GsUsbError as e:
        return _error(e)
    return {"identify": on}


@mcp.tool()
def set_termination(on: bool) -> dict[str, Any]:
    """Switch the adapter's 120 Ohm bus termination on or off."""
    dev = _get_session()
    try:
        dev.set_termination(on)
    except GsUsbError as e:
        return _error(e)
    return {"termination": on}


# ─── TRAFFIC TOOLS ───────────────────────────────────────────────────

@mcp.tool()
def send_frame(
    can_id: int,
    data: str = "",
    extended: bool = False,
    remote: bool = False,
    fd: bool = False,
    brs: bool = False,
) -> dict[str, Any]:
    """Send one CAN frame.

    Args:
        can_id: Arbitration ID (11-bit, or 29-bit with extended=True).
        data: Payload as hex, e.g. "DE AD BE EF".
        extended: Use a 29-bit identifier.
        remote: Send a remote transmission request.
        fd: Send as CAN FD frame (up to 64 bytes).
        brs: Switch to the data bitrate for the payload (FD only).
    """
    mask = CAN_EFF_MASK if extended else CAN_SFF_MASK
    if not 0 <= can_id <= mask:
        return {"error": f"CAN ID must be 0-0x{mask:X}, got 0x{can_id:X}"}
    try:
        payload = bytes.fromhex(data)
    except ValueError:
        return {"error": f"Invalid hex payload: {data!r}"}
    limit = 64 if fd else 8
    if len(payload) > limit:
        return {"error": f"Payload must be at most {limit} bytes, got {len(payload)}"}

    ident = can_id
    if extended:
        ident |= CAN_EFF_FLAG
    if remote:
        ident |= CAN_RTR_FLAG

    if fd:
        frame = GsUsbFrame.with_fd_data(ident, payload, brs=brs)
    else:
        frame = GsUsbFrame.with_data(ident, payload)

    dev = _get_session()
    try:
        dev.send(frame)
    except GsUsbError as e:
        return _error(e)
    return {"sent": frame.to_dict()}


@mcp.tool()
def read_frames(
    count: int = 10,
    timeout_ms: int = 100,
    include_echo: bool = False,
) -> dict[str, Any]:
    """Read up to `count` frames, stopping at the first read timeout.

    Args:
        count: Maximum number of frames to return (1-1000).
        timeout_ms: Per-frame read timeout in milliseconds.
        include_echo: Also return echoes of transmitted frames.
    """
    if not 1 <= count <= 1000:
        return {"error": "Count must be 1-1000"}

    dev = _get_session()
    frames = []
    timed_out = False
    while len(frames) < count:
        try:
            frame = dev.read(timeout_ms)
        except ReadTimeout:
            timed_out = True
            break
        except GsUsbError as e:
            result = _error(e)
            result["frames"] = frames
            return result
        if frame.is_echo_frame() and not include_echo:
            continue
        frames.append(frame.to_dict())

    return {"frames": frames, "timed_out": timed_out}


@mcp.tool()
def get_bus_state() -> dict[str, Any]:
    """Report bus state (error active / warning / passive / bus-off) and error counters."""
    dev = _get_session()
    try:
        state = dev.get_state()
    except GsUsbError as e:
        return _error(e)
    return state.to_dict()


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("gsusb://device/info")
def resource_device_info() -> str:
    """Connected adapter information."""
    if _session is None:
        return json.dumps({"connected": False})
    try:
        info = _session.device_info().to_dict()
    except GsUsbError as e:
        return json.dumps(_error(e))
    info["connected"] = True
    info["bus"] = _session.bus
    info["address"] = _session.address
    return json.dumps(info)


@mcp.resource("gsusb://device/status")
def resource_device_status() -> str:
    """Channel state and last applied bit timing."""
    if _session is None:
        return json.dumps({"connected": False})
    timing = _session.last_timing
    data_timing = _session.last_data_timing
    return json.dumps({
        "connected": True,
        "state": _session.state.value,
        "fd_mode": _session.fd_mode,
        "flags": int(_session.device_flags),
        "timing": timing.to_dict() if timing else None,
        "data_timing": data_timing.to_dict() if data_timing else None,
    })


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def bring_up_bus(bitrate: int, data_bitrate: int | None = None) -> str:
    """Guide the AI through configuring and starting a CAN channel.

    Args:
        bitrate: Nominal bitrate of the bus.
        data_bitrate: CAN FD data bitrate, if the bus uses CAN FD.
    """
    fd_steps = ""
    if data_bitrate:
        fd_steps = f"""
- Confirm the adapter lists FD in get_capability
- Call set_data_bitrate with {data_bitrate}
- Start with fd=True"""
    return f"""Bring up a CAN bus at {bitrate} bit/s.
Steps:
- Call connect, then list_supported_bitrates to confirm {bitrate} is available
- Call set_bitrate with {bitrate}{fd_steps}
- Call start (listen_only=True first if the bus is live and you only want to observe)
- Use read_frames to check that traffic arrives
- Use get_bus_state if no frames arrive, to check for bus-off or error passive"""


@mcp.prompt()
def diagnose_bus() -> str:
    """Help find out why a CAN bus is not working."""
    return """Diagnose the CAN bus connected to the adapter.
Consider:
- get_bus_state: error counters and bus-off indicate wiring or bitrate problems
- A wrong bitrate shows up as rising RX error counters with no frames received
- Missing termination (enable it with set_termination if the adapter supports it)
- Whether any other node acknowledges frames (try send_frame, then read_frames with include_echo=True)
- Loopback mode (start with loopback=True) to check the adapter on its own"""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
