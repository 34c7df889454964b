"""Exception hierarchy for gs_usb operations.

Three families:

- transport errors, raised when a USB primitive fails and tagged with the
  failing operation;
- protocol errors, raised when the device answers with something the
  protocol layer cannot use or the device lacks a required feature;
- recoverable timeouts (:class:`ReadTimeout`, :class:`WriteTimeout`),
  which callers are expected to catch inside a polling loop.
"""

from __future__ import annotations


class GsUsbError(Exception):
    """Base class for every error raised by this package."""

    @property
    def is_timeout(self) -> bool:
        return False

    @property
    def is_usb_error(self) -> bool:
        return False


# ─── TRANSPORT ───────────────────────────────────────────────────────

class TransportError(GsUsbError):
    """A USB primitive failed.

    Attributes:
        operation: Short name of the failing primitive (``"claim"``,
            ``"control_in"``, ``"bulk_read"`` ...).
        cause: The underlying backend exception, if any.
    """

    def __init__(
        self,
        operation: str,
        cause: BaseException | None = None,
        message: str | None = None,
    ) -> None:
        self.operation = operation
        self.cause = cause
        if message is None:
            detail = f": {cause}" if cause is not None else ""
            message = f"USB {operation} failed{detail}"
        super().__init__(message)

    @property
    def is_usb_error(self) -> bool:
        return True

    @property
    def is_timeout(self) -> bool:
        return bool(getattr(self.cause, "is_timeout", False))


class TransportTimeout(TransportError):
    """The USB backend reported a transfer timeout."""

    @property
    def is_timeout(self) -> bool:
        return True


class DeviceNotFound(TransportError):
    def __init__(self, detail: str = "No gs_usb device found") -> None:
        super().__init__("open", message=detail)


class ClaimInterfaceError(TransportError):
    def __init__(self, cause: BaseException | None = None) -> None:
        super().__init__("claim_interface", cause)


class DetachKernelDriverError(TransportError):
    def __init__(self, cause: BaseException | None = None) -> None:
        super().__init__("detach_kernel_driver", cause)


class ControlTransferError(TransportError):
    def __init__(self, request: int, cause: BaseException | None = None) -> None:
        super().__init__(f"control transfer (request {request})", cause)
        self.request = request


class BulkTransferError(TransportError):
    def __init__(self, direction: str, cause: BaseException | None = None) -> None:
        super().__init__(f"bulk {direction}", cause)
        self.direction = direction


# ─── PROTOCOL ────────────────────────────────────────────────────────

class ProtocolError(GsUsbError):
    """The device data or capabilities do not allow the operation."""


class InvalidResponse(ProtocolError):
    """A response was shorter than the fixed size of its structure."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Invalid response from device: expected {expected} bytes, got {actual}"
        )


class UnsupportedBitrate(ProtocolError):
    def __init__(self, bitrate: int, clock_hz: int) -> None:
        self.bitrate = bitrate
        self.clock_hz = clock_hz
        super().__init__(f"Unsupported bitrate {bitrate} for clock {clock_hz} Hz")


class UnsupportedDataBitrate(ProtocolError):
    def __init__(self, bitrate: int, clock_hz: int) -> None:
        self.bitrate = bitrate
        self.clock_hz = clock_hz
        super().__init__(f"Unsupported data bitrate {bitrate} for clock {clock_hz} Hz")


class FdNotSupported(ProtocolError):
    def __init__(self) -> None:
        super().__init__("Device does not support CAN FD")


class GetStateNotSupported(ProtocolError):
    def __init__(self) -> None:
        super().__init__("Device does not support GET_STATE feature")


class FeatureNotSupported(ProtocolError):
    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"Device does not support feature: {feature}")


# ─── TIMEOUTS ────────────────────────────────────────────────────────

class _Timeout(GsUsbError):
    @property
    def is_timeout(self) -> bool:
        return True


class ReadTimeout(_Timeout):
    """No frame arrived within the read timeout. The session stays usable."""

    def __init__(self, timeout_ms: int | None = None) -> None:
        self.timeout_ms = timeout_ms
        super().__init__("Read timeout")


class WriteTimeout(_Timeout):
    def __init__(self, timeout_ms: int | None = None) -> None:
        self.timeout_ms = timeout_ms
        super().__init__("Write timeout")
