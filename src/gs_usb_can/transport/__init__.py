"""USB transport layer."""

from .usb_connection import USBConnection, find_devices
