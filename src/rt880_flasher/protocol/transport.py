"""
RT-880 Serial Transport Layer

Handles low-level serial communication with the radio bootloader at
115200-8-N-1.

This module provides:
- Serial port discovery and initialization
- Raw byte write / timed read
- Bounded-time accumulating reads for fixed-size responses
- The exception taxonomy shared by the protocol layer
"""

import logging
import time
from typing import List, Optional

import serial
import serial.tools.list_ports

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200
DEFAULT_TIMEOUT = 0.05
LOG_PREVIEW_BYTES = 32


class RadioTransportError(Exception):
    """Base exception for transport and protocol layer errors"""
    pass


class PortNotFound(RadioTransportError):
    """Requested serial port is not present on this machine"""
    pass


class PortOpenFailure(RadioTransportError):
    """Serial port exists but could not be opened"""
    pass


class ProtocolTimeout(RadioTransportError):
    """Radio did not deliver the expected bytes in time"""

    def __init__(self, message: str, received: int = 0):
        self.received = received
        super().__init__(message)


class RadioNoContact(RadioTransportError):
    """Radio did not respond to the connect sequence"""
    pass


class RadioBlockError(RadioTransportError):
    """Malformed response to a block command"""
    pass


def _preview(data: bytes) -> str:
    text = data[:LOG_PREVIEW_BYTES].hex().upper()
    return text + ("..." if len(data) > LOG_PREVIEW_BYTES else "")


def list_ports() -> List[str]:
    """Return the device names of all serial ports, sorted."""
    return sorted(p.device for p in serial.tools.list_ports.comports())


def ensure_port_exists(port: str) -> None:
    """
    Check that ``port`` is one of the enumerated serial ports.

    Raises:
        PortNotFound: If the port is not listed
    """
    available = list_ports()
    if port not in available:
        listing = ", ".join(available) if available else "none"
        raise PortNotFound(f"Port '{port}' not found (available: {listing})")


class SerialTransport:
    """
    Byte-level serial transport for the RT-880 bootloader.

    Handles:
    - Serial port management
    - Raw write / timed read
    - Timeout and error handling

    A transport is owned by exactly one session or client at a time.
    ``close()`` is idempotent and unblocks any reader waiting on the port.

    Example:
        with SerialTransport(port="/dev/ttyUSB0") as transport:
            transport.write(b"\\x52\\x00\\x00\\x52")
            block = transport.read_exact(1028, timeout=3.0)
    """

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Initialize transport layer.

        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            baudrate: Serial baud rate (default 115200)
            timeout: Default per-read timeout in seconds
        """
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.ser: Optional[serial.Serial] = None

    def __enter__(self) -> "SerialTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.ser is not None and self.ser.is_open

    def open(self) -> None:
        """
        Open serial port and configure for radio communication.

        Raises:
            PortOpenFailure: If port cannot be opened
        """
        if self.is_open:
            return
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.timeout,
                write_timeout=2.0,
            )
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
            logger.debug(f"Opened {self.port} at {self.baudrate} bps")
        except serial.SerialException as e:
            raise PortOpenFailure(f"Cannot open port {self.port}: {e}")

    def close(self) -> None:
        """Close serial port."""
        if self.ser is not None and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise RadioTransportError("Serial port not open")
        return self.ser

    def write(self, data: bytes) -> None:
        """
        Send raw bytes to radio.

        Raises:
            RadioTransportError: If write fails or is incomplete
        """
        ser = self._require_open()
        try:
            written = ser.write(data)
            ser.flush()
        except serial.SerialException as e:
            raise RadioTransportError(f"Write error: {e}")
        if written != len(data):
            raise RadioTransportError(f"Incomplete write: sent {written}/{len(data)} bytes")
        logger.debug(f">>> {_preview(data)}")

    def read(self, size: int = 1, timeout: Optional[float] = None) -> bytes:
        """
        Read up to ``size`` bytes.

        Returns:
            Bytes received, empty on timeout

        Raises:
            RadioTransportError: If the port is closed or the read fails
        """
        ser = self._require_open()
        try:
            if timeout is not None:
                ser.timeout = timeout
            data = ser.read(size)
        except (serial.SerialException, OSError, TypeError, AttributeError) as e:
            # pyserial raises TypeError/AttributeError when closed mid-read
            raise RadioTransportError(f"Read error: {e}")
        finally:
            if timeout is not None and ser.is_open:
                ser.timeout = self.timeout
        if data:
            logger.debug(f"<<< {_preview(data)}")
        return data

    def read_exact(self, size: int, timeout: float) -> bytes:
        """
        Accumulate exactly ``size`` bytes within ``timeout`` seconds.

        Raises:
            ProtocolTimeout: If the deadline passes first
        """
        deadline = time.monotonic() + timeout
        out = bytearray()
        while len(out) < size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProtocolTimeout(
                    f"Timeout after {timeout:.1f}s (got {len(out)}/{size} bytes)",
                    received=len(out),
                )
            out.extend(self.read(size - len(out), timeout=min(remaining, 0.1)))
        return bytes(out)

    def reset_input_buffer(self) -> None:
        """Discard anything pending in the receive buffer."""
        ser = self._require_open()
        ser.reset_input_buffer()
