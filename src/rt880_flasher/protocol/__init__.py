"""Radio protocol layer - serial transport, firmware programming and SPI flash."""

from .transport import (
    SerialTransport,
    RadioTransportError,
    PortNotFound,
    PortOpenFailure,
    ProtocolTimeout,
    RadioNoContact,
    RadioBlockError,
    list_ports,
    ensure_port_exists,
)
from .checksum import (
    additive_checksum,
    build_packet,
    seal_packet,
    verify_packet,
    intel_hex_checksum,
)
from .programmer import (
    ProgrammingSession,
    SessionTiming,
    SessionState,
    SessionEvent,
    SessionReport,
    EventKind,
    AbortReason,
    ByteReader,
    NakReceived,
    MaxRetriesExceeded,
)
from .spi_flash import (
    SpiFlashClient,
    SpiTiming,
    SpiEvent,
    SpiTransferReport,
    SpiFlashError,
    ChecksumMismatch,
    DeviceRejected,
    FileSizeMismatch,
)

__all__ = [
    # Transport
    "SerialTransport",
    "RadioTransportError",
    "PortNotFound",
    "PortOpenFailure",
    "ProtocolTimeout",
    "RadioNoContact",
    "RadioBlockError",
    "list_ports",
    "ensure_port_exists",
    # Checksum
    "additive_checksum",
    "build_packet",
    "seal_packet",
    "verify_packet",
    "intel_hex_checksum",
    # Firmware programming
    "ProgrammingSession",
    "SessionTiming",
    "SessionState",
    "SessionEvent",
    "SessionReport",
    "EventKind",
    "AbortReason",
    "ByteReader",
    "NakReceived",
    "MaxRetriesExceeded",
    # SPI flash
    "SpiFlashClient",
    "SpiTiming",
    "SpiEvent",
    "SpiTransferReport",
    "SpiFlashError",
    "ChecksumMismatch",
    "DeviceRejected",
    "FileSizeMismatch",
]
