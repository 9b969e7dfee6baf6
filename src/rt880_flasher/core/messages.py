"""
Standardized warning and message system for RT-880 Flasher.

Provides structured warning items with stable codes so front ends can
display protocol problems consistently and suggest a fix.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Port / connection
    W_PORT_NOT_FOUND = "W_PORT_NOT_FOUND"
    W_SERIAL_ERROR = "W_SERIAL_ERROR"
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"
    W_HANDSHAKE_FAILED = "W_HANDSHAKE_FAILED"

    # Transfer
    W_RETRY = "W_RETRY"
    W_RETRIES_EXHAUSTED = "W_RETRIES_EXHAUSTED"
    W_DEVICE_REJECTED = "W_DEVICE_REJECTED"
    W_CHECKSUM_MISMATCH = "W_CHECKSUM_MISMATCH"

    # Firmware / files
    W_FORMAT_ERROR = "W_FORMAT_ERROR"
    W_DATA_TRUNCATED = "W_DATA_TRUNCATED"
    W_SIZE_MISMATCH = "W_SIZE_MISMATCH"

    # Safety
    W_CONFIRMATION_REQUIRED = "W_CONFIRMATION_REQUIRED"
    W_DRY_RUN = "W_DRY_RUN"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


# Default remediation hints for each warning code
WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_PORT_NOT_FOUND:
        "Check USB connection, try 'ports' command to list available ports.",
    WarningCode.W_SERIAL_ERROR:
        "Close other serial apps using the port. Check USB driver.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check cable connection and that the radio is in bootloader mode.",
    WarningCode.W_HANDSHAKE_FAILED:
        "Power the radio on in bootloader mode (hold PTT). Check --variant.",
    WarningCode.W_RETRY:
        "Blocks were re-sent. A marginal cable or USB hub can cause this.",
    WarningCode.W_RETRIES_EXHAUSTED:
        "Transfer gave up on a block. Power cycle the radio and start again.",
    WarningCode.W_DEVICE_REJECTED:
        "Radio refused the block. Verify the file matches the flash profile.",
    WarningCode.W_CHECKSUM_MISMATCH:
        "Erased (0xFF) flash often fails the sum check. Use --strict to reject.",
    WarningCode.W_FORMAT_ERROR:
        "File is not valid Intel HEX. Use 'inspect' to locate the bad line.",
    WarningCode.W_DATA_TRUNCATED:
        "Data outside the firmware window was dropped. Check the image base address.",
    WarningCode.W_SIZE_MISMATCH:
        "File size must equal the flash capacity. Check --capacity.",
    WarningCode.W_CONFIRMATION_REQUIRED:
        "Type 'WRITE' to confirm the operation, or pass --confirm WRITE.",
    WarningCode.W_DRY_RUN:
        "Dry run complete. Remove --dry-run to perform the actual operation.",
    WarningCode.W_UNKNOWN:
        "Check logs (--verbose) for more details.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]


def classify_message(message: str) -> WarningCode:
    """Map a warning or error string onto a stable code."""
    msg = message.lower()

    if "not found" in msg and "port" in msg:
        return WarningCode.W_PORT_NOT_FOUND
    if "dry run" in msg:
        return WarningCode.W_DRY_RUN
    if "confirm" in msg or "permission" in msg:
        return WarningCode.W_CONFIRMATION_REQUIRED
    if "checksum" in msg:
        return WarningCode.W_CHECKSUM_MISMATCH
    if "size mismatch" in msg or ("expected" in msg and "bytes" in msg):
        return WarningCode.W_SIZE_MISMATCH
    if "failed after" in msg or "attempts" in msg:
        return WarningCode.W_RETRIES_EXHAUSTED
    if "retr" in msg or "re-sent" in msg:
        return WarningCode.W_RETRY
    if "rejected" in msg:
        return WarningCode.W_DEVICE_REJECTED
    if "no response" in msg or "nak" in msg or "handshake" in msg:
        return WarningCode.W_HANDSHAKE_FAILED
    if "timeout" in msg:
        return WarningCode.W_SERIAL_TIMEOUT
    if "intel hex" in msg or "line " in msg:
        return WarningCode.W_FORMAT_ERROR
    if "dropped" in msg or "outside" in msg:
        return WarningCode.W_DATA_TRUNCATED
    if "cannot open" in msg or "serial" in msg:
        return WarningCode.W_SERIAL_ERROR
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    """
    Convert plain warning strings to a WarningItem list.

    Args:
        warning_strings: List of plain warning message strings
        default_level: Severity level assigned to every item

    Returns:
        List of WarningItem objects
    """
    return [WarningItem(level=default_level, code=classify_message(msg), title=msg) for msg in warning_strings]


def result_to_warnings(result) -> List[WarningItem]:
    """Convert an OperationResult's warnings and errors to WarningItems."""
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR))
    return items
