"""
Core module for RT-880 Flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Option value parsing (parsing.py)
- Result objects (results.py)
- Firmware and SPI flash workflows (actions.py)
- Standardized warnings/messages (messages.py)

Front ends call into this module rather than driving the protocol
classes directly.
"""

from .safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    require_write_permission,
    create_cli_safety_context,
    WritePermissionError,
)
from .parsing import resolve_variant_name, parse_capacity, parse_baud
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    classify_message,
    warnings_from_strings,
    result_to_warnings,
)
from .actions import (
    inspect_firmware,
    convert_hex,
    flash_firmware,
    backup_spi,
    restore_spi,
)

__all__ = [
    # Safety
    "CONFIRMATION_TOKEN",
    "SafetyContext",
    "require_write_permission",
    "create_cli_safety_context",
    "WritePermissionError",
    # Parsing
    "resolve_variant_name",
    "parse_capacity",
    "parse_baud",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "classify_message",
    "warnings_from_strings",
    "result_to_warnings",
    # Actions
    "inspect_firmware",
    "convert_hex",
    "flash_firmware",
    "backup_spi",
    "restore_spi",
]
