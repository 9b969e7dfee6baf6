"""
Safety context and write gating for radio operations.

Firmware flashing and SPI restore overwrite the radio's flash; both go
through ``require_write_permission`` before the port is touched.
"""

import sys
from dataclasses import dataclass
from typing import Optional, Callable

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (variant, region, etc.)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Safety context for write operations.

    Attributes:
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the front end can prompt for confirmation
        dry_run: Decode and validate only, no serial I/O
        target: Variant or SPI profile the write is aimed at
    """
    confirmation_token: Optional[str] = None
    interactive: bool = True
    dry_run: bool = False
    target: str = ""

    # CLI sets these to prompt functions
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def to_details_dict(self, target_region: str = "", bytes_length: int = 0) -> dict:
        """Create a details dictionary for display."""
        return {
            "target": self.target or "unknown",
            "target_region": target_region,
            "bytes_length": bytes_length,
        }


def require_write_permission(
    ctx: SafetyContext,
    target_region: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. Dry run: always allowed (nothing is written)
    2. Confirmation token present: must match exactly
    3. Interactive: user must type the token at the prompt
    4. Otherwise: denied

    Raises:
        WritePermissionError: If write is not permitted
    """
    details = ctx.to_details_dict(target_region, bytes_length)

    if ctx.dry_run:
        return

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires confirmation token (--confirm WRITE).",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)

    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set. "
            "Provide confirmation token for non-interactive mode.",
            details=details,
        )

    user_input = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if user_input.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError(
            "Confirmation failed. Write aborted by user.",
            details=details,
        )


def create_cli_safety_context(
    target: str = "",
    dry_run: bool = False,
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """
    Create a SafetyContext configured for CLI usage.

    Interactive only when no token was given and stdin is a TTY; the
    caller attaches the prompt callbacks.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None

    return SafetyContext(
        confirmation_token=confirmation_token,
        interactive=interactive,
        dry_run=dry_run,
        target=target,
    )
