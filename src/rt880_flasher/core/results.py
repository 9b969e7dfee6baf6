"""
Result objects for core operations.

Every workflow action returns an ``OperationResult`` so the CLI can report
firmware uploads and SPI transfers the same way.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any


@dataclass
class OperationResult:
    """
    Outcome of one workflow action.

    Attributes:
        ok: True when the action finished without a blocking error
        operation: Action name ("flash_firmware", "backup_spi", ...)
        variant: Protocol variant or SPI profile the action ran against
        region: Address window or block range that was touched
        bytes_len: Size of the image or dump
        stage: Protocol stage a failed transfer stopped in ("" if none)
        hashes: Digests of the image or dump, keyed by algorithm
        warnings: Conditions worth reporting that did not stop the action
        errors: Reasons the action failed
        metadata: Decode/transfer reports and other per-action details
        logs: Log lines captured while the action ran
    """
    ok: bool
    operation: str
    variant: str = ""
    region: str = ""
    bytes_len: int = 0
    stage: str = ""
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    @classmethod
    def success(cls, operation: str, **kwargs) -> "OperationResult":
        return cls(ok=True, operation=operation, **kwargs)

    @classmethod
    def failure(cls, operation: str, error: str, **kwargs) -> "OperationResult":
        """Failed result carrying ``error`` as its only error line."""
        return cls(ok=False, operation=operation, errors=[error], **kwargs)
