"""
RT-880 SPI Flash Client

Block read/write protocol for dumping and restoring the radio's external
SPI flash through the bootloader.

Wire format (all blocks are 1024 bytes, addressed by a 16-bit block number):
    read cmd    [0x52, blk_hi, blk_lo, checksum]                  4 bytes
    read resp   [0x52, blk_hi, blk_lo, payload[1024], checksum]   1028 bytes
    write cmd   [0x57, blk_hi, blk_lo, payload[1024], checksum]   1028 bytes
    write resp  0x06 ack, anything else = rejected                1 byte

Command checksums carry the profile's offset; response checksums are the
plain additive sum. Erased flash blocks are known to fail the response
checksum, so a mismatch is tolerated (after one re-read) unless ``strict``.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

from rt880_flasher.models.registry import ACK, BLOCK_SIZE, SpiFlashProfile
from .checksum import build_packet, verify_packet
from .transport import ProtocolTimeout, RadioBlockError, RadioTransportError

logger = logging.getLogger(__name__)

CMD_READ = 0x52  # 'R'
CMD_WRITE = 0x57  # 'W'
PAD_BYTE = 0xFF
PROGRESS_EVERY = 256


class SpiFlashError(RadioTransportError):
    """Base exception for SPI flash backup/restore errors"""

    def __init__(self, message: str, block: Optional[int] = None):
        self.block = block
        super().__init__(message)


class ChecksumMismatch(SpiFlashError):
    """Read response failed its checksum (strict mode only)"""

    def __init__(self, block: int, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch on block {block}: expected 0x{expected:02X}, got 0x{actual:02X}",
            block=block,
        )


class DeviceRejected(SpiFlashError):
    """Radio answered a block write with something other than ACK"""

    def __init__(self, code: int, block: Optional[int] = None):
        self.code = code
        where = f" for block {block}" if block is not None else ""
        super().__init__(f"Device rejected write{where} (response 0x{code:02X})", block=block)


class FileSizeMismatch(SpiFlashError):
    """Restore image is not exactly the flash capacity"""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"File size mismatch: expected {expected} bytes, got {actual}")


@dataclass
class SpiTiming:
    """Delays and deadlines for the SPI block exchange (seconds)."""
    command_delay: float = 0.05
    write_delay: float = 0.1
    read_timeout: float = 3.0
    reread_timeout: float = 0.5
    write_timeout: float = 5.0
    block_delay: float = 0.02
    retry_backoff: float = 0.1
    read_attempts: int = 3


@dataclass(frozen=True)
class SpiEvent:
    """Observable SPI event: ``checksum_mismatch``, ``retry`` or ``progress``."""
    kind: str
    block: int
    message: str = ""


@dataclass
class SpiTransferReport:
    """Outcome of a backup or restore."""
    operation: str
    blocks: int = 0
    bytes: int = 0
    checksum_mismatches: int = 0
    mismatch_blocks: List[int] = field(default_factory=list)
    retries: int = 0
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "blocks": self.blocks,
            "bytes": self.bytes,
            "checksum_mismatches": self.checksum_mismatches,
            "mismatch_blocks": list(self.mismatch_blocks),
            "retries": self.retries,
            "elapsed": round(self.elapsed, 3),
        }


def _block_header(command: int, block: int) -> bytes:
    return bytes([command, (block >> 8) & 0xFF, block & 0xFF])


class SpiFlashClient:
    """
    SPI flash block client.

    The client owns its transport while used as a context manager and
    closes it on exit.

    Example:
        with SpiFlashClient.for_profile(SerialTransport(port), get_spi_profile("32mb")) as client:
            report = client.backup("spi_backup.bin")
    """

    def __init__(
        self,
        transport,
        checksum_offset: int = 0,
        block_count: Optional[int] = None,
        block_size: int = BLOCK_SIZE,
        timing: Optional[SpiTiming] = None,
        strict: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        event_cb: Optional[Callable[[SpiEvent], None]] = None,
    ):
        self.transport = transport
        self.checksum_offset = checksum_offset
        self.block_count = block_count
        self.block_size = block_size
        self.timing = timing or SpiTiming()
        self.strict = strict
        self.event_cb = event_cb
        self._sleep = sleep
        self.checksum_mismatches = 0
        self.mismatch_blocks: List[int] = []

    @classmethod
    def for_profile(cls, transport, profile: SpiFlashProfile, **kwargs) -> "SpiFlashClient":
        """Build a client using a registry profile's geometry and checksum offset."""
        return cls(
            transport,
            checksum_offset=profile.command_checksum_offset,
            block_count=profile.block_count,
            block_size=profile.block_size,
            **kwargs,
        )

    def __enter__(self) -> "SpiFlashClient":
        if not self.transport.is_open:
            self.transport.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.transport.close()

    @property
    def response_size(self) -> int:
        return self.block_size + 4

    def _emit(self, kind: str, block: int, message: str = "") -> None:
        if self.event_cb:
            self.event_cb(SpiEvent(kind, block, message))

    def _resolve_count(self, block_count: Optional[int]) -> int:
        count = block_count if block_count is not None else self.block_count
        if not count or count <= 0:
            raise ValueError("block_count must be a positive number of blocks")
        if count > 0x10000:
            raise ValueError(f"block_count {count} exceeds 16-bit block addressing")
        return count

    # -- single blocks ------------------------------------------------------

    def read_block(self, block: int) -> bytes:
        """
        Read one block.

        Returns:
            ``block_size`` bytes of payload

        Raises:
            ProtocolTimeout: Full response not received within read_timeout
            RadioBlockError: Response header does not echo the command
            ChecksumMismatch: Checksum still wrong after re-read (strict only)
        """
        header = _block_header(CMD_READ, block)
        command = build_packet(header, offset=self.checksum_offset)
        self.transport.write(command)
        self._sleep(self.timing.command_delay)

        response = self.transport.read_exact(self.response_size, self.timing.read_timeout)
        if response[:3] != header:
            raise RadioBlockError(
                f"Block {block}: response header {response[:3].hex().upper()} "
                f"does not match command {header.hex().upper()}"
            )
        if verify_packet(response):
            return response[3:-1]

        logger.debug("Block %d: checksum mismatch, reading again", block)
        try:
            second = self.transport.read_exact(self.response_size, self.timing.reread_timeout)
        except ProtocolTimeout:
            second = None
        if second is not None and second[:3] == header:
            if verify_packet(second):
                return second[3:-1]
            response = second

        self._record_mismatch(block, response)
        return response[3:-1]

    def _record_mismatch(self, block: int, response: bytes) -> None:
        expected = sum(response[:-1]) & 0xFF
        actual = response[-1]
        if self.strict:
            raise ChecksumMismatch(block, expected, actual)
        self.checksum_mismatches += 1
        self.mismatch_blocks.append(block)
        logger.warning(
            "Block %d: checksum mismatch (expected 0x%02X, got 0x%02X), data accepted",
            block,
            expected,
            actual,
        )
        self._emit("checksum_mismatch", block, f"expected 0x{expected:02X}, got 0x{actual:02X}")

    def write_block(self, block: int, data: bytes) -> None:
        """
        Write one block and wait for the radio's acknowledgement.

        Raises:
            ProtocolTimeout: No response within write_timeout
            DeviceRejected: Response was not ACK
        """
        if len(data) != self.block_size:
            raise ValueError(f"Block data must be {self.block_size} bytes, got {len(data)}")
        packet = build_packet(_block_header(CMD_WRITE, block), data, self.checksum_offset)
        self.transport.write(packet)
        self._sleep(self.timing.write_delay)

        code = self.transport.read_exact(1, self.timing.write_timeout)[0]
        if code != ACK:
            raise DeviceRejected(code, block)

    # -- whole flash --------------------------------------------------------

    def _read_with_retry(self, block: int, report: SpiTransferReport) -> bytes:
        attempts = self.timing.read_attempts
        attempt = 1
        while True:
            try:
                return self.read_block(block)
            except RadioTransportError as e:
                if attempt >= attempts:
                    raise SpiFlashError(
                        f"Failed to read block {block} after {attempts} attempts: {e}",
                        block=block,
                    ) from e
                logger.warning("Block %d read failed (attempt %d/%d): %s", block, attempt, attempts, e)
                report.retries += 1
                self._emit("retry", block, str(e))
                self._sleep(self.timing.retry_backoff)
                self.transport.reset_input_buffer()
                attempt += 1

    def backup(
        self,
        path: Union[str, Path],
        block_count: Optional[int] = None,
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ) -> SpiTransferReport:
        """
        Dump ``block_count`` blocks, in order, to ``path``.

        The dump is written to ``<path>.part`` and renamed once complete, so
        ``path`` only ever holds a full image.
        """
        count = self._resolve_count(block_count)
        path = Path(path)
        partial = path.with_name(path.name + ".part")
        report = SpiTransferReport(operation="backup")
        mismatches_before = self.checksum_mismatches
        started = time.monotonic()

        logger.info("Backing up %d blocks (%d bytes) to %s", count, count * self.block_size, path)
        try:
            with open(partial, "wb") as f:
                for block in range(count):
                    f.write(self._read_with_retry(block, report))
                    report.blocks += 1
                    report.bytes += self.block_size
                    if progress_cb:
                        progress_cb(block + 1, count)
                    if (block + 1) % PROGRESS_EVERY == 0 or block + 1 == count:
                        logger.info("Backup progress: %d/%d blocks", block + 1, count)
                        self._emit("progress", block)
                    self._sleep(self.timing.block_delay)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(path)

        report.checksum_mismatches = self.checksum_mismatches - mismatches_before
        report.mismatch_blocks = self.mismatch_blocks[mismatches_before:]
        report.elapsed = time.monotonic() - started
        logger.info(
            "Backup complete: %d bytes, %d checksum mismatches tolerated",
            report.bytes,
            report.checksum_mismatches,
        )
        return report

    def restore(
        self,
        path: Union[str, Path],
        block_count: Optional[int] = None,
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ) -> SpiTransferReport:
        """
        Write ``path`` back to flash, block by block.

        Raises:
            FileSizeMismatch: File is not exactly ``block_count * block_size`` bytes
            DeviceRejected: Radio rejected a block (restore stops there)
        """
        count = self._resolve_count(block_count)
        path = Path(path)
        expected = count * self.block_size
        actual = path.stat().st_size
        if actual != expected:
            raise FileSizeMismatch(expected, actual)

        report = SpiTransferReport(operation="restore")
        started = time.monotonic()
        logger.info("Restoring %d blocks from %s", count, path)
        with open(path, "rb") as f:
            for block in range(count):
                chunk = f.read(self.block_size)
                if len(chunk) < self.block_size:
                    chunk = chunk.ljust(self.block_size, bytes([PAD_BYTE]))
                try:
                    self.write_block(block, chunk)
                except RadioTransportError:
                    logger.error("Restore aborted at block %d/%d", block, count)
                    raise
                report.blocks += 1
                report.bytes += self.block_size
                if progress_cb:
                    progress_cb(block + 1, count)
                if (block + 1) % PROGRESS_EVERY == 0 or block + 1 == count:
                    logger.info("Restore progress: %d/%d blocks", block + 1, count)
                    self._emit("progress", block)
                self._sleep(self.timing.block_delay)

        report.elapsed = time.monotonic() - started
        logger.info("Restore complete: %d bytes written", report.bytes)
        return report
