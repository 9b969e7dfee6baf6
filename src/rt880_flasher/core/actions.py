"""
Core workflow actions for RT-880 Flasher.

Each action wraps one end-to-end job (flash, convert, inspect, SPI backup,
SPI restore) and returns an ``OperationResult``. Writes go through the
safety context for gating; ``WritePermissionError`` propagates to the
caller.
"""

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Optional, Callable, Union

from rt880_flasher.firmware_image import (
    FirmwareImageError,
    FirmwareImage,
    load_firmware,
    convert_hex_to_bin,
)
from rt880_flasher.models import RT880_LAYOUT, FirmwareLayout, get_variant, get_spi_profile
from rt880_flasher.protocol import (
    FileSizeMismatch,
    ProgrammingSession,
    RadioTransportError,
    SerialTransport,
    SessionTiming,
    SpiFlashClient,
    SpiTiming,
    ensure_port_exists,
)
from .results import OperationResult
from .safety import SafetyContext, require_write_permission, WritePermissionError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
TransportFactory = Callable[[str, int], object]

# Failures that are reported as a result rather than a traceback
EXPECTED_ERRORS = (RadioTransportError, FirmwareImageError, OSError, ValueError)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "rt880_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _resolve_factory(port: str, transport_factory: Optional[TransportFactory]) -> TransportFactory:
    if transport_factory is not None:
        return transport_factory
    ensure_port_exists(port)
    return SerialTransport


def _firmware_warnings(result: OperationResult, firmware: FirmwareImage) -> None:
    report = firmware.report
    if report.checksum_mismatches:
        lines = ", ".join(str(n) for n in report.checksum_mismatches[:10])
        more = "..." if len(report.checksum_mismatches) > 10 else ""
        result.add_warning(
            f"{len(report.checksum_mismatches)} HEX record checksum mismatch(es) at line(s) {lines}{more}"
        )
    if report.dropped_bytes:
        result.add_warning(f"{report.dropped_bytes} byte(s) outside the firmware window were dropped")
    if report.skipped_lines:
        result.add_warning(f"{report.skipped_lines} short line(s) skipped")


def _region(layout: FirmwareLayout) -> str:
    return f"0x{layout.base_address:08X}-0x{layout.end_address:08X}"


def inspect_firmware(
    firmware_path: PathLike,
    layout: FirmwareLayout = RT880_LAYOUT,
    strict: bool = False,
) -> OperationResult:
    """
    Decode a firmware file without touching the radio.

    Returns:
        OperationResult with metadata["report"] (DecodeReport dict) and
        metadata["blocks"]
    """
    with _capture_logs() as logs:
        try:
            firmware = load_firmware(firmware_path, layout, strict=strict)
        except EXPECTED_ERRORS as e:
            logger.error("Cannot decode %s: %s", firmware_path, e)
            return OperationResult.failure("inspect_firmware", str(e), logs=logs)

        result = OperationResult.success(
            operation="inspect_firmware",
            region=_region(layout),
            bytes_len=len(firmware.image),
        )
        result.hashes["sha256"] = firmware.image.sha256()
        result.metadata["report"] = firmware.report.to_dict()
        result.metadata["blocks"] = layout.block_count
        result.metadata["layout"] = layout.name
        _firmware_warnings(result, firmware)
        result.logs = logs
        return result


def convert_hex(
    input_path: PathLike,
    output_path: PathLike,
    layout: FirmwareLayout = RT880_LAYOUT,
    strict: bool = False,
) -> OperationResult:
    """Convert Intel HEX to a zero-filled raw image of the firmware window."""
    with _capture_logs() as logs:
        try:
            firmware = convert_hex_to_bin(input_path, output_path, layout, strict=strict)
        except EXPECTED_ERRORS as e:
            logger.error("Conversion failed: %s", e)
            return OperationResult.failure("convert_hex", str(e), logs=logs)

        result = OperationResult.success(
            operation="convert_hex",
            region=_region(layout),
            bytes_len=len(firmware.image),
        )
        result.hashes["sha256"] = firmware.image.sha256()
        result.metadata["output"] = str(output_path)
        result.metadata["report"] = firmware.report.to_dict()
        _firmware_warnings(result, firmware)
        result.logs = logs
        return result


def flash_firmware(
    port: str,
    firmware_path: PathLike,
    safety_ctx: SafetyContext,
    variant: str = "radtel",
    baud: int = 115200,
    strict: bool = False,
    layout: FirmwareLayout = RT880_LAYOUT,
    timing: Optional[SessionTiming] = None,
    progress_cb: Optional[Callable[[int, int], None]] = None,
    event_cb: Optional[Callable] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> OperationResult:
    """
    Decode a firmware file and upload it through the bootloader.

    Args:
        port: Serial port path
        firmware_path: Intel HEX or raw binary firmware
        safety_ctx: Safety context for gating
        variant: Protocol variant name (radtel, iradio)
        baud: Baud rate
        strict: Reject HEX files with bad record checksums
        layout: Program flash layout
        timing: Session timing override
        progress_cb: Optional progress callback(blocks_acked, total)
        event_cb: Optional SessionEvent callback
        transport_factory: Callable(port, baud) returning an unopened transport

    Returns:
        OperationResult; metadata["session"] holds the SessionReport and,
        on failure, ``stage`` names the protocol stage the upload stopped in

    Raises:
        WritePermissionError: If safety check fails
    """
    region = _region(layout)

    with _capture_logs() as logs:
        try:
            protocol_variant = get_variant(variant)
            firmware = load_firmware(firmware_path, layout, strict=strict)

            require_write_permission(
                safety_ctx,
                target_region=region,
                bytes_length=len(firmware.image),
            )

            result = OperationResult.success(
                operation="flash_firmware",
                variant=protocol_variant.name,
                region=region,
                bytes_len=len(firmware.image),
            )
            result.hashes["sha256"] = firmware.image.sha256()
            result.metadata["report"] = firmware.report.to_dict()
            _firmware_warnings(result, firmware)

            if safety_ctx.dry_run:
                result.metadata["dry_run"] = True
                result.add_warning("Dry run - firmware decoded, nothing written")
                result.logs = logs
                return result

            factory = _resolve_factory(port, transport_factory)
            transport = factory(port, baud)
            session = ProgrammingSession(
                transport,
                firmware.image,
                variant=protocol_variant,
                block_size=layout.block_size,
                timing=timing,
                progress_cb=progress_cb,
                event_cb=event_cb,
            )
            try:
                report = session.run()
            except RadioTransportError as e:
                result = OperationResult.failure(
                    operation="flash_firmware",
                    error=str(e),
                    variant=protocol_variant.name,
                    region=region,
                    stage=session.failed_stage.value if session.failed_stage else "",
                )
                result.metadata["state"] = session.state.value
                if session.abort_reason is not None:
                    result.metadata["abort_reason"] = session.abort_reason.value
                result.metadata["session"] = asdict(session.report)
                result.logs = logs
                return result

            result.metadata["session"] = asdict(report)
            if report.retransmissions:
                result.add_warning(f"{report.retransmissions} block(s) re-sent after NAK or timeout")
            result.logs = logs
            return result

        except WritePermissionError:
            raise
        except EXPECTED_ERRORS as e:
            logger.error("flash_firmware failed: %s", e)
            result = OperationResult.failure("flash_firmware", str(e), variant=variant, region=region)
            result.logs = logs
            return result
        except Exception as e:
            logger.exception("flash_firmware failed")
            result = OperationResult.failure("flash_firmware", str(e), variant=variant, region=region)
            result.logs = logs
            return result


def backup_spi(
    port: str,
    output_path: PathLike,
    profile: str = "32mb",
    baud: int = 115200,
    strict: bool = False,
    timing: Optional[SpiTiming] = None,
    progress_cb: Optional[Callable[[int, int], None]] = None,
    event_cb: Optional[Callable] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> OperationResult:
    """
    Dump the whole SPI flash to ``output_path``.

    Returns:
        OperationResult; metadata["transfer"] holds the SpiTransferReport
    """
    with _capture_logs() as logs:
        try:
            spi_profile = get_spi_profile(profile)
            factory = _resolve_factory(port, transport_factory)
            client = SpiFlashClient.for_profile(
                factory(port, baud),
                spi_profile,
                timing=timing,
                strict=strict,
                event_cb=event_cb,
            )
            with client:
                report = client.backup(output_path, progress_cb=progress_cb)

            result = OperationResult.success(
                operation="backup_spi",
                variant=spi_profile.name,
                region=f"blocks 0-{spi_profile.block_count - 1}",
                bytes_len=report.bytes,
            )
            result.hashes["sha256"] = hashlib.sha256(Path(output_path).read_bytes()).hexdigest()
            result.metadata["transfer"] = report.to_dict()
            result.metadata["output"] = str(output_path)
            if report.checksum_mismatches:
                result.add_warning(
                    f"{report.checksum_mismatches} block(s) accepted despite checksum mismatch"
                )
            if report.retries:
                result.add_warning(f"{report.retries} block read(s) retried")
            result.logs = logs
            return result

        except EXPECTED_ERRORS as e:
            logger.error("backup_spi failed: %s", e)
            result = OperationResult.failure("backup_spi", str(e), variant=profile)
            result.logs = logs
            return result
        except Exception as e:
            logger.exception("backup_spi failed")
            result = OperationResult.failure("backup_spi", str(e), variant=profile)
            result.logs = logs
            return result


def restore_spi(
    port: str,
    input_path: PathLike,
    safety_ctx: SafetyContext,
    profile: str = "32mb",
    baud: int = 115200,
    timing: Optional[SpiTiming] = None,
    progress_cb: Optional[Callable[[int, int], None]] = None,
    event_cb: Optional[Callable] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> OperationResult:
    """
    Write a full SPI flash image back to the radio.

    The file size is checked against the profile capacity before the
    safety gate and before the port is opened.

    Raises:
        WritePermissionError: If safety check fails
    """
    with _capture_logs() as logs:
        try:
            spi_profile = get_spi_profile(profile)
            path = Path(input_path)
            if not path.exists():
                raise FileNotFoundError(f"Restore file not found: {path}")
            size = path.stat().st_size
            if size != spi_profile.capacity:
                raise FileSizeMismatch(spi_profile.capacity, size)

            region = f"blocks 0-{spi_profile.block_count - 1}"
            require_write_permission(safety_ctx, target_region=region, bytes_length=size)

            result = OperationResult.success(
                operation="restore_spi",
                variant=spi_profile.name,
                region=region,
                bytes_len=size,
            )
            result.hashes["sha256"] = hashlib.sha256(path.read_bytes()).hexdigest()

            if safety_ctx.dry_run:
                result.metadata["dry_run"] = True
                result.add_warning("Dry run - restore file validated, nothing written")
                result.logs = logs
                return result

            factory = _resolve_factory(port, transport_factory)
            client = SpiFlashClient.for_profile(
                factory(port, baud),
                spi_profile,
                timing=timing,
                event_cb=event_cb,
            )
            with client:
                report = client.restore(path, progress_cb=progress_cb)

            result.metadata["transfer"] = report.to_dict()
            result.logs = logs
            return result

        except WritePermissionError:
            raise
        except EXPECTED_ERRORS as e:
            logger.error("restore_spi failed: %s", e)
            result = OperationResult.failure("restore_spi", str(e), variant=profile)
            result.logs = logs
            return result
        except Exception as e:
            logger.exception("restore_spi failed")
            result = OperationResult.failure("restore_spi", str(e), variant=profile)
            result.logs = logs
            return result
