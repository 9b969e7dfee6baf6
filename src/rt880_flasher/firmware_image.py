"""
Firmware image decoding for the RT-880 program flash.

Turns an Intel HEX file or a raw binary into a fixed-size, offset-addressed
memory image matching the flash window the bootloader accepts.

- Intel HEX records 00 (data), 01 (end of file) and 04 (extended linear
  address) are honoured; other record types are counted and ignored.
- ARM addresses are mapped to image offsets by subtracting the layout's
  load address. Bytes falling outside the window are dropped, not errors.
- Record checksums are computed and reported but only enforced in strict
  mode.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from rt880_flasher.models.registry import FirmwareLayout, RT880_LAYOUT
from rt880_flasher.protocol.checksum import intel_hex_checksum

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

PROGRAMMER_FILL = 0xFF  # erased flash
CONVERTER_FILL = 0x00

REC_DATA = 0x00
REC_EOF = 0x01
REC_EXT_LINEAR = 0x04

MIN_RECORD_CHARS = 11  # ":" + length + address + type + checksum


class FirmwareImageError(Exception):
    """Base exception for firmware image operations."""


class ImageNotFoundError(FirmwareImageError, FileNotFoundError):
    """Firmware file does not exist."""


class ImageIOError(FirmwareImageError):
    """Firmware file could not be read or written."""


class FormatError(FirmwareImageError):
    """A structurally required Intel HEX field failed to parse."""

    def __init__(self, line: int, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"line {line}: {reason}")


class ImageFormat(Enum):
    """Firmware file format."""
    HEX = "hex"
    BIN = "bin"


class MemoryImage:
    """
    Fixed-length byte buffer addressed by offset from the flash base.

    Writes outside ``[0, size)`` are silently dropped.
    """

    def __init__(self, size: int, fill: int = PROGRAMMER_FILL):
        if size <= 0:
            raise ValueError(f"Image size must be positive, got {size}")
        self.size = size
        self.fill = fill & 0xFF
        self._buf = bytearray([self.fill]) * size

    def __len__(self) -> int:
        return self.size

    def __getitem__(self, item):
        return self._buf[item]

    def write(self, offset: int, data: bytes) -> int:
        """
        Copy ``data`` into the image at ``offset``.

        Returns:
            Number of bytes dropped because they fell outside the image
        """
        start = max(offset, 0)
        end = min(offset + len(data), self.size)
        if end <= start:
            return len(data)
        self._buf[start:end] = data[start - offset:end - offset]
        return len(data) - (end - start)

    def blocks(self, block_size: int) -> Iterator[Tuple[int, bytes]]:
        """Yield ``(offset, chunk)`` pairs in increasing offset order."""
        for offset in range(0, self.size, block_size):
            yield offset, bytes(self._buf[offset:offset + block_size])

    def to_bytes(self) -> bytes:
        return bytes(self._buf)

    def __bytes__(self) -> bytes:
        return self.to_bytes()

    def sha256(self) -> str:
        return hashlib.sha256(self._buf).hexdigest()


@dataclass(frozen=True)
class HexRecord:
    """One decoded Intel HEX line."""
    line: int
    length: int
    address: int
    record_type: int
    data: bytes
    checksum: Optional[int]
    computed_checksum: int

    @property
    def checksum_ok(self) -> bool:
        return self.checksum is not None and self.checksum == self.computed_checksum

    @property
    def truncated(self) -> bool:
        return len(self.data) < self.length


@dataclass
class DecodeReport:
    """Statistics collected while decoding a firmware file."""
    format: ImageFormat
    source: str = ""
    records: int = 0
    data_bytes: int = 0
    skipped_lines: int = 0
    dropped_bytes: int = 0
    ignored_records: int = 0
    eof_seen: bool = False
    checksum_mismatches: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "format": self.format.value,
            "source": self.source,
            "records": self.records,
            "data_bytes": self.data_bytes,
            "skipped_lines": self.skipped_lines,
            "dropped_bytes": self.dropped_bytes,
            "ignored_records": self.ignored_records,
            "eof_seen": self.eof_seen,
            "checksum_mismatches": list(self.checksum_mismatches),
        }


@dataclass
class FirmwareImage:
    """Decoded memory image plus the report describing how it was built."""
    image: MemoryImage
    report: DecodeReport
    layout: FirmwareLayout = RT880_LAYOUT

    @property
    def data(self) -> bytes:
        return self.image.to_bytes()


def _hex_field(line: str, start: int, end: int, line_no: int, name: str) -> int:
    text = line[start:end]
    if len(text) != end - start:
        raise FormatError(line_no, f"missing {name} field")
    try:
        return int(text, 16)
    except ValueError:
        raise FormatError(line_no, f"invalid {name} field '{text}'")


def parse_hex_record(line: str, line_no: int = 0, strict: bool = False) -> Optional[HexRecord]:
    """
    Parse a single ``:LLAAAATT[DD...]CC`` line.

    Args:
        line: Text of the record, leading ':' included
        line_no: 1-based line number for error messages
        strict: Raise instead of skipping short or truncated records

    Returns:
        HexRecord, or None for lines too short to hold a record

    Raises:
        FormatError: If length, address, type or a data byte is not hex
    """
    line = line.strip()
    if len(line) < MIN_RECORD_CHARS:
        if strict:
            raise FormatError(line_no, f"record too short ({len(line)} chars)")
        return None

    length = _hex_field(line, 1, 3, line_no, "length")
    address = _hex_field(line, 3, 7, line_no, "address")
    record_type = _hex_field(line, 7, 9, line_no, "record type")

    data = bytearray()
    for i in range(length):
        pos = 9 + i * 2
        if pos + 2 > len(line):
            break
        data.append(_hex_field(line, pos, pos + 2, line_no, f"data byte {i}"))

    if len(data) < length and strict:
        raise FormatError(line_no, f"data field truncated ({len(data)}/{length} bytes)")

    checksum = None
    cs_pos = 9 + length * 2
    if len(data) == length and cs_pos + 2 <= len(line):
        try:
            checksum = int(line[cs_pos:cs_pos + 2], 16)
        except ValueError:
            checksum = None

    header = bytes([length, (address >> 8) & 0xFF, address & 0xFF, record_type])
    return HexRecord(
        line=line_no,
        length=length,
        address=address,
        record_type=record_type,
        data=bytes(data),
        checksum=checksum,
        computed_checksum=intel_hex_checksum(header + bytes(data)),
    )


def decode_intel_hex(
    text: str,
    layout: FirmwareLayout = RT880_LAYOUT,
    fill: int = PROGRAMMER_FILL,
    strict: bool = False,
    source: str = "",
) -> Tuple[MemoryImage, DecodeReport]:
    """
    Decode Intel HEX text into a memory image.

    Data record target offset is
    ``(extended_address << 16) + record_address - layout.base_address``.

    Raises:
        FormatError: On unparseable required fields, a malformed type 04
            record, no records at all, or (strict) any checksum mismatch
    """
    image = MemoryImage(layout.image_size, fill)
    report = DecodeReport(format=ImageFormat.HEX, source=source)
    extended = 0

    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if len(line) <= 1 or not line.startswith(":"):
            continue

        record = parse_hex_record(line, line_no, strict=strict)
        if record is None:
            logger.debug("Skipping short record on line %d: %r", line_no, line)
            report.skipped_lines += 1
            continue

        report.records += 1

        if not record.checksum_ok:
            report.checksum_mismatches.append(line_no)
            if strict:
                raise FormatError(
                    line_no,
                    f"checksum mismatch (record {record.checksum}, computed 0x{record.computed_checksum:02X})",
                )
            logger.warning(
                "HEX checksum mismatch on line %d (record=%s computed=0x%02X)",
                line_no,
                "none" if record.checksum is None else f"0x{record.checksum:02X}",
                record.computed_checksum,
            )

        if record.record_type == REC_DATA:
            offset = (extended << 16) + record.address - layout.base_address
            if offset < 0:
                report.dropped_bytes += len(record.data)
                continue
            report.dropped_bytes += image.write(offset, record.data)
            report.data_bytes += len(record.data)
        elif record.record_type == REC_EOF:
            report.eof_seen = True
            break
        elif record.record_type == REC_EXT_LINEAR:
            if record.length != 2 or len(record.data) != 2:
                raise FormatError(line_no, "extended linear address record must carry 2 bytes")
            extended = (record.data[0] << 8) | record.data[1]
        else:
            report.ignored_records += 1

    if report.records == 0:
        raise FormatError(0, "no Intel HEX records found")

    logger.info(
        "Processed %d Intel HEX records (%d data bytes, %d dropped)",
        report.records,
        report.data_bytes,
        report.dropped_bytes,
    )
    return image, report


def decode_binary(
    data: bytes,
    layout: FirmwareLayout = RT880_LAYOUT,
    fill: int = PROGRAMMER_FILL,
    source: str = "",
) -> Tuple[MemoryImage, DecodeReport]:
    """Copy raw bytes into the image from offset 0, truncating to its size."""
    image = MemoryImage(layout.image_size, fill)
    dropped = image.write(0, data)
    report = DecodeReport(
        format=ImageFormat.BIN,
        source=source,
        data_bytes=len(data) - dropped,
        dropped_bytes=dropped,
    )
    if dropped:
        logger.warning("Binary firmware is %d bytes larger than the flash window; truncated", dropped)
    logger.info("Loaded %d bytes of binary firmware", report.data_bytes)
    return image, report


def _read_file(path: Path) -> bytes:
    if not path.exists():
        raise ImageNotFoundError(f"Firmware file not found: {path}")
    try:
        return path.read_bytes()
    except OSError as e:
        raise ImageIOError(f"Cannot read {path}: {e}")


def detect_format(path: PathLike) -> Optional[ImageFormat]:
    """
    Guess the format from the file extension.

    Returns:
        ImageFormat, or None when the extension is not conclusive
    """
    suffix = Path(path).suffix.lower()
    if suffix == ".bin":
        return ImageFormat.BIN
    if suffix in (".hex", ".txt", ".ihx"):
        return ImageFormat.HEX
    return None


def load_firmware(
    path: PathLike,
    layout: FirmwareLayout = RT880_LAYOUT,
    fill: int = PROGRAMMER_FILL,
    fmt: Optional[ImageFormat] = None,
    strict: bool = False,
) -> FirmwareImage:
    """
    Load a firmware file into a memory image.

    Format is taken from ``fmt``, then the file extension, then content
    sniffing (HEX first, falling back to raw binary).

    Raises:
        ImageNotFoundError: File missing
        ImageIOError: File unreadable
        FormatError: Invalid Intel HEX content
    """
    path = Path(path)
    raw = _read_file(path)
    fmt = fmt or detect_format(path)

    if fmt is ImageFormat.BIN:
        image, report = decode_binary(raw, layout, fill, source=str(path))
    elif fmt is ImageFormat.HEX:
        image, report = decode_intel_hex(
            raw.decode("ascii", errors="replace"), layout, fill, strict=strict, source=str(path)
        )
    else:
        try:
            image, report = decode_intel_hex(
                raw.decode("ascii", errors="replace"), layout, fill, strict=strict, source=str(path)
            )
        except FormatError as e:
            logger.debug("Not an Intel HEX file (%s); loading as binary", e)
            image, report = decode_binary(raw, layout, fill, source=str(path))

    logger.info("Loaded %s firmware: %s", report.format.value.upper(), path)
    logger.debug("First 16 bytes: %s", image[:16].hex(" ").upper())
    return FirmwareImage(image=image, report=report, layout=layout)


def convert_hex_to_bin(
    input_path: PathLike,
    output_path: PathLike,
    layout: FirmwareLayout = RT880_LAYOUT,
    fill: int = CONVERTER_FILL,
    strict: bool = False,
) -> FirmwareImage:
    """
    Stand-alone HEX to BIN converter.

    Writes exactly ``layout.image_size`` bytes; unaddressed bytes keep the
    fill value (zero by default).
    """
    firmware = load_firmware(input_path, layout, fill=fill, fmt=ImageFormat.HEX, strict=strict)
    out = Path(output_path)
    try:
        out.write_bytes(firmware.data)
    except OSError as e:
        raise ImageIOError(f"Cannot write {out}: {e}")
    logger.info("Wrote %d bytes to %s", len(firmware.image), out)
    return firmware
