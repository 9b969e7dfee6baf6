"""Tests for Intel HEX / binary firmware decoding."""

import logging

import pytest

from conftest import encode_intel_hex
from rt880_flasher.firmware_image import (
    CONVERTER_FILL,
    PROGRAMMER_FILL,
    FormatError,
    ImageFormat,
    ImageNotFoundError,
    MemoryImage,
    convert_hex_to_bin,
    decode_binary,
    decode_intel_hex,
    detect_format,
    load_firmware,
    parse_hex_record,
)
from rt880_flasher.models import RT880_LAYOUT, FirmwareLayout
from rt880_flasher.protocol import intel_hex_checksum

DATA16 = bytes(range(0x10, 0x20))


def _data_record(address: int, data: bytes, record_type: int = 0) -> str:
    body = bytes([len(data), (address >> 8) & 0xFF, address & 0xFF, record_type]) + data
    return ":" + body.hex().upper() + f"{intel_hex_checksum(body):02X}"


def _sample_image() -> bytes:
    return bytes((i * 31 + (i >> 10)) & 0xFF for i in range(RT880_LAYOUT.image_size))


class TestMemoryImage:
    """MemoryImage bounds handling."""

    def test_fill_and_write(self):
        image = MemoryImage(8, fill=0xFF)
        assert image.write(2, b"\x01\x02") == 0
        assert image.to_bytes() == b"\xFF\xFF\x01\x02\xFF\xFF\xFF\xFF"

    def test_out_of_range_bytes_are_dropped(self):
        image = MemoryImage(4, fill=0x00)
        assert image.write(2, b"\xAA\xBB\xCC") == 1
        assert image.write(-1, b"\x11\x22") == 1
        assert image.write(10, b"\x33") == 1
        assert bytes(image) == b"\x22\x00\xAA\xBB"

    def test_blocks_cover_image_in_order(self):
        image = MemoryImage(RT880_LAYOUT.image_size)
        offsets = [offset for offset, chunk in image.blocks(1024)]
        assert offsets == list(range(0, RT880_LAYOUT.image_size, 1024))
        assert len(offsets) == 246

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            MemoryImage(0)


class TestParseHexRecord:

    def test_parses_fields(self):
        record = parse_hex_record(_data_record(0x0028, DATA16), line_no=2)
        assert record.length == 16
        assert record.address == 0x0028
        assert record.record_type == 0
        assert record.data == DATA16
        assert record.checksum_ok

    def test_short_line_is_skipped_or_rejected(self):
        assert parse_hex_record(":0000", line_no=1) is None
        with pytest.raises(FormatError) as exc:
            parse_hex_record(":0000", line_no=7, strict=True)
        assert exc.value.line == 7

    def test_non_hex_field_raises(self):
        with pytest.raises(FormatError, match="record type"):
            parse_hex_record(":020000ZZ000AF0", line_no=3)

    def test_truncated_data_field(self):
        line = _data_record(0, DATA16)[:20]
        record = parse_hex_record(line)
        assert record.truncated
        assert not record.checksum_ok
        with pytest.raises(FormatError, match="truncated"):
            parse_hex_record(line, strict=True)


class TestDecodeIntelHex:

    def test_extended_address_maps_into_image(self):
        """Data at 0x000A0028 lands at offset 0x28 of an image based at 0x000A0000."""
        layout = FirmwareLayout("test", base_address=0x000A0000, image_size=1024)
        text = "\n".join([
            ":02000004000AF0",
            _data_record(0x0028, DATA16),
            ":00000001FF",
        ])
        image, report = decode_intel_hex(text, layout)

        assert image[0x28:0x38] == DATA16
        assert image[0x27] == PROGRAMMER_FILL
        assert image[0x38] == PROGRAMMER_FILL
        assert report.records == 3
        assert report.data_bytes == 16
        assert report.eof_seen

    def test_records_below_base_address_are_dropped(self):
        text = "\n".join([":02000004000AF0", _data_record(0x0028, DATA16), ":00000001FF"])
        image, report = decode_intel_hex(text, RT880_LAYOUT)

        assert report.dropped_bytes == 16
        assert image.to_bytes() == bytes([PROGRAMMER_FILL]) * RT880_LAYOUT.image_size

    def test_round_trip_full_firmware_window(self):
        data = _sample_image()
        text = encode_intel_hex(data, RT880_LAYOUT.base_address, record_size=32)

        image, report = decode_intel_hex(text, RT880_LAYOUT)

        assert image.to_bytes() == data
        assert report.dropped_bytes == 0
        assert report.checksum_mismatches == []

    def test_partial_coverage_keeps_fill(self):
        text = encode_intel_hex(b"\x01" * 64, RT880_LAYOUT.base_address + 1024)
        image, _ = decode_intel_hex(text, RT880_LAYOUT, fill=CONVERTER_FILL)

        assert image[:1024] == bytes(1024)
        assert image[1024:1088] == b"\x01" * 64
        assert image[1088] == 0

    def test_bytes_past_window_end_are_dropped(self):
        end = RT880_LAYOUT.end_address
        text = encode_intel_hex(b"\xAB" * 32, end - 16)
        image, report = decode_intel_hex(text, RT880_LAYOUT)

        assert image[-16:] == b"\xAB" * 16
        assert report.dropped_bytes == 16

    def test_checksum_mismatch_is_reported_not_fatal(self, caplog):
        good = _data_record(0x2800, DATA16)
        bad = good[:-2] + ("00" if good[-2:] != "00" else "01")
        text = "\n".join([":020000040800F2", bad, ":00000001FF"])

        with caplog.at_level(logging.WARNING, logger="rt880_flasher"):
            image, report = decode_intel_hex(text, RT880_LAYOUT)

        assert report.checksum_mismatches == [2]
        assert image[:16] == DATA16
        assert "checksum mismatch on line 2" in caplog.text

    def test_checksum_mismatch_strict(self):
        good = _data_record(0x2800, DATA16)
        bad = good[:-2] + ("00" if good[-2:] != "00" else "01")
        with pytest.raises(FormatError) as exc:
            decode_intel_hex("\n".join([":020000040800F2", bad]), RT880_LAYOUT, strict=True)
        assert exc.value.line == 2

    def test_unknown_record_types_are_ignored(self):
        text = "\n".join([
            ":020000040800F2",
            _data_record(0, bytes.fromhex("08002961"), record_type=5),
            _data_record(0x2800, DATA16),
            ":00000001FF",
        ])
        image, report = decode_intel_hex(text, RT880_LAYOUT)
        assert report.ignored_records == 1
        assert image[:16] == DATA16

    def test_malformed_extended_address_record(self):
        text = _data_record(0, b"\x08", record_type=4)
        with pytest.raises(FormatError, match="2 bytes"):
            decode_intel_hex(text, RT880_LAYOUT)

    def test_no_records_is_an_error(self):
        with pytest.raises(FormatError, match="no Intel HEX records"):
            decode_intel_hex("hello\nworld\n", RT880_LAYOUT)

    def test_data_after_eof_is_ignored(self):
        text = "\n".join([
            ":020000040800F2",
            ":00000001FF",
            _data_record(0x2800, DATA16),
        ])
        image, report = decode_intel_hex(text, RT880_LAYOUT)
        assert report.eof_seen
        assert image[:16] == bytes([PROGRAMMER_FILL]) * 16


class TestBinaryAndLoading:

    def test_decode_binary_pads_and_truncates(self):
        image, report = decode_binary(b"\x01\x02", RT880_LAYOUT)
        assert len(image) == RT880_LAYOUT.image_size
        assert image[:3] == b"\x01\x02\xFF"
        assert report.format is ImageFormat.BIN

        image, report = decode_binary(b"\x00" * (RT880_LAYOUT.image_size + 10), RT880_LAYOUT)
        assert report.dropped_bytes == 10

    def test_detect_format(self):
        assert detect_format("fw.BIN") is ImageFormat.BIN
        assert detect_format("fw.hex") is ImageFormat.HEX
        assert detect_format("fw.txt") is ImageFormat.HEX
        assert detect_format("firmware") is None

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ImageNotFoundError) as exc:
            load_firmware(tmp_path / "missing.hex")
        assert isinstance(exc.value, FileNotFoundError)

    def test_load_sniffs_hex_without_extension(self, tmp_path):
        path = tmp_path / "firmware"
        path.write_text(encode_intel_hex(DATA16, RT880_LAYOUT.base_address))
        firmware = load_firmware(path)
        assert firmware.report.format is ImageFormat.HEX
        assert firmware.data[:16] == DATA16

    def test_load_falls_back_to_binary(self, tmp_path):
        path = tmp_path / "firmware.img"
        path.write_bytes(b"\x12\x34" * 100)
        firmware = load_firmware(path)
        assert firmware.report.format is ImageFormat.BIN
        assert firmware.data[:4] == b"\x12\x34\x12\x34"

    def test_convert_hex_to_bin_writes_zero_filled_window(self, tmp_path):
        src = tmp_path / "fw.hex"
        dst = tmp_path / "fw.bin"
        src.write_text(encode_intel_hex(DATA16, RT880_LAYOUT.base_address + 0x100))

        convert_hex_to_bin(src, dst)

        out = dst.read_bytes()
        assert len(out) == RT880_LAYOUT.image_size
        assert out[0x100:0x110] == DATA16
        assert out[:0x100] == bytes(0x100)
        assert out[0x110:] == bytes(RT880_LAYOUT.image_size - 0x110)
