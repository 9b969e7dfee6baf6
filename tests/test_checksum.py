"""Tests for packet checksum framing."""

import pytest

from rt880_flasher.protocol.checksum import (
    additive_checksum,
    build_packet,
    intel_hex_checksum,
    seal_packet,
    verify_packet,
)


def test_additive_checksum_wraps_to_one_byte() -> None:
    """Sum is truncated to 8 bits after adding the offset."""
    assert additive_checksum(b"\x52\x00\x01") == 0x53
    assert additive_checksum(b"\xFF\xFF") == 0xFE
    assert additive_checksum(b"\xFF\xFF", offset=82) == (0x1FE + 82) & 0xFF


def test_read_command_checksums_for_both_spi_framings() -> None:
    """Block 0 read command: plain sum vs +82 dump-tool framing."""
    assert build_packet(b"\x52\x00\x00") == bytes([0x52, 0x00, 0x00, 0x52])
    assert build_packet(b"\x52\x00\x00", offset=82) == bytes([0x52, 0x00, 0x00, 0xA4])


@pytest.mark.parametrize("offset", [0, 82])
def test_built_data_packet_verifies_and_detects_flipped_byte(offset: int) -> None:
    """Checksum law holds for a full data packet; any payload flip breaks it."""
    payload = bytes((i * 7) & 0xFF for i in range(1024))
    packet = build_packet(bytes([0x57, 0x04, 0x00]), payload, offset)

    assert len(packet) == 1028
    assert packet[-1] == (sum(packet[:-1]) + offset) % 256
    assert verify_packet(packet, offset)

    for index in (3, 500, 1026):
        corrupted = bytearray(packet)
        corrupted[index] ^= 0x01
        assert not verify_packet(bytes(corrupted), offset)


def test_verify_packet_rejects_wrong_offset() -> None:
    packet = build_packet(b"\x57\x00\x00", b"\x01\x02", offset=82)
    assert not verify_packet(packet, offset=0)


def test_seal_packet_overwrites_placeholder() -> None:
    sealed = seal_packet(b"\x52\x00\x05\x00", offset=82)
    assert sealed == build_packet(b"\x52\x00\x05", offset=82)


def test_seal_packet_needs_room_for_checksum() -> None:
    with pytest.raises(ValueError):
        seal_packet(b"\x52")
    assert verify_packet(b"\x52") is False


def test_intel_hex_checksum_matches_reference_records() -> None:
    """Checksums of well-known records (ELA and EOF)."""
    assert intel_hex_checksum(bytes([0x02, 0x00, 0x00, 0x04, 0x00, 0x0A])) == 0xF0
    assert intel_hex_checksum(bytes([0x00, 0x00, 0x00, 0x01])) == 0xFF
