"""
Single-byte additive checksums used by the RT-880 bootloader.

Every packet on the wire ends with ``sum(packet[:-1]) + offset`` truncated
to one byte. The offset depends on the device family (see
``models.registry.ProtocolVariant``).
"""

from typing import Union

BytesLike = Union[bytes, bytearray, memoryview]


def additive_checksum(data: BytesLike, offset: int = 0) -> int:
    """
    Calculate the additive checksum of ``data``.

    Args:
        data: Bytes to sum (the checksum byte itself excluded)
        offset: Per-variant constant added after summing

    Returns:
        Checksum value in range 0..255
    """
    return (sum(data) + offset) & 0xFF


def seal_packet(packet: BytesLike, offset: int = 0) -> bytes:
    """
    Store the checksum of ``packet[:-1]`` in the packet's last byte.

    The last byte of ``packet`` is a placeholder and is overwritten.
    """
    if len(packet) < 2:
        raise ValueError(f"Packet too short to carry a checksum: {len(packet)} bytes")
    out = bytearray(packet)
    out[-1] = additive_checksum(out[:-1], offset)
    return bytes(out)


def verify_packet(packet: BytesLike, offset: int = 0) -> bool:
    """Return True if the trailing byte matches the checksum of the rest."""
    if len(packet) < 2:
        return False
    return packet[-1] == additive_checksum(packet[:-1], offset)


def build_packet(header: BytesLike, payload: BytesLike = b"", offset: int = 0) -> bytes:
    """
    Build ``header + payload + checksum``.

    Example:
        >>> build_packet(b"\\x52\\x00\\x01").hex()
        '52000153'
    """
    body = bytes(header) + bytes(payload)
    return body + bytes([additive_checksum(body, offset)])


def intel_hex_checksum(record: BytesLike) -> int:
    """
    Intel HEX record checksum: two's complement of the byte sum.

    ``record`` is the decoded length/address/type/data bytes without the
    trailing checksum.
    """
    return (-sum(record)) & 0xFF
