"""Shared fakes: in-memory transport, bootloader and SPI flash simulators."""

import threading
import time
from typing import Callable, Dict, List, Optional, Set

import pytest

from rt880_flasher.models import ACK, NAK, PRESENCE, RADTEL, ProtocolVariant
from rt880_flasher.protocol import (
    ProtocolTimeout,
    RadioTransportError,
    SessionTiming,
    SpiTiming,
    build_packet,
    intel_hex_checksum,
    verify_packet,
)


class FakeTransport:
    """
    Thread-safe stand-in for SerialTransport.

    Every write is recorded; ``responder(data)`` may return bytes that are
    then delivered to readers as if the radio had answered.
    """

    def __init__(self, responder: Optional[Callable[[bytes], Optional[bytes]]] = None):
        self.responder = responder
        self.writes: List[bytes] = []
        self.open_calls = 0
        self.close_calls = 0
        self._open = False
        self._rx = bytearray()
        self._cond = threading.Condition()

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self.open_calls += 1
        self._open = True

    def close(self) -> None:
        with self._cond:
            self.close_calls += 1
            self._open = False
            self._cond.notify_all()

    def feed(self, data: bytes) -> None:
        with self._cond:
            self._rx.extend(data)
            self._cond.notify_all()

    def write(self, data: bytes) -> None:
        if not self._open:
            raise RadioTransportError("Serial port not open")
        self.writes.append(bytes(data))
        if self.responder is not None:
            reply = self.responder(bytes(data))
            if reply:
                self.feed(reply)

    def read(self, size: int = 1, timeout: Optional[float] = None) -> bytes:
        deadline = time.monotonic() + (0.05 if timeout is None else timeout)
        with self._cond:
            while True:
                if not self._open:
                    raise RadioTransportError("Serial port not open")
                if self._rx:
                    chunk = bytes(self._rx[:size])
                    del self._rx[:size]
                    return chunk
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return b""
                self._cond.wait(remaining)

    def read_exact(self, size: int, timeout: float) -> bytes:
        deadline = time.monotonic() + timeout
        out = bytearray()
        while len(out) < size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProtocolTimeout(
                    f"Timeout after {timeout:.1f}s (got {len(out)}/{size} bytes)",
                    received=len(out),
                )
            out.extend(self.read(size - len(out), timeout=min(remaining, 0.05)))
        return bytes(out)

    def reset_input_buffer(self) -> None:
        with self._cond:
            self._rx.clear()


class BootloaderSimulator:
    """
    Scripted RT-880 bootloader answering connect/update/data/end packets.

    Args:
        variant: Variant whose sequences and checksum offset are accepted
        ignore_connects: Connect sequences to leave unanswered (radio still off)
        presence: Send a 0x00 "booting" byte before the first ACK
        nak_connect_round: Answer this connect round (1-based) with NAK
        nak_blocks: Block index -> number of NAKs before accepting it
        data_reply: "ack", "nak" or "silent" for every data packet
    """

    def __init__(
        self,
        variant: ProtocolVariant = RADTEL,
        ignore_connects: int = 0,
        presence: bool = False,
        nak_connect_round: Optional[int] = None,
        nak_blocks: Optional[Dict[int, int]] = None,
        data_reply: str = "ack",
    ):
        self.variant = variant
        self.ignore_connects = ignore_connects
        self.presence = presence
        self.nak_connect_round = nak_connect_round
        self.nak_blocks = dict(nak_blocks or {})
        self.data_reply = data_reply
        self.connects = 0
        self.updates = 0
        self.ended = False
        self.bad_checksums = 0
        self.data_packets: List[bytes] = []
        self.image = bytearray()

    def __call__(self, data: bytes) -> Optional[bytes]:
        if data == self.variant.connect_seq:
            self.connects += 1
            if self.connects <= self.ignore_connects:
                return None
            round_no = self.connects - self.ignore_connects
            if round_no == self.nak_connect_round:
                return bytes([NAK])
            if self.presence and round_no == 1:
                return bytes([PRESENCE, ACK])
            return bytes([ACK])

        if data == self.variant.update_seq:
            self.updates += 1
            return bytes([ACK])

        if data == self.variant.end_seq:
            self.ended = True
            return None

        if len(data) == 1028 and data[0] == 0x57:
            self.data_packets.append(data)
            if not verify_packet(data, self.variant.checksum_offset):
                self.bad_checksums += 1
                return bytes([NAK])
            if self.data_reply == "silent":
                return None
            if self.data_reply == "nak":
                return bytes([NAK])
            block = len(self.image) // 1024
            if self.nak_blocks.get(block, 0) > 0:
                self.nak_blocks[block] -= 1
                return bytes([NAK])
            self.image.extend(data[3:-1])
            return bytes([ACK])

        return None


class SpiFlashSimulator:
    """
    Radio side of the SPI block protocol backed by a bytearray.

    Args:
        flash: Flash contents
        command_offset: Checksum offset expected on read/write commands
        corrupt_blocks: Blocks whose read response carries a bad checksum
        repeat_response: Send every read response twice (answers the re-read)
        wrong_header_blocks: Blocks answered with a mismatching header
        reject_code: Answer writes with this byte instead of ACK
        silent_reads: Number of initial read commands left unanswered
    """

    def __init__(
        self,
        flash: bytearray,
        command_offset: int = 0,
        corrupt_blocks: Optional[Set[int]] = None,
        repeat_response: bool = False,
        wrong_header_blocks: Optional[Set[int]] = None,
        reject_code: Optional[int] = None,
        silent_reads: int = 0,
    ):
        self.flash = flash
        self.command_offset = command_offset
        self.corrupt_blocks = corrupt_blocks or set()
        self.repeat_response = repeat_response
        self.wrong_header_blocks = wrong_header_blocks or set()
        self.reject_code = reject_code
        self.silent_reads = silent_reads
        self.read_blocks: List[int] = []
        self.written_blocks: List[int] = []
        self.bad_commands = 0

    def __call__(self, data: bytes) -> Optional[bytes]:
        if not verify_packet(data, self.command_offset):
            self.bad_commands += 1
            return None
        block = (data[1] << 8) | data[2]

        if data[0] == 0x52 and len(data) == 4:
            self.read_blocks.append(block)
            if self.silent_reads > 0:
                self.silent_reads -= 1
                return None
            header = data[:3]
            if block in self.wrong_header_blocks:
                header = bytes([0x52, data[1], (data[2] + 1) & 0xFF])
            response = build_packet(header, self.flash[block * 1024:(block + 1) * 1024])
            if block in self.corrupt_blocks:
                response = response[:-1] + bytes([(response[-1] + 1) & 0xFF])
            if self.repeat_response:
                return response + response
            return response

        if data[0] == 0x57 and len(data) == 1028:
            if self.reject_code is not None:
                return bytes([self.reject_code])
            self.flash[block * 1024:(block + 1) * 1024] = data[3:-1]
            self.written_blocks.append(block)
            return bytes([ACK])

        return None


def encode_intel_hex(data: bytes, address: int, record_size: int = 16) -> str:
    """
    Encode ``data`` at absolute ``address`` as Intel HEX with type 04 records.

    ``address`` must be aligned to ``record_size`` so no record crosses a
    64K segment.
    """
    lines = []
    upper = None
    for pos in range(0, len(data), record_size):
        addr = address + pos
        chunk = data[pos:pos + record_size]
        if addr >> 16 != upper:
            upper = addr >> 16
            body = bytes([2, 0, 0, 4, (upper >> 8) & 0xFF, upper & 0xFF])
            lines.append(":" + body.hex().upper() + f"{intel_hex_checksum(body):02X}")
        body = bytes([len(chunk), (addr >> 8) & 0xFF, addr & 0xFF, 0]) + chunk
        lines.append(":" + body.hex().upper() + f"{intel_hex_checksum(body):02X}")
    lines.append(":00000001FF")
    return "\n".join(lines) + "\n"


@pytest.fixture
def fast_timing() -> SessionTiming:
    return SessionTiming(
        connect_attempts=4,
        connect_window=0.2,
        command_delay=0.0,
        packet_timeout=0.1,
        max_retries=3,
        poll_interval=0.01,
        end_delay=0.0,
        idle_timeout=0.5,
    )


@pytest.fixture
def fast_spi_timing() -> SpiTiming:
    return SpiTiming(
        command_delay=0.0,
        write_delay=0.0,
        read_timeout=0.2,
        reread_timeout=0.05,
        write_timeout=0.2,
        block_delay=0.0,
        retry_backoff=0.0,
        read_attempts=3,
    )
