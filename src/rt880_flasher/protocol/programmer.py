"""
RT-880 Firmware Programming Session

Drives the bootloader handshake and the block upload of a firmware image.

Protocol sequence:
1. Send connect sequence (up to 4 attempts, 200 ms apart) until the radio
   answers with any non-zero byte. 0x00 only means "still booting".
2. Every ACK (0x06) to a connect sequence advances the handshake step and
   re-sends the connect sequence; the third ACK is answered with the
   update sequence instead.
3. The ACK to the update sequence starts the transfer: one 1028-byte data
   packet per ACK ``[0x57, off_hi, off_lo, payload[1024], checksum]``.
4. The ACK for the last block is answered with the end sequence and the
   port is closed.

A NAK (0xFF) or a 3 s silence after a data packet re-sends the same block;
more than 3 retries of one block aborts the session. A NAK before the
transfer started aborts immediately.

Threading model: a background ``ByteReader`` only turns received bytes into
queue items. Every state change happens in the thread that called
``ProgrammingSession.run()`` while it consumes that queue.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from rt880_flasher.models.registry import (
    ACK,
    BLOCK_SIZE,
    NAK,
    PRESENCE,
    RADTEL,
    ProtocolVariant,
)
from .checksum import build_packet
from .transport import ProtocolTimeout, RadioNoContact, RadioTransportError

logger = logging.getLogger(__name__)

CMD_WRITE = 0x57  # 'W'
HANDSHAKE_ROUNDS = 3


class NakReceived(RadioTransportError):
    """Radio rejected the connect/update exchange"""

    def __init__(self, message: str, stage: str = "", step: int = 0):
        self.stage = stage
        self.step = step
        super().__init__(message)


class MaxRetriesExceeded(RadioTransportError):
    """One block was rejected or timed out too many times"""

    def __init__(self, message: str, offset: int = 0, attempts: int = 0):
        self.offset = offset
        self.attempts = attempts
        super().__init__(message)


class SessionState(Enum):
    """Lifecycle of a programming session."""
    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    UPDATE_SENT = "update_sent"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AbortReason(Enum):
    """Why a session ended in ABORTED."""
    NO_RESPONSE = "no_response"
    NAK_DURING_HANDSHAKE = "nak_during_handshake"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    TRANSPORT_ERROR = "transport_error"


class EventKind(Enum):
    """Kinds of observable session events."""
    STATE = "state"
    SENT = "sent"
    ACK = "ack"
    RETRY = "retry"
    IGNORED = "ignored"
    PROGRESS = "progress"


@dataclass(frozen=True)
class SessionEvent:
    """One entry of the session's event stream."""
    kind: EventKind
    state: SessionState
    message: str = ""
    offset: Optional[int] = None
    blocks_done: int = 0
    blocks_total: int = 0


@dataclass
class SessionTiming:
    """
    Timing parameters for the bootloader exchange.

    Attributes:
        connect_attempts: Connect sequences sent before giving up
        connect_window: Seconds to wait for an answer after each attempt
        command_delay: Pause after connect/update commands (bootloader turnaround)
        packet_timeout: Seconds without ACK before a block is re-sent
        max_retries: Retransmissions allowed per block
        poll_interval: Granularity of the timeout check
        end_delay: Pause after the end sequence before closing the port
        idle_timeout: Seconds of silence tolerated during the handshake
    """
    connect_attempts: int = 4
    connect_window: float = 0.2
    command_delay: float = 0.05
    packet_timeout: float = 3.0
    max_retries: int = 3
    poll_interval: float = 0.05
    end_delay: float = 0.1
    idle_timeout: float = 10.0


@dataclass
class SessionReport:
    """Outcome of a programming session."""
    variant: str
    blocks_total: int
    blocks_sent: int = 0
    blocks_acked: int = 0
    retransmissions: int = 0
    offsets: List[int] = field(default_factory=list)
    elapsed: float = 0.0


class ByteReader:
    """
    Background task feeding received bytes into a queue.

    Puts ``("byte", value)`` for every byte and ``("error", message)`` once
    if the transport fails while the reader is still wanted.
    """

    def __init__(self, transport, sink: "queue.Queue[Tuple[str, object]]", poll_interval: float = 0.05):
        self.transport = transport
        self.sink = sink
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="rt880-reader", daemon=True)
        self._thread.start()

    def request_stop(self) -> None:
        self._stop_event.set()

    def stop(self, timeout: float = 2.0) -> None:
        self.request_stop()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Reader thread did not stop within %.1fs", timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                data = self.transport.read(1, timeout=self.poll_interval)
            except RadioTransportError as e:
                if not self._stop_event.is_set():
                    self.sink.put(("error", str(e)))
                return
            for value in data:
                self.sink.put(("byte", value))


class ProgrammingSession:
    """
    Handshake and block-transfer state machine for one firmware upload.

    The session owns the transport from ``run()`` until it returns and
    closes it exactly once on every exit path.

    Example:
        firmware = load_firmware("rt880.hex")
        session = ProgrammingSession(SerialTransport("/dev/ttyUSB0"), firmware.image)
        report = session.run()
    """

    def __init__(
        self,
        transport,
        image,
        variant: ProtocolVariant = RADTEL,
        block_size: int = BLOCK_SIZE,
        timing: Optional[SessionTiming] = None,
        progress_cb: Optional[Callable[[int, int], None]] = None,
        event_cb: Optional[Callable[[SessionEvent], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize session.

        Args:
            transport: Unopened or open transport (``SerialTransport`` API)
            image: bytes or MemoryImage to upload; length must be a multiple of block_size
            variant: Protocol variant of the target device family
            block_size: Payload bytes per data packet
            timing: Timing parameters (defaults match the stock bootloader)
            progress_cb: Optional callback(blocks_acked, blocks_total)
            event_cb: Optional callback receiving every SessionEvent
        """
        data = bytes(image)
        if not data or len(data) % block_size:
            raise ValueError(
                f"Image size {len(data)} is not a non-zero multiple of {block_size}"
            )
        self.transport = transport
        self.image = data
        self.variant = variant
        self.block_size = block_size
        self.timing = timing or SessionTiming()
        self.progress_cb = progress_cb
        self.event_cb = event_cb
        self._sleep = sleep
        self._clock = clock

        self.state = SessionState.IDLE
        self.abort_reason: Optional[AbortReason] = None
        self.failed_stage: Optional[SessionState] = None
        self.step = 0
        self.cursor = 0
        self.retry_count = 0
        self.waiting_for_ack = False
        self.report = SessionReport(variant=variant.name, blocks_total=len(data) // block_size)

        self._events: "queue.Queue[Tuple[str, object]]" = queue.Queue()
        self._reader: Optional[ByteReader] = None
        self._contact = False
        self._closed = False
        self._failure: Optional[RadioTransportError] = None
        self._last_sent_at = 0.0
        self._last_activity = 0.0
        self._last_packet = b""

    @property
    def finished(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.ABORTED)

    @property
    def blocks_total(self) -> int:
        return self.report.blocks_total

    def run(self) -> SessionReport:
        """
        Execute the whole upload.

        Returns:
            SessionReport on success

        Raises:
            RadioNoContact: Radio never answered the connect sequence
            NakReceived: Radio rejected the handshake
            MaxRetriesExceeded: A block failed more than ``max_retries`` times
            ProtocolTimeout: Handshake went silent
            RadioTransportError: Port could not be opened or used
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError("A ProgrammingSession can only be run once")

        started = self._clock()
        self._reader = ByteReader(self.transport, self._events, self.timing.poll_interval)
        try:
            if not self.transport.is_open:
                self.transport.open()
            self._reader.start()
            self._connect()
            while not self.finished:
                self._pump_once(self.timing.poll_interval)
        except RadioTransportError as e:
            if not self.finished:
                self._abort(AbortReason.TRANSPORT_ERROR, e)
        finally:
            self._close_port()
            self._reader.stop()

        self.report.elapsed = self._clock() - started
        if self._failure is not None:
            raise self._failure
        logger.info(
            "Firmware upload complete: %d blocks, %d retransmissions",
            self.report.blocks_acked,
            self.report.retransmissions,
        )
        return self.report

    # -- event stream -----------------------------------------------------

    def _emit(self, kind: EventKind, message: str = "", offset: Optional[int] = None) -> None:
        if self.event_cb:
            self.event_cb(SessionEvent(
                kind=kind,
                state=self.state,
                message=message,
                offset=offset,
                blocks_done=self.report.blocks_acked,
                blocks_total=self.report.blocks_total,
            ))

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        self._emit(EventKind.STATE, state.value)

    # -- I/O ----------------------------------------------------------------

    def _send(self, data: bytes) -> None:
        self.transport.write(data)
        self._last_activity = self._clock()

    def _send_control(self, data: bytes) -> None:
        self._send(data)
        self._sleep(self.timing.command_delay)

    def _close_port(self) -> None:
        if self._reader is not None:
            self._reader.request_stop()
        if not self._closed:
            self._closed = True
            self.transport.close()

    def _pump_once(self, timeout: float) -> None:
        try:
            kind, value = self._events.get(timeout=max(timeout, 0.0))
        except queue.Empty:
            pass
        else:
            if kind == "error":
                if not self.finished:
                    self._abort(AbortReason.TRANSPORT_ERROR, RadioTransportError(str(value)))
                return
            self._handle_byte(value)
        self._check_timeouts()

    # -- phases -------------------------------------------------------------

    def _connect(self) -> None:
        self._set_state(SessionState.CONNECTING)
        self.step = 1
        attempts = self.timing.connect_attempts
        for attempt in range(1, attempts + 1):
            logger.info("Connecting (attempt %d/%d)...", attempt, attempts)
            self._send(self.variant.connect_seq)
            deadline = self._clock() + self.timing.connect_window
            while not self._contact and not self.finished:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                self._pump_once(min(remaining, self.timing.poll_interval))
            if self._contact or self.finished:
                return

        self._abort(
            AbortReason.NO_RESPONSE,
            RadioNoContact(f"Communication error - no response from device after {attempts} connect attempts"),
        )

    def _handle_byte(self, value: int) -> None:
        self._last_activity = self._clock()
        if self.finished:
            logger.debug("Ignoring 0x%02X after session end", value)
            return
        if value == PRESENCE:
            logger.debug("Presence byte 0x00 (device booting)")
            return

        self._contact = True
        if value == ACK:
            self._on_ack()
        elif value == NAK:
            self._on_nak()
        else:
            logger.info("Unknown response 0x%02X in %s, ignored", value, self.state.value)
            self._emit(EventKind.IGNORED, f"0x{value:02X}")

    def _on_ack(self) -> None:
        self.waiting_for_ack = False
        self.retry_count = 0

        if self.state in (SessionState.CONNECTING, SessionState.HANDSHAKING):
            self._emit(EventKind.ACK, f"handshake step {self.step}")
            if self.step < HANDSHAKE_ROUNDS:
                self.step += 1
                self._set_state(SessionState.HANDSHAKING)
                logger.info("Connection step %d, sending connect command", self.step)
                self._send_control(self.variant.connect_seq)
            else:
                logger.info("Sending update command")
                self._send_control(self.variant.update_seq)
                self.step = HANDSHAKE_ROUNDS + 1
                self._set_state(SessionState.UPDATE_SENT)
        elif self.state is SessionState.UPDATE_SENT:
            self._set_state(SessionState.TRANSFERRING)
            logger.info("Device connected, starting firmware upload (%d blocks)", self.blocks_total)
            self._send_block()
        elif self.state is SessionState.TRANSFERRING:
            offset = self.cursor - self.block_size
            self.report.blocks_acked += 1
            self._emit(EventKind.ACK, offset=offset)
            logger.debug("ACK for block at offset 0x%05X", offset)
            if self.progress_cb:
                self.progress_cb(self.report.blocks_acked, self.blocks_total)
            self._emit(EventKind.PROGRESS, offset=offset)
            if self.cursor >= len(self.image):
                self._complete()
            else:
                self._send_block()

    def _on_nak(self) -> None:
        if self.state is SessionState.TRANSFERRING:
            offset = self.cursor - self.block_size
            logger.warning(
                "NAK received, block at offset 0x%05X rejected (checksum sent 0x%02X)",
                offset,
                self._last_packet[-1],
            )
            self._retry("NAK")
            return

        stage = self.state.value
        self._abort(
            AbortReason.NAK_DURING_HANDSHAKE,
            NakReceived(f"NAK received during {stage} (step {self.step})", stage=stage, step=self.step),
        )

    def _check_timeouts(self) -> None:
        if self.finished:
            return
        now = self._clock()
        if self.state is SessionState.TRANSFERRING:
            if self.waiting_for_ack and now - self._last_sent_at > self.timing.packet_timeout:
                logger.warning(
                    "Timeout waiting %.1fs for ACK of block at offset 0x%05X",
                    now - self._last_sent_at,
                    self.cursor - self.block_size,
                )
                self._discard_stale_input()
                self._retry("timeout")
        elif self._contact and now - self._last_activity > self.timing.idle_timeout:
            self._abort(
                AbortReason.HANDSHAKE_TIMEOUT,
                ProtocolTimeout(
                    f"No response for {self.timing.idle_timeout:.1f}s during {self.state.value} (step {self.step})"
                ),
            )

    def _discard_stale_input(self) -> None:
        """
        Drop replies that arrived for a block that already timed out.

        Without this a late ACK would be credited to the retransmitted
        block and the following one would go out while the retransmit is
        still unanswered. An ACK that is still on the wire when the block is
        re-sent cannot be told apart from the answer to the retransmit; the
        protocol carries no sequence numbers.
        """
        self.transport.reset_input_buffer()
        while True:
            try:
                kind, value = self._events.get_nowait()
            except queue.Empty:
                return
            if kind == "error":
                # reader stops after an error; keep it for the next pump
                self._events.put((kind, value))
                return
            logger.debug("Discarding stale byte 0x%02X before retransmit", value)

    def _send_block(self) -> None:
        offset = self.cursor
        payload = self.image[offset:offset + self.block_size]
        # Offset field is 16 bits wide; the bootloader tracks blocks in order
        header = bytes([CMD_WRITE, (offset >> 8) & 0xFF, offset & 0xFF])
        packet = build_packet(header, payload, self.variant.checksum_offset)
        self._last_packet = packet

        self._send(packet)
        self.cursor += self.block_size
        self.waiting_for_ack = True
        self._last_sent_at = self._clock()
        self.report.blocks_sent += 1
        self.report.offsets.append(offset)
        logger.debug(
            "Sent block %d/%d at offset 0x%05X, checksum 0x%02X",
            offset // self.block_size + 1,
            self.blocks_total,
            offset,
            packet[-1],
        )
        self._emit(EventKind.SENT, offset=offset)

    def _retry(self, reason: str) -> None:
        offset = self.cursor - self.block_size
        self.retry_count += 1
        if self.retry_count > self.timing.max_retries:
            self._abort(
                AbortReason.MAX_RETRIES_EXCEEDED,
                MaxRetriesExceeded(
                    f"Block at offset 0x{offset:05X} failed after {self.timing.max_retries} retries ({reason})",
                    offset=offset,
                    attempts=self.retry_count,
                ),
            )
            return

        logger.warning(
            "Retrying block at offset 0x%05X (attempt %d/%d, %s)",
            offset,
            self.retry_count,
            self.timing.max_retries,
            reason,
        )
        self.report.retransmissions += 1
        self._emit(EventKind.RETRY, reason, offset=offset)
        self.cursor = offset
        self._send_block()

    def _complete(self) -> None:
        logger.info("Data transfer completed, sending end command")
        self._send(self.variant.end_seq)
        self._sleep(self.timing.end_delay)
        self._close_port()
        self._set_state(SessionState.COMPLETED)

    def _abort(self, reason: AbortReason, error: RadioTransportError) -> None:
        logger.error("Programming aborted (%s): %s", reason.value, error)
        self.failed_stage = self.state
        self.abort_reason = reason
        self._failure = error
        self._close_port()
        self._set_state(SessionState.ABORTED)
