"""Meter reading cycle -- the polling and chunk-reassembly state machine.

Drives a round-robin sequence of meter reads through the gateway.
One cycle per meter::

    request A -> envelope -> chunk 0 .. n-1 -> CRC check A
    request B -> envelope -> chunk 0 .. n-1 -> CRC check B
    decode A+B -> forward -> next meter after the reading interval

Exactly one request is outstanding at a time.  Every request re-arms
the single request timer; a timeout restarts message A for the same
meter, a CRC failure abandons the meter and moves on.

Gateway callbacks and timer firings arrive on different threads; a
lock makes every handler run to completion before the next starts.

Example:
    >>> cycle = ReadingCycle(gateway, api, cfg["meters"],
    ...                      request_timeout=30.0, reading_interval=60.0)
    >>> gateway.run(cycle.on_ready, cycle.on_message, shutdown)
"""

import enum
import logging
import threading
from dataclasses import asdict, dataclass, field

from ekmrelay.assembly import ChunkBuffer
from ekmrelay.config import MeterConfig
from ekmrelay.correlator import Correlator, new_tracking_id
from ekmrelay.protocol import (
    MessageHalf,
    crc_check,
    decode_v4_message,
    meter_request,
)
from ekmrelay.reading import (
    CHUNK_TYPE,
    ENVELOPE_TYPE,
    GatewayEvent,
    MeterReading,
)
from ekmrelay.selector import MeterSelector
from ekmrelay.timer import TimerSlot

log = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    AWAITING_ENVELOPE = "awaiting_envelope"
    AWAITING_CHUNK = "awaiting_chunk"
    VALIDATING = "validating"


@dataclass
class ReadingCycleState:
    """Everything the state machine mutates, in one place."""

    selector: MeterSelector
    phase: Phase = Phase.IDLE
    half: MessageHalf = MessageHalf.A
    buffer: ChunkBuffer = field(default_factory=ChunkBuffer)
    correlator: Correlator = field(default_factory=Correlator)
    timer: TimerSlot = field(default_factory=TimerSlot)


@dataclass
class _Counters:
    requests_sent: int = 0
    timeouts: int = 0
    checksum_failures: int = 0
    stale_replies: int = 0
    readings_forwarded: int = 0
    forward_errors: int = 0


class ReadingCycle:
    """Reacts to gateway events and timer firings for the meter poll.

    Args:
        gateway: Object with ``send_meter_request(message, destination,
            tracking_id)`` and ``send_chunk_request(chunk_number,
            chunk_size, destination, tracking_id)``.
        api: Object with ``post(message)``; fire-and-forget.
        meters: Meters to poll, in order.  Empty disables meter reading.
        request_timeout: Seconds to wait for any single reply.
        reading_interval: Seconds between the end of one meter's cycle
            and the start of the next.
        checksum: ``checksum(message) -> bool``.
        decoder: ``decoder(message_a, message_b) -> dict``.
        timer_factory: ``threading.Timer``-compatible factory.
        tracking_ids: Callable returning a fresh tracking ID.
    """

    def __init__(
        self,
        gateway,
        api,
        meters: list[MeterConfig],
        request_timeout: float,
        reading_interval: float,
        checksum=crc_check,
        decoder=decode_v4_message,
        timer_factory=threading.Timer,
        tracking_ids=new_tracking_id,
    ):
        self._gateway = gateway
        self._api = api
        self._request_timeout = request_timeout
        self._reading_interval = reading_interval
        self._checksum = checksum
        self._decoder = decoder
        self._tracking_ids = tracking_ids
        self._lock = threading.Lock()
        self._counters = _Counters()
        self.state = ReadingCycleState(
            selector=MeterSelector(meters),
            timer=TimerSlot(timer_factory),
        )

    @property
    def enabled(self) -> bool:
        return self.state.selector.enabled

    @property
    def counters(self) -> dict:
        """Cycle statistics."""
        return asdict(self._counters)

    # -- Gateway callbacks ---------------------------------------------------

    def on_ready(self) -> None:
        """Gateway is ready: start the first cycle on the current meter."""
        log.info("gateway is ready to send messages")
        if not self.enabled:
            log.info("meter reading disabled: no meters configured")
            return
        with self._lock:
            self._start_cycle()

    def on_message(self, message) -> None:
        """Handle one sensor message from the gateway.

        Non-meter messages go straight to the API.  Meter replies are
        dropped unless they carry the awaited tracking ID and arrive in
        the phase that expects them.
        """
        event = message if isinstance(message, GatewayEvent) else GatewayEvent.from_message(message)

        if not event.is_meter_reply:
            self._api.post(event.raw)
            return

        if not self.enabled:
            return

        with self._lock:
            state = self.state
            if not state.correlator.accept(event.tracking_id):
                self._counters.stale_replies += 1
                log.info(
                    "ignoring %s with tracking ID %s, expected %s",
                    event.type, event.tracking_id, state.correlator.expected,
                )
                return

            if event.type == ENVELOPE_TYPE and state.phase is Phase.AWAITING_ENVELOPE:
                self._on_envelope(event)
            elif event.type == CHUNK_TYPE and state.phase is Phase.AWAITING_CHUNK:
                self._on_chunk(event)
            else:
                log.debug("dropping %s in phase %s", event.type, state.phase.value)

    def stop(self) -> None:
        """Disarm the timer and forget the outstanding request."""
        with self._lock:
            self.state.timer.disarm()
            self.state.correlator.clear()
            self.state.phase = Phase.IDLE

    # -- Transitions ---------------------------------------------------------

    def _start_cycle(self) -> None:
        """Begin message A for the current meter with empty buffers."""
        state = self.state
        state.half = MessageHalf.A
        state.buffer.reset()
        self._request_message()

    def _request_message(self) -> None:
        state = self.state
        meter = state.selector.current()
        token = self._tracking_ids()
        state.correlator.issue(token)
        state.timer.arm(self._request_timeout, self._on_timeout)
        state.phase = Phase.AWAITING_ENVELOPE
        self._counters.requests_sent += 1
        self._gateway.send_meter_request(
            meter_request(meter.encoded_serial, state.half), meter.hub_id, token,
        )
        log.info(
            "sent request for %s message to meter %s with tracking ID %s",
            state.half.value, meter.serial_number, token,
        )

    def _request_chunk(self, destination: str | None) -> None:
        state = self.state
        buf = state.buffer
        token = self._tracking_ids()
        state.correlator.issue(token)
        state.timer.arm(self._request_timeout, self._on_timeout)
        state.phase = Phase.AWAITING_CHUNK
        self._counters.requests_sent += 1
        self._gateway.send_chunk_request(buf.cursor, buf.chunk_size, destination, token)
        log.debug(
            "sent request for message %s chunk %d with tracking ID %s",
            state.half.value, buf.cursor, token,
        )

    def _on_envelope(self, event: GatewayEvent) -> None:
        state = self.state
        try:
            chunk_size = int(event.payload["chunkSize"])
            num_chunks = int(event.payload["numChunks"])
            state.buffer.begin_envelope(state.half, chunk_size, num_chunks)
        except (KeyError, TypeError, ValueError) as exc:
            # Left to the request timer to recover.
            log.warning("bad chunk envelope %s: %s", event.payload, exc)
            return
        log.debug(
            "message %s: %d chunks of %d bytes",
            state.half.value, num_chunks, chunk_size,
        )
        self._request_chunk(event.sensor_id)

    def _on_chunk(self, event: GatewayEvent) -> None:
        state = self.state
        data = event.payload.get("data")
        if not isinstance(data, str):
            log.warning("chunk reply without data: %s", event.payload)
            return

        log.debug("received message %s chunk %d", state.half.value, state.buffer.cursor)
        if not state.buffer.append_chunk(data):
            self._request_chunk(event.sensor_id)
            return

        state.timer.disarm()
        state.correlator.clear()
        state.phase = Phase.VALIDATING
        self._validate(event)

    def _validate(self, event: GatewayEvent) -> None:
        state = self.state
        meter = state.selector.current()
        if not self._checksum(state.buffer.message(state.half)):
            self._counters.checksum_failures += 1
            log.warning(
                "meter %s message %s CRC check failed, skipping this meter for now",
                meter.serial_number, state.half.value,
            )
            self._finish_cycle()
            return

        log.info("meter %s message %s CRC check passed", meter.serial_number, state.half.value)
        if state.half is MessageHalf.A:
            state.half = MessageHalf.B
            self._request_message()
            return

        self._forward_reading(meter, event)
        self._finish_cycle()

    def _forward_reading(self, meter: MeterConfig, event: GatewayEvent) -> None:
        """Decode the validated pair and hand it to the API client."""
        buf = self.state.buffer
        try:
            registers = self._decoder(buf.message(MessageHalf.A), buf.message(MessageHalf.B))
            reading = MeterReading(
                timestamp=event.timestamp,
                battery=event.payload.get("battery"),
                sensor_id=event.sensor_id,
                sequence_number=event.sequence_number,
                serial_number=meter.serial_number,
                registers=registers,
            )
            self._api.post(reading.to_payload())
        except Exception:
            self._counters.forward_errors += 1
            log.exception("error forwarding reading from meter %s", meter.serial_number)
            return
        self._counters.readings_forwarded += 1

    def _finish_cycle(self) -> None:
        """Move to the next meter and schedule its cycle."""
        state = self.state
        state.selector.advance()
        state.phase = Phase.IDLE
        state.timer.arm(self._reading_interval, self._on_interval)

    # -- Timer callbacks -----------------------------------------------------

    def _on_timeout(self, generation: int) -> None:
        with self._lock:
            state = self.state
            if not state.timer.fired(generation):
                return
            self._counters.timeouts += 1
            log.warning(
                "no reply for meter %s message %s within %.0fs, restarting",
                state.selector.current().serial_number, state.half.value,
                self._request_timeout,
            )
            state.correlator.clear()
            self._start_cycle()

    def _on_interval(self, generation: int) -> None:
        with self._lock:
            if not self.state.timer.fired(generation):
                return
            log.info("starting a new reading request")
            self._start_cycle()
