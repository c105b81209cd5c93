"""USB serial link to the wireless sensor gateway.

Wraps pyserial.  The gateway exchanges newline-delimited JSON objects
with the host: requests go out as ``rs485Request`` and
``rs485ChunkRequest`` objects, sensor messages come back one per line.
A ``gatewayReady`` line announces that the radio is up; it carries the
gateway's MAC address.

Example:
    >>> gw = SerialGateway("/dev/ttyUSB0", 230400, {"send_raw_data": False})
    >>> gw.run(cycle.on_ready, cycle.on_message, shutdown)
    >>> gw.close()
"""

import json
import logging

import serial

log = logging.getLogger(__name__)

READY_TYPE = "gatewayReady"

# Serial read timeout, so the run loop can notice shutdown.
READ_TIMEOUT_S = 0.5

# Longest line accepted from the gateway; a partial line past this is discarded.
MAX_LINE_BYTES = 64 * 1024

# Config keys and the option names the gateway firmware expects.
_OPTION_NAMES = {
    "use_millisecond_timestamps": "useMillisecondTimestamps",
    "use_fahrenheit_temps": "useFahrenheitTemps",
    "send_status_messages": "sendStatusMessages",
    "send_event_count": "sendEventCount",
    "send_raw_data": "sendRawData",
    "send_hop_data": "sendHopData",
}


class SerialGateway:
    """Gateway transport over a USB serial port.

    Duck-typed -- tests substitute any object with matching
    ``send_meter_request`` / ``send_chunk_request`` methods.

    Args:
        port: Serial port device path (e.g. ``"/dev/ttyUSB0"``).
        baudrate: Baud rate for the connection.
        options: Feature flags, keyed by config name, passed through
            to the gateway unchanged.
    """

    def __init__(self, port: str, baudrate: int, options: dict | None = None):
        self._ser = serial.Serial(port, baudrate, timeout=READ_TIMEOUT_S)
        self._options = dict(options or {})
        self._pending = bytearray()
        self._ready = False
        self.mac_address: str | None = None

    def _write(self, obj: dict) -> None:
        """Send one JSON line; serial errors are logged, not raised."""
        try:
            self._ser.write(json.dumps(obj).encode("ascii") + b"\n")
            self._ser.flush()
        except serial.SerialException as exc:
            log.error("error writing to gateway: %s", exc)

    def configure(self) -> None:
        """Send the gateway options, with tracking IDs switched on."""
        frame = {"type": "config", "useTrackingId": True}
        for key, name in _OPTION_NAMES.items():
            if key in self._options:
                frame[name] = bool(self._options[key])
        self._write(frame)

    def send_meter_request(self, message: str, destination: str, tracking_id: str) -> None:
        """Send a hex-encoded RS-485 request to the hub at *destination*."""
        self._write({
            "type": "rs485Request",
            "message": message,
            "destination": destination,
            "hexEncodePayload": False,
            "trackingId": tracking_id,
        })

    def send_chunk_request(self, chunk_number: int, chunk_size: int, destination: str, tracking_id: str) -> None:
        """Ask the hub at *destination* for one chunk of the buffered reply."""
        self._write({
            "type": "rs485ChunkRequest",
            "chunkNumber": chunk_number,
            "chunkSize": chunk_size,
            "destination": destination,
            "trackingId": tracking_id,
        })

    def read_message(self) -> dict | None:
        """Read one complete line and decode it.

        Returns None on read timeout, on a partial line (kept for the
        next call, up to ``MAX_LINE_BYTES``), or on a line that is not
        a JSON object.
        """
        self._pending += self._ser.readline()
        if not self._pending.endswith(b"\n"):
            if len(self._pending) > MAX_LINE_BYTES:
                log.debug("discarding %d bytes from gateway with no newline", len(self._pending))
                self._pending.clear()
            return None
        line = bytes(self._pending).strip()
        self._pending.clear()
        if not line:
            return None
        try:
            message = json.loads(line)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            log.debug("bad line from gateway: %s", exc)
            return None
        if not isinstance(message, dict):
            log.debug("ignoring non-object line from gateway: %r", message)
            return None
        return message

    def run(self, on_ready, on_message, shutdown) -> int:
        """Pump gateway messages into the callbacks until *shutdown* is set.

        *on_ready* is called once, on the first ``gatewayReady`` line.
        Every other message goes to *on_message*.  Returns the number
        of messages delivered.
        """
        self.configure()
        count = 0

        while not shutdown.is_set():
            try:
                message = self.read_message()
            except serial.SerialException as exc:
                log.error("error reading from gateway: %s", exc)
                break
            if message is None:
                continue

            try:
                if message.get("type") == READY_TYPE:
                    self.mac_address = message.get("macAddress", self.mac_address)
                    if not self._ready:
                        self._ready = True
                        on_ready()
                    continue
                on_message(message)
                count += 1
            except Exception:
                log.exception("error handling gateway message %s", message.get("type"))

        return count

    def close(self) -> None:
        """Close the serial port."""
        self._ser.close()
