"""Shared pytest fixtures for ekmrelay tests."""

from ekmrelay.config import MeterConfig
from ekmrelay.protocol import MessageHalf, encode_v4_message
from ekmrelay.reading import CHUNK_TYPE, ENVELOPE_TYPE

HUB_ID = "a1b2"


def make_meter(n: int = 1) -> MeterConfig:
    """Return a meter whose serial number ends in *n*."""
    return MeterConfig(serial_number="%012d" % n, hub_id=HUB_ID)


def make_message(half: MessageHalf, **values: str) -> str:
    """Build a valid hex v4 message for *half*."""
    return encode_v4_message(half, values)


def split_chunks(message: str, num_chunks: int, trailer: str = "FF") -> list[str]:
    """Split *message* into *num_chunks* chunk payloads, trailer on the last."""
    full = message + trailer
    step = -(-len(full) // num_chunks)
    return [full[i:i + step] for i in range(0, len(full), step)]


def envelope(tracking_id, num_chunks: int, chunk_size: int = 128) -> dict:
    """Build a chunk envelope message as the gateway reports it."""
    return {
        "type": ENVELOPE_TYPE,
        "sensorId": HUB_ID,
        "trackingId": tracking_id,
        "sequenceNumber": 1,
        "timestamp": 1700000000,
        "payload": {"battery": 3.1, "chunkSize": chunk_size, "numChunks": num_chunks},
    }


def chunk(tracking_id, data: str, sequence_number: int = 2) -> dict:
    """Build a chunk reply message as the gateway reports it."""
    return {
        "type": CHUNK_TYPE,
        "sensorId": HUB_ID,
        "trackingId": tracking_id,
        "sequenceNumber": sequence_number,
        "timestamp": 1700000060,
        "payload": {"battery": 3.1, "data": data},
    }


class FakeGateway:
    """Test double for SerialGateway: records every request sent."""

    def __init__(self):
        """Initialize with no requests recorded."""
        self.sent = []

    def send_meter_request(self, message, destination, tracking_id):
        """Record a meter request."""
        self.sent.append(("meter", message, destination, tracking_id))

    def send_chunk_request(self, chunk_number, chunk_size, destination, tracking_id):
        """Record a chunk request."""
        self.sent.append(("chunk", chunk_number, chunk_size, destination, tracking_id))

    @property
    def last_tracking_id(self):
        """Tracking ID of the most recent request."""
        return self.sent[-1][-1]

    def meter_requests(self):
        """Return (serial_hex, half_selector) for every meter request."""
        return [(s[1][4:28], s[1][28:32]) for s in self.sent if s[0] == "meter"]


class FakeApi:
    """Test double for ApiClient: keeps every posted message."""

    def __init__(self):
        """Initialize with nothing posted."""
        self.posted = []
        self.gateway_id = None

    def post(self, message):
        """Record *message*."""
        self.posted.append(message)


class ManualTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, interval, function, args=()):
        """Store the callback without starting a thread."""
        self.interval = interval
        self.function = function
        self.args = args
        self.started = False
        self.cancelled = False
        self.fired = False
        self.daemon = False

    def start(self):
        """Mark the timer as running."""
        self.started = True

    def cancel(self):
        """Mark the timer as cancelled."""
        self.cancelled = True

    def fire(self):
        """Invoke the callback, as the timer thread would on expiry."""
        self.fired = True
        self.function(*self.args)


class ManualTimerFactory:
    """Creates ManualTimers and remembers all of them."""

    def __init__(self):
        """Initialize with no timers."""
        self.timers = []

    def __call__(self, interval, function, args=()):
        """Create and record a ManualTimer."""
        timer = ManualTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    @property
    def live(self):
        """Timers started, not cancelled and not yet fired."""
        return [t for t in self.timers if t.started and not t.cancelled and not t.fired]

    def fire_live(self):
        """Fire the single live timer."""
        live = self.live
        assert len(live) == 1, "expected one live timer, got %d" % len(live)
        live[0].fire()
