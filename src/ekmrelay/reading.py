"""Decoded meter reading and the gateway event it was built from.

Example:
    >>> from ekmrelay.reading import GatewayEvent
    >>> ev = GatewayEvent.from_message({"type": "tempHumidity", "sensorId": "a1b2"})
    >>> ev.is_meter_reply
    False
"""

from dataclasses import dataclass, field

ENVELOPE_TYPE = "rs485ChunkEnvelopeResponse"
CHUNK_TYPE = "rs485ChunkResponse"
METER_REPLY_TYPES = (ENVELOPE_TYPE, CHUNK_TYPE)


@dataclass
class GatewayEvent:
    """One sensor message delivered by the gateway.

    ``raw`` keeps the message exactly as received so non-meter events
    can be forwarded unchanged.
    """

    type: str
    sensor_id: str | None = None
    tracking_id: str | None = None
    sequence_number: int | None = None
    timestamp: int | None = None
    payload: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: dict) -> "GatewayEvent":
        """Build an event from a decoded gateway message mapping."""
        payload = message.get("payload")
        return cls(
            type=message.get("type", ""),
            sensor_id=message.get("sensorId"),
            tracking_id=message.get("trackingId"),
            sequence_number=message.get("sequenceNumber"),
            timestamp=message.get("timestamp"),
            payload=payload if isinstance(payload, dict) else {},
            raw=dict(message),
        )

    @property
    def is_meter_reply(self) -> bool:
        return self.type in METER_REPLY_TYPES


@dataclass
class MeterReading:
    """A complete reading from one meter, built from messages A and B.

    Not retained: constructed once per successful cycle and forwarded.
    """

    timestamp: int | None
    battery: object
    sensor_id: str | None
    sequence_number: int | None
    serial_number: str
    registers: dict

    def to_payload(self) -> dict:
        """Render the reading as the JSON body sent to the API."""
        return {
            "type": "meter",
            "timestamp": self.timestamp,
            "battery": self.battery,
            "sensorId": self.sensor_id,
            "sequenceNumber": self.sequence_number,
            "serialNumber": self.serial_number,
            **self.registers,
        }
