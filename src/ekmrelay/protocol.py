"""Request building, checksum and decoding for the EKM v4 meter protocol.

A v4 meter answers a read request with a fixed 255-byte message.  A
full reading takes two requests, message A and message B.  The gateway
relays meter bytes as hex strings, so every function here works on
hex text.

Message layout (both halves)::

    STX | fields ... | "!" CR LF ETX | CRC_HI CRC_LO

The CRC is CRC-16/MODBUS over everything between STX and the CRC,
with bit 7 of both bytes masked off.

Example:
    >>> from ekmrelay.protocol import meter_request, MessageHalf
    >>> meter_request("303030303030303132333435", MessageHalf.A)
    '2F3F3030303030303031323334353030210D0A'
"""

import enum
import struct

# -- Protocol constants ------------------------------------------------------

MESSAGE_LEN = 255
STX = 0x02
TRAILER = b"!\r\n\x03"
CRC_MASK = 0x7F7F


class MessageHalf(enum.Enum):
    """The two halves of one v4 reading."""

    A = "A"
    B = "B"


# (name, length, kind, divisor)
#   str   -- ASCII text, stripped
#   hex   -- raw bytes rendered as hex
#   int   -- ASCII decimal digits
#   num   -- ASCII decimal digits divided by *divisor*
#   kwh   -- ASCII decimal digits scaled by the meter's kWh scale digit
#   skip  -- reserved, not decoded
_HEADER = [
    ("model", 2, "hex", 1),
    ("firmware", 1, "hex", 1),
    ("meter_address", 12, "str", 1),
]

_LINE_INSTANT = [
    ("rms_volts_ln_1", 4, "num", 10),
    ("rms_volts_ln_2", 4, "num", 10),
    ("rms_volts_ln_3", 4, "num", 10),
    ("amps_ln_1", 5, "num", 10),
    ("amps_ln_2", 5, "num", 10),
    ("amps_ln_3", 5, "num", 10),
    ("rms_watts_ln_1", 7, "int", 1),
    ("rms_watts_ln_2", 7, "int", 1),
    ("rms_watts_ln_3", 7, "int", 1),
    ("rms_watts_tot", 7, "int", 1),
    ("cos_theta_ln_1", 4, "str", 1),
    ("cos_theta_ln_2", 4, "str", 1),
    ("cos_theta_ln_3", 4, "str", 1),
]

V4_FIELDS_A = _HEADER + [
    ("kwh_tot", 8, "kwh", 1),
    ("reactive_energy_tot", 8, "kwh", 1),
    ("rev_kwh_tot", 8, "kwh", 1),
    ("kwh_ln_1", 8, "kwh", 1),
    ("kwh_ln_2", 8, "kwh", 1),
    ("kwh_ln_3", 8, "kwh", 1),
    ("rev_kwh_ln_1", 8, "kwh", 1),
    ("rev_kwh_ln_2", 8, "kwh", 1),
    ("rev_kwh_ln_3", 8, "kwh", 1),
    ("resettable_kwh_tot", 8, "kwh", 1),
    ("resettable_rev_kwh_tot", 8, "kwh", 1),
] + _LINE_INSTANT + [
    ("reactive_pwr_ln_1", 7, "int", 1),
    ("reactive_pwr_ln_2", 7, "int", 1),
    ("reactive_pwr_ln_3", 7, "int", 1),
    ("reactive_pwr_tot", 7, "int", 1),
    ("line_freq", 4, "num", 100),
    ("pulse_cnt_1", 8, "int", 1),
    ("pulse_cnt_2", 8, "int", 1),
    ("pulse_cnt_3", 8, "int", 1),
    ("state_inputs", 1, "int", 1),
    ("state_watts_dir", 1, "int", 1),
    ("state_out", 1, "int", 1),
    ("kwh_scale", 1, "int", 1),
    ("reserved_a", 2, "skip", 1),
    ("meter_time", 14, "str", 1),
    ("reserved_b", 2, "skip", 1),
]

V4_FIELDS_B = _HEADER + [
    ("kwh_tariff_1", 8, "kwh", 1),
    ("kwh_tariff_2", 8, "kwh", 1),
    ("kwh_tariff_3", 8, "kwh", 1),
    ("kwh_tariff_4", 8, "kwh", 1),
    ("rev_kwh_tariff_1", 8, "kwh", 1),
    ("rev_kwh_tariff_2", 8, "kwh", 1),
    ("rev_kwh_tariff_3", 8, "kwh", 1),
    ("rev_kwh_tariff_4", 8, "kwh", 1),
] + _LINE_INSTANT + [
    ("rms_watts_max_demand", 8, "int", 1),
    ("max_demand_period", 1, "int", 1),
    ("pulse_ratio_1", 4, "int", 1),
    ("pulse_ratio_2", 4, "int", 1),
    ("pulse_ratio_3", 4, "int", 1),
    ("ct_ratio", 4, "int", 1),
    ("auto_reset_max_demand", 1, "int", 1),
    ("settable_imp_per_kwh_constant", 4, "int", 1),
    ("net_calc_watts_ln_1", 7, "int", 1),
    ("net_calc_watts_ln_2", 7, "int", 1),
    ("net_calc_watts_ln_3", 7, "int", 1),
    ("net_calc_watts_tot", 7, "int", 1),
    ("reserved_c", 30, "skip", 1),
    ("meter_time", 14, "str", 1),
]

_LAYOUTS = {MessageHalf.A: V4_FIELDS_A, MessageHalf.B: V4_FIELDS_B}


# -- CRC ---------------------------------------------------------------------


def crc16_modbus(data: bytes) -> int:
    """Compute CRC-16/MODBUS over a byte sequence.

    Uses polynomial 0x8005 with initial value 0xFFFF and reflected
    input/output (standard MODBUS CRC).  Bitwise implementation --
    a 255-byte message is small enough not to need a table.
    """
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def message_crc(body: bytes) -> int:
    """Return the masked CRC the meter sends for *body* (STX excluded)."""
    return crc16_modbus(body) & CRC_MASK


def crc_check(message: str) -> bool:
    """Return True if the hex *message* is a complete, intact v4 message.

    Malformed hex, a wrong length or a bad STX byte count as failures.
    """
    try:
        raw = bytes.fromhex(message)
    except ValueError:
        return False
    if len(raw) != MESSAGE_LEN or raw[0] != STX:
        return False
    received = struct.unpack(">H", raw[-2:])[0]
    return received == message_crc(raw[1:-2])


# -- Requests ----------------------------------------------------------------


def meter_request(encoded_serial: str, half: MessageHalf) -> str:
    """Build the hex request string that asks a meter for one message half.

    The request is ``/?`` + serial + ``00`` (A) or ``01`` (B) + ``!\\r\\n``,
    with the serial already digit-encoded by the config layer.
    """
    selector = "3030" if half is MessageHalf.A else "3031"
    return "2F3F%s%s210D0A" % (encoded_serial, selector)


# -- Decoding ----------------------------------------------------------------


def _split_fields(raw: bytes, layout: list) -> dict[str, bytes]:
    """Cut the message body into named raw byte fields."""
    fields = {}
    offset = 1
    for name, length, _kind, _divisor in layout:
        fields[name] = raw[offset:offset + length]
        offset += length
    return fields


def _convert(name: str, value: bytes, kind: str, divisor: int, scale: int):
    """Convert one raw field according to its *kind*."""
    if kind == "hex":
        return value.hex()
    text = value.decode("ascii").strip()
    if kind == "str":
        return text
    try:
        number = int(text)
    except ValueError:
        raise ValueError("field %s is not numeric: %r" % (name, text)) from None
    if kind == "int":
        return number
    if kind == "kwh":
        return number / (10 ** scale)
    return number / divisor


def _to_bytes(message: str, half: MessageHalf) -> bytes:
    """Decode hex text and check the overall length."""
    raw = bytes.fromhex(message)
    if len(raw) != MESSAGE_LEN:
        raise ValueError(
            "message %s must be %d bytes, got %d" % (half.value, MESSAGE_LEN, len(raw))
        )
    return raw


def decode_v4_message(message_a: str, message_b: str) -> dict:
    """Decode a checksum-validated A/B message pair into register fields.

    Fields shared by both halves (header and instantaneous line values)
    are taken from message A.  kWh registers are scaled by the kWh
    scale digit of message A.

    Raises:
        ValueError: If either message is not valid hex, has the wrong
            length, or a numeric field holds non-digits.

    Example:
        >>> fields = decode_v4_message(msg_a, msg_b)
        >>> fields["kwh_tot"]
        1234.5
    """
    raw_a = _to_bytes(message_a, MessageHalf.A)
    raw_b = _to_bytes(message_b, MessageHalf.B)

    fields_a = _split_fields(raw_a, V4_FIELDS_A)
    scale = int(fields_a["kwh_scale"].decode("ascii"))

    result = {}
    for half, raw_fields in ((MessageHalf.A, fields_a),
                             (MessageHalf.B, _split_fields(raw_b, V4_FIELDS_B))):
        for name, _length, kind, divisor in _LAYOUTS[half]:
            if kind == "skip" or name in result:
                continue
            result[name] = _convert(name, raw_fields[name], kind, divisor, scale)

    return result


# -- Encoding ----------------------------------------------------------------


def encode_v4_message(half: MessageHalf, values: dict[str, str] | None = None) -> str:
    """Build a complete hex v4 message with a valid CRC.

    *values* maps field names to their ASCII text; each is
    right-justified and zero-padded to the field width.  Missing
    numeric fields are zeros, missing hex fields are zero bytes.
    Used by the gateway simulator and by tests.

    Raises:
        ValueError: If a value does not fit its field.
    """
    values = values or {}
    body = bytearray()
    for name, length, kind, _divisor in _LAYOUTS[half]:
        value = values.get(name)
        if kind == "hex":
            chunk = bytes.fromhex(value) if value else bytes(length)
        elif kind == "skip":
            chunk = b"0" * length
        else:
            chunk = (value or "").rjust(length, "0").encode("ascii")
        if len(chunk) != length:
            raise ValueError("field %s must be %d bytes, got %d" % (name, length, len(chunk)))
        body += chunk
    body += TRAILER
    crc = message_crc(bytes(body))
    return (bytes([STX]) + bytes(body) + struct.pack(">H", crc)).hex().upper()
