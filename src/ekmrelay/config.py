"""Project-wide configuration constants and config-file loading.

Central place for tuneable parameters shared across modules.
Import individual names where needed.

Example:
    >>> from ekmrelay.config import load_config
    >>> cfg = load_config("config.toml")
    >>> cfg["meters"][0].encoded_serial
    '303030303030303132333435'
"""

import tomllib
from dataclasses import dataclass
from urllib.parse import urlparse

# Timeout in seconds for a single POST to the ingestion API.
API_TIMEOUT_S = 10

# Posts waiting for the API worker, beyond which new messages are dropped.
API_MAX_PENDING = 100

# Only the v4 two-message layout is supported.
METER_VERSION = 4

# Gateway options forwarded to the transport unchanged.
FEATURE_FLAGS = (
    "use_millisecond_timestamps",
    "use_fahrenheit_temps",
    "send_status_messages",
    "send_event_count",
    "send_raw_data",
    "send_hop_data",
)

_METER_KEYS = {"serial_number", "hub_id", "version", "password", "ct_ratio"}


@dataclass(frozen=True)
class MeterConfig:
    """One configured meter on the RS-485 bus.

    ``encoded_serial`` is the serial number as the meter protocol
    expects it on the wire: every digit prefixed with ``3``.
    """

    serial_number: str
    hub_id: str
    version: int = METER_VERSION
    password: str | None = None
    ct_ratio: int | None = None

    @property
    def encoded_serial(self) -> str:
        return encode_serial_number(self.serial_number)


def encode_serial_number(serial_number: str) -> str:
    """Prefix every digit of *serial_number* with ``3``.

    Example:
        >>> encode_serial_number("000300012345")
        '303030333030303132333435'
    """
    return "".join("3" + digit for digit in serial_number)


def load_config(path: str) -> dict:
    """Read a TOML config file and validate required keys.

    Top-level keys: ``api_url`` (str), ``request_timeout`` (int
    seconds), ``reading_interval`` (int seconds), optional
    ``gateway_id`` (str), and the boolean feature flags listed in
    ``FEATURE_FLAGS``.  A ``[gateway]`` section holds ``port`` (str)
    and ``baudrate`` (int).  Zero or more ``[[meters]]`` tables
    describe the meters to poll; an empty list disables meter reading.

    Durations are converted to float seconds here, once.

    Raises:
        ValueError: If any required key is missing or has the wrong type.

    Example:
        >>> cfg = load_config("config.toml")
        >>> cfg["request_timeout"]
        30.0
    """
    with open(path, "rb") as f:
        raw = tomllib.load(f)

    _require_url(raw, "api_url")
    _require_int(raw, "request_timeout", minimum=1)
    _require_int(raw, "reading_interval", minimum=1)
    for flag in FEATURE_FLAGS:
        _require_bool(raw, flag)

    gateway_id = raw.get("gateway_id")
    if gateway_id is not None and not isinstance(gateway_id, str):
        raise ValueError("gateway_id must be str, got %s" % type(gateway_id).__name__)

    section = raw.get("gateway")
    if not isinstance(section, dict):
        raise ValueError("missing required section: [gateway]")
    _require_str(section, "port", prefix="gateway.")
    _require_int(section, "baudrate", prefix="gateway.")

    result = {
        "api_url": raw["api_url"],
        "gateway_id": gateway_id,
        "request_timeout": float(raw["request_timeout"]),
        "reading_interval": float(raw["reading_interval"]),
        "port": section["port"],
        "baudrate": section["baudrate"],
        "meters": _load_meters(raw.get("meters", [])),
    }
    for flag in FEATURE_FLAGS:
        result[flag] = raw[flag]

    return result


def _load_meters(entries: object) -> list[MeterConfig]:
    """Validate the ``[[meters]]`` tables and build MeterConfig records."""
    if not isinstance(entries, list):
        raise ValueError("meters must be an array of tables")

    meters = []
    for i, entry in enumerate(entries):
        prefix = "meters[%d]." % i
        if not isinstance(entry, dict):
            raise ValueError("meters[%d] must be a table" % i)
        unknown = sorted(set(entry) - _METER_KEYS)
        if unknown:
            raise ValueError("%s%s is not allowed" % (prefix, unknown[0]))

        _require_str(entry, "serial_number", prefix=prefix)
        serial_number = entry["serial_number"]
        if len(serial_number) != 12 or not serial_number.isdigit():
            raise ValueError("%sserial_number must be 12 digits, got '%s'" % (prefix, serial_number))

        _require_str(entry, "hub_id", prefix=prefix)
        if len(entry["hub_id"]) != 4:
            raise ValueError("%shub_id must be 4 characters, got '%s'" % (prefix, entry["hub_id"]))

        _require_int(entry, "version", prefix=prefix)
        if entry["version"] != METER_VERSION:
            raise ValueError("%sversion must be %d, got %d" % (prefix, METER_VERSION, entry["version"]))

        password = entry.get("password")
        if password is not None:
            _require_str(entry, "password", prefix=prefix)
            if len(password) != 8 or not password.isdigit():
                raise ValueError("%spassword must be 8 digits" % prefix)

        ct_ratio = entry.get("ct_ratio")
        if ct_ratio is not None:
            _require_int(entry, "ct_ratio", prefix=prefix)
            if not 100 <= ct_ratio <= 5000:
                raise ValueError("%sct_ratio must be 100-5000, got %d" % (prefix, ct_ratio))

        meters.append(MeterConfig(
            serial_number=serial_number,
            hub_id=entry["hub_id"],
            version=entry["version"],
            password=password,
            ct_ratio=ct_ratio,
        ))

    return meters


def _require_url(raw: dict[str, object], key: str) -> None:
    """Validate that *key* is an http(s) URL string."""
    _require_str(raw, key)
    parsed = urlparse(raw[key])
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("%s must be an http(s) URL, got '%s'" % (key, raw[key]))


def _require_str(raw: dict[str, object], key: str, prefix: str = "") -> None:
    """Validate that *key* exists in *raw* and is a str."""
    if key not in raw:
        raise ValueError("missing required key: %s%s" % (prefix, key))
    if not isinstance(raw[key], str):
        raise ValueError("%s%s must be str, got %s" % (prefix, key, type(raw[key]).__name__))


def _require_int(raw: dict[str, object], key: str, prefix: str = "", minimum: int | None = None) -> None:
    """Validate that *key* exists in *raw* and is an int (not a bool)."""
    if key not in raw:
        raise ValueError("missing required key: %s%s" % (prefix, key))
    value = raw[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("%s%s must be int, got %s" % (prefix, key, type(value).__name__))
    if minimum is not None and value < minimum:
        raise ValueError("%s%s must be >= %d, got %d" % (prefix, key, minimum, value))


def _require_bool(raw: dict[str, object], key: str) -> None:
    """Validate that *key* exists in *raw* and is a bool."""
    if key not in raw:
        raise ValueError("missing required key: %s" % key)
    if not isinstance(raw[key], bool):
        raise ValueError("%s must be bool, got %s" % (key, type(raw[key]).__name__))
