#!/usr/bin/env python3
"""Virtual sensor gateway simulator for ekmrelay.

Listens on a serial port (typically one end of a socat PTY pair) and
plays the gateway's side of the JSON-lines link: announces itself
ready, answers meter requests with a chunk envelope, serves the
chunks of a synthetic EKM v4 message, and every few seconds pushes
an unrelated temperature/humidity sensor message.

Roughly 10% of meter messages are sent with a corrupted byte so the
relay's CRC failure path gets exercised.

Usage:
    python gateway_simulator.py <port> <baudrate>

Args:
    port: Serial port path (e.g. /tmp/ekm-gateway).
    baudrate: Baud rate (e.g. 230400).
"""

import json
import random
import sys
import time

import serial

# Add parent src to path so we can import ekmrelay
sys.path.insert(0, str(__import__("pathlib").Path(__file__).resolve().parents[1] / "src"))

from ekmrelay.protocol import MessageHalf, encode_v4_message

CHUNK_SIZE = 64
HUB_ID = "a1b2"


def _send(ser: serial.Serial, obj: dict) -> None:
    ser.write(json.dumps(obj).encode("ascii") + b"\n")
    ser.flush()


def _meter_message(serial_number: str, half: MessageHalf) -> str:
    """Build a hex message plus the one-byte chunk trailer."""
    values = {
        "meter_address": serial_number,
        "kwh_scale": "1",
        "kwh_tot": str(random.randint(0, 99999999)),
        "rms_volts_ln_1": str(random.randint(1150, 1250)),
        "amps_ln_1": str(random.randint(0, 500)),
        "rms_watts_ln_1": str(random.randint(0, 6000)),
        "line_freq": str(random.randint(5990, 6010)),
        "meter_time": time.strftime("%y%m%d0%w%H%M%S"),
    }
    message = encode_v4_message(half, values)
    if random.random() < 0.1:
        message = message[:20] + "00" + message[22:]
    return message + "FF"


def run(port: str, baudrate: int) -> None:
    """Run the simulator loop until interrupted."""
    ser = serial.Serial(port, baudrate, timeout=0.5)
    seq = 0
    chunks: list[str] = []
    last_push = time.monotonic()

    print("gateway_simulator: listening on {}".format(port), flush=True)
    _send(ser, {"type": "gatewayReady", "macAddress": "00124b0000000001"})

    try:
        while True:
            if time.monotonic() - last_push > 5.0:
                seq += 1
                _send(ser, {
                    "type": "tempHumidity",
                    "sensorId": "c3d4",
                    "sequenceNumber": seq,
                    "timestamp": int(time.time()),
                    "payload": {"battery": 3.0, "temperature": 21.5, "humidity": 40.1},
                })
                last_push = time.monotonic()

            line = ser.readline().strip()
            if not line:
                continue
            try:
                req = json.loads(line)
            except ValueError:
                continue

            seq += 1
            base = {
                "sensorId": HUB_ID,
                "sequenceNumber": seq,
                "timestamp": int(time.time()),
                "trackingId": req.get("trackingId"),
            }

            if req.get("type") == "rs485Request":
                message = req["message"]
                serial_number = bytes.fromhex(message[4:28]).decode("ascii")
                half = MessageHalf.A if message[28:32] == "3030" else MessageHalf.B
                full = _meter_message(serial_number, half)
                step = CHUNK_SIZE * 2
                chunks = [full[i:i + step] for i in range(0, len(full), step)]
                _send(ser, {
                    **base,
                    "type": "rs485ChunkEnvelopeResponse",
                    "payload": {"battery": 3.1, "chunkSize": CHUNK_SIZE, "numChunks": len(chunks)},
                })
            elif req.get("type") == "rs485ChunkRequest":
                n = req.get("chunkNumber", 0)
                if 0 <= n < len(chunks):
                    _send(ser, {
                        **base,
                        "type": "rs485ChunkResponse",
                        "payload": {"battery": 3.1, "data": chunks[n]},
                    })
    except KeyboardInterrupt:
        pass
    finally:
        ser.close()


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("usage: gateway_simulator.py <port> <baudrate>", file=sys.stderr)
        sys.exit(1)
    run(sys.argv[1], int(sys.argv[2]))
