"""Tracking-ID generation and request/reply correlation.

Each request to the gateway carries a short tracking ID that the reply
echoes back.  Only one request is outstanding at a time, so a single
expected ID is enough to reject late, duplicate or misrouted replies.

Example:
    >>> corr = Correlator()
    >>> token = new_tracking_id()
    >>> corr.issue(token)
    >>> corr.accept(token)
    True
    >>> corr.accept("ffff" if token != "ffff" else "0000")
    False
"""

import random


def new_tracking_id() -> str:
    """Return a 4-hex-digit token from a random 16-bit value, zero-padded."""
    return "%04x" % random.randrange(0x10000)


class Correlator:
    """Tracks the one tracking ID currently awaited."""

    def __init__(self):
        self._expected: str | None = None

    @property
    def expected(self) -> str | None:
        return self._expected

    def issue(self, token: str) -> None:
        """Record *token* as the ID the next reply must carry."""
        self._expected = token

    def accept(self, token: str | None) -> bool:
        """Return True if *token* is the awaited ID.  Never mutates state."""
        return self._expected is not None and token == self._expected

    def clear(self) -> None:
        """Forget the awaited ID; every reply is stale until the next issue."""
        self._expected = None
