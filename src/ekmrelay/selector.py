"""Round-robin selection over the configured meters."""

from ekmrelay.config import MeterConfig


class MeterSelector:
    """Holds the ordered meter list and the index being read.

    An empty list disables meter reading; ``current()`` must not be
    called in that case.

    Example:
        >>> sel = MeterSelector([m1, m2])
        >>> sel.advance()
        >>> sel.current() is m2
        True
        >>> sel.advance()
        >>> sel.index
        0
    """

    def __init__(self, meters: list[MeterConfig]):
        self._meters = list(meters)
        self._index = 0

    @property
    def enabled(self) -> bool:
        return len(self._meters) > 0

    @property
    def index(self) -> int:
        return self._index

    def __len__(self) -> int:
        return len(self._meters)

    def current(self) -> MeterConfig:
        """Return the meter at the current index."""
        if not self._meters:
            raise IndexError("no meters configured")
        return self._meters[self._index]

    def advance(self) -> None:
        """Move to the next meter, wrapping to 0 after the last one."""
        if self._meters:
            self._index = (self._index + 1) % len(self._meters)
