"""Single-slot timer holder.

Only one retry path may ever be live.  ``TimerSlot`` enforces it:
arming always cancels the previous timer first, and every armed timer
carries a generation number so a timer that already fired but lost
the race against a newer ``arm()``/``disarm()`` can be recognised as
stale by its callback.

The timer factory defaults to ``threading.Timer``; tests substitute
a manual one.

Example:
    >>> slot = TimerSlot()
    >>> slot.arm(30.0, on_timeout)     # on_timeout(generation)
    >>> slot.arm(30.0, on_timeout)     # first timer cancelled
    >>> slot.disarm()
"""

import threading


class TimerSlot:
    """Holds at most one armed timer.

    Args:
        factory: Callable ``factory(interval, function, args)`` returning
            an object with ``start()`` and ``cancel()``, like
            ``threading.Timer``.
    """

    def __init__(self, factory=threading.Timer):
        self._factory = factory
        self._timer = None
        self._generation = 0
        self.arm_count = 0

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def arm(self, delay: float, callback) -> int:
        """Cancel any armed timer, then start a new one.

        *callback* is called with the generation number returned here.
        """
        self.disarm()
        self._generation += 1
        self.arm_count += 1
        timer = self._factory(delay, callback, args=(self._generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()
        return self._generation

    def disarm(self) -> None:
        """Cancel the armed timer, if any, and invalidate its generation."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._generation += 1

    def fired(self, generation: int) -> bool:
        """Consume a firing of *generation*.

        Returns True and clears the slot if *generation* is the armed
        timer; returns False for a stale firing.
        """
        if self._timer is None or generation != self._generation:
            return False
        self._timer = None
        return True
