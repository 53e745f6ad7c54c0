import threading


class StopSignal:
    """
    Cooperative stop flags shared between the operator and the engine.

    `request()` may be called from any thread or signal handler; the engine
    only looks at it between steps and calls `mark_triggered()` once it has
    stopped.
    """

    def __init__(self) -> None:
        self._requested = threading.Event()
        self._triggered = threading.Event()

    def request(self) -> None:
        self._requested.set()

    def clear(self) -> None:
        self._requested.clear()
        self._triggered.clear()

    @property
    def requested(self) -> bool:
        return self._requested.is_set()

    def mark_triggered(self) -> None:
        self._triggered.set()

    @property
    def triggered(self) -> bool:
        return self._triggered.is_set()


__all__ = ["StopSignal"]
