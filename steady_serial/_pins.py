import logging
import threading
import time
from typing import Callable

from steady_serial import _fanout
from steady_serial import _models

log = logging.getLogger("steady_serial.pins")


class PinMonitor:
    """Debounces line-change notifications into PinChanged events.

    Lines chatter electrically; only the first notification in each
    'debounce' window is accepted, and it is published with a fresh snapshot
    taken at acceptance time.
    """

    def __init__(
        self,
        port: str,
        read_snapshot: Callable[[], _models.PinSnapshot],
        events: _fanout.EventFanout,
        *,
        debounce: float = 0.05,
        logger: logging.Logger | None = None,
    ):
        self.port = port
        self._read_snapshot = read_snapshot
        self._events = events
        self._debounce = debounce
        self._log = logger or log
        self._lock = threading.Lock()
        self._last_snapshot = _models.PinSnapshot()
        self._last_accepted: float | None = None

    @property
    def last_snapshot(self) -> _models.PinSnapshot:
        with self._lock:
            return self._last_snapshot

    def start(self) -> None:
        """Takes the baseline snapshot for a freshly opened port"""

        try:
            snapshot = self._read_snapshot()
        except OSError as ex:
            self._log.error("%s: Can't read line states (%s)", self.port, ex)
            return

        with self._lock:
            self._last_snapshot = snapshot
            self._last_accepted = None
        self._log.debug(
            "%s: Watching lines: CTS=%d DSR=%d CD=%d",
            self.port,
            snapshot.cts_holding,
            snapshot.dsr_holding,
            snapshot.cd_holding,
        )

    def on_line_change(self, kind: _models.PinChangeKind) -> bool:
        """Transport callback; returns True if the change was published"""

        now = time.monotonic()
        with self._lock:
            last = self._last_accepted
            if last is not None and now - last < self._debounce:
                self._log.debug("%s: %s change debounced", self.port, kind)
                return False
            self._last_accepted = now

        try:
            snapshot = self._read_snapshot()
        except OSError as ex:
            self._log.error("%s: Can't read line states (%s)", self.port, ex)
            return False

        self._log.debug(
            "%s: %s changed: CTS=%d DSR=%d CD=%d RI=%d",
            self.port,
            kind,
            snapshot.cts_holding,
            snapshot.dsr_holding,
            snapshot.cd_holding,
            snapshot.ring_indicator,
        )
        self._events.dispatch(
            _models.PinChanged(port_name=self.port, kind=kind, pins=snapshot)
        )
        with self._lock:
            self._last_snapshot = snapshot
        return True
