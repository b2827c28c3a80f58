"""Adaptive choice between the async and sync read paths of a transport.

pyserial-style async reads are quick but can abort spuriously (the
"signature fault", see _transport.is_async_path_fault). The engine picks a
path per read according to the configured mode and the recent history kept
in ReadStrategyState, and falls back or promotes as the mode dictates.
"""

import dataclasses
import datetime
import logging
import threading

from steady_serial import _exceptions
from steady_serial import _options
from steady_serial import _transport

log = logging.getLogger("steady_serial.strategy")

_SYNC_MODES = ("sync_only", "sync_with_async_promotion")


@dataclasses.dataclass
class ReadStrategyState:
    """Per-port read path bookkeeping, only touched by the reader thread"""

    mode: _options.ReadStrategyType = "async_with_sync_fallback"
    using_sync_reads: bool = False
    consecutive_successes: int = 0
    fallback_event_count: int = 0
    last_fallback_time: datetime.datetime | None = None
    mode_switches: int = 0

    @classmethod
    def initial(cls, mode: _options.ReadStrategyType) -> "ReadStrategyState":
        return cls(mode=mode, using_sync_reads=mode in _SYNC_MODES)


class AdaptiveReader:
    def __init__(
        self,
        opts: _options.ReadStrategyOptions = _options.ReadStrategyOptions(),
        *,
        port: str = "",
        logger: logging.Logger | None = None,
    ):
        self.port = port
        self.opts = opts
        self.state = ReadStrategyState.initial(opts.mode)
        self._log = logger or log

    def __repr__(self) -> str:
        return f"AdaptiveReader({self.port!r}, {self.state!r})"

    def reset(self, opts: _options.ReadStrategyOptions | None = None) -> None:
        """Starts over with fresh state (and optionally new options)"""

        self.opts = opts or self.opts
        self.state = ReadStrategyState.initial(self.opts.mode)
        self._log.debug(
            "%s: Read strategy %s (fallback=%s, timeout=%.3fs)",
            self.port,
            self.opts.mode,
            self.opts.sync_fallback,
            self.opts.sync_timeout,
        )

    def read(
        self,
        transport: _transport.SerialTransport,
        buffer: bytearray,
        cancel: threading.Event | None = None,
    ) -> int:
        """Reads into 'buffer' by the current mode's rules.

        Returns the byte count, where 0 means "nothing this time" (timeout or
        requested cancellation). Raises SerialAsyncReadFault when the async
        path faults and the mode can't route around it; any other transport
        error propagates unchanged.
        """

        if cancel and cancel.is_set():
            return 0

        mode = self.state.mode
        if mode == "async_only":
            return self._read_async_only(transport, buffer, cancel)
        elif mode == "sync_only":
            return self._read_sync(transport, buffer)
        elif mode == "sync_with_async_promotion":
            return self._read_with_promotion(transport, buffer, cancel)
        else:
            return self._read_with_fallback(transport, buffer, cancel)

    def _read_async_only(self, transport, buffer, cancel) -> int:
        try:
            return self._read_async(transport, buffer)
        except Exception as ex:
            if not _transport.is_async_path_fault(ex):
                raise
            if cancel and cancel.is_set():
                return 0
            self._note_fault()
            if self.opts.log_fallback_events:
                self._log.warning(
                    "%s: Async read aborted, no fallback in async_only mode (%s)",
                    self.port,
                    ex,
                )
            message = "Async read aborted unexpectedly"
            raise _exceptions.SerialAsyncReadFault(message, self.port) from ex

    def _read_with_fallback(self, transport, buffer, cancel) -> int:
        if self.state.using_sync_reads:
            return self._read_sync(transport, buffer)

        retries = self.opts.async_retries
        for attempt in range(1, retries + 1):
            try:
                return self._read_async(transport, buffer)
            except Exception as ex:
                if not _transport.is_async_path_fault(ex):
                    raise
                if cancel and cancel.is_set():
                    return 0
                self._note_fault()
                if self.opts.log_fallback_events:
                    self._log.debug(
                        "%s: Async read aborted (attempt %d/%d): %s",
                        self.port,
                        attempt,
                        retries,
                        ex,
                    )
                if attempt < retries:
                    continue
                if not self.opts.sync_fallback:
                    message = f"Async read aborted {retries}x, fallback disabled"
                    raise _exceptions.SerialAsyncReadFault(
                        message, self.port
                    ) from ex

        self._switch(sync=True)
        if self.opts.log_fallback_events:
            self._log.warning(
                "%s: Async reads unreliable, using sync reads from now on",
                self.port,
            )
        return self._read_sync(transport, buffer)

    def _read_with_promotion(self, transport, buffer, cancel) -> int:
        state = self.state
        if state.using_sync_reads:
            count = self._read_sync(transport, buffer)
            threshold = self.opts.promotion_threshold
            if state.consecutive_successes >= threshold:
                self._switch(sync=False)
                if self.opts.log_fallback_events:
                    self._log.info(
                        "%s: Promoting to async reads after %d sync reads",
                        self.port,
                        state.consecutive_successes,
                    )
            return count

        try:
            return self._read_async(transport, buffer)
        except Exception as ex:
            if not _transport.is_async_path_fault(ex):
                raise
            if cancel and cancel.is_set():
                return 0
            self._note_fault()
            self._switch(sync=True)
            state.consecutive_successes = 0
            if self.opts.log_fallback_events:
                self._log.warning(
                    "%s: Async read aborted after promotion, back to sync (%s)",
                    self.port,
                    ex,
                )
            return self._read_sync(transport, buffer)

    def _read_async(self, transport, buffer) -> int:
        count = transport.read_async(buffer)
        if count:
            self.state.consecutive_successes += 1
        return count

    def _read_sync(self, transport, buffer) -> int:
        count = transport.read_sync(buffer, timeout=self.opts.sync_timeout)
        if count:
            self.state.consecutive_successes += 1
            n = self.state.consecutive_successes
            if self.opts.log_fallback_events and n % 100 == 0:
                self._log.debug("%s: %d sync reads in a row", self.port, n)
        return count

    def _note_fault(self) -> None:
        self.state.fallback_event_count += 1
        self.state.last_fallback_time = datetime.datetime.now(
            datetime.timezone.utc
        )

    def _switch(self, *, sync: bool) -> None:
        if self.state.using_sync_reads != sync:
            self.state.using_sync_reads = sync
            self.state.mode_switches += 1
