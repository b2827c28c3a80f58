import contextlib
import dataclasses
import logging
import threading
from typing import Callable, Literal

import pydantic

from steady_serial import _exceptions
from steady_serial import _fanout
from steady_serial import _models
from steady_serial import _options
from steady_serial import _pins
from steady_serial import _strategy
from steady_serial import _transport

log = logging.getLogger("steady_serial.manager")

TransportFactory = Callable[[_options.PortOptions], _transport.SerialTransport]

READ_BUFFER_SIZE = 4096


class SerialPortManager(contextlib.AbstractContextManager):
    """Keeps one serial port open, read, and republished as events.

    connect() opens the transport and starts a reader thread that pulls bytes
    through an AdaptiveReader. Read faults only raise a flag; a watchdog
    thread notices the flag, force-closes the transport and reopens it on a
    later tick. All open/close sequences run under one per-port lock.
    """

    def __init__(
        self,
        opts: _options.PortOptions | str,
        *,
        transport_factory: TransportFactory = _transport.PySerialTransport,
        handler_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ):
        if isinstance(opts, str):
            opts = _options.PortOptions(name=opts)

        self._opts = opts
        self._factory = transport_factory
        self._log = logger or log
        self._data_log = self._log.getChild("data")

        def fanout(category: str) -> _fanout.EventFanout:
            return _fanout.EventFanout(
                category, handler_timeout=handler_timeout, logger=logger
            )

        self.status_changed = fanout("status_changed")
        self.data_received = fanout("data_received")
        self.pin_changed = fanout("pin_changed")

        self._port_lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._transport: _transport.SerialTransport | None = None
        self._state: _models.ConnectionState = "disconnected"
        self._announced = False
        self._error = False
        self._disconnect_requested = False
        self._disconnects = 0
        self._disposed = False

        self._strategy_lock = threading.Lock()
        self._pending_strategy: _options.ReadStrategyOptions | None = None
        self._reader = _strategy.AdaptiveReader(
            opts.read_strategy, port=opts.name, logger=logger
        )
        self._reader_thread: threading.Thread | None = None
        self._reader_cancel = threading.Event()

        self._watchdog_thread: threading.Thread | None = None
        self._watchdog_stop = threading.Event()

        self._signals: dict[_models.SignalLine, bool] = {
            "dtr": opts.dtr,
            "rts": opts.rts,
            "break": opts.initial_break,
        }
        self._pins = _pins.PinMonitor(
            opts.name,
            self.pin_states,
            self.pin_changed,
            debounce=opts.pin_debounce,
            logger=logger,
        )

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SerialPortManager({self.identity!s}, {self.state})"

    @property
    def name(self) -> str:
        return self._opts.name

    @property
    def options(self) -> _options.PortOptions:
        return self._opts

    @property
    def identity(self) -> _models.PortIdentity:
        return self._opts.identity

    @property
    def transport(self) -> _transport.SerialTransport | None:
        return self._transport

    @property
    def state(self) -> _models.ConnectionState:
        if self._state == "connected" and self._error:
            return "error_detected"
        return self._state

    @property
    def strategy_state(self) -> _strategy.ReadStrategyState:
        """A copy of the reader's strategy bookkeeping"""
        return dataclasses.replace(self._reader.state)

    @property
    def is_connected(self) -> bool:
        transport = self._transport
        return bool(
            transport is not None
            and transport.is_open
            and not self._error
            and not self._disconnect_requested
            and not self._disposed
        )

    #
    # Lifecycle
    #

    def connect(self) -> bool:
        """(Re)opens the port from scratch; True if it ends up connected"""

        if self._disconnect_requested or self._disposed:
            return False

        with self._port_lock:
            if self._disposed:
                return False
            self._stop_watchdog()
            self._close_port()
            disconnects = self._disconnects
            self._open_port()
            if disconnects == self._disconnects:  # not undone by a handler
                self._start_watchdog()

        return self.is_connected

    def disconnect(self) -> None:
        if self._disposed:
            return

        self._disconnect_requested = True
        self._disconnects += 1
        try:
            with self._port_lock:
                self._stop_watchdog()
                self._close_port()
        finally:
            self._disconnect_requested = False

    def close(self) -> None:
        """Disconnects for good; every later call is a no-op or failure"""

        with self._port_lock:
            if self._disposed:
                return
            self.disconnect()
            self._disposed = True
            self._state = "disposed"

        for events in (self.status_changed, self.data_received, self.pin_changed):
            events.clear()
        self._log.debug("%s: Disposed", self.name)

    @pydantic.validate_call
    def set_port(
        self,
        name: str | None = None,
        baud: int | None = None,
        stop_bits: float | int | None = None,
        parity: Literal["none", "even", "odd", "mark", "space"] | None = None,
        data_bits: Literal[5, 6, 7, 8] | None = None,
    ) -> None:
        """Changes the port identity, reopening the port if it was open"""

        changes = dict(
            name=name,
            baud=baud,
            stop_bits=stop_bits,
            parity=parity,
            data_bits=data_bits,
        )
        update = {k: v for k, v in changes.items() if v is not None}
        opts = _options.PortOptions.model_validate(
            {**self._opts.model_dump(), **update}
        )
        if opts.identity == self.identity or self._disposed:
            return

        with self._port_lock:
            reopen = self._transport is not None
            if reopen:
                self._stop_watchdog()
                self._close_port()

            self._opts = opts
            self._reader.port = self._pins.port = opts.name
            self._log.debug("%s: Port settings now %s", opts.name, opts.identity)

            if reopen:
                self.connect()

    def set_read_strategy(self, opts: _options.ReadStrategyOptions) -> None:
        """Switches read strategy, starting its bookkeeping over"""

        with self._strategy_lock:
            self._opts = self._opts.model_copy(update={"read_strategy": opts})
            thread = self._reader_thread
            if thread and thread.is_alive():
                self._pending_strategy = opts  # picked up by the reader
                transport = self._transport
            else:
                self._pending_strategy = None
                self._reader.reset(opts)
                transport = None

        # wake a reader parked in an unbounded read
        if transport is not None:
            try:
                transport.cancel_read()
            except OSError as ex:
                self._log.warning("%s: Can't cancel read (%s)", self.name, ex)

    #
    # Data and signals
    #

    @pydantic.validate_call
    def send(self, data: bytes | str) -> bool:
        if isinstance(data, str):
            data = data.encode()

        transport = self._transport
        if not data or transport is None or not self.is_connected:
            return False

        try:
            with self._send_lock:
                transport.write(data)
        except (_exceptions.SerialWriteTimeout, _exceptions.SerialIoClosed) as ex:
            self._log.warning("%s: Send failed (%s)", self.name, ex)
            self._error = True
            return False
        except OSError:
            self._log.error("%s: Send error", self.name, exc_info=True)
            return False

        self._data_log.debug("%s: Sent %db: %s", self.name, len(data), data.hex())
        return True

    @pydantic.validate_call
    def set_dtr(self, enable: bool) -> None:
        self._set_signal("dtr", enable)

    @pydantic.validate_call
    def set_rts(self, enable: bool) -> None:
        self._set_signal("rts", enable)

    @pydantic.validate_call
    def set_break(self, enable: bool) -> None:
        self._set_signal("break", enable)

    def get_dtr(self) -> bool:
        return self._get_signal("dtr")

    def get_rts(self) -> bool:
        return self._get_signal("rts")

    def get_break(self) -> bool:
        return self._get_signal("break")

    @pydantic.validate_call
    def set_signal_configuration(
        self, dtr: bool, rts: bool, brk: bool = False
    ) -> None:
        """Sets DTR, RTS and break together (stored for later if offline)"""

        levels: dict[_models.SignalLine, bool] = {
            "dtr": dtr,
            "rts": rts,
            "break": brk,
        }
        transport = self._transport
        if transport is None or not self.is_connected:
            self._signals.update(levels)
            self._log.debug("%s: Will apply on connect: %s", self.name, levels)
            return

        try:
            for line, level in levels.items():
                transport.set_signal(line, level)
        except OSError:
            self._log.error("%s: Can't set signals", self.name, exc_info=True)
            raise

        self._signals.update(levels)
        self._log.info("%s: Signals set: %s", self.name, levels)

    def pin_states(self) -> _models.PinSnapshot:
        transport = self._transport
        if transport is None or not self.is_connected:
            return _models.PinSnapshot()

        try:
            return transport.read_lines()
        except OSError:
            self._log.error("%s: Can't read lines", self.name, exc_info=True)
            raise

    def supported_baud_rates(self) -> list[int]:
        return list(_options.SUPPORTED_BAUD_RATES)

    def _set_signal(self, line: _models.SignalLine, level: bool) -> None:
        transport = self._transport
        if transport is None or not self.is_connected:
            self._log.warning(
                "%s: Can't set %s (not connected)", self.name, line.upper()
            )
            return

        try:
            transport.set_signal(line, level)
        except OSError:
            self._log.error(
                "%s: Can't set %s", self.name, line.upper(), exc_info=True
            )
            raise

        self._signals[line] = level
        self._log.debug(
            "%s: %s %s", self.name, line.upper(), "high" if level else "low"
        )

    def _get_signal(self, line: _models.SignalLine) -> bool:
        transport = self._transport
        if transport is None or not self.is_connected:
            return self._signals[line]

        try:
            return transport.get_signal(line)
        except OSError:
            self._log.error(
                "%s: Can't get %s", self.name, line.upper(), exc_info=True
            )
            raise

    #
    # Internals; _open_port and _close_port need _port_lock held
    #

    def _open_port(self, *, reconnecting: bool = False) -> bool:
        opts = self._opts
        self._state = "reconnecting" if reconnecting else "connecting"
        try:
            transport = self._factory(opts)
            self._transport = transport
            if opts.monitor_pins:
                transport.set_line_callback(self._pins.on_line_change)
            transport.open()
        except (OSError, ValueError) as ex:
            self._log.error("%s: Can't open (%s)", self.name, ex)
            self._close_port()
            return False

        self._log.info("%s: Opened (%s)", self.name, opts.read_strategy.mode)
        self._apply_signals(transport)
        self._error = False
        self._start_reader(transport)
        if opts.monitor_pins:
            self._pins.start()

        self._state = "connected"
        self._announced = True
        self._emit_status(True)
        return True

    def _close_port(self) -> None:
        transport = self._transport
        self._stop_reader(transport)
        if transport is not None:
            try:
                transport.set_line_callback(None)
                if transport.is_open:
                    transport.close()
                    self._log.info("%s: Closed", self.name)
            except OSError as ex:
                self._log.error("%s: Error closing (%s)", self.name, ex)
            finally:
                if self._announced:
                    self._announced = False
                    self._emit_status(False)
                self._transport = None

        self._error = True
        if self._state != "disposed":
            self._state = "disconnected"

    def _apply_signals(self, transport: _transport.SerialTransport) -> None:
        opts, signals = self._opts, self._signals
        try:
            if opts.auto_dtr_on_connect or signals["dtr"]:
                transport.set_signal("dtr", signals["dtr"])
            if opts.auto_rts_on_connect or signals["rts"]:
                transport.set_signal("rts", signals["rts"])
            if signals["break"]:
                transport.set_signal("break", True)
        except OSError as ex:
            self._log.error("%s: Can't apply signals (%s)", self.name, ex)

    def _emit_status(self, connected: bool) -> None:
        self._log.debug("%s: Connected=%s", self.name, connected)
        event = _models.ConnectionStatusChanged(
            port_name=self.name, is_connected=connected
        )
        self.status_changed.dispatch(event)

    def _start_reader(self, transport: _transport.SerialTransport) -> None:
        with self._strategy_lock:
            if opts := self._pending_strategy:
                self._pending_strategy = None
                self._reader.reset(opts)

            cancel = threading.Event()
            thread = threading.Thread(
                target=self._reader_loop,
                args=(transport, cancel, bytearray(READ_BUFFER_SIZE)),
                name=f"{self.name} reader",
                daemon=True,
            )
            self._reader_cancel, self._reader_thread = cancel, thread
            thread.start()

    def _stop_reader(self, transport: _transport.SerialTransport | None) -> None:
        thread = self._reader_thread
        if thread is None:
            return

        self._reader_cancel.set()
        if transport is not None:
            try:
                transport.cancel_read()
            except OSError as ex:
                self._log.warning("%s: Can't cancel read (%s)", self.name, ex)

        if thread is not threading.current_thread():
            wait = self._opts.reader_join_timeout
            thread.join(timeout=wait)
            if thread.is_alive():
                self._log.warning(
                    "%s: Reader didn't exit in %.1fs, moving on", self.name, wait
                )

        self._reader_thread = None

    def _reader_loop(
        self,
        transport: _transport.SerialTransport,
        cancel: threading.Event,
        buffer: bytearray,
    ) -> None:
        self._log.debug("%s: Starting reader", self.name)
        while not cancel.is_set() and self._transport is transport:
            if not self.is_connected:
                break

            with self._strategy_lock:
                opts, self._pending_strategy = self._pending_strategy, None
            if opts:
                self._reader.reset(opts)

            try:
                count = self._reader.read(transport, buffer, cancel)
            except Exception as ex:
                if cancel.is_set():
                    break
                if self._pending_strategy and _transport.is_async_path_fault(ex):
                    continue  # woken up to switch strategy
                self._log.error(
                    "%s: Read failed (%s)", self.name, ex, exc_info=True
                )
                self._error = True
                cancel.wait(self._opts.reconnect_delay)
                continue

            if count > 0:
                data = bytes(buffer[:count])
                self._data_log.debug("%s: Read %db", self.name, count)
                self.data_received.dispatch(
                    _models.DataReceived(port_name=self.name, data=data)
                )

        if not cancel.is_set() and self._transport is transport:
            if not transport.is_open:
                self._error = True  # closed underneath us; watchdog repairs
        self._log.debug("%s: Reader stopped", self.name)

    def _start_watchdog(self) -> None:
        self._stop_watchdog()
        stop = threading.Event()
        thread = threading.Thread(
            target=self._watchdog_loop,
            args=(stop,),
            name=f"{self.name} watchdog",
            daemon=True,
        )
        self._watchdog_stop, self._watchdog_thread = stop, thread
        thread.start()

    def _stop_watchdog(self) -> None:
        self._watchdog_stop.set()
        thread, self._watchdog_thread = self._watchdog_thread, None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=self._opts.reader_join_timeout)

    def _watchdog_loop(self, stop: threading.Event) -> None:
        self._log.debug("%s: Starting watchdog", self.name)
        while not stop.wait(self._opts.watchdog_interval):
            self._watchdog_tick(stop)

    def _watchdog_tick(self, stop: threading.Event) -> None:
        if self._disconnect_requested or self._disposed or not self._error:
            return

        # connect/disconnect in progress; look again next tick
        if not self._port_lock.acquire(blocking=False):
            return

        try:
            if stop.is_set():
                return
            transport = self._transport
            if transport is not None and transport.is_open:
                self._log.debug("%s: Watchdog closing broken port", self.name)
                self._close_port()
            else:
                self._log.debug("%s: Watchdog reconnecting", self.name)
                if transport is not None:
                    self._close_port()  # already closed, just let go
                self._open_port(reconnecting=True)
        except Exception:
            self._log.error("%s: Watchdog error", self.name, exc_info=True)
        finally:
            self._port_lock.release()
