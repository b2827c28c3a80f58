import abc
import errno
import logging
import os
import serial
import threading
from typing import Callable

from steady_serial import _exceptions
from steady_serial import _models
from steady_serial import _options

log = logging.getLogger("steady_serial.transport")

LineCallback = Callable[[_models.PinChangeKind], None]

# Windows ERROR_OPERATION_ABORTED and ERROR_CANCELLED
_ASYNC_FAULT_CODES = {errno.ECANCELED, 995, 1223}
_ASYNC_FAULT_TEXT = (
    "operationaborted",
    "operation aborted",
    "operation was canceled",
    "operation was cancelled",
    "operation has been aborted",
)

_PARITY = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
    "mark": serial.PARITY_MARK,
    "space": serial.PARITY_SPACE,
}

_STOP_BITS = {
    1: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2: serial.STOPBITS_TWO,
}


def is_async_path_fault(exc: BaseException) -> bool:
    """True if 'exc' (or anything it was raised from) is the aborted-read
    signature of a misbehaving async read, rather than a real I/O failure"""

    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        if isinstance(cur, _exceptions.SerialAsyncReadFault):
            return True
        codes = (getattr(cur, "errno", None), getattr(cur, "winerror", None))
        if any(c in _ASYNC_FAULT_CODES for c in codes if c is not None):
            return True
        text = str(cur).lower()
        if any(marker in text for marker in _ASYNC_FAULT_TEXT):
            return True
        cur = cur.__cause__ or cur.__context__
    return False


class SerialTransport(abc.ABC):
    """The platform serial primitive the rest of the library drives.

    Implementations are owned by exactly one SerialPortManager. read_async()
    is the fast path and is allowed to misbehave (ignore cancellation, or
    raise an aborted-operation error when nobody cancelled it); read_sync()
    must honor its timeout and return 0 when it expires.
    """

    port: str

    @abc.abstractmethod
    def open(self) -> None: ...

    @abc.abstractmethod
    def close(self) -> None: ...

    @property
    @abc.abstractmethod
    def is_open(self) -> bool: ...

    @abc.abstractmethod
    def read_async(self, buffer: bytearray) -> int: ...

    @abc.abstractmethod
    def read_sync(self, buffer: bytearray, timeout: float) -> int: ...

    @abc.abstractmethod
    def cancel_read(self) -> None: ...

    @abc.abstractmethod
    def write(self, data: bytes) -> None: ...

    @abc.abstractmethod
    def get_signal(self, line: _models.SignalLine) -> bool: ...

    @abc.abstractmethod
    def set_signal(self, line: _models.SignalLine, level: bool) -> None: ...

    @abc.abstractmethod
    def read_lines(self) -> _models.PinSnapshot: ...

    @abc.abstractmethod
    def set_line_callback(self, callback: LineCallback | None) -> None: ...


class PySerialTransport(SerialTransport):
    """SerialTransport over pyserial (device paths or pyserial URLs)"""

    def __init__(
        self,
        opts: _options.PortOptions,
        *,
        line_poll_interval: float = 0.02,
    ):
        self.port = opts.name
        self._opts = opts
        self._line_poll_interval = line_poll_interval
        self._pyserial: serial.SerialBase | None = None
        self._line_callback: LineCallback | None = None
        self._line_stop = threading.Event()
        self._line_thread: threading.Thread | None = None

    def __repr__(self) -> str:
        return f"PySerialTransport({self._opts.identity!s})"

    def open(self) -> None:
        if self.port.startswith("/") and not os.path.exists(self.port):
            message = "Serial port device does not exist"
            raise _exceptions.SerialOpenException(message, self.port)

        log.debug("Opening %s", self._opts.identity)
        try:
            pyserial = serial.serial_for_url(self.port, do_not_open=True)
            pyserial.baudrate = self._opts.baud
            pyserial.bytesize = self._opts.data_bits
            pyserial.parity = _PARITY[self._opts.parity]
            pyserial.stopbits = _STOP_BITS[self._opts.stop_bits]
            pyserial.timeout = None
            pyserial.write_timeout = self._opts.timeout
            pyserial.open()
        except ValueError as ex:
            message = f"Bad serial port settings ({ex})"
            raise _exceptions.SerialOpenException(message, self.port) from ex
        except OSError as ex:
            if ex.errno == errno.EBUSY:
                message = "Serial port busy (EBUSY)"
                raise _exceptions.SerialOpenBusy(message, self.port) from ex
            else:
                message = "Serial port open error"
                raise _exceptions.SerialOpenException(message, self.port) from ex

        self._pyserial = pyserial
        if self._line_callback:
            self._start_line_watch()

    def close(self) -> None:
        self._stop_line_watch()
        if self._pyserial and self._pyserial.is_open:
            self._pyserial.close()
            log.debug("Closed %s", self.port)

    @property
    def is_open(self) -> bool:
        return bool(self._pyserial and self._pyserial.is_open)

    def read_async(self, buffer: bytearray) -> int:
        # Unbounded: only data arrival or cancel_read() ends this read
        return self._read(buffer, timeout=None)

    def read_sync(self, buffer: bytearray, timeout: float) -> int:
        return self._read(buffer, timeout=timeout)

    def cancel_read(self) -> None:
        pyserial = self._pyserial
        if pyserial and pyserial.is_open and hasattr(pyserial, "cancel_read"):
            pyserial.cancel_read()

    def write(self, data: bytes) -> None:
        pyserial = self._require_open()
        try:
            pyserial.write(data)
            pyserial.flush()
        except serial.SerialTimeoutException as ex:
            message = "Serial write timeout"
            raise _exceptions.SerialWriteTimeout(message, self.port) from ex
        except OSError as ex:
            message = "Serial write error"
            raise _exceptions.SerialIoException(message, self.port) from ex

    def get_signal(self, line: _models.SignalLine) -> bool:
        pyserial = self._require_open()
        if line == "break":
            return bool(pyserial.break_condition)
        return bool(getattr(pyserial, line))

    def set_signal(self, line: _models.SignalLine, level: bool) -> None:
        pyserial = self._require_open()
        try:
            if line == "break":
                pyserial.break_condition = level
            else:
                setattr(pyserial, line, level)
        except OSError as ex:
            message = f"Can't set {line.upper()}"
            raise _exceptions.SerialIoException(message, self.port) from ex

    def read_lines(self) -> _models.PinSnapshot:
        pyserial = self._require_open()
        try:
            return _models.PinSnapshot(
                cts_holding=bool(pyserial.cts),
                dsr_holding=bool(pyserial.dsr),
                cd_holding=bool(pyserial.cd),
                ring_indicator=bool(pyserial.ri),
            )
        except OSError as ex:
            message = "Can't read line states"
            raise _exceptions.SerialIoException(message, self.port) from ex

    def set_line_callback(self, callback: LineCallback | None) -> None:
        self._line_callback = callback
        if callback is None:
            self._stop_line_watch()
        elif self.is_open:
            self._start_line_watch()

    def _require_open(self) -> serial.SerialBase:
        pyserial = self._pyserial
        if not (pyserial and pyserial.is_open):
            raise _exceptions.SerialIoClosed("Serial port is closed", self.port)
        return pyserial

    def _read(self, buffer: bytearray, timeout: float | None) -> int:
        pyserial = self._require_open()
        try:
            if pyserial.timeout != timeout:
                pyserial.timeout = timeout

            # Block for at least one byte, then grab all available
            incoming = pyserial.read(size=1)
            if incoming and len(buffer) > 1:
                waiting = pyserial.in_waiting
                if waiting > 0:
                    incoming += pyserial.read(size=min(waiting, len(buffer) - 1))
        except OSError as ex:
            message = "Serial read error"
            raise _exceptions.SerialIoException(message, self.port) from ex

        buffer[: len(incoming)] = incoming
        return len(incoming)

    def _start_line_watch(self) -> None:
        if self._line_thread and self._line_thread.is_alive():
            return
        self._line_stop = threading.Event()
        self._line_thread = threading.Thread(
            target=self._line_watch,
            args=(self._line_stop,),
            name=f"{self.port} lines",
            daemon=True,
        )
        self._line_thread.start()

    def _stop_line_watch(self) -> None:
        self._line_stop.set()
        thread, self._line_thread = self._line_thread, None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self._line_poll_interval * 5))

    def _line_watch(self, stop: threading.Event) -> None:
        log.debug("Starting thread")
        kinds: tuple[_models.PinChangeKind, ...] = ("cts", "dsr", "cd", "ring")
        try:
            last = self._line_levels()
            while not stop.wait(self._line_poll_interval):
                levels = self._line_levels()
                for kind, was, now in zip(kinds, last, levels):
                    callback = self._line_callback
                    if was != now and callback and not stop.is_set():
                        callback(kind)
                last = levels
        except OSError as ex:
            log.debug("%s: Stopped watching lines (%s)", self.port, ex)

    def _line_levels(self) -> tuple[bool, bool, bool, bool]:
        snap = self.read_lines()
        return (
            snap.cts_holding,
            snap.dsr_holding,
            snap.cd_holding,
            snap.ring_indicator,
        )
