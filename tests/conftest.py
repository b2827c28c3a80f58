import collections
import contextlib
import io
import json
import ok_logging_setup
import os
import pty
import pytest
import threading
import time
import typing

import msgspec

import steady_serial

ok_logging_setup.install(
    {
        "OK_LOGGING_LEVEL": "steady_serial=DEBUG,WARNING",
        "OK_LOGGING_OUTPUT": "stdout",
    }
)


class PseudoTtySerial(typing.NamedTuple):
    path: str
    control: io.FileIO
    simulated: io.FileIO


@pytest.fixture
def pty_serial():
    with contextlib.ExitStack() as cleanup:
        ctrl_fd, sim_fd = pty.openpty()
        path = os.ttyname(sim_fd)
        ctrl = cleanup.enter_context(os.fdopen(ctrl_fd, "r+b", buffering=0))
        sim = cleanup.enter_context(os.fdopen(sim_fd, "r+b", buffering=0))
        yield PseudoTtySerial(path=path, control=ctrl, simulated=sim)


@pytest.fixture
def set_scan_override(monkeypatch, tmp_path):
    path = tmp_path / "scan.json"
    path.write_text("{}")
    monkeypatch.setenv("STEADY_SERIAL_SCAN_OVERRIDE", str(path))

    def set_ports(ports: dict[str, dict[str, str]]):
        path.write_text(json.dumps(ports))

    return set_ports


class FakeTransport(steady_serial.SerialTransport):
    """Scripted in-memory transport.

    feed() queues bytes for whichever read path asks next; fault_async() and
    fault_sync() queue exceptions that the matching path raises before it
    looks at data. read_async() blocks until data, cancel_read() or close();
    read_sync() gives up after its timeout and returns 0.
    """

    def __init__(self, opts: steady_serial.PortOptions):
        self.port = opts.name
        self.opts = opts
        self.fail_open: Exception | None = None
        self.write_error: Exception | None = None
        self.signal_error: Exception | None = None
        self.writes: list[bytes] = []
        self.signal_writes: list[tuple[str, bool]] = []
        self.signals = {"dtr": False, "rts": False, "break": False}
        self.lines = steady_serial.PinSnapshot()
        self.line_callback = None
        self.open_count = 0
        self.close_count = 0
        self.async_reads = 0
        self.sync_reads = 0
        self._open = False
        self._cancelled = False
        self._cond = threading.Condition()
        self._incoming: collections.deque[bytes] = collections.deque()
        self._async_faults: collections.deque[Exception] = collections.deque()
        self._sync_faults: collections.deque[Exception] = collections.deque()

    def feed(self, *chunks: bytes):
        with self._cond:
            self._incoming.extend(chunks)
            self._cond.notify_all()

    def fault_async(self, exc: Exception, times: int = 1):
        with self._cond:
            self._async_faults.extend([exc] * times)
            self._cond.notify_all()

    def fault_sync(self, exc: Exception, times: int = 1):
        with self._cond:
            self._sync_faults.extend([exc] * times)
            self._cond.notify_all()

    def change_line(self, kind: steady_serial.PinChangeKind, **levels: bool):
        self.lines = msgspec.structs.replace(self.lines, **levels)
        if self.line_callback:
            self.line_callback(kind)

    def open(self):
        self.open_count += 1
        if self.fail_open:
            raise self.fail_open
        self._open = True

    def close(self):
        with self._cond:
            self.close_count += 1
            self._open = False
            self._cond.notify_all()

    @property
    def is_open(self) -> bool:
        return self._open

    def read_async(self, buffer: bytearray) -> int:
        self.async_reads += 1
        with self._cond:
            self._cond.wait_for(lambda: self._async_faults or self._ready())
            if self._async_faults:
                raise self._async_faults.popleft()
            return self._take(buffer)

    def read_sync(self, buffer: bytearray, timeout: float) -> int:
        self.sync_reads += 1
        with self._cond:
            self._cond.wait_for(
                lambda: self._sync_faults or self._ready(), timeout=timeout
            )
            if self._sync_faults:
                raise self._sync_faults.popleft()
            return self._take(buffer)

    def cancel_read(self):
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def write(self, data: bytes):
        self._require_open()
        if self.write_error:
            raise self.write_error
        self.writes.append(bytes(data))

    def get_signal(self, line: steady_serial.SignalLine) -> bool:
        self._require_open()
        if self.signal_error:
            raise self.signal_error
        return self.signals[line]

    def set_signal(self, line: steady_serial.SignalLine, level: bool):
        self._require_open()
        if self.signal_error:
            raise self.signal_error
        self.signals[line] = level
        self.signal_writes.append((line, level))

    def read_lines(self) -> steady_serial.PinSnapshot:
        self._require_open()
        return self.lines

    def set_line_callback(self, callback):
        self.line_callback = callback

    def _require_open(self):
        if not self._open:
            raise steady_serial.SerialIoClosed("Fake port closed", self.port)

    def _ready(self) -> bool:
        return bool(self._incoming or self._cancelled or not self._open)

    def _take(self, buffer: bytearray) -> int:
        if self._cancelled:
            self._cancelled = False
            return 0
        if not self._incoming:
            return 0
        chunk = self._incoming.popleft()
        if len(chunk) > len(buffer):
            chunk, rest = chunk[: len(buffer)], chunk[len(buffer) :]
            self._incoming.appendleft(rest)
        buffer[: len(chunk)] = chunk
        return len(chunk)


class FakeTransportFactory:
    def __init__(self):
        self.created: list[FakeTransport] = []
        self.fail_open: Exception | None = None

    def __call__(self, opts: steady_serial.PortOptions) -> FakeTransport:
        transport = FakeTransport(opts)
        transport.fail_open = self.fail_open
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def fake_transport():
    return FakeTransport(steady_serial.PortOptions(name="/dev/fake"))


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def wait_until():
    def wait(predicate: typing.Callable[[], typing.Any], timeout=5.0) -> bool:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                return False
            time.sleep(0.005)
        return True

    return wait
