"""Unit tests for steady_serial._transport."""

import errno
import termios
import threading
import time
import pytest

import steady_serial
from steady_serial import PortOptions, PySerialTransport


def read_exactly(transport, size: int, timeout=5.0) -> bytes:
    buffer = bytearray(256)
    out = b""
    deadline = time.monotonic() + timeout
    while len(out) < size and time.monotonic() < deadline:
        count = transport.read_sync(buffer, timeout=0.1)
        out += bytes(buffer[:count])
    return out


#
# Signature fault detection
#


def _winerror(code: int) -> OSError:
    ex = OSError(f"[WinError {code}]")
    ex.winerror = code
    return ex


def _chained(cause: BaseException) -> Exception:
    ex = steady_serial.SerialIoException("Serial read error", "COM3")
    ex.__cause__ = cause
    return ex


def _in_handler() -> Exception:
    try:
        raise OSError(errno.ECANCELED, "Operation canceled")
    except OSError:
        try:
            raise RuntimeError("wrapped without 'from'")
        except RuntimeError as ex:
            return ex


@pytest.mark.parametrize(
    "exc",
    [
        OSError(errno.ECANCELED, "Operation canceled"),
        _winerror(995),
        _winerror(1223),
        Exception("OperationAborted"),
        Exception("The operation was canceled."),
        Exception(
            "The I/O operation has been aborted because of either a thread"
            " exit or an application request."
        ),
        steady_serial.SerialAsyncReadFault("Async read aborted", "COM3"),
        _chained(OSError(errno.ECANCELED, "Operation canceled")),
        _chained(_winerror(995)),
        _in_handler(),
    ],
)
def test_signature_faults(exc):
    assert steady_serial.is_async_path_fault(exc)


@pytest.mark.parametrize(
    "exc",
    [
        OSError(errno.EIO, "Input/output error"),
        OSError(errno.ENOENT, "No such file or directory"),
        TimeoutError("timed out"),
        ValueError("Invalid baud rate"),
        _chained(OSError(errno.EIO, "Input/output error")),
        steady_serial.SerialIoClosed("Serial port is closed", "COM3"),
    ],
)
def test_other_errors(exc):
    assert not steady_serial.is_async_path_fault(exc)


def test_cyclic_chain():
    a, b = Exception("a"), Exception("b")
    a.__context__, b.__context__ = b, a
    assert not steady_serial.is_async_path_fault(a)


#
# PySerialTransport on a pseudo-terminal
#


def test_open_read_write(pty_serial):
    transport = PySerialTransport(PortOptions(name=pty_serial.path, baud=57600))
    assert not transport.is_open
    transport.open()
    try:
        assert transport.is_open
        tcattr = termios.tcgetattr(pty_serial.simulated.fileno())
        iflag, oflag, cflag, lflag, ispeed, ospeed, cc = tcattr
        assert ispeed == termios.B57600

        pty_serial.control.write(b"TO SERIAL")
        assert read_exactly(transport, 9) == b"TO SERIAL"

        transport.write(b"FROM SERIAL")
        assert pty_serial.control.read(256) == b"FROM SERIAL"
    finally:
        transport.close()
    assert not transport.is_open


def test_read_sync_timeout(pty_serial):
    transport = PySerialTransport(PortOptions(name=pty_serial.path))
    transport.open()
    try:
        start = time.monotonic()
        assert transport.read_sync(bytearray(16), timeout=0.05) == 0
        assert time.monotonic() - start >= 0.04
    finally:
        transport.close()


def test_read_async(pty_serial):
    transport = PySerialTransport(PortOptions(name=pty_serial.path))
    transport.open()
    try:
        buffer = bytearray(64)
        pty_serial.control.write(b"ASYNC")
        out = b""
        while len(out) < 5:
            count = transport.read_async(buffer)
            out += bytes(buffer[:count])
        assert out == b"ASYNC"

        # an unbounded read only ends when cancelled
        threading.Timer(0.05, transport.cancel_read).start()
        assert transport.read_async(buffer) == 0
    finally:
        transport.close()


def test_closed_transport(pty_serial):
    transport = PySerialTransport(PortOptions(name=pty_serial.path))
    with pytest.raises(steady_serial.SerialIoClosed):
        transport.read_sync(bytearray(4), timeout=0.01)
    with pytest.raises(steady_serial.SerialIoClosed):
        transport.write(b"x")
    with pytest.raises(steady_serial.SerialIoClosed):
        transport.set_signal("dtr", True)
    transport.cancel_read()  # harmless
    transport.close()  # harmless


def test_missing_device():
    opts = PortOptions(name="/dev/steady-serial-does-not-exist")
    with pytest.raises(steady_serial.SerialOpenException):
        PySerialTransport(opts).open()


#
# PySerialTransport on pyserial's loopback URL
#


def test_loopback_signals_and_lines():
    transport = PySerialTransport(
        PortOptions(name="loop://", parity="even", stop_bits=2),
        line_poll_interval=0.005,
    )
    changes = []
    transport.set_line_callback(changes.append)
    transport.open()
    try:
        transport.write(b"echo")
        assert read_exactly(transport, 4) == b"echo"

        transport.set_signal("rts", False)
        transport.set_signal("dtr", False)
        assert not transport.get_signal("rts")
        assert not transport.read_lines().cts_holding  # loop: CTS follows RTS

        time.sleep(0.05)  # let the poller see the drop
        changes.clear()
        transport.set_signal("rts", True)
        deadline = time.monotonic() + 5.0
        while "cts" not in changes and time.monotonic() < deadline:
            time.sleep(0.005)
        assert "cts" in changes
        assert transport.read_lines().cts_holding

        transport.set_signal("break", True)
        assert transport.get_signal("break")
    finally:
        transport.close()

    transport.set_line_callback(None)
