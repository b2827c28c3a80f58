"""
Self-healing serial port connections (PySerial wrapper) with an adaptive
read path, a reconnecting watchdog, pin monitoring, and event fan-out.
"""

from beartype.claw import beartype_this_package as _beartype_me

# ruff: noqa: E402
_beartype_me()

from steady_serial._exceptions import (
    SerialAsyncReadFault,
    SerialException,
    SerialIoClosed,
    SerialIoException,
    SerialOpenBusy,
    SerialOpenException,
    SerialScanException,
    SerialWriteTimeout,
)

from steady_serial._fanout import EventFanout
from steady_serial._manager import SerialPortManager

from steady_serial._models import (
    ConnectionState,
    ConnectionStatusChanged,
    DataReceived,
    PinChanged,
    PinChangeKind,
    PinSnapshot,
    PortIdentity,
    SignalLine,
)

from steady_serial._options import (
    SUPPORTED_BAUD_RATES,
    PortOptions,
    ReadStrategyOptions,
    ReadStrategyType,
    RegistryOptions,
)

from steady_serial._pins import PinMonitor
from steady_serial._registry import SerialPortRegistry
from steady_serial._scanning import SerialPort, scan_serial_ports
from steady_serial._strategy import AdaptiveReader, ReadStrategyState

from steady_serial._transport import (
    PySerialTransport,
    SerialTransport,
    is_async_path_fault,
)

__all__ = [n for n in dir() if not n.startswith("_")]
