import datetime
import msgspec
from typing import Literal

ConnectionState = Literal[
    "disconnected",
    "connecting",
    "connected",
    "error_detected",
    "reconnecting",
    "disposed",
]

PinChangeKind = Literal["cts", "dsr", "cd", "ring", "break"]

SignalLine = Literal["dtr", "rts", "break"]


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class PortIdentity(msgspec.Struct, frozen=True, order=True):
    """Transport settings; changing any of them means close and reopen"""

    name: str
    baud: int
    stop_bits: float
    parity: str
    data_bits: int

    def __str__(self):
        parity = self.parity[:1].upper()
        return f"{self.name}@{self.baud}/{self.data_bits}{parity}{self.stop_bits:g}"


class PinSnapshot(msgspec.Struct, frozen=True):
    """Device-driven line levels at one moment"""

    cts_holding: bool = False
    dsr_holding: bool = False
    cd_holding: bool = False
    ring_indicator: bool = False
    timestamp: datetime.datetime = msgspec.field(default_factory=_utcnow)


class ConnectionStatusChanged(msgspec.Struct, frozen=True):
    port_name: str
    is_connected: bool


class DataReceived(msgspec.Struct, frozen=True):
    port_name: str
    data: bytes


class PinChanged(msgspec.Struct, frozen=True):
    port_name: str
    kind: PinChangeKind
    pins: PinSnapshot
