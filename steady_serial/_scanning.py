import dataclasses
import json
import logging
import natsort
import os
import pathlib
from serial.tools import list_ports
from serial.tools import list_ports_common

from steady_serial import _exceptions

log = logging.getLogger("steady_serial.scanning")

OVERRIDE_ENV = "STEADY_SERIAL_SCAN_OVERRIDE"


@dataclasses.dataclass(frozen=True)
class SerialPort:
    """A serial port the system reports, with whatever attributes it has"""

    name: str
    attr: dict[str, str]

    def __str__(self):
        if desc := self.attr.get("description"):
            return f"{self.name} ({desc})"
        return self.name


def scan_serial_ports() -> list[SerialPort]:
    """Returns the serial ports available on this system, naturally sorted.

    If $STEADY_SERIAL_SCAN_OVERRIDE names a JSON file of
    {port: {attr: value}}, that list is used instead of asking the system.
    """

    if path := os.getenv(OVERRIDE_ENV):
        out = [SerialPort(name=n, attr=a) for n, a in _load_override(path)]
        log.debug("$%s (%s): %d ports", OVERRIDE_ENV, path, len(out))
    else:
        try:
            found = list_ports.comports()
        except OSError as ex:
            raise _exceptions.SerialScanException("Can't list ports") from ex
        out = [_from_pyserial(p) for p in found]

    out.sort(key=natsort.natsort_keygen(key=lambda p: p.name, alg=natsort.ns.P))
    log.debug("Found %d ports", len(out))
    return out


def _load_override(path: str) -> list[tuple[str, dict[str, str]]]:
    try:
        data = json.loads(pathlib.Path(path).read_text())
        if not isinstance(data, dict):
            raise ValueError("Override is not a JSON object")
        for name, attr in data.items():
            if not isinstance(attr, dict) or not all(
                isinstance(v, str) for v in attr.values()
            ):
                raise ValueError(f"Bad attributes for {name!r}")
    except (OSError, ValueError) as ex:
        message = f"Can't read ${OVERRIDE_ENV} {path}"
        raise _exceptions.SerialScanException(message) from ex

    return list(data.items())


def _from_pyserial(info: list_ports_common.ListPortInfo) -> SerialPort:
    missing = (None, "", "n/a")
    attr = {k.lower(): str(v) for k, v in vars(info).items() if v not in missing}
    return SerialPort(name=info.device, attr=attr)
