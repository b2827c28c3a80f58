import contextlib
import logging
import threading

import pydantic

from steady_serial import _exceptions
from steady_serial import _fanout
from steady_serial import _manager
from steady_serial import _models
from steady_serial import _options
from steady_serial import _scanning
from steady_serial import _transport

log = logging.getLogger("steady_serial.registry")


class SerialPortRegistry(contextlib.AbstractContextManager):
    """Named SerialPortManager instances behind one set of events.

    Ports named in the configuration are registered up front; any other name
    gets a default-configured manager the first time it is connected. The
    registry's status_changed, data_received and pin_changed fan-outs see
    the events of every port.
    """

    def __init__(
        self,
        config: _options.RegistryOptions | None = None,
        *,
        transport_factory: _manager.TransportFactory = _transport.PySerialTransport,
        handler_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ):
        self._factory = transport_factory
        self._handler_timeout = handler_timeout
        self._logger = logger
        self._log = logger or log

        def fanout(category: str) -> _fanout.EventFanout:
            return _fanout.EventFanout(
                category, handler_timeout=handler_timeout, logger=logger
            )

        self.status_changed = fanout("status_changed")
        self.data_received = fanout("data_received")
        self.pin_changed = fanout("pin_changed")

        self._lock = threading.Lock()
        self._managers: dict[str, _manager.SerialPortManager] = {}
        self._disposed = False

        for name, opts in (config or _options.RegistryOptions()).ports.items():
            self.register(name, opts)

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SerialPortRegistry({self.port_names()})"

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._managers

    def register(
        self, name: str, opts: _options.PortOptions | None = None
    ) -> _manager.SerialPortManager | None:
        """Returns the manager for 'name', creating it if needed.

        A newly created manager whose options have auto_connect set starts
        connecting in the background. Returns None after close().
        """

        with self._lock:
            if self._disposed:
                return None
            if found := self._managers.get(name):
                if opts is not None and opts != found.options:
                    self._log.warning("%s: Already registered, kept as is", name)
                return found

            if opts is None:
                opts = _options.PortOptions(name=name)
            elif not opts.name:
                opts = opts.model_copy(update={"name": name})

            manager = _manager.SerialPortManager(
                opts,
                transport_factory=self._factory,
                handler_timeout=self._handler_timeout,
                logger=self._logger,
            )
            manager.status_changed.add(self.status_changed.dispatch)
            manager.data_received.add(self.data_received.dispatch)
            manager.pin_changed.add(self.pin_changed.dispatch)
            self._managers[name] = manager

        self._log.debug("%s: Registered (%s)", name, opts.identity)
        if opts.auto_connect:
            threading.Thread(
                target=manager.connect,
                name=f"{name} autoconnect",
                daemon=True,
            ).start()
        return manager

    def manager(self, name: str) -> _manager.SerialPortManager | None:
        with self._lock:
            return self._managers.get(name)

    def port_names(self) -> list[str]:
        with self._lock:
            return list(self._managers)

    def available_ports(self) -> list[str]:
        """Names of the serial ports present on the system (maybe none)"""

        try:
            return [port.name for port in _scanning.scan_serial_ports()]
        except _exceptions.SerialScanException as ex:
            self._log.error("Can't scan for serial ports (%s)", ex)
            return []

    def connect(self, name: str) -> bool:
        manager = self.register(name)
        return manager.connect() if manager else False

    def disconnect(self, name: str) -> None:
        if manager := self.manager(name):
            manager.disconnect()

    def disconnect_all(self) -> None:
        for name, manager in self._snapshot():
            try:
                manager.disconnect()
            except Exception:
                self._log.error("%s: Disconnect failed", name, exc_info=True)

    def is_connected(self, name: str) -> bool:
        manager = self.manager(name)
        return manager.is_connected if manager else False

    @pydantic.validate_call
    def send(self, name: str, data: bytes | str) -> bool:
        manager = self.manager(name)
        return manager.send(data) if manager else False

    def pin_states(self, name: str) -> _models.PinSnapshot:
        manager = self.manager(name)
        return manager.pin_states() if manager else _models.PinSnapshot()

    def get_dtr(self, name: str) -> bool:
        manager = self.manager(name)
        return manager.get_dtr() if manager else False

    def get_rts(self, name: str) -> bool:
        manager = self.manager(name)
        return manager.get_rts() if manager else False

    def set_dtr(self, name: str, enable: bool) -> None:
        if manager := self._known(name):
            manager.set_dtr(enable)

    def set_rts(self, name: str, enable: bool) -> None:
        if manager := self._known(name):
            manager.set_rts(enable)

    def set_break(self, name: str, enable: bool) -> None:
        if manager := self._known(name):
            manager.set_break(enable)

    def set_signal_configuration(
        self, name: str, dtr: bool, rts: bool, brk: bool = False
    ) -> None:
        if manager := self._known(name):
            manager.set_signal_configuration(dtr, rts, brk)

    def close(self) -> None:
        """Disconnects and disposes every port; later calls do nothing"""

        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            managers, self._managers = self._managers, {}

        for name, manager in managers.items():
            try:
                manager.close()
            except Exception:
                self._log.error("%s: Dispose failed", name, exc_info=True)

        for events in (self.status_changed, self.data_received, self.pin_changed):
            events.clear()
        self._log.debug("Disposed (%d ports)", len(managers))

    def _snapshot(self) -> list[tuple[str, _manager.SerialPortManager]]:
        with self._lock:
            return list(self._managers.items())

    def _known(self, name: str) -> _manager.SerialPortManager | None:
        if not (manager := self.manager(name)):
            self._log.warning("%s: Not a registered port", name)
        return manager
