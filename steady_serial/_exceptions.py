"""Exception hierarchy for steady_serial"""


class SerialException(OSError):
    def __init__(
        self,
        message: str,
        port: str | None = None,
    ):
        super().__init__(f"{port}: {message}" if port else message)
        self.port = port


class SerialIoException(SerialException):
    pass


class SerialIoClosed(SerialIoException):
    pass


class SerialWriteTimeout(SerialIoException):
    pass


class SerialAsyncReadFault(SerialIoException):
    """The async read path aborted without anyone asking it to"""


class SerialOpenException(SerialException):
    pass


class SerialOpenBusy(SerialOpenException):
    pass


class SerialScanException(SerialException):
    pass
