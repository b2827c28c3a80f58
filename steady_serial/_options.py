from typing import Literal

import pydantic

from steady_serial import _models

ReadStrategyType = Literal[
    "async_only",
    "sync_only",
    "async_with_sync_fallback",
    "sync_with_async_promotion",
]

SUPPORTED_BAUD_RATES = (
    110, 300, 600, 1200, 2400, 4800, 9600, 14400, 19200, 28800,
    38400, 56000, 57600, 115200, 128000, 230400, 256000, 460800,
    921600, 1000000, 1152000, 1500000, 2000000, 2500000, 3000000,
)  # fmt: skip

STOP_BITS = (1, 1.5, 2)


class ReadStrategyOptions(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    mode: ReadStrategyType = "async_with_sync_fallback"
    sync_fallback: bool = True
    sync_timeout: float = pydantic.Field(default=0.1, gt=0)
    async_retries: int = pydantic.Field(default=1, ge=1)
    promotion_threshold: int = pydantic.Field(default=10, ge=1)
    log_fallback_events: bool = True


class PortOptions(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    name: str = ""
    baud: int = pydantic.Field(default=115200, gt=0)
    stop_bits: float = 1
    parity: Literal["none", "even", "odd", "mark", "space"] = "none"
    data_bits: Literal[5, 6, 7, 8] = 8

    timeout: float = pydantic.Field(default=5.0, gt=0)
    reconnect_delay: float = pydantic.Field(default=1.0, ge=0)
    watchdog_interval: float = pydantic.Field(default=1.0, gt=0)
    reader_join_timeout: float = pydantic.Field(default=5.0, ge=0)
    auto_connect: bool = False

    read_strategy: ReadStrategyOptions = ReadStrategyOptions()

    dtr: bool = False
    rts: bool = False
    initial_break: bool = False
    auto_dtr_on_connect: bool = False
    auto_rts_on_connect: bool = False

    monitor_pins: bool = False
    pin_debounce: float = pydantic.Field(default=0.05, ge=0)

    @pydantic.field_validator("stop_bits")
    @classmethod
    def _check_stop_bits(cls, value: float | int) -> float | int:
        if value not in STOP_BITS:
            raise ValueError(f"stop_bits must be one of {STOP_BITS}")
        return value

    @property
    def identity(self) -> _models.PortIdentity:
        return _models.PortIdentity(
            name=self.name,
            baud=self.baud,
            stop_bits=float(self.stop_bits),
            parity=self.parity,
            data_bits=self.data_bits,
        )


class RegistryOptions(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    ports: dict[str, PortOptions] = {}
