"""
BusCouplerMaster: caller-facing driver for one bus coupler.

Typical use::

    master = BusCouplerMaster(on_condition=print)
    master.poll_period_ms = 50
    master.connect("192.168.100.1")
    master.write_digital_outputs(1, 0, [True])
    print(master.read_digital_inputs(0, 0, 8))
    master.close()
"""

from typing import Callable, List, Optional, Sequence, Tuple

from .coupler_conditions import ConditionCallback, ExceptionMapper
from .coupler_config import BusCouplerConfig
from .coupler_connection import ConnectionManager, TransportFactory
from .coupler_discovery import NameResolver
from .coupler_memory import IOBufferStore
from .coupler_registers import (
    MODULE_REGISTER_READ,
    MODULE_REGISTER_SELECT,
    MODULE_REGISTER_WRITE,
    CouplerInfo,
    ModuleInfo,
    RegisterAccess,
    split_register_value,
)
from .coupler_transport import ModbusTransport, TransportError
from .coupler_types import (
    Channel,
    Condition,
    ConnectionState,
    ControllerSummary,
    Module,
    ProcessImageSnapshot,
)
from .coupler_utils import bytes_to_unsigned_words, quantize_period_ms, words_to_bytes
from .logger import get_logger

logger, _ = get_logger("buscoupler.master")


class BusCouplerMaster:  # pylint: disable=too-many-public-methods
    """
    Driver facade: connection lifecycle, module list, dual-mode process data
    access, module configuration registers and controller information.

    With ``poll_period_ms == 0`` (the default) every read/write talks to the
    coupler directly. A non-zero period starts the background poll cycle and
    reads/writes go through the process image instead.
    """

    def __init__(self, config: Optional[BusCouplerConfig] = None,
                 on_condition: Optional[ConditionCallback] = None,
                 transport_factory: Optional[TransportFactory] = None,
                 resolver: Optional[NameResolver] = None,
                 dispatcher_factory: Optional[Callable[[], object]] = None,
                 timer_factory=None):
        self.config = config or BusCouplerConfig()
        self.config.validate()

        if transport_factory is None:
            def transport_factory(host: str, port: int) -> ModbusTransport:
                return ModbusTransport(host, port, self.config.timeout_ms, self.config.unit)

        self.mapper = ExceptionMapper(on_condition)
        self.store = IOBufferStore(self.mapper)
        self.store.poll_period_ms = quantize_period_ms(self.config.poll_period_ms)
        self.connection = ConnectionManager(
            self.mapper,
            self.store,
            transport_factory=transport_factory,
            resolver=resolver,
            reconnect_cooldown_s=self.config.reconnect_cooldown_s,
            boot_retry_delay_s=self.config.boot_retry_delay_s,
            max_modules=self.config.max_modules,
            dispatcher_factory=dispatcher_factory,
            timer_factory=timer_factory,
        )
        self.info = CouplerInfo(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------
    @property
    def on_condition(self) -> Optional[ConditionCallback]:
        return self.mapper.on_condition

    @on_condition.setter
    def on_condition(self, callback: Optional[ConditionCallback]):
        self.mapper.on_condition = callback

    def connect(self, host: Optional[str] = None, port: Optional[int] = None) -> None:
        """Connects to ``host:port``, defaulting to the configured endpoint."""
        self.connection.connect(host or self.config.host, port or self.config.port)

    def disconnect(self) -> None:
        self.connection.disconnect()

    def close(self) -> None:
        self.connection.close()

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def registers(self) -> Optional[RegisterAccess]:
        return self.connection.registers

    @property
    def summary(self) -> Optional[ControllerSummary]:
        return self.connection.summary

    @property
    def modules(self) -> Tuple[Module, ...]:
        return self.connection.modules

    def module_info(self, module: int) -> ModuleInfo:
        return ModuleInfo(self, module)

    def snapshot(self) -> ProcessImageSnapshot:
        return self.store.snapshot()

    # ------------------------------------------------------------------
    # Poll period and watchdog
    # ------------------------------------------------------------------
    @property
    def poll_period_ms(self) -> int:
        return self.store.poll_period_ms

    @poll_period_ms.setter
    def poll_period_ms(self, period_ms: int):
        self.store.poll_period_ms = quantize_period_ms(period_ms)
        if self.is_connected:
            self.watchdog_reset()

    def watchdog_reset(self) -> bool:
        """
        Arms the coupler watchdog and (re)starts the poll timer. Called by
        connect() when a poll period is set; call it yourself to keep the
        watchdog alive in direct mode.
        """
        return self.connection.watchdog_reset()

    # ------------------------------------------------------------------
    # Process data
    # ------------------------------------------------------------------
    def read_digital_inputs(self, module: int, offset: int, size: int) -> Optional[List[bool]]:
        return self.store.read_digital_inputs(module, offset, size)

    def read_digital_outputs(self, module: int, offset: int, size: int) -> Optional[List[bool]]:
        return self.store.read_digital_outputs(module, offset, size)

    def write_digital_outputs(self, module: int, offset: int, values: Sequence[bool]) -> bool:
        return self.store.write_digital_outputs(module, offset, values)

    def read_analog_inputs(self, module: int, offset: int, size: int) -> Optional[List[int]]:
        return self.store.read_analog_inputs(module, offset, size)

    def read_analog_outputs(self, module: int, offset: int, size: int) -> Optional[List[int]]:
        return self.store.read_analog_outputs(module, offset, size)

    def write_analog_outputs(self, module: int, offset: int, values: Sequence[int]) -> bool:
        return self.store.write_analog_outputs(module, offset, values)

    # ------------------------------------------------------------------
    # Module configuration registers
    # ------------------------------------------------------------------
    def _register_transport(self, module: int):
        transport = self.connection.transport
        if not self.is_connected or transport is None:
            self.mapper.report(Condition.CONNECTION_LOST, module=module, channel=Channel.REGISTER,
                               detail="not connected")
            return None
        if module < 0 or module >= len(self.modules):
            self.mapper.report(Condition.INVALID_MODULE_INDEX, module=module,
                               channel=Channel.REGISTER)
            return None
        return transport

    def read_register(self, module: int, register: int) -> Optional[List[int]]:
        """
        Reads a module configuration register.

        Returns:
            [low_word, high_word], or None on failure
        """
        transport = self._register_transport(module)
        if transport is None:
            return None
        try:
            data = transport.read_write_registers(
                Channel.REGISTER,
                MODULE_REGISTER_READ,
                2,
                MODULE_REGISTER_SELECT,
                words_to_bytes([module, register]),
            )
        except TransportError as te:
            self.mapper.report_transport(te, module=module)
            return None
        if not data or len(data) != 4:
            self.mapper.report(Condition.EMPTY_RESPONSE, module=module, channel=Channel.REGISTER)
            return None
        high, low = bytes_to_unsigned_words(data)
        return [low, high]

    def write_register(self, module: int, register: int, values: Sequence[int]) -> bool:
        """Writes a module configuration register given as [low_word, high_word]."""
        if len(values) != 2:
            self.mapper.report(Condition.INVALID_DATA_SIZE, module=module, channel=Channel.REGISTER,
                               detail=f"expected 2 words, got {len(values)}")
            return False
        transport = self._register_transport(module)
        if transport is None:
            return False
        payload = words_to_bytes([module, register] + split_register_value(list(values)))
        try:
            transport.write_multiple_registers(Channel.REGISTER, MODULE_REGISTER_WRITE, payload)
        except TransportError as te:
            self.mapper.report_transport(te, module=module)
            return False
        return True

    def __repr__(self) -> str:
        return (
            f"BusCouplerMaster(host='{self.connection.host or self.config.host}', "
            f"state={self.state.value}, modules={len(self.modules)})"
        )
