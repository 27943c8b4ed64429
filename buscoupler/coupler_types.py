"""Bus coupler driver type definitions."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional

# Raw channel index reported by the coupler for "module has no data of this kind"
NO_CHANNEL = 0xFFFF


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_COOLDOWN = "reconnect_cooldown"


class PollPhase(IntEnum):
    """Poll cycle phases, visited round-robin in this order."""
    WATCHDOG_CHECK = 0
    DIGITAL_IN_READ = 1
    DIGITAL_OUT_WRITE = 2
    ANALOG_IN_READ = 3
    ANALOG_OUT_WRITE = 4


class Channel(IntEnum):
    """
    Request channel ids handed to the transport.

    The first five match the poll phases so a response can be routed back
    to the phase that issued it.
    """
    WATCHDOG = 0
    DIGITAL_IN = 1
    DIGITAL_OUT = 2
    ANALOG_IN = 3
    ANALOG_OUT = 4
    PARAMETER = 10
    REGISTER = 20
    VALUE = 30
    BOUNDARY = 40


class Condition(IntEnum):
    """Conditions reported through the driver's condition callback."""
    WATCHDOG_EXPIRED = 1
    TIMEOUT = 2
    CONNECTION_LOST = 3
    INVALID_MODULE_INDEX = 10
    NO_DIGITAL_INPUT_DATA = 11
    NO_DIGITAL_OUTPUT_DATA = 12
    NO_ANALOG_INPUT_DATA = 13
    NO_ANALOG_OUTPUT_DATA = 14
    INVALID_REGISTER_DATA = 15
    INVALID_DATA_SIZE = 16
    EMPTY_RESPONSE = 17
    VALUE_OUT_OF_RANGE = 20
    INVALID_ADDRESS_FORMAT = 30
    UNHANDLED = 40


class ChannelKind(Enum):
    """The four process image areas a module may expose."""
    DIGITAL_IN = "digital_in"
    DIGITAL_OUT = "digital_out"
    ANALOG_IN = "analog_in"
    ANALOG_OUT = "analog_out"

    @property
    def missing_condition(self) -> Condition:
        return _MISSING_CONDITIONS[self]


_MISSING_CONDITIONS = {
    ChannelKind.DIGITAL_IN: Condition.NO_DIGITAL_INPUT_DATA,
    ChannelKind.DIGITAL_OUT: Condition.NO_DIGITAL_OUTPUT_DATA,
    ChannelKind.ANALOG_IN: Condition.NO_ANALOG_INPUT_DATA,
    ChannelKind.ANALOG_OUT: Condition.NO_ANALOG_OUTPUT_DATA,
}


@dataclass(frozen=True)
class Module:
    """
    One discovered field module.

    Channel bases are offsets into the shared process image: bits for the
    digital areas, words for the analog areas. None means the module has no
    channel of that kind.
    """
    position: int
    hardware_id: int
    name: str
    digital_in_base: Optional[int] = None
    digital_out_base: Optional[int] = None
    analog_in_base: Optional[int] = None
    analog_out_base: Optional[int] = None

    def base_for(self, kind: ChannelKind) -> Optional[int]:
        return getattr(self, f"{kind.value}_base")


@dataclass(frozen=True)
class ControllerSummary:
    """Per-type process data counts as reported by the coupler."""
    module_count: int
    analog_in_count: int    # words
    analog_out_count: int   # words
    digital_in_count: int   # groups of 8 bits
    digital_out_count: int  # groups of 8 bits


@dataclass
class ProcessImageSnapshot:
    """Copy of the live process image handed out to callers."""
    digital_in: List[bool] = field(default_factory=list)
    digital_out: List[bool] = field(default_factory=list)
    analog_in: List[int] = field(default_factory=list)
    analog_out: List[int] = field(default_factory=list)
