"""
Condition reporting for the bus coupler driver.

Local validation failures and transport faults are translated into the
closed Condition taxonomy and delivered, one at a time, to a single
caller-supplied callback.
"""

import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .coupler_transport import TransportError, TransportFault
from .coupler_types import Channel, Condition, PollPhase
from .logger import get_logger

logger, _ = get_logger("buscoupler.conditions", use_buffer=True)


class CouplerError(Exception):
    """Raised by connect() when the handshake with the coupler fails."""
    pass


class HostUnreachableError(CouplerError, ConnectionError):
    """The coupler did not answer, not even after the boot retry."""
    pass


@dataclass(frozen=True)
class CouplerCondition:
    kind: Condition
    module: Optional[int] = None
    phase: Optional[PollPhase] = None
    channel: Optional[Channel] = None
    detail: str = ""

    def __str__(self) -> str:
        parts = [self.kind.name]
        if self.module is not None:
            parts.append(f"module={self.module}")
        if self.phase is not None:
            parts.append(f"phase={self.phase.name}")
        if self.channel is not None:
            parts.append(f"channel={self.channel.name}")
        if self.detail:
            parts.append(self.detail)
        return " ".join(parts)


ConditionCallback = Callable[[CouplerCondition], None]

# Conditions that always force a disconnect before they are reported
_CONNECTION_CONDITIONS = (Condition.TIMEOUT, Condition.CONNECTION_LOST)


def translate_fault(channel: Channel, fault: int) -> Condition:
    """Maps a transport fault on a channel to a condition."""
    if fault == TransportFault.TIMEOUT:
        return Condition.TIMEOUT
    if fault in (TransportFault.CONNECTION_LOST, TransportFault.NOT_CONNECTED):
        return Condition.CONNECTION_LOST
    if fault in (TransportFault.ILLEGAL_DATA_VALUE, TransportFault.ILLEGAL_DATA_ADDRESS):
        if channel == Channel.REGISTER:
            return Condition.INVALID_REGISTER_DATA
        return Condition.INVALID_DATA_SIZE
    return Condition.UNHANDLED


class ExceptionMapper:
    """
    Translates failures into conditions and delivers them to the callback.

    Delivery is serialized so conditions arrive in the order they were raised.
    The lock is reentrant because callbacks commonly call back into the driver
    (for example to disconnect), which may report again.
    """

    def __init__(self, on_condition: Optional[ConditionCallback] = None,
                 disconnect: Optional[Callable[[], None]] = None,
                 is_connected: Optional[Callable[[], bool]] = None):
        self.on_condition = on_condition
        self._disconnect = disconnect
        self._is_connected = is_connected
        self._delivery_lock = threading.RLock()

    def bind(self, disconnect: Callable[[], None], is_connected: Callable[[], bool]) -> None:
        self._disconnect = disconnect
        self._is_connected = is_connected

    def report(self, kind: Condition, module: Optional[int] = None,
               phase: Optional[PollPhase] = None, channel: Optional[Channel] = None,
               detail: str = "") -> CouplerCondition:
        """Delivers a condition to the callback. Never raises."""
        condition = CouplerCondition(kind, module, phase, channel, detail)
        if kind in _CONNECTION_CONDITIONS or kind == Condition.WATCHDOG_EXPIRED:
            logger.error("(FAIL) %s", condition)
        else:
            logger.warning("%s", condition)

        with self._delivery_lock:
            if self.on_condition is None:
                return condition
            try:
                self.on_condition(condition)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Condition callback raised while handling %s", condition.kind.name)
        return condition

    def report_transport(self, error: TransportError, module: Optional[int] = None,
                         phase: Optional[PollPhase] = None) -> Optional[CouplerCondition]:
        """
        Reports a transport failure.

        Timeout and connection loss disconnect first, so observers never see a
        connected driver after either condition. Faults arriving after the
        driver is already disconnected belong to the torn-down session and
        are only logged.
        """
        if self._is_connected is not None and not self._is_connected():
            logger.debug("Ignoring transport fault after disconnect: %s", error)
            return None

        kind = translate_fault(error.channel, error.fault)
        if kind in _CONNECTION_CONDITIONS and self._disconnect is not None:
            self._disconnect()
        return self.report(kind, module=module, phase=phase, channel=Channel(error.channel),
                           detail=str(error))
