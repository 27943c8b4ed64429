"""Poll timer and controller watchdog handling for the bus coupler driver."""

import threading
import time
from typing import Callable, Optional

from .coupler_conditions import ExceptionMapper
from .coupler_registers import CTRL_ON, REGISTER_MAP, RegisterAccess
from .coupler_types import Channel, Condition, PollPhase
from .coupler_utils import TIME_UNIT_MS
from .logger import get_logger

logger, _ = get_logger("buscoupler.watchdog")

# Watchdog-phase response the coupler sends once its watchdog has expired
WATCHDOG_EXPIRED_PATTERN = b"\x00\xc2"

INITIAL_DELAY_MS = 100


class PeriodicTimer(threading.Thread):
    """
    Calls ``callback`` every ``period_ms`` milliseconds on its own thread.

    The period can be changed while running; the next tick is rescheduled
    from the moment of the change. Exceptions raised by the callback are
    logged and do not stop the timer.
    """

    def __init__(self, callback: Callable[[], None], period_ms: int,
                 initial_delay_ms: int = INITIAL_DELAY_MS, name: str = "CouplerPollTimer"):
        super().__init__(daemon=True, name=name)
        self.callback = callback
        self.period_ms = period_ms
        self.initial_delay_ms = initial_delay_ms
        self._stop_event = threading.Event()
        self._changed = threading.Event()

    def change(self, period_ms: int) -> None:
        self.period_ms = period_ms
        self._changed.set()

    def stop(self, timeout: float = 2.0) -> None:
        """Stops the timer. Joins unless called from the timer thread itself."""
        self._stop_event.set()
        self._changed.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self):
        next_tick = time.monotonic() + self.initial_delay_ms / 1000.0

        while not self._stop_event.is_set():
            remaining = next_tick - time.monotonic()
            if remaining > 0:
                if self._changed.wait(remaining):
                    self._changed.clear()
                    next_tick = time.monotonic() + self.period_ms / 1000.0
                    continue

            if self._stop_event.is_set():
                break

            cycle_start_time = time.monotonic()
            try:
                self.callback()
            except Exception:  # pylint: disable=broad-except
                logger.exception("(FAIL) Poll timer callback raised")

            next_tick += self.period_ms / 1000.0
            # Skip missed ticks instead of bursting to catch up
            if next_tick < cycle_start_time:
                next_tick = cycle_start_time + self.period_ms / 1000.0


TimerFactory = Callable[[Callable[[], None], int], PeriodicTimer]


class WatchdogController:
    """
    Keeps the coupler's watchdog alive by driving the poll timer.

    The refresh interval is half the watchdog threshold when no poll period
    is configured, else the (quantized) poll period. Every tick of the timer
    runs one poll cycle step; the watchdog phase of that cycle is what
    refreshes the watchdog on the coupler.
    """

    def __init__(self, mapper: ExceptionMapper, on_tick: Callable[[], None],
                 timer_factory: Optional[TimerFactory] = None):
        self.mapper = mapper
        self.on_tick = on_tick
        self.timer_factory = timer_factory or PeriodicTimer
        self.timer: Optional[PeriodicTimer] = None
        self.threshold_ms = 0
        self._lock = threading.Lock()

    def interval_ms(self, poll_period_ms: int) -> int:
        if poll_period_ms == 0:
            return max(self.threshold_ms // 2, TIME_UNIT_MS)
        return poll_period_ms

    def read_threshold(self, access: RegisterAccess) -> int:
        self.threshold_ms = access.read_word(REGISTER_MAP["watchdog_threshold"].address)
        return self.threshold_ms

    def reset(self, access: RegisterAccess, poll_period_ms: int) -> int:
        """
        Switches the coupler to "reset watchdog on every access" and (re)arms
        the poll timer. An armed timer is re-periodized, never duplicated.

        Returns:
            The timer period in milliseconds

        Raises:
            TransportError: if the coupler rejects the register access
        """
        if poll_period_ms == 0:
            self.read_threshold(access)
        period_ms = self.interval_ms(poll_period_ms)

        access.write_word(REGISTER_MAP["watchdog_reset"].address, CTRL_ON, channel=Channel.WATCHDOG)

        with self._lock:
            if self.timer is not None and not self.timer.stopped:
                self.timer.change(period_ms)
            else:
                self.timer = self.timer_factory(self.on_tick, period_ms)
                self.timer.start()
        logger.info("Watchdog armed, poll timer period %s ms", period_ms)
        return period_ms

    def stop(self) -> None:
        with self._lock:
            timer, self.timer = self.timer, None
        if timer is not None:
            timer.stop()

    @property
    def armed(self) -> bool:
        return self.timer is not None and not self.timer.stopped

    def check_response(self, data: bytes) -> bool:
        """
        Inspects a watchdog-phase response.

        Returns:
            True if the coupler reports an expired watchdog; the timer has
            then been stopped and WATCHDOG_EXPIRED reported
        """
        if data[:2] != WATCHDOG_EXPIRED_PATTERN:
            return False
        self.stop()
        self.mapper.report(Condition.WATCHDOG_EXPIRED, phase=PollPhase.WATCHDOG_CHECK,
                           channel=Channel.WATCHDOG)
        return True
