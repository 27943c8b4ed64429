"""
Poll cycle for the bus coupler driver.

Each timer tick advances a five phase round-robin:

    WATCHDOG_CHECK -> DIGITAL_IN_READ -> DIGITAL_OUT_WRITE
        -> ANALOG_IN_READ -> ANALOG_OUT_WRITE -> WATCHDOG_CHECK ...

At most one request is outstanding. A tick that finds the previous request
still pending counts a frame error instead of sending; four frame errors
count one connection error, and four connection errors are handled like a
transport timeout.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Tuple

from .coupler_memory import IOBufferStore
from .coupler_registers import (
    ANALOG_IN_BASE_ADDRESS,
    ANALOG_OUT_BASE_ADDRESS,
    DIGITAL_BASE_ADDRESS,
    REGISTER_MAP,
)
from .coupler_transport import TransportError, TransportFault
from .coupler_types import Channel, ChannelKind, PollPhase
from .coupler_utils import bytes_to_words, pack_bits, unpack_bits, words_to_bytes
from .logger import get_logger

logger, _ = get_logger("buscoupler.poll")

MAX_FRAME_ERRORS = 3
MAX_CONNECTION_ERRORS = 3

_PHASE_BUFFERS = {
    PollPhase.DIGITAL_IN_READ: ChannelKind.DIGITAL_IN,
    PollPhase.DIGITAL_OUT_WRITE: ChannelKind.DIGITAL_OUT,
    PollPhase.ANALOG_IN_READ: ChannelKind.ANALOG_IN,
    PollPhase.ANALOG_OUT_WRITE: ChannelKind.ANALOG_OUT,
}

Request = Callable[[], Optional[bytes]]


class ExecutorDispatcher:
    """Runs poll requests one at a time on a dedicated worker thread."""

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="CouplerPoll")

    def submit(self, fn: Callable, *args) -> None:
        self._executor.submit(fn, *args)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


class PollCycle:  # pylint: disable=too-many-instance-attributes
    """
    The poll state machine of one connection.

    All state lives under the buffer store's lock, the same lock that guards
    the process image it fills.
    """

    def __init__(self, store: IOBufferStore, check_watchdog: Callable[[bytes], bool],
                 dispatcher=None):
        self.store = store
        self.lock = store.lock
        self.check_watchdog = check_watchdog
        self.dispatcher = dispatcher or ExecutorDispatcher()

        self.phase = PollPhase.WATCHDOG_CHECK
        self.pending = False
        self.pending_phase = PollPhase.WATCHDOG_CHECK
        self.frame_errors = 0
        self.connection_errors = 0
        self.active = False

    def start(self) -> None:
        with self.lock:
            self.phase = PollPhase.WATCHDOG_CHECK
            self.pending = False
            self.frame_errors = 0
            self.connection_errors = 0
            self.active = True

    def stop(self) -> None:
        """Stops the cycle. Responses still in flight are dropped."""
        with self.lock:
            self.active = False
        self.dispatcher.shutdown()

    @property
    def continuous(self) -> bool:
        return self.store.poll_period_ms != 0

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------
    def _build_request(self, phase: PollPhase) -> Optional[Request]:
        """Request for ``phase``, or None when the phase has no data to exchange."""
        transport = self.store.transport
        image = self.store.image

        if phase == PollPhase.WATCHDOG_CHECK:
            address = REGISTER_MAP["watchdog_status"].address
            return lambda: transport.read_holding_registers(Channel.WATCHDOG, address, 1)

        length = image.length(_PHASE_BUFFERS[phase])
        if length == 0:
            return None

        if phase == PollPhase.DIGITAL_IN_READ:
            return lambda: transport.read_discrete_inputs(
                Channel.DIGITAL_IN, DIGITAL_BASE_ADDRESS, length)
        if phase == PollPhase.DIGITAL_OUT_WRITE:
            data = pack_bits(image.digital_out)
            return lambda: transport.write_multiple_coils(
                Channel.DIGITAL_OUT, DIGITAL_BASE_ADDRESS, length, data)
        if phase == PollPhase.ANALOG_IN_READ:
            return lambda: transport.read_input_registers(
                Channel.ANALOG_IN, ANALOG_IN_BASE_ADDRESS, length)
        data = words_to_bytes(image.analog_out)
        return lambda: transport.write_multiple_registers(
            Channel.ANALOG_OUT, ANALOG_OUT_BASE_ADDRESS, data)

    def _next_request(self) -> Tuple[PollPhase, Optional[Request]]:
        """
        Picks the request for this tick starting at the current phase.
        Phases with an empty buffer are skipped within the same tick.
        """
        phase = int(self.phase)
        request = None
        while phase <= PollPhase.ANALOG_OUT_WRITE:
            request = self._build_request(PollPhase(phase))
            if request is not None:
                break
            phase += 1

        issued = PollPhase(min(phase, PollPhase.ANALOG_OUT_WRITE))
        if self.continuous:
            phase += 1
        if phase > PollPhase.ANALOG_OUT_WRITE or not self.continuous:
            phase = PollPhase.WATCHDOG_CHECK
        self.phase = PollPhase(phase)
        return issued, request

    def tick(self) -> None:
        """One timer tick: send the next request or account for a missing answer."""
        escalate_phase = None
        request = None

        with self.lock:
            if not self.active or self.store.image is None:
                return

            if self.pending:
                self.frame_errors += 1
                if self.frame_errors > MAX_FRAME_ERRORS:
                    self.pending = False
                    self.frame_errors = 0
                    self.connection_errors += 1
                    logger.warning("No answer after %s ticks, connection error %s",
                                   MAX_FRAME_ERRORS + 1, self.connection_errors)
                    if self.connection_errors > MAX_CONNECTION_ERRORS:
                        escalate_phase = self.pending_phase
            else:
                phase, request = self._next_request()
                if request is not None:
                    self.pending = True
                    self.pending_phase = phase

        if escalate_phase is not None:
            self.escalate(escalate_phase)
            return
        if request is None:
            return

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Poll request for phase %s", phase.name)
        try:
            self.dispatcher.submit(self._run, phase, request)
        except RuntimeError as e:
            # Dispatcher already shut down by a concurrent disconnect
            logger.debug("Poll request for phase %s dropped: %s", phase.name, e)

    def escalate(self, phase: PollPhase) -> None:
        """Treats the silent coupler like a transport timeout: disconnect, then report."""
        with self.lock:
            self.active = False
        error = TransportError(
            TransportFault.TIMEOUT,
            Channel(phase),
            f"No answer from coupler after {MAX_CONNECTION_ERRORS + 1} connection errors",
        )
        self.store.mapper.report_transport(error, phase=phase)

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------
    def _run(self, phase: PollPhase, request: Request) -> None:
        try:
            data = request()
        except TransportError as te:
            self.on_error(phase, te)
            return
        except Exception:  # pylint: disable=broad-except
            logger.exception("(FAIL) Poll request for phase %s raised", phase.name)
            return
        self.on_response(phase, data)

    def on_response(self, phase: PollPhase, data: Optional[bytes]) -> None:
        """
        Stores the answer to a poll request. Only the answer to the request
        still pending clears the pending state and the error counters; a late
        answer to a request given up on by escalation does not.
        """
        with self.lock:
            if not self.active:
                return
            image = self.store.image
            if data and phase == PollPhase.DIGITAL_IN_READ:
                bits = unpack_bits(data, len(image.digital_in))
                image.digital_in[:len(bits)] = bits
            elif data and phase == PollPhase.ANALOG_IN_READ:
                words = bytes_to_words(data)[:len(image.analog_in)]
                image.analog_in[:len(words)] = words
            if self.pending and phase == self.pending_phase:
                self.pending = False
                self.frame_errors = 0
                self.connection_errors = 0
            else:
                logger.debug("Late answer for phase %s while %s is pending", phase.name,
                             self.pending_phase.name if self.pending else "nothing")

        if phase == PollPhase.WATCHDOG_CHECK and data:
            self.check_watchdog(data)

    def on_error(self, phase: PollPhase, error: TransportError) -> None:
        """
        Reports a failed poll request. The pending flag stays set; a request
        that never succeeds is retried through frame error escalation.
        """
        with self.lock:
            if not self.active:
                logger.debug("Dropping poll error after stop: %s", error)
                return
        self.store.mapper.report_transport(error, phase=phase)
