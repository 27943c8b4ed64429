"""Bus coupler connection lifecycle management."""

import threading
import time
from typing import Callable, Optional, Tuple

from .coupler_conditions import CouplerError, ExceptionMapper, HostUnreachableError
from .coupler_discovery import ModuleDiscovery, NameResolver
from .coupler_memory import IOBufferStore, ProcessImage
from .coupler_poll import PollCycle
from .coupler_registers import CTRL_OFF, REGISTER_MAP, EmptyResponseError, RegisterAccess
from .coupler_transport import ITransportClient, ModbusTransport, TransportError
from .coupler_types import Channel, Condition, ConnectionState, ControllerSummary, Module
from .coupler_utils import words_to_bytes
from .coupler_watchdog import TimerFactory, WatchdogController
from .logger import get_logger

logger, _ = get_logger("buscoupler.connection")

TransportFactory = Callable[[str, int], ITransportClient]


class ConnectionManager:  # pylint: disable=too-many-instance-attributes
    """
    Owns connect/disconnect/reconnect for one coupler and wires the driver
    components together on a successful handshake.

    After every disconnect a cooldown timer runs; connect() blocks until it
    has expired so a new session never overlaps the teardown of the last one.
    """

    def __init__(self, mapper: ExceptionMapper, store: IOBufferStore,
                 transport_factory: Optional[TransportFactory] = None,
                 resolver: Optional[NameResolver] = None,
                 reconnect_cooldown_s: float = 10.0,
                 boot_retry_delay_s: float = 10.0,
                 max_modules: int = 253,
                 dispatcher_factory: Optional[Callable[[], object]] = None,
                 timer_factory: Optional[TimerFactory] = None):
        self.mapper = mapper
        self.store = store
        self.transport_factory = transport_factory or ModbusTransport
        self.resolver = resolver
        self.reconnect_cooldown_s = reconnect_cooldown_s
        self.boot_retry_delay_s = boot_retry_delay_s
        self.max_modules = max_modules
        self.dispatcher_factory = dispatcher_factory

        self.state = ConnectionState.DISCONNECTED
        self.host: Optional[str] = None
        self.port: Optional[int] = None
        self.transport: Optional[ITransportClient] = None
        self.registers: Optional[RegisterAccess] = None
        self.summary: Optional[ControllerSummary] = None
        self.poll: Optional[PollCycle] = None
        self.watchdog = WatchdogController(mapper, self._on_tick, timer_factory)

        self._connect_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._cooldown_clear = threading.Event()
        self._cooldown_clear.set()
        self._cooldown_timer: Optional[threading.Timer] = None

        mapper.bind(self.disconnect, lambda: self.is_connected)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def modules(self) -> Tuple[Module, ...]:
        return self.store.modules

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------
    def connect(self, host: str, port: int = 502) -> None:
        """
        Opens a session with the coupler: handshake, discovery and buffer
        allocation. Arms the watchdog when a poll period is configured.

        Raises:
            HostUnreachableError: the coupler did not answer, not even after
                the boot retry
            CouplerError: any other handshake failure
        """
        if not self._cooldown_clear.is_set():
            logger.info("Waiting for reconnect cooldown before connecting to %s:%s", host, port)
        self._cooldown_clear.wait()

        with self._connect_lock:
            if self.is_connected:
                logger.info("Already connected to %s:%s", self.host, self.port)
                return

            with self._state_lock:
                self.state = ConnectionState.CONNECTING
            transport = self.transport_factory(host, port)
            try:
                self._handshake(transport, host, port)
            except HostUnreachableError:
                self._abort(transport)
                raise
            except (TransportError, EmptyResponseError) as e:
                self._abort(transport)
                raise CouplerError(f"Handshake with {host}:{port} failed: {e}") from e

            if self.store.poll_period_ms != 0 and not self.watchdog_reset():
                self.disconnect()
                raise CouplerError(f"Could not arm the watchdog of {host}:{port}")

    def _handshake(self, transport: ITransportClient, host: str, port: int) -> None:
        if not transport.connect():
            raise HostUnreachableError(f"Could not open a connection to {host}:{port}")
        self._disable_boundary_check(transport, host, port)

        registers = RegisterAccess(transport)
        discovery = ModuleDiscovery(registers, self.resolver, self.max_modules)
        summary = discovery.read_summary()
        modules = discovery.discover()
        image = ProcessImage.from_summary(summary)

        poll = PollCycle(self.store, self.watchdog.check_response,
                         self.dispatcher_factory() if self.dispatcher_factory else None)

        with self._state_lock:
            self.host, self.port = host, port
            self.transport = transport
            self.registers = registers
            self.summary = summary
            self.poll = poll
            self.state = ConnectionState.CONNECTED
            self.store.attach(transport, modules, image, lambda: self.is_connected)
            poll.start()

        logger.info("(PASS) Connected to %s:%s with %s modules, %s", host, port, len(modules), image)

    def _disable_boundary_check(self, transport: ITransportClient, host: str, port: int) -> None:
        """
        Turns off the coupler's I/O boundary check. A coupler that is still
        booting does not answer; it gets one more chance after a delay.
        """
        address = REGISTER_MAP["misc_check_io"].address
        payload = words_to_bytes([CTRL_OFF])
        try:
            transport.write_single_register(Channel.BOUNDARY, address, payload)
            return
        except TransportError as te:
            logger.warning("Coupler %s:%s did not answer (%s), retrying in %ss",
                           host, port, te, self.boot_retry_delay_s)

        time.sleep(self.boot_retry_delay_s)
        try:
            transport.connect()
            transport.write_single_register(Channel.BOUNDARY, address, payload)
        except TransportError as te:
            raise HostUnreachableError(f"Coupler {host}:{port} is unreachable") from te

    def _abort(self, transport: ITransportClient) -> None:
        with self._state_lock:
            self.state = ConnectionState.DISCONNECTED
        transport.close()
        logger.error("(FAIL) Connection attempt aborted")

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------
    def disconnect(self) -> None:
        """
        Ends the session. Safe to call when not connected and from inside
        the condition callback. Starts the reconnect cooldown.
        """
        with self._state_lock:
            if self.state != ConnectionState.CONNECTED:
                return
            self.state = ConnectionState.RECONNECT_COOLDOWN
            poll, transport = self.poll, self.transport
            self.poll = None
            self.transport = None
            self.registers = None

        # The timer must be stopped before the buffers go away
        self.watchdog.stop()
        if poll is not None:
            poll.stop()
        self.store.release()
        if transport is not None:
            transport.close()

        self._start_cooldown()
        logger.info("Disconnected from %s:%s", self.host, self.port)

    def _start_cooldown(self) -> None:
        if self.reconnect_cooldown_s <= 0:
            self._end_cooldown()
            return
        self._cooldown_clear.clear()
        timer = threading.Timer(self.reconnect_cooldown_s, self._end_cooldown)
        timer.daemon = True
        self._cooldown_timer = timer
        timer.start()

    def _end_cooldown(self) -> None:
        with self._state_lock:
            if self.state == ConnectionState.RECONNECT_COOLDOWN:
                self.state = ConnectionState.DISCONNECTED
            self._cooldown_timer = None
        self._cooldown_clear.set()

    def close(self) -> None:
        """Disconnects and cancels a running cooldown."""
        self.disconnect()
        timer = self._cooldown_timer
        if timer is not None:
            timer.cancel()
        self._end_cooldown()

    # ------------------------------------------------------------------
    # Watchdog / poll timer
    # ------------------------------------------------------------------
    def watchdog_reset(self) -> bool:
        """(Re)arms the watchdog and the poll timer. Returns False on failure."""
        registers = self.registers
        if not self.is_connected or registers is None:
            return False
        try:
            self.watchdog.reset(registers, self.store.poll_period_ms)
        except TransportError as te:
            self.mapper.report_transport(te)
            return False
        except EmptyResponseError as ee:
            self.mapper.report(Condition.EMPTY_RESPONSE, channel=Channel.PARAMETER, detail=str(ee))
            return False
        return True

    def _on_tick(self) -> None:
        poll = self.poll
        if poll is not None:
            poll.tick()
