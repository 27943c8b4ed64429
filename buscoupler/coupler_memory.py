"""
Process image management for the bus coupler driver.

IOBufferStore serves the read/write API in one of two modes:
    - direct (poll period 0): every call is a synchronous transport request
    - buffered (poll period > 0): calls copy into or out of the process
      image, which the poll cycle exchanges with the coupler
"""

import threading
from typing import Callable, List, Optional, Sequence, Tuple

from .coupler_conditions import ExceptionMapper
from .coupler_registers import (
    ANALOG_IN_BASE_ADDRESS,
    ANALOG_OUT_BASE_ADDRESS,
    DIGITAL_BASE_ADDRESS,
)
from .coupler_transport import ITransportClient, TransportError
from .coupler_types import (
    Channel,
    ChannelKind,
    Condition,
    ControllerSummary,
    Module,
    ProcessImageSnapshot,
)
from .coupler_utils import (
    bytes_to_words,
    is_word,
    pack_bits,
    to_signed_word,
    unpack_bits,
    words_to_bytes,
)
from .logger import get_logger

logger, _ = get_logger("buscoupler.memory")


class ProcessImage:
    """The four fixed-length process data buffers of one connection."""

    def __init__(self, digital_in: int = 0, digital_out: int = 0,
                 analog_in: int = 0, analog_out: int = 0):
        self.digital_in: List[bool] = [False] * digital_in
        self.digital_out: List[bool] = [False] * digital_out
        self.analog_in: List[int] = [0] * analog_in
        self.analog_out: List[int] = [0] * analog_out

    @classmethod
    def from_summary(cls, summary: ControllerSummary) -> "ProcessImage":
        """Digital counts are reported in groups of 8 bits, analog counts in words."""
        return cls(
            digital_in=summary.digital_in_count * 8,
            digital_out=summary.digital_out_count * 8,
            analog_in=summary.analog_in_count,
            analog_out=summary.analog_out_count,
        )

    def buffer(self, kind: ChannelKind) -> list:
        return getattr(self, kind.value)

    def length(self, kind: ChannelKind) -> int:
        return len(self.buffer(kind))

    def snapshot(self) -> ProcessImageSnapshot:
        return ProcessImageSnapshot(
            digital_in=list(self.digital_in),
            digital_out=list(self.digital_out),
            analog_in=list(self.analog_in),
            analog_out=list(self.analog_out),
        )

    def __repr__(self) -> str:
        return (
            f"ProcessImage(digital_in={len(self.digital_in)}, digital_out={len(self.digital_out)}, "
            f"analog_in={len(self.analog_in)}, analog_out={len(self.analog_out)})"
        )


class IOBufferStore:  # pylint: disable=too-many-instance-attributes
    """
    Owns the process image and the module list of the live connection and
    serves dual-mode reads and writes on them.

    ``lock`` guards the image, the module list and the poll state kept by
    PollCycle. Direct-mode transport calls are made outside the lock.
    """

    def __init__(self, mapper: ExceptionMapper):
        self.mapper = mapper
        self.lock = threading.RLock()
        self.image: Optional[ProcessImage] = None
        self.modules: Tuple[Module, ...] = ()
        self.transport: Optional[ITransportClient] = None
        self.poll_period_ms = 0
        self._is_connected: Callable[[], bool] = lambda: False

    def attach(self, transport: ITransportClient, modules: Tuple[Module, ...],
               image: ProcessImage, is_connected: Callable[[], bool]) -> None:
        with self.lock:
            self.transport = transport
            self.modules = modules
            self.image = image
            self._is_connected = is_connected
        logger.debug("Attached %s for %s modules", image, len(modules))

    def release(self) -> None:
        """Drops the buffers. Stop the poll cycle before calling this."""
        with self.lock:
            self.transport = None
            self.image = None
            self.modules = ()

    @property
    def direct_mode(self) -> bool:
        return self.poll_period_ms == 0

    def snapshot(self) -> ProcessImageSnapshot:
        with self.lock:
            if self.image is None:
                return ProcessImageSnapshot()
            return self.image.snapshot()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def _span_end(self, kind: ChannelKind, base: int) -> int:
        """
        End of the region owned by the module starting at ``base``: the next
        greater base of the same kind, or the end of the buffer.
        """
        end = self.image.length(kind)
        for module in self.modules:
            other = module.base_for(kind)
            if other is not None and base < other < end:
                end = other
        return end

    def _validate(self, kind: ChannelKind, module: int, offset: int,
                  size: int) -> Tuple[Optional[int], Optional[Tuple[Condition, str]]]:
        """Returns (absolute offset, None) or (None, (condition, detail)). Caller holds the lock."""
        if self.image is None:
            return None, (Condition.CONNECTION_LOST, "not connected")
        if module < 0 or module >= len(self.modules):
            return None, (Condition.INVALID_MODULE_INDEX, f"{len(self.modules)} modules discovered")
        if size <= 0:
            return None, (Condition.INVALID_DATA_SIZE, f"size {size}")
        base = self.modules[module].base_for(kind)
        if base is None:
            return None, (kind.missing_condition, "")
        if offset < 0 or base + offset + size > self._span_end(kind, base):
            return None, (Condition.INVALID_DATA_SIZE,
                          f"{kind.value} offset {offset} size {size} exceeds module span")
        return base + offset, None

    def _locate(self, kind: ChannelKind, module: int, offset: int, size: int) -> Optional[int]:
        """
        Validates an access and returns the absolute offset into the buffer
        of ``kind``, or None after reporting why the access is refused.

        Conditions are reported after the lock is released; the callback may
        call back into the store from another thread.
        """
        if not self._is_connected():
            self.mapper.report(Condition.CONNECTION_LOST, module=module, detail="not connected")
            return None
        with self.lock:
            start, refusal = self._validate(kind, module, offset, size)
        if refusal is not None:
            condition, detail = refusal
            self.mapper.report(condition, module=module, detail=detail)
            return None
        return start

    def _live_transport(self, module: int) -> Optional[ITransportClient]:
        transport = self.transport
        if transport is None:
            # Released by a disconnect after validation
            self.mapper.report(Condition.CONNECTION_LOST, module=module, detail="not connected")
        return transport

    def _copy_out(self, kind: ChannelKind, module: int, start: int, size: int) -> Optional[list]:
        with self.lock:
            image = self.image
            if image is not None:
                return list(image.buffer(kind)[start:start + size])
        self.mapper.report(Condition.CONNECTION_LOST, module=module, detail="not connected")
        return None

    def _stage(self, kind: ChannelKind, module: int, start: int, values: list) -> bool:
        with self.lock:
            image = self.image
            if image is not None:
                image.buffer(kind)[start:start + len(values)] = values
                return True
        self.mapper.report(Condition.CONNECTION_LOST, module=module, detail="not connected")
        return False

    def _direct_read(self, module: int, operation, address: int, count: int) -> Optional[bytes]:
        try:
            data = operation(Channel.VALUE, address, count)
        except TransportError as te:
            self.mapper.report_transport(te, module=module)
            return None
        if not data:
            self.mapper.report(Condition.EMPTY_RESPONSE, module=module, channel=Channel.VALUE)
            return None
        return data

    def _direct_write(self, module: int, operation, *args) -> bool:
        try:
            operation(Channel.VALUE, *args)
        except TransportError as te:
            self.mapper.report_transport(te, module=module)
            return False
        return True

    # ------------------------------------------------------------------
    # Digital
    # ------------------------------------------------------------------
    def _read_bits(self, kind: ChannelKind, module: int, offset: int,
                   size: int) -> Optional[List[bool]]:
        start = self._locate(kind, module, offset, size)
        if start is None:
            return None

        if self.direct_mode:
            transport = self._live_transport(module)
            if transport is None:
                return None
            operation = (transport.read_discrete_inputs if kind == ChannelKind.DIGITAL_IN
                         else transport.read_coils)
            data = self._direct_read(module, operation, DIGITAL_BASE_ADDRESS + start, size)
            if data is None:
                return None
            return unpack_bits(data, size)

        return self._copy_out(kind, module, start, size)

    def read_digital_inputs(self, module: int, offset: int, size: int) -> Optional[List[bool]]:
        """
        Reads ``size`` input bits of a module starting at ``offset``.

        Returns:
            The bits, or None if the read was refused or failed
        """
        return self._read_bits(ChannelKind.DIGITAL_IN, module, offset, size)

    def read_digital_outputs(self, module: int, offset: int, size: int) -> Optional[List[bool]]:
        """Reads back output bits (coils in direct mode, the staged image otherwise)."""
        return self._read_bits(ChannelKind.DIGITAL_OUT, module, offset, size)

    def write_digital_outputs(self, module: int, offset: int, values: Sequence[bool]) -> bool:
        """
        Writes output bits of a module starting at ``offset``.

        In buffered mode the bits are staged and sent on the next digital
        output phase of the poll cycle.
        """
        values = [bool(value) for value in values]
        start = self._locate(ChannelKind.DIGITAL_OUT, module, offset, len(values))
        if start is None:
            return False

        if self.direct_mode:
            transport = self._live_transport(module)
            if transport is None:
                return False
            return self._direct_write(
                module, transport.write_multiple_coils,
                DIGITAL_BASE_ADDRESS + start, len(values), pack_bits(values),
            )

        return self._stage(ChannelKind.DIGITAL_OUT, module, start, values)

    # ------------------------------------------------------------------
    # Analog
    # ------------------------------------------------------------------
    def _read_words(self, kind: ChannelKind, module: int, offset: int,
                    size: int) -> Optional[List[int]]:
        start = self._locate(kind, module, offset, size)
        if start is None:
            return None

        if self.direct_mode:
            transport = self._live_transport(module)
            if transport is None:
                return None
            if kind == ChannelKind.ANALOG_IN:
                operation, address = transport.read_input_registers, ANALOG_IN_BASE_ADDRESS + start
            else:
                operation, address = transport.read_holding_registers, ANALOG_OUT_BASE_ADDRESS + start
            data = self._direct_read(module, operation, address, size)
            if data is None:
                return None
            return bytes_to_words(data)

        return self._copy_out(kind, module, start, size)

    def read_analog_inputs(self, module: int, offset: int, size: int) -> Optional[List[int]]:
        """
        Reads ``size`` input words of a module starting at ``offset``.
        Words are returned signed; 32-bit values arrive as two words.
        """
        return self._read_words(ChannelKind.ANALOG_IN, module, offset, size)

    def read_analog_outputs(self, module: int, offset: int, size: int) -> Optional[List[int]]:
        return self._read_words(ChannelKind.ANALOG_OUT, module, offset, size)

    def write_analog_outputs(self, module: int, offset: int, values: Sequence[int]) -> bool:
        """Writes output words. Every value must fit 16 bits, signed or unsigned."""
        values = [int(value) for value in values]
        start = self._locate(ChannelKind.ANALOG_OUT, module, offset, len(values))
        if start is None:
            return False

        out_of_range = [value for value in values if not is_word(value)]
        if out_of_range:
            self.mapper.report(Condition.VALUE_OUT_OF_RANGE, module=module,
                               detail=f"values {out_of_range} do not fit a 16-bit word")
            return False

        if self.direct_mode:
            transport = self._live_transport(module)
            if transport is None:
                return False
            return self._direct_write(
                module, transport.write_multiple_registers,
                ANALOG_OUT_BASE_ADDRESS + start, words_to_bytes(values),
            )

        # Staged signed, as direct reads return them
        staged = [to_signed_word(value) for value in values]
        return self._stage(ChannelKind.ANALOG_OUT, module, start, staged)
