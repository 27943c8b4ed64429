"""
Register protocol transport for the bus coupler driver.

The driver core only needs the small request/response surface defined by
ITransportClient. ModbusTransport implements it on top of a blocking pymodbus
TCP client; every call returns the raw payload (big-endian words, bits packed
LSB first) or raises TransportError carrying a fault code.
"""

import threading
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Optional

from pymodbus.client import ModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusIOException
from pymodbus.pdu import ExceptionResponse

from .coupler_types import Channel
from .coupler_utils import (
    bytes_to_unsigned_words,
    pack_bits,
    unpack_bits,
    words_to_bytes,
)
from .logger import get_logger

logger, _ = get_logger("buscoupler.transport")


class TransportFault(IntEnum):
    """Transport level failure codes. 1..4 are the Modbus exception codes."""
    ILLEGAL_FUNCTION = 1
    ILLEGAL_DATA_ADDRESS = 2
    ILLEGAL_DATA_VALUE = 3
    SLAVE_FAILURE = 4
    TIMEOUT = 100
    CONNECTION_LOST = 101
    NOT_CONNECTED = 102


class TransportError(Exception):
    """Raised by a transport when a request fails."""

    def __init__(self, fault: int, channel: Channel, message: str = ""):
        self.fault = fault
        self.channel = channel
        super().__init__(message or f"Transport fault {fault} on channel {Channel(channel).name}")


class ITransportClient(ABC):
    """Request/response surface the driver core consumes."""

    @abstractmethod
    def connect(self) -> bool:
        """Open the connection. Returns True on success."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection. Safe to call more than once."""

    @abstractmethod
    def read_holding_registers(self, channel: Channel, address: int, count: int) -> bytes:
        pass

    @abstractmethod
    def read_input_registers(self, channel: Channel, address: int, count: int) -> bytes:
        pass

    @abstractmethod
    def read_discrete_inputs(self, channel: Channel, address: int, count: int) -> bytes:
        pass

    @abstractmethod
    def read_coils(self, channel: Channel, address: int, count: int) -> bytes:
        pass

    @abstractmethod
    def write_single_register(self, channel: Channel, address: int, data: bytes) -> None:
        pass

    @abstractmethod
    def write_multiple_registers(self, channel: Channel, address: int, data: bytes) -> None:
        pass

    @abstractmethod
    def write_multiple_coils(self, channel: Channel, address: int, count: int, data: bytes) -> None:
        pass

    @abstractmethod
    def read_write_registers(self, channel: Channel, read_address: int, read_count: int,
                             write_address: int, data: bytes) -> bytes:
        pass


class ModbusTransport(ITransportClient):  # pylint: disable=too-many-instance-attributes
    """Modbus TCP transport backed by pymodbus' blocking client."""

    def __init__(self, host: str, port: int = 502, timeout_ms: int = 1000, unit: int = 0):
        self.host = host
        self.port = port
        self.timeout = timeout_ms / 1000.0  # Convert to seconds
        self.unit = unit

        self.client: Optional[ModbusTcpClient] = None
        # pymodbus' sync client is not thread safe; the poll worker and
        # caller threads share it through this lock
        self._io_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------
    def connect(self) -> bool:
        with self._io_lock:
            if self.client is None:
                self.client = ModbusTcpClient(host=self.host, port=self.port, timeout=self.timeout)
            connected = self.client.connect()
        if connected:
            logger.info("(PASS) Connected to %s:%s", self.host, self.port)
        else:
            logger.warning("(FAIL) Could not connect to %s:%s", self.host, self.port)
        return bool(connected)

    def close(self) -> None:
        with self._io_lock:
            client, self.client = self.client, None
        if client is None:
            return
        try:
            client.close()
        except OSError as e:
            logger.error("(FAIL) Error closing connection to %s:%s: %s", self.host, self.port, e)
        logger.info("Disconnected from %s:%s", self.host, self.port)

    @property
    def connected(self) -> bool:
        return self.client is not None and self.client.connected

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def _execute(self, channel: Channel, operation: str, *args, **kwargs):
        with self._io_lock:
            if self.client is None:
                raise TransportError(TransportFault.NOT_CONNECTED, channel, "Client not connected")
            try:
                response = getattr(self.client, operation)(*args, device_id=self.unit, **kwargs)
            except ConnectionException as ce:
                raise TransportError(TransportFault.CONNECTION_LOST, channel, str(ce)) from ce
            except ModbusIOException as ioe:
                raise TransportError(TransportFault.TIMEOUT, channel, str(ioe)) from ioe

        if isinstance(response, ExceptionResponse) or response.isError():
            code = getattr(response, "exception_code", None)
            if code is None:
                raise TransportError(TransportFault.TIMEOUT, channel, str(response))
            raise TransportError(code, channel, f"{operation} failed: {response}")
        return response

    def read_holding_registers(self, channel: Channel, address: int, count: int) -> bytes:
        response = self._execute(channel, "read_holding_registers", address, count=count)
        return words_to_bytes(response.registers)

    def read_input_registers(self, channel: Channel, address: int, count: int) -> bytes:
        response = self._execute(channel, "read_input_registers", address, count=count)
        return words_to_bytes(response.registers)

    def read_discrete_inputs(self, channel: Channel, address: int, count: int) -> bytes:
        response = self._execute(channel, "read_discrete_inputs", address, count=count)
        return pack_bits(response.bits[:count])

    def read_coils(self, channel: Channel, address: int, count: int) -> bytes:
        response = self._execute(channel, "read_coils", address, count=count)
        return pack_bits(response.bits[:count])

    def write_single_register(self, channel: Channel, address: int, data: bytes) -> None:
        value = bytes_to_unsigned_words(data)[0]
        self._execute(channel, "write_register", address, value)

    def write_multiple_registers(self, channel: Channel, address: int, data: bytes) -> None:
        self._execute(channel, "write_registers", address, bytes_to_unsigned_words(data))

    def write_multiple_coils(self, channel: Channel, address: int, count: int, data: bytes) -> None:
        self._execute(channel, "write_coils", address, unpack_bits(data, count))

    def read_write_registers(self, channel: Channel, read_address: int, read_count: int,
                             write_address: int, data: bytes) -> bytes:
        response = self._execute(
            channel,
            "readwrite_registers",
            read_address=read_address,
            read_count=read_count,
            write_address=write_address,
            values=bytes_to_unsigned_words(data),
        )
        return words_to_bytes(response.registers)
