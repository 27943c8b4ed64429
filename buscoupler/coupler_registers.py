"""
Bus coupler register map and property-style accessors.

REGISTER_MAP names every controller register the driver knows about.
CouplerInfo and ModuleInfo expose them as attributes; reads return None when
the coupler is not connected or does not answer.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from .coupler_conditions import CouplerError
from .coupler_transport import ITransportClient, TransportError
from .coupler_types import Channel, Condition
from .coupler_utils import (
    bytes_to_long,
    bytes_to_unsigned_words,
    bytes_to_words,
    format_ip_address,
    format_mac_address,
    format_serial,
    parse_ip_address,
    words_to_bytes,
)
from .logger import get_logger

logger, _ = get_logger("buscoupler.registers")

# Control word values
CTRL_OFF = 0xC0
CTRL_ON = 0xC1

# Watchdog modes
WATCHDOG_MODE_DISABLED = 0xC0
WATCHDOG_MODE_ANY_ACCESS = 0xC1
WATCHDOG_MODE_WRITE_ACCESS = 0xC2

# Process data areas
DIGITAL_BASE_ADDRESS = 0x0000
ANALOG_IN_BASE_ADDRESS = 0x0000
ANALOG_OUT_BASE_ADDRESS = 0x0800

# Module configuration register exchange
MODULE_REGISTER_WRITE = 0x1280
MODULE_REGISTER_SELECT = 0x1284
MODULE_REGISTER_READ = 0x1286

# Module slots: 16 registers per module starting at 0xA000
MODULE_SLOT_BASE = 0xA000
MODULE_SLOT_SIZE = 16


@dataclass(frozen=True)
class RegisterDef:
    address: Optional[int]  # None marks a register whose address is not known
    words: int = 1
    access: str = "r"       # "r", "w" or "rw"

    @property
    def writable(self) -> bool:
        return "w" in self.access


REGISTER_MAP: Dict[str, RegisterDef] = {
    # communication
    "com_mac": RegisterDef(0x1000, 3),
    "com_ip_flash": RegisterDef(0x1003, 4, "rw"),
    "com_subnet_mask": RegisterDef(0x1007, 4, "rw"),
    "com_gateway": RegisterDef(0x100B, 4, "rw"),
    "com_port": RegisterDef(0x100F, 1, "rw"),
    "com_duration": RegisterDef(0x1010, 1, "rw"),
    "com_mtu": RegisterDef(0x1011, 1, "rw"),
    "com_x2x": RegisterDef(0x1012, 1, "rw"),
    "com_ip": RegisterDef(0x1013, 4),
    "com_x2x_length": RegisterDef(0x1017, 1, "rw"),
    # watchdog
    "watchdog_threshold": RegisterDef(0x1040, 1, "rw"),
    "watchdog_elapsed": RegisterDef(0x1041),
    "watchdog_status": RegisterDef(0x1042),
    "watchdog_mode": RegisterDef(0x1043, 1, "rw"),
    "watchdog_reset": RegisterDef(0x1044, 1, "w"),
    # product data
    "productdata_serial": RegisterDef(0x1080, 3),
    "productdata_code": RegisterDef(0x1083),
    "productdata_hw_major": RegisterDef(0x1084),
    "productdata_hw_minor": RegisterDef(0x1085),
    "productdata_fw_major": RegisterDef(0x1086),
    "productdata_fw_minor": RegisterDef(0x1087),
    "productdata_hw_fpga": RegisterDef(0x1088),
    "productdata_boot": RegisterDef(0x1089),
    "productdata_fw_major_def": RegisterDef(0x108A),
    "productdata_fw_minor_def": RegisterDef(0x108B),
    "productdata_fw_major_upd": RegisterDef(0x108C),
    "productdata_fw_minor_upd": RegisterDef(0x108D),
    "productdata_fw_fpga_def": RegisterDef(0x108E),
    "productdata_fw_fpga_upd": RegisterDef(0x108F),
    # modbus protocol statistics
    "modbus_clients": RegisterDef(0x10C0),
    "modbus_global_tel_cnt": RegisterDef(0x10C1, 2),
    "modbus_local_tel_cnt": RegisterDef(0x10C3, 2),
    "modbus_global_prot_cnt": RegisterDef(0x10C5, 2),
    "modbus_local_prot_cnt": RegisterDef(0x10C7, 2),
    "modbus_global_max_cmd": RegisterDef(0x10C9, 2),
    "modbus_local_max_cmd": RegisterDef(0x10CB, 2),
    "modbus_global_min_cmd": RegisterDef(0x10CD, 2),
    "modbus_local_min_cmd": RegisterDef(0x10CF, 2),
    "modbus_global_prot_frag_cnt": RegisterDef(0x10D1, 2),
    "modbus_local_prot_frag_cnt": RegisterDef(0x10D3, 2),
    # process data
    "process_modules": RegisterDef(0x1100),
    "process_analog_inp_cnt": RegisterDef(0x1101),
    "process_analog_inp_size": RegisterDef(0x1102),
    "process_analog_out_cnt": RegisterDef(0x1103),
    "process_analog_out_size": RegisterDef(0x1104),
    "process_digital_inp_cnt": RegisterDef(0x1105),
    "process_digital_inp_size": RegisterDef(0x1106),
    "process_digital_out_cnt": RegisterDef(0x1107),
    "process_digital_out_size": RegisterDef(0x1108),
    # TODO: real addresses of the status output / status x2x blocks are not
    # documented; the vendor tool reads the digital count registers for them.
    "process_status_out_cnt": RegisterDef(None),
    "process_status_out_size": RegisterDef(None),
    "process_status_x2x_cnt": RegisterDef(None),
    "process_status_x2x_size": RegisterDef(None),
    # control
    "ctrl_save": RegisterDef(0x1140, 1, "w"),
    "ctrl_load": RegisterDef(0x1141, 1, "w"),
    "ctrl_erase": RegisterDef(0x1142, 1, "w"),
    "ctrl_reboot": RegisterDef(0x1143, 1, "w"),
    "ctrl_close": RegisterDef(0x1144, 1, "w"),
    "ctrl_reset_modules": RegisterDef(0x1145, 1, "w"),
    "ctrl_partial_cfg": RegisterDef(0x1146, 1, "w"),
    # misc
    "misc_node": RegisterDef(0x1180),
    "misc_init_delay": RegisterDef(0x1181, 1, "rw"),
    "misc_check_io": RegisterDef(0x1182, 1, "rw"),
    "misc_telnet_pw": RegisterDef(0x1183, 1, "rw"),
    "misc_cfg_changed": RegisterDef(0x1184, 1, "rw"),
    "misc_status": RegisterDef(0x1186),
    "misc_status_error": RegisterDef(0x1187),
    "misc_cfg_reset": RegisterDef(0x1188, 1, "w"),
    # x2x bus
    "x2x_cnt": RegisterDef(0x11C0),
    "x2x_bus_off": RegisterDef(0x11C1),
    "x2x_syn_err": RegisterDef(0x11C2),
    "x2x_syn_bus_timing": RegisterDef(0x11C3),
    "x2x_syn_frame_timing": RegisterDef(0x11C4),
    "x2x_syn_frame_crc": RegisterDef(0x11C5),
    "x2x_syn_frame_pending": RegisterDef(0x11C6),
    "x2x_syn_buffer_underrun": RegisterDef(0x11C7),
    "x2x_syn_buffer_overflow": RegisterDef(0x11C8),
    "x2x_asyn_err": RegisterDef(0x11C9),
    "x2x_asyn_bus_timing": RegisterDef(0x11CA),
    "x2x_asyn_frame_timing": RegisterDef(0x11CB),
    "x2x_asyn_frame_crc": RegisterDef(0x11CC),
    "x2x_asyn_frame_pending": RegisterDef(0x11CD),
    "x2x_asyn_buffer_underrun": RegisterDef(0x11CE),
    "x2x_asyn_buffer_overflow": RegisterDef(0x11CF),
    # network statistics
    "ns_cnt": RegisterDef(0x1200),
    "ns_lost_cnt": RegisterDef(0x1201),
    "ns_oversize_cnt": RegisterDef(0x1202),
    "ns_crc_cnt": RegisterDef(0x1203),
    "ns_collision_cnt": RegisterDef(0x1206),
}

# Offsets inside a module slot
MODULE_REGISTERS: Dict[str, RegisterDef] = {
    "status": RegisterDef(0x0),
    "hardware_id": RegisterDef(0x1),
    "serial": RegisterDef(0x1, 3),
    "analog_in_index": RegisterDef(0x4),
    "analog_out_index": RegisterDef(0x5),
    "digital_in_index": RegisterDef(0x6),
    "digital_out_index": RegisterDef(0x7),
    "cfg_hw": RegisterDef(0x8, 1, "rw"),
    "cfg_function_model": RegisterDef(0x9, 1, "rw"),
    "cfg_index": RegisterDef(0xA, 1, "rw"),
    "cfg_size": RegisterDef(0xB, 1, "rw"),
    "cfg_firmware": RegisterDef(0xC),
    "cfg_variant": RegisterDef(0xD),
}


def module_register_address(position: int, name: str) -> int:
    """Absolute address of a module slot register."""
    return MODULE_SLOT_BASE + position * MODULE_SLOT_SIZE + MODULE_REGISTERS[name].address


class EmptyResponseError(CouplerError):
    """The coupler answered with fewer bytes than requested."""
    pass


class RegisterAccess:
    """Raw word access to the coupler's holding registers. Failures raise."""

    def __init__(self, transport: ITransportClient):
        self.transport = transport

    def read_words(self, address: int, count: int, channel: Channel = Channel.PARAMETER) -> bytes:
        data = self.transport.read_holding_registers(channel, address, count)
        if not data or len(data) != count * 2:
            raise EmptyResponseError(
                f"Expected {count * 2} bytes from register 0x{address:04X}, "
                f"got {0 if not data else len(data)}"
            )
        return data

    def read_word(self, address: int, channel: Channel = Channel.PARAMETER) -> int:
        return bytes_to_unsigned_words(self.read_words(address, 1, channel))[0]

    def read_long(self, address: int, channel: Channel = Channel.PARAMETER) -> int:
        return bytes_to_long(self.read_words(address, 2, channel))

    def write_word(self, address: int, value: int, channel: Channel = Channel.PARAMETER) -> None:
        self.transport.write_single_register(channel, address, words_to_bytes([value]))

    def write_words(self, address: int, data: bytes, channel: Channel = Channel.PARAMETER) -> None:
        self.transport.write_multiple_registers(channel, address, data)


class _Register:
    """Class attribute exposing one named entry of REGISTER_MAP as a property."""

    def __set_name__(self, owner, attr):
        self.name = attr

    def __get__(self, info, owner=None):
        if info is None:
            return self
        return info.read(self.name)

    def __set__(self, info, value):
        info.write(self.name, value)


class _RegisterReader:
    """Shared read/write plumbing for the info accessors."""

    def __init__(self, driver):
        self._driver = driver

    def _access(self) -> Optional[RegisterAccess]:
        if not self._driver.is_connected:
            return None
        return self._driver.registers

    def _guarded(self, operation):
        access = self._access()
        if access is None:
            return None
        try:
            return operation(access)
        except TransportError as te:
            self._driver.mapper.report_transport(te)
        except EmptyResponseError as ee:
            self._driver.mapper.report(Condition.EMPTY_RESPONSE, channel=Channel.PARAMETER,
                                       detail=str(ee))
        return None


class CouplerInfo(_RegisterReader):
    """
    Controller information: communication settings, watchdog, product data,
    bus statistics and control commands.
    """

    # communication
    com_port = _Register()
    com_duration = _Register()
    com_mtu = _Register()
    com_x2x = _Register()
    com_x2x_length = _Register()
    # watchdog
    watchdog_threshold = _Register()
    watchdog_elapsed = _Register()
    watchdog_status = _Register()
    watchdog_mode = _Register()
    # product data
    productdata_code = _Register()
    productdata_hw_major = _Register()
    productdata_hw_minor = _Register()
    productdata_fw_major = _Register()
    productdata_fw_minor = _Register()
    productdata_hw_fpga = _Register()
    productdata_boot = _Register()
    productdata_fw_major_def = _Register()
    productdata_fw_minor_def = _Register()
    productdata_fw_major_upd = _Register()
    productdata_fw_minor_upd = _Register()
    productdata_fw_fpga_def = _Register()
    productdata_fw_fpga_upd = _Register()
    # modbus protocol
    modbus_clients = _Register()
    modbus_global_tel_cnt = _Register()
    modbus_local_tel_cnt = _Register()
    modbus_global_prot_cnt = _Register()
    modbus_local_prot_cnt = _Register()
    modbus_global_max_cmd = _Register()
    modbus_local_max_cmd = _Register()
    modbus_global_min_cmd = _Register()
    modbus_local_min_cmd = _Register()
    modbus_global_prot_frag_cnt = _Register()
    modbus_local_prot_frag_cnt = _Register()
    # process data
    process_modules = _Register()
    process_analog_inp_cnt = _Register()
    process_analog_inp_size = _Register()
    process_analog_out_cnt = _Register()
    process_analog_out_size = _Register()
    process_digital_inp_cnt = _Register()
    process_digital_inp_size = _Register()
    process_digital_out_cnt = _Register()
    process_digital_out_size = _Register()
    process_status_out_cnt = _Register()
    process_status_out_size = _Register()
    process_status_x2x_cnt = _Register()
    process_status_x2x_size = _Register()
    # misc
    misc_node = _Register()
    misc_init_delay = _Register()
    misc_check_io = _Register()
    misc_telnet_pw = _Register()
    misc_status = _Register()
    misc_status_error = _Register()
    # x2x
    x2x_cnt = _Register()
    x2x_bus_off = _Register()
    x2x_syn_err = _Register()
    x2x_syn_bus_timing = _Register()
    x2x_syn_frame_timing = _Register()
    x2x_syn_frame_crc = _Register()
    x2x_syn_frame_pending = _Register()
    x2x_syn_buffer_underrun = _Register()
    x2x_syn_buffer_overflow = _Register()
    x2x_asyn_err = _Register()
    x2x_asyn_bus_timing = _Register()
    x2x_asyn_frame_timing = _Register()
    x2x_asyn_frame_crc = _Register()
    x2x_asyn_frame_pending = _Register()
    x2x_asyn_buffer_underrun = _Register()
    x2x_asyn_buffer_overflow = _Register()
    # network statistics
    ns_cnt = _Register()
    ns_lost_cnt = _Register()
    ns_oversize_cnt = _Register()
    ns_crc_cnt = _Register()
    ns_collision_cnt = _Register()

    def read(self, name: str) -> Optional[int]:
        """Reads a one word (unsigned) or two word (signed) register by name."""
        definition = REGISTER_MAP[name]
        if definition.address is None:
            logger.warning("Register %s has no known address", name)
            return None
        if definition.words == 2:
            return self._guarded(lambda access: access.read_long(definition.address))
        return self._guarded(lambda access: access.read_word(definition.address))

    def write(self, name: str, value: int) -> bool:
        definition = REGISTER_MAP[name]
        if not definition.writable:
            raise AttributeError(f"Register {name} is read-only")
        result = self._guarded(lambda access: access.write_word(definition.address, value) or True)
        return bool(result)

    # ------------------------------------------------------------------
    # Multi-word values
    # ------------------------------------------------------------------
    def _read_raw(self, name: str) -> Optional[bytes]:
        definition = REGISTER_MAP[name]
        return self._guarded(lambda access: access.read_words(definition.address, definition.words))

    def _write_ip(self, name: str, address: str) -> bool:
        data = parse_ip_address(address)
        if data is None:
            self._driver.mapper.report(Condition.INVALID_ADDRESS_FORMAT, detail=repr(address))
            return False
        definition = REGISTER_MAP[name]
        return bool(self._guarded(lambda access: access.write_words(definition.address, data) or True))

    @property
    def com_ip(self) -> Optional[str]:
        return format_ip_address(self._read_raw("com_ip"))

    @property
    def com_ip_flash(self) -> Optional[str]:
        return format_ip_address(self._read_raw("com_ip_flash"))

    @com_ip_flash.setter
    def com_ip_flash(self, address: str):
        self._write_ip("com_ip_flash", address)

    @property
    def com_subnet_mask(self) -> Optional[str]:
        return format_ip_address(self._read_raw("com_subnet_mask"))

    @com_subnet_mask.setter
    def com_subnet_mask(self, address: str):
        self._write_ip("com_subnet_mask", address)

    @property
    def com_gateway(self) -> Optional[str]:
        return format_ip_address(self._read_raw("com_gateway"))

    @com_gateway.setter
    def com_gateway(self, address: str):
        self._write_ip("com_gateway", address)

    @property
    def com_mac(self) -> Optional[str]:
        return format_mac_address(self._read_raw("com_mac"))

    @property
    def productdata_serial(self) -> Optional[str]:
        data = self._read_raw("productdata_serial")
        if data is None:
            return None
        return "".join(f"{word:03d}" for word in bytes_to_words(data))

    @property
    def misc_cfg_changed(self) -> Optional[bool]:
        value = self.read("misc_cfg_changed")
        if value is None:
            return None
        return value == CTRL_ON

    @misc_cfg_changed.setter
    def misc_cfg_changed(self, changed: bool):
        self.write("misc_cfg_changed", CTRL_ON if changed else CTRL_OFF)

    # ------------------------------------------------------------------
    # Control commands
    # ------------------------------------------------------------------
    def ctrl_save(self) -> bool:
        """Save configuration to flash."""
        return self.write("ctrl_save", CTRL_ON)

    def ctrl_load(self) -> bool:
        """Load configuration from flash."""
        return self.write("ctrl_load", CTRL_ON)

    def ctrl_erase(self) -> bool:
        """Erase the configuration stored in flash."""
        return self.write("ctrl_erase", CTRL_ON)

    def ctrl_reboot(self) -> bool:
        """Reboot the coupler. This closes the current connection."""
        return self.write("ctrl_reboot", CTRL_OFF)

    def ctrl_close(self) -> bool:
        """Close all TCP connections of the coupler, this one included."""
        return self.write("ctrl_close", CTRL_ON)

    def ctrl_reset_cfg(self) -> bool:
        """
        Resets the module configuration, returns the coupler to partial
        configuration, saves and reboots. Takes a little over 2 seconds.
        """
        steps = (
            ("ctrl_reset_modules", CTRL_OFF, 0.02),
            ("ctrl_partial_cfg", CTRL_ON, 0.02),
            ("misc_cfg_reset", CTRL_OFF, 0.05),
            ("ctrl_save", CTRL_ON, 2.0),
        )
        for name, value, settle_s in steps:
            if not self.write(name, value):
                return False
            time.sleep(settle_s)
        return self.write("ctrl_reboot", CTRL_ON)


class ModuleInfo(_RegisterReader):
    """Live information and configuration registers of one module slot."""

    status = _Register()
    hardware_id = _Register()
    cfg_hw = _Register()
    cfg_function_model = _Register()
    cfg_index = _Register()
    cfg_size = _Register()
    cfg_firmware = _Register()
    cfg_variant = _Register()

    def __init__(self, driver, position: int):
        super().__init__(driver)
        self.position = position

    def read(self, name: str) -> Optional[int]:
        address = module_register_address(self.position, name)
        return self._guarded(lambda access: access.read_word(address))

    def write(self, name: str, value: int) -> bool:
        if not MODULE_REGISTERS[name].writable:
            raise AttributeError(f"Module register {name} is read-only")
        address = module_register_address(self.position, name)
        return bool(self._guarded(lambda access: access.write_word(address, value) or True))

    @property
    def serial(self) -> Optional[str]:
        address = module_register_address(self.position, "serial")
        data = self._guarded(lambda access: access.read_words(address, 3))
        if data is None:
            return None
        return format_serial(bytes_to_words(data))

    def __repr__(self) -> str:
        return f"ModuleInfo(position={self.position})"


def split_register_value(values: List[int]) -> List[int]:
    """Orders a [low, high] register value the way the coupler expects it: high word first."""
    return [values[1], values[0]]
