"""Module discovery for the bus coupler driver."""

from typing import Callable, Dict, List, Optional, Tuple

from .coupler_registers import REGISTER_MAP, RegisterAccess, module_register_address
from .coupler_types import NO_CHANNEL, ControllerSummary, Module
from .logger import get_logger

logger, _ = get_logger("buscoupler.discovery")

# Hardware ids that resolve without a hardware catalog
KNOWN_HARDWARE: Dict[int, str] = {
    41528: "X20BT9400",
    41865: "X20PS9402",
}

NameResolver = Callable[[int], Optional[str]]


def digital_base(index: int) -> Optional[int]:
    """Converts a module's digital byte index into a bit offset."""
    if index == NO_CHANNEL:
        return None
    return index * 8


def analog_base(index: int) -> Optional[int]:
    """Converts a module's analog byte index into a word offset."""
    if index == NO_CHANNEL:
        return None
    return index // 2


class ModuleDiscovery:
    """
    Probes the coupler's module slots in order and builds the module list.

    Slot n is described by 16 registers at 0xA000 + 16 * n. Probing stops at
    the first slot whose status register reads 0; that slot is not part of
    the result.
    """

    def __init__(self, access: RegisterAccess, resolver: Optional[NameResolver] = None,
                 max_modules: int = 253):
        self.access = access
        self.resolver = resolver
        self.max_modules = max_modules

    def read_summary(self) -> ControllerSummary:
        read = self.access.read_word
        return ControllerSummary(
            module_count=read(REGISTER_MAP["process_modules"].address),
            analog_in_count=read(REGISTER_MAP["process_analog_inp_cnt"].address),
            analog_out_count=read(REGISTER_MAP["process_analog_out_cnt"].address),
            digital_in_count=read(REGISTER_MAP["process_digital_inp_cnt"].address),
            digital_out_count=read(REGISTER_MAP["process_digital_out_cnt"].address),
        )

    def resolve_name(self, position: int, hardware_id: int) -> str:
        """
        Display name for a hardware id. Never raises: an unknown id or a
        failing resolver yields the placeholder ``module_<position>``.
        """
        name = KNOWN_HARDWARE.get(hardware_id)
        if name:
            return name
        if self.resolver is not None:
            try:
                name = self.resolver(hardware_id)
            except Exception as e:  # pylint: disable=broad-except
                logger.warning("Name resolver failed for hardware id %s: %s", hardware_id, e)
                name = None
            if name:
                return name
        return f"module_{position}"

    def probe(self, position: int) -> Optional[Module]:
        """Reads one slot. Returns None if the slot is empty."""
        status = self.access.read_word(module_register_address(position, "status"))
        if status == 0:
            return None

        def read(name: str) -> int:
            return self.access.read_word(module_register_address(position, name))

        hardware_id = read("hardware_id")
        return Module(
            position=position,
            hardware_id=hardware_id,
            name=self.resolve_name(position, hardware_id),
            digital_in_base=digital_base(read("digital_in_index")),
            digital_out_base=digital_base(read("digital_out_index")),
            analog_in_base=analog_base(read("analog_in_index")),
            analog_out_base=analog_base(read("analog_out_index")),
        )

    def discover(self) -> Tuple[Module, ...]:
        """
        Runs discovery and returns the module list as an immutable snapshot.

        Transport failures propagate to the caller.
        """
        modules: List[Module] = []
        while len(modules) < self.max_modules:
            module = self.probe(len(modules))
            if module is None:
                break
            logger.debug("Found module %s: %s (id %s)", module.position, module.name,
                         module.hardware_id)
            modules.append(module)
        else:
            logger.warning("Stopped discovery at the %s module limit", self.max_modules)

        logger.info("Discovered %s modules", len(modules))
        return tuple(modules)
