from .coupler_conditions import CouplerCondition, CouplerError, HostUnreachableError
from .coupler_config import BusCouplerConfig
from .coupler_master import BusCouplerMaster
from .coupler_types import (
    Channel,
    Condition,
    ConnectionState,
    ControllerSummary,
    Module,
    PollPhase,
    ProcessImageSnapshot,
)

__all__ = [
    "BusCouplerConfig",
    "BusCouplerMaster",
    "Channel",
    "Condition",
    "ConnectionState",
    "ControllerSummary",
    "CouplerCondition",
    "CouplerError",
    "HostUnreachableError",
    "Module",
    "PollPhase",
    "ProcessImageSnapshot",
]
