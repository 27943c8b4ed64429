import json
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .coupler_utils import quantize_period_ms
from .logger import get_logger

logger, _ = get_logger("buscoupler.config")

ENV_PREFIX = "BUSCOUPLER_"


class BusCouplerConfig:
    """
    Model for a bus coupler connection configuration.
    """
    def __init__(self):
        self.host: str = "127.0.0.1"
        self.port: int = 502
        self.unit: int = 0
        self.timeout_ms: int = 1000
        self.poll_period_ms: int = 0
        self.reconnect_cooldown_s: float = 10.0
        self.boot_retry_delay_s: float = 10.0
        self.max_modules: int = 253

    _INT_FIELDS = ("port", "unit", "timeout_ms", "poll_period_ms", "max_modules")
    _FLOAT_FIELDS = ("reconnect_cooldown_s", "boot_retry_delay_s")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BusCouplerConfig':
        """
        Creates a BusCouplerConfig instance from a dictionary.
        """
        config = cls()
        config.host = data.get("host", config.host)
        config.port = data.get("port", config.port)
        config.unit = data.get("unit", config.unit)
        config.timeout_ms = data.get("timeout_ms", config.timeout_ms)
        config.poll_period_ms = data.get("poll_period_ms", config.poll_period_ms)
        config.reconnect_cooldown_s = data.get("reconnect_cooldown_s", config.reconnect_cooldown_s)
        config.boot_retry_delay_s = data.get("boot_retry_delay_s", config.boot_retry_delay_s)
        config.max_modules = data.get("max_modules", config.max_modules)
        return config

    @classmethod
    def import_config_from_file(cls, file_path: str) -> 'BusCouplerConfig':
        """Read config from a JSON file."""
        with open(file_path, 'r') as f:
            raw_config = json.load(f)
        if not isinstance(raw_config, dict):
            raise ValueError(f"Expected a JSON object in {file_path}, got {type(raw_config).__name__}")

        config = cls.from_dict(raw_config)
        logger.info("(PASS) Coupler config loaded from %s: %s", file_path, config)
        return config

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> 'BusCouplerConfig':
        """
        Reads BUSCOUPLER_* variables, loading a .env file first if present.
        Variables already set in the environment win over the file.
        """
        load_dotenv(dotenv_path=dotenv_path, override=False)

        data: Dict[str, Any] = {}
        for name in ("host",) + cls._INT_FIELDS + cls._FLOAT_FIELDS:
            value = os.getenv(ENV_PREFIX + name.upper())
            if value is None or value == "":
                continue
            try:
                if name in cls._INT_FIELDS:
                    data[name] = int(value, 0)
                elif name in cls._FLOAT_FIELDS:
                    data[name] = float(value)
                else:
                    data[name] = value
            except ValueError as e:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {value!r}") from e
        return cls.from_dict(data)

    def validate(self) -> None:
        """Validates the configuration."""
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError(f"Invalid host: {self.host!r}. Must be a non-empty string.")
        if not isinstance(self.port, int) or not 0 < self.port <= 65535:
            raise ValueError(f"Invalid port: {self.port}. Must be an integer in 1..65535.")
        if not isinstance(self.unit, int) or not 0 <= self.unit <= 255:
            raise ValueError(f"Invalid unit: {self.unit}. Must be an integer in 0..255.")
        if not isinstance(self.timeout_ms, int) or self.timeout_ms <= 0:
            raise ValueError(f"Invalid timeout_ms: {self.timeout_ms}. Must be a positive integer.")
        if not isinstance(self.poll_period_ms, int) or self.poll_period_ms < 0:
            raise ValueError(f"Invalid poll_period_ms: {self.poll_period_ms}. Must be a non-negative integer.")
        if not isinstance(self.reconnect_cooldown_s, (int, float)) or self.reconnect_cooldown_s < 0:
            raise ValueError(f"Invalid reconnect_cooldown_s: {self.reconnect_cooldown_s}. Must be >= 0.")
        if not isinstance(self.boot_retry_delay_s, (int, float)) or self.boot_retry_delay_s < 0:
            raise ValueError(f"Invalid boot_retry_delay_s: {self.boot_retry_delay_s}. Must be >= 0.")
        if not isinstance(self.max_modules, int) or self.max_modules <= 0:
            raise ValueError(f"Invalid max_modules: {self.max_modules}. Must be a positive integer.")

        if quantize_period_ms(self.poll_period_ms) != self.poll_period_ms:
            logger.warning("poll_period_ms %s will be rounded down to %s ms",
                           self.poll_period_ms, quantize_period_ms(self.poll_period_ms))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "unit": self.unit,
            "timeout_ms": self.timeout_ms,
            "poll_period_ms": self.poll_period_ms,
            "reconnect_cooldown_s": self.reconnect_cooldown_s,
            "boot_retry_delay_s": self.boot_retry_delay_s,
            "max_modules": self.max_modules,
        }

    def __repr__(self) -> str:
        return (
            f"BusCouplerConfig(host='{self.host}', port={self.port}, unit={self.unit}, "
            f"poll_period_ms={self.poll_period_ms})"
        )
