# tests/pytest/coupler/test_coupler_config.py
import json

import pytest

from buscoupler.coupler_config import ENV_PREFIX, BusCouplerConfig

FIELDS = ("host", "port", "unit", "timeout_ms", "poll_period_ms",
          "reconnect_cooldown_s", "boot_retry_delay_s", "max_modules")


@pytest.fixture
def clean_env(monkeypatch):
    """Removes BUSCOUPLER_* variables, including any a .env load adds during the test."""
    for field in FIELDS:
        monkeypatch.setenv(ENV_PREFIX + field.upper(), "")
        monkeypatch.delenv(ENV_PREFIX + field.upper())
    return monkeypatch


def test_defaults():
    config = BusCouplerConfig()
    assert config.port == 502
    assert config.poll_period_ms == 0
    assert config.reconnect_cooldown_s == 10.0
    assert config.max_modules == 253
    config.validate()


def test_from_dict_keeps_defaults_for_missing_keys():
    config = BusCouplerConfig.from_dict({"host": "192.168.100.1", "poll_period_ms": 20})
    assert config.host == "192.168.100.1"
    assert config.poll_period_ms == 20
    assert config.timeout_ms == 1000


def test_to_dict_round_trip():
    config = BusCouplerConfig.from_dict({"host": "10.1.1.1", "unit": 3})
    assert BusCouplerConfig.from_dict(config.to_dict()).to_dict() == config.to_dict()


@pytest.mark.parametrize("field, value", [
    ("host", ""),
    ("port", 0),
    ("port", 70000),
    ("unit", 256),
    ("timeout_ms", 0),
    ("poll_period_ms", -5),
    ("poll_period_ms", "50"),
    ("reconnect_cooldown_s", -1),
    ("boot_retry_delay_s", -0.5),
    ("max_modules", 0),
])
def test_validate_rejects(field, value):
    config = BusCouplerConfig.from_dict({field: value})
    with pytest.raises(ValueError):
        config.validate()


def test_unquantized_period_is_only_a_warning():
    BusCouplerConfig.from_dict({"poll_period_ms": 22}).validate()


def test_import_config_from_file(tmp_path):
    path = tmp_path / "coupler.json"
    path.write_text(json.dumps({"host": "192.168.100.1", "port": 1502, "poll_period_ms": 50}))

    config = BusCouplerConfig.import_config_from_file(str(path))

    assert config.host == "192.168.100.1"
    assert config.port == 1502
    assert config.poll_period_ms == 50


def test_import_config_rejects_non_object(tmp_path):
    path = tmp_path / "coupler.json"
    path.write_text(json.dumps([1, 2, 3]))
    with pytest.raises(ValueError):
        BusCouplerConfig.import_config_from_file(str(path))


def test_import_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        BusCouplerConfig.import_config_from_file(str(tmp_path / "missing.json"))


def test_from_env_variables(clean_env, tmp_path):
    clean_env.setenv("BUSCOUPLER_HOST", "10.0.0.9")
    clean_env.setenv("BUSCOUPLER_POLL_PERIOD_MS", "25")
    clean_env.setenv("BUSCOUPLER_UNIT", "0x10")
    clean_env.setenv("BUSCOUPLER_RECONNECT_COOLDOWN_S", "2.5")

    config = BusCouplerConfig.from_env(str(tmp_path / "no.env"))

    assert config.host == "10.0.0.9"
    assert config.poll_period_ms == 25
    assert config.unit == 16
    assert config.reconnect_cooldown_s == 2.5


def test_from_env_reads_dotenv_file(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("BUSCOUPLER_HOST=172.16.0.2\nBUSCOUPLER_PORT=1502\n")
    clean_env.setenv("BUSCOUPLER_PORT", "2502")

    config = BusCouplerConfig.from_env(str(env_file))

    assert config.host == "172.16.0.2"
    # Environment wins over the file
    assert config.port == 2502


def test_from_env_invalid_number(clean_env, tmp_path):
    clean_env.setenv("BUSCOUPLER_TIMEOUT_MS", "soon")
    with pytest.raises(ValueError, match="BUSCOUPLER_TIMEOUT_MS"):
        BusCouplerConfig.from_env(str(tmp_path / "no.env"))
