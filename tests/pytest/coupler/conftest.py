# tests/pytest/coupler/conftest.py
import pytest

from coupler_fakes import DriverHarness, FakeTransport


@pytest.fixture
def fake_transport():
    """
    Coupler with two modules:
        0: 8 digital inputs, 8 digital outputs, no analog data
        1: 16 digital inputs, 16 digital outputs, 2 analog inputs, 2 analog outputs
    """
    transport = FakeTransport()
    transport.set_summary(modules=2, analog_in=2, analog_out=2, digital_in=3, digital_out=3)
    transport.add_module(0, 41528, di=0, do=0)
    transport.add_module(1, 7001, di=1, do=1, ai=0, ao=0)
    transport.holding[0x1040] = 100  # watchdog threshold
    transport.discrete_inputs = [False] * 24
    transport.coils = [False] * 24
    transport.input_registers = [0, 0]
    return transport


@pytest.fixture
def harness(fake_transport):
    return DriverHarness(fake_transport)


@pytest.fixture
def direct_master(harness):
    """Connected master in direct mode (poll period 0)."""
    master = harness.build()
    master.connect()
    yield master
    master.close()


@pytest.fixture
def buffered_master(harness):
    """Connected master polling every 50 ms through the manual timer."""
    master = harness.build(poll_period_ms=50)
    master.connect()
    yield master
    master.close()
