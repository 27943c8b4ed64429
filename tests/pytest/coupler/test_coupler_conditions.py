# tests/pytest/coupler/test_coupler_conditions.py
from unittest.mock import MagicMock

import pytest

from buscoupler.coupler_conditions import (
    CouplerCondition,
    ExceptionMapper,
    translate_fault,
)
from buscoupler.coupler_transport import TransportError, TransportFault
from buscoupler.coupler_types import Channel, Condition, PollPhase


@pytest.mark.parametrize("channel, fault, expected", [
    (Channel.VALUE, TransportFault.TIMEOUT, Condition.TIMEOUT),
    (Channel.WATCHDOG, TransportFault.CONNECTION_LOST, Condition.CONNECTION_LOST),
    (Channel.DIGITAL_IN, TransportFault.NOT_CONNECTED, Condition.CONNECTION_LOST),
    (Channel.REGISTER, TransportFault.ILLEGAL_DATA_VALUE, Condition.INVALID_REGISTER_DATA),
    (Channel.REGISTER, TransportFault.ILLEGAL_DATA_ADDRESS, Condition.INVALID_REGISTER_DATA),
    (Channel.VALUE, TransportFault.ILLEGAL_DATA_ADDRESS, Condition.INVALID_DATA_SIZE),
    (Channel.ANALOG_OUT, TransportFault.ILLEGAL_DATA_VALUE, Condition.INVALID_DATA_SIZE),
    (Channel.VALUE, TransportFault.ILLEGAL_FUNCTION, Condition.UNHANDLED),
    (Channel.PARAMETER, TransportFault.SLAVE_FAILURE, Condition.UNHANDLED),
    (Channel.VALUE, 11, Condition.UNHANDLED),
])
def test_translate_fault(channel, fault, expected):
    assert translate_fault(channel, fault) == expected


def test_report_delivers_condition():
    received = []
    mapper = ExceptionMapper(received.append)

    condition = mapper.report(Condition.INVALID_MODULE_INDEX, module=4, detail="2 modules")

    assert received == [condition]
    assert condition == CouplerCondition(Condition.INVALID_MODULE_INDEX, module=4, detail="2 modules")
    assert "INVALID_MODULE_INDEX" in str(condition)
    assert "module=4" in str(condition)


def test_report_without_callback():
    mapper = ExceptionMapper()
    condition = mapper.report(Condition.EMPTY_RESPONSE)
    assert condition.kind == Condition.EMPTY_RESPONSE


def test_raising_callback_is_contained():
    mapper = ExceptionMapper(MagicMock(side_effect=RuntimeError("ui gone")))
    condition = mapper.report(Condition.WATCHDOG_EXPIRED, phase=PollPhase.WATCHDOG_CHECK)
    assert condition.kind == Condition.WATCHDOG_EXPIRED


def test_timeout_disconnects_before_reporting():
    events = []
    mapper = ExceptionMapper(lambda c: events.append(("report", c.kind)))
    mapper.bind(lambda: events.append(("disconnect",)), lambda: True)

    mapper.report_transport(TransportError(TransportFault.TIMEOUT, Channel.DIGITAL_IN),
                            phase=PollPhase.DIGITAL_IN_READ)

    assert events == [("disconnect",), ("report", Condition.TIMEOUT)]


def test_other_faults_do_not_disconnect():
    disconnect = MagicMock()
    received = []
    mapper = ExceptionMapper(received.append, disconnect, lambda: True)

    condition = mapper.report_transport(
        TransportError(TransportFault.ILLEGAL_DATA_VALUE, Channel.REGISTER), module=1)

    disconnect.assert_not_called()
    assert condition.kind == Condition.INVALID_REGISTER_DATA
    assert condition.channel == Channel.REGISTER
    assert condition.module == 1
    assert received == [condition]


def test_faults_after_disconnect_are_ignored():
    received = []
    disconnect = MagicMock()
    mapper = ExceptionMapper(received.append, disconnect, lambda: False)

    result = mapper.report_transport(TransportError(TransportFault.CONNECTION_LOST, Channel.VALUE))

    assert result is None
    assert received == []
    disconnect.assert_not_called()
