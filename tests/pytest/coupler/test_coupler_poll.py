# tests/pytest/coupler/test_coupler_poll.py
from unittest.mock import MagicMock

import pytest

from buscoupler.coupler_memory import IOBufferStore, ProcessImage
from buscoupler.coupler_poll import PollCycle
from buscoupler.coupler_transport import TransportError, TransportFault
from buscoupler.coupler_types import Channel, ConnectionState, Condition, PollPhase

from coupler_fakes import FakeTransport, ManualDispatcher


def make_cycle(poll_period_ms=50, digital_in=8, digital_out=8, analog_in=2, analog_out=2):
    transport = FakeTransport()
    store = IOBufferStore(MagicMock())
    store.poll_period_ms = poll_period_ms
    store.attach(transport, (), ProcessImage(digital_in, digital_out, analog_in, analog_out),
                 lambda: True)
    dispatcher = ManualDispatcher()
    cycle = PollCycle(store, MagicMock(return_value=False), dispatcher)
    cycle.start()
    return cycle, transport, dispatcher


def issued_operations(transport):
    return [call[0] for call in transport.calls]


# ----------------------------------------------------------------------
# Phase order
# ----------------------------------------------------------------------
def test_round_robin_order():
    cycle, transport, dispatcher = make_cycle()

    for _ in range(6):
        cycle.tick()
        dispatcher.run_all()

    assert issued_operations(transport) == [
        "read_holding_registers",
        "read_discrete_inputs",
        "write_multiple_coils",
        "read_input_registers",
        "write_multiple_registers",
        "read_holding_registers",
    ]
    assert [call[1] for call in transport.calls[:5]] == [
        Channel.WATCHDOG, Channel.DIGITAL_IN, Channel.DIGITAL_OUT,
        Channel.ANALOG_IN, Channel.ANALOG_OUT,
    ]


def test_requests_cover_whole_buffers():
    cycle, transport, dispatcher = make_cycle(digital_in=16, analog_in=3)
    for _ in range(5):
        cycle.tick()
        dispatcher.run_all()

    assert transport.calls[0] == ("read_holding_registers", Channel.WATCHDOG, 0x1042, 1)
    assert transport.calls[1] == ("read_discrete_inputs", Channel.DIGITAL_IN, 0, 16)
    assert transport.calls[3] == ("read_input_registers", Channel.ANALOG_IN, 0, 3)
    assert transport.calls[4][2] == 0x0800


def test_empty_buffers_are_skipped_within_the_tick():
    cycle, transport, dispatcher = make_cycle(digital_in=0, digital_out=0, analog_out=0)

    cycle.tick()
    dispatcher.run_all()
    assert cycle.phase == PollPhase.DIGITAL_IN_READ
    cycle.tick()
    dispatcher.run_all()

    # Digital phases were skipped straight to the analog input read
    assert issued_operations(transport) == ["read_holding_registers", "read_input_registers"]
    assert cycle.phase == PollPhase.ANALOG_OUT_WRITE

    cycle.tick()
    dispatcher.run_all()
    # Empty analog output phase wraps around without a request
    assert cycle.phase == PollPhase.WATCHDOG_CHECK
    assert len(transport.calls) == 2


def test_on_demand_mode_only_checks_watchdog():
    cycle, transport, dispatcher = make_cycle(poll_period_ms=0)

    for _ in range(4):
        cycle.tick()
        dispatcher.run_all()

    assert issued_operations(transport) == ["read_holding_registers"] * 4
    assert cycle.phase == PollPhase.WATCHDOG_CHECK


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------
def test_inputs_are_copied_into_image():
    cycle, transport, dispatcher = make_cycle(digital_in=8, analog_in=2)
    transport.discrete_inputs = [True, False, False, True, False, False, False, True]
    transport.input_registers = [5, 0xFFFF]

    for _ in range(4):
        cycle.tick()
        dispatcher.run_all()

    image = cycle.store.image
    assert image.digital_in == [True, False, False, True, False, False, False, True]
    assert image.analog_in == [5, -1]


def test_outputs_are_flushed():
    cycle, transport, dispatcher = make_cycle(digital_out=8, analog_out=2)
    cycle.store.image.digital_out[2] = True
    cycle.store.image.analog_out[:] = [-2, 300]

    for _ in range(5):
        cycle.tick()
        dispatcher.run_all()

    assert transport.coils[:8] == [False, False, True, False, False, False, False, False]
    assert transport.holding[0x0800] == 0xFFFE
    assert transport.holding[0x0801] == 300


def test_watchdog_response_is_checked():
    cycle, transport, dispatcher = make_cycle()
    transport.holding[0x1042] = 0x00C1

    cycle.tick()
    dispatcher.run_all()

    cycle.check_watchdog.assert_called_once_with(b"\x00\xc1")


def test_response_resets_counters():
    cycle, _, dispatcher = make_cycle()
    cycle.tick()
    cycle.tick()
    cycle.tick()
    assert cycle.frame_errors == 2

    dispatcher.run_all()

    assert cycle.pending is False
    assert cycle.frame_errors == 0
    assert cycle.connection_errors == 0


def test_response_after_stop_is_dropped():
    cycle, transport, dispatcher = make_cycle(digital_in=8)
    transport.discrete_inputs = [True] * 8
    cycle.tick()
    dispatcher.run_all()
    cycle.tick()

    cycle.stop()
    dispatcher.run_all()

    assert cycle.store.image.digital_in == [False] * 8


# ----------------------------------------------------------------------
# Pending guard and escalation
# ----------------------------------------------------------------------
def test_single_request_in_flight():
    cycle, _, dispatcher = make_cycle()

    cycle.tick()
    for _ in range(3):
        cycle.tick()

    assert len(dispatcher.queue) == 1
    assert cycle.pending is True


def test_four_unanswered_ticks_count_one_connection_error():
    cycle, _, dispatcher = make_cycle()
    cycle.tick()  # issues the request, never answered

    for _ in range(3):
        cycle.tick()
    assert cycle.connection_errors == 0
    assert cycle.frame_errors == 3

    cycle.tick()
    assert cycle.connection_errors == 1
    assert cycle.frame_errors == 0
    assert cycle.pending is False

    # Next tick sends a fresh request
    cycle.tick()
    assert len(dispatcher.queue) == 2


def test_fourth_connection_error_escalates_as_timeout():
    cycle, _, _ = make_cycle()
    mapper = cycle.store.mapper

    for _ in range(4 * 5 - 1):
        cycle.tick()
    assert cycle.connection_errors == 3
    mapper.report_transport.assert_not_called()

    cycle.tick()

    mapper.report_transport.assert_called_once()
    error = mapper.report_transport.call_args[0][0]
    assert error.fault == TransportFault.TIMEOUT
    assert cycle.active is False


def test_late_answer_does_not_release_newer_request():
    cycle, _, dispatcher = make_cycle()
    cycle.tick()  # watchdog request, answered too late
    for _ in range(4):
        cycle.tick()
    assert cycle.connection_errors == 1

    cycle.tick()  # digital input request
    assert cycle.pending_phase == PollPhase.DIGITAL_IN_READ

    dispatcher.run_next()  # the late watchdog answer
    assert cycle.pending is True
    assert cycle.connection_errors == 1

    cycle.tick()
    assert len(dispatcher.queue) == 1
    assert cycle.frame_errors == 1

    dispatcher.run_next()
    assert cycle.pending is False
    assert cycle.connection_errors == 0


def test_poll_error_is_reported_and_stays_pending():
    cycle, transport, dispatcher = make_cycle()
    error = TransportError(TransportFault.SLAVE_FAILURE, Channel.WATCHDOG)
    transport.fail("read_holding_registers", error)

    cycle.tick()
    dispatcher.run_all()

    cycle.store.mapper.report_transport.assert_called_once_with(error, phase=PollPhase.WATCHDOG_CHECK)
    assert cycle.pending is True


# ----------------------------------------------------------------------
# Driven through the master
# ----------------------------------------------------------------------
def test_escalation_disconnects_and_stops_polling(buffered_master, harness):
    harness.timer.fire(20)

    assert harness.kinds == [Condition.TIMEOUT]
    assert harness.conditions[0].phase is not None
    assert buffered_master.state == ConnectionState.DISCONNECTED
    assert harness.timer.stopped
    assert harness.dispatcher.shut_down


def test_write_flush_read_round_trip(buffered_master, harness):
    harness.transport.loopback = True

    assert buffered_master.write_digital_outputs(1, 0, [True]) is True
    # watchdog, digital in, digital out
    harness.step(3)
    assert harness.transport.coils[8] is True
    assert buffered_master.read_digital_outputs(1, 0, 1) == [True]

    # analog in, analog out, watchdog, digital in
    harness.step(4)
    assert buffered_master.read_digital_inputs(1, 0, 1) == [True]
    assert buffered_master.read_digital_inputs(0, 0, 1) == [False]


def test_analog_round_trip(buffered_master, harness):
    assert buffered_master.write_analog_outputs(1, 0, [-300, 65535]) is True
    harness.step(5)

    assert harness.transport.holding[0x0800] == 0xFED4
    assert harness.transport.holding[0x0801] == 0xFFFF
    # Staged values read back signed, as in direct mode
    assert buffered_master.read_analog_outputs(1, 0, 2) == [-300, -1]


def test_staged_analog_outputs_read_back_signed(buffered_master):
    # Direct mode returns -2 for the same register (test_direct_read_back_outputs)
    assert buffered_master.write_analog_outputs(1, 1, [0xFFFE]) is True
    assert buffered_master.read_analog_outputs(1, 1, 1) == [-2]
    assert buffered_master.snapshot().analog_out == [0, -2]


def test_watchdog_expiry_stops_polling(buffered_master, harness):
    harness.transport.holding[0x1042] = 0x00C2

    harness.step()

    assert harness.kinds == [Condition.WATCHDOG_EXPIRED]
    assert harness.conditions[0].phase == PollPhase.WATCHDOG_CHECK
    assert harness.timer.stopped


@pytest.mark.parametrize("fault, kind", [
    (TransportFault.CONNECTION_LOST, Condition.CONNECTION_LOST),
    (TransportFault.TIMEOUT, Condition.TIMEOUT),
])
def test_poll_connection_faults_disconnect(buffered_master, harness, fault, kind):
    harness.transport.fail("read_holding_registers", TransportError(fault, Channel.WATCHDOG))

    harness.step()

    assert harness.kinds == [kind]
    assert not buffered_master.is_connected
