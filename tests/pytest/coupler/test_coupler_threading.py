# tests/pytest/coupler/test_coupler_threading.py
import threading
import time

from buscoupler.coupler_config import BusCouplerConfig
from buscoupler.coupler_master import BusCouplerMaster
from buscoupler.coupler_types import Condition
from buscoupler.coupler_utils import bytes_to_unsigned_words, unpack_bits


def run_threads(*targets, timeout=3.0):
    errors = []

    def guarded(target):
        def run():
            try:
                target()
            except Exception as e:  # pylint: disable=broad-except
                errors.append(e)
        return run

    threads = [threading.Thread(target=guarded(t), daemon=True) for t in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout)
    return [t for t in threads if t.is_alive()], errors


# ----------------------------------------------------------------------
# Condition delivery vs. the process image lock
# ----------------------------------------------------------------------
def test_callback_reading_image_while_other_thread_is_refused(buffered_master):
    in_callback = threading.Event()
    snapshots = []

    def on_condition(condition):
        if condition.kind == Condition.VALUE_OUT_OF_RANGE:
            in_callback.set()
            time.sleep(0.2)
            snapshots.append(buffered_master.snapshot())

    buffered_master.on_condition = on_condition
    results = []

    def out_of_range_writer():
        buffered_master.write_analog_outputs(1, 0, [70000])

    def invalid_reader():
        in_callback.wait(2.0)
        results.append(buffered_master.read_digital_inputs(99, 0, 1))

    stuck, errors = run_threads(out_of_range_writer, invalid_reader)

    assert stuck == []
    assert errors == []
    assert len(snapshots) == 1
    assert results == [None]


def test_concurrent_refusals_all_delivered(buffered_master):
    received = []
    lock = threading.Lock()

    def on_condition(condition):
        buffered_master.read_digital_outputs(1, 0, 1)
        with lock:
            received.append(condition.kind)

    buffered_master.on_condition = on_condition

    def refused_reads():
        for _ in range(50):
            buffered_master.read_digital_inputs(7, 0, 1)

    def refused_writes():
        for _ in range(50):
            buffered_master.write_digital_outputs(0, 0, [True] * 9)

    stuck, errors = run_threads(refused_reads, refused_writes)

    assert stuck == []
    assert errors == []
    assert received.count(Condition.INVALID_MODULE_INDEX) == 50
    assert received.count(Condition.INVALID_DATA_SIZE) == 50


# ----------------------------------------------------------------------
# Buffered writes alongside the poll cycle
# ----------------------------------------------------------------------
def test_buffered_writes_during_manual_polling(buffered_master, harness):
    done = threading.Event()

    def writer():
        try:
            for i in range(200):
                assert buffered_master.write_digital_outputs(1, 0, [bool(i % 2)] * 16)
                assert buffered_master.write_analog_outputs(1, 0, [i, -i])
        finally:
            done.set()

    def poller():
        while not done.is_set():
            harness.step()

    stuck, errors = run_threads(writer, poller, timeout=10.0)
    assert stuck == []
    assert errors == []

    harness.step(5)
    transport = harness.transport
    assert transport.coils[8:24] == [True] * 16
    assert [transport.holding[0x0800], transport.holding[0x0801]] == [199, (-199) & 0xFFFF]

    # Every flushed frame holds one complete write, never a mix of two
    for call in transport.calls:
        if call[0] == "write_multiple_coils":
            bits = unpack_bits(call[4], call[3])[8:24]
            assert len(set(bits)) == 1
        elif call[0] == "write_multiple_registers" and call[2] == 0x0800:
            first, second = bytes_to_unsigned_words(call[3])
            assert second == (-first) & 0xFFFF


def test_buffered_writes_with_real_timer_and_worker(fake_transport):
    config = BusCouplerConfig.from_dict(dict(
        host="10.0.0.5", poll_period_ms=5, reconnect_cooldown_s=0, boot_retry_delay_s=0,
    ))
    master = BusCouplerMaster(config, transport_factory=lambda host, port: fake_transport)
    master.connect()
    try:
        def writer():
            for i in range(100):
                assert master.write_digital_outputs(1, 0, [bool(i % 2)] * 16)
                assert master.write_analog_outputs(1, 0, [i, -i])
                time.sleep(0.001)

        stuck, errors = run_threads(writer, timeout=10.0)
        assert stuck == []
        assert errors == []

        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            if fake_transport.coils[8:24] == [True] * 16 and fake_transport.holding.get(0x0800) == 99:
                break
            time.sleep(0.01)

        assert fake_transport.coils[8:24] == [True] * 16
        assert fake_transport.holding[0x0801] == (-99) & 0xFFFF
        assert master.is_connected
    finally:
        master.close()
