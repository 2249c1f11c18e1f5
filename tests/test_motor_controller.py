import logging
import threading
import time

import pytest

from conftest import FakeOutput, make_pins, pin_levels

from linefollower.config import MotorConfig
from linefollower.motor_controller import MotionState, MotorController

FWD = (False, True)
BWD = (True, False)
OFF = (False, False)


def levels(left, right):
    return {'front_left': left, 'front_right': right, 'back_left': left, 'back_right': right}


@pytest.mark.parametrize('command, state, expected', [
    ('move_forward', MotionState.FORWARD, levels(FWD, FWD)),
    ('move_backward', MotionState.BACKWARD, levels(BWD, BWD)),
    ('turn_left', MotionState.TURN_LEFT, levels(BWD, FWD)),
    ('turn_right', MotionState.TURN_RIGHT, levels(FWD, BWD)),
    ('veer_left', MotionState.VEER_LEFT, levels(OFF, FWD)),
    ('veer_right', MotionState.VEER_RIGHT, levels(FWD, OFF)),
    ('search_left', MotionState.SEARCH_LEFT, levels(FWD, OFF)),
    ('search_right', MotionState.SEARCH_RIGHT, levels(OFF, FWD)),
])
def test_truth_table(motors, command, state, expected):
    getattr(motors, command)()
    assert motors.state == state
    assert pin_levels(motors) == expected


def test_starts_stopped(motors):
    assert motors.state == MotionState.STOPPED
    assert pin_levels(motors) == levels(OFF, OFF)


def test_reissuing_state_is_noop(motors):
    motors.move_forward()
    device = motors.outputs['front_left'][1]
    writes = len(device.writes)
    motors.move_forward()
    assert len(device.writes) == writes


def test_stop_turns_everything_off(motors):
    motors.turn_right()
    motors.stop()
    assert motors.state == MotionState.STOPPED
    assert pin_levels(motors) == levels(OFF, OFF)


def test_stop_is_idempotent(motors):
    motors.move_forward()
    motors.stop()
    device = motors.outputs['back_right'][1]
    writes = len(device.writes)
    motors.stop()
    assert len(device.writes) == writes


def test_stop_waits_settle_delay_before_verifying():
    sleeps = []
    motors = MotorController(MotorConfig(), pins=make_pins(), sleep=sleeps.append)
    motors.move_forward()
    motors.stop()
    assert sleeps == [0.05]


def test_stuck_output_retried_once(caplog):
    stuck = FakeOutput(stuck_high=True)
    motors = MotorController(MotorConfig(), pins=make_pins(front_left=(FakeOutput(), stuck)),
                             sleep=lambda seconds: None)
    motors.move_forward()
    writes_before = len(stuck.writes)

    with caplog.at_level(logging.CRITICAL):
        motors.stop()

    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 2
    assert 'front_left.in2' in critical[0].getMessage()
    # first stop write plus exactly one retry
    assert stuck.writes[writes_before:] == [False, False]


def test_failed_write_does_not_block_other_signals(caplog):
    broken = FakeOutput(fail=True)
    motors = MotorController(MotorConfig(), pins=make_pins(front_right=(broken, FakeOutput())),
                             sleep=lambda seconds: None)
    with caplog.at_level(logging.ERROR):
        motors.move_forward()

    assert motors.state == MotionState.FORWARD
    assert motors.outputs['front_right'][1].value
    assert motors.outputs['back_right'][1].value
    assert any('front_right in1' in r.getMessage() for r in caplog.records)


def test_emergency_stop_bypasses_idempotence(motors):
    device = motors.outputs['front_left'][0]
    writes = len(device.writes)
    motors.emergency_stop()
    assert len(device.writes) == writes + 1
    assert motors.state == MotionState.STOPPED


def test_turn_around_spins_then_stops(motors):
    recorded = []
    write_pattern = motors._write_pattern

    def record(pattern):
        recorded.append(pattern)
        write_pattern(pattern)

    motors._write_pattern = record
    assert motors.turn_around() is True
    assert recorded[0] == levels(BWD, FWD)
    assert motors.state == MotionState.STOPPED
    assert pin_levels(motors) == levels(OFF, OFF)


def test_emergency_stop_preempts_turn_around():
    motors = MotorController(MotorConfig(turn_around_duration=10.0), pins=make_pins(),
                             sleep=lambda seconds: None)
    results = []
    worker = threading.Thread(target=lambda: results.append(motors.turn_around()))
    worker.start()

    deadline = time.monotonic() + 2.0
    while motors.state != MotionState.TURN_LEFT and time.monotonic() < deadline:
        time.sleep(0.005)

    motors.emergency_stop()
    worker.join(timeout=2.0)

    assert not worker.is_alive()
    assert results == [False]
    assert motors.state == MotionState.STOPPED
    assert pin_levels(motors) == levels(OFF, OFF)


def test_turn_around_not_reentrant():
    motors = MotorController(MotorConfig(turn_around_duration=10.0), pins=make_pins(),
                             sleep=lambda seconds: None)
    worker = threading.Thread(target=motors.turn_around)
    worker.start()

    deadline = time.monotonic() + 2.0
    while motors.state != MotionState.TURN_LEFT and time.monotonic() < deadline:
        time.sleep(0.005)

    assert motors.turn_around() is False
    motors.emergency_stop()
    worker.join(timeout=2.0)
    assert not worker.is_alive()


def test_missing_wheel_outputs_rejected():
    pins = make_pins()
    del pins['back_left']
    with pytest.raises(ValueError):
        MotorController(MotorConfig(), pins=pins)


def test_close_releases_outputs():
    pins = make_pins()
    with MotorController(MotorConfig(), pins=pins, sleep=lambda seconds: None) as motors:
        motors.move_forward()
    assert all(device.closed for pair in pins.values() for device in pair)
    assert all(not device.value for pair in pins.values() for device in pair)


def test_default_outputs_are_gpiozero_devices(mock_factory):
    motors = MotorController(MotorConfig(), sleep=lambda seconds: None)
    motors.move_forward()
    # front left wheel: in1 on GPIO5 low, in2 on GPIO6 high
    assert not mock_factory.pin(5).state
    assert mock_factory.pin(6).state
    motors.stop()
    assert not mock_factory.pin(6).state
    motors.close()
