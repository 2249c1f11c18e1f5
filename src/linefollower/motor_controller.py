#!/usr/bin/env python3

import time
import logging
import threading
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from gpiozero import DigitalOutputDevice

from .config import MotorConfig

logger = logging.getLogger(__name__)


class MotionState(Enum):
    STOPPED = 'stopped'
    FORWARD = 'forward'
    BACKWARD = 'backward'
    TURN_LEFT = 'turn_left'
    TURN_RIGHT = 'turn_right'
    VEER_LEFT = 'veer_left'
    VEER_RIGHT = 'veer_right'
    SEARCH_LEFT = 'search_left'
    SEARCH_RIGHT = 'search_right'


# (in1, in2) levels for one wheel
FWD = (False, True)
BWD = (True, False)
OFF = (False, False)


def _pattern(left: Tuple[bool, bool], right: Tuple[bool, bool]) -> Dict[str, Tuple[bool, bool]]:
    return {
        'front_left': left,
        'front_right': right,
        'back_left': left,
        'back_right': right,
    }


# Wheel truth table. SEARCH_LEFT and SEARCH_RIGHT drive the same pins as
# VEER_RIGHT and VEER_LEFT; the robot's wiring has always been this way and the
# search pattern was tuned against it.
MOTION_PATTERNS = {
    MotionState.STOPPED: _pattern(OFF, OFF),
    MotionState.FORWARD: _pattern(FWD, FWD),
    MotionState.BACKWARD: _pattern(BWD, BWD),
    MotionState.TURN_LEFT: _pattern(BWD, FWD),
    MotionState.TURN_RIGHT: _pattern(FWD, BWD),
    MotionState.VEER_LEFT: _pattern(OFF, FWD),
    MotionState.VEER_RIGHT: _pattern(FWD, OFF),
    MotionState.SEARCH_LEFT: _pattern(FWD, OFF),
    MotionState.SEARCH_RIGHT: _pattern(OFF, FWD),
}

# Turning around spins in place: right wheels forward, left wheels back
TURN_AROUND_PATTERN = MOTION_PATTERNS[MotionState.TURN_LEFT]


class MotorController:
    """
    Four-wheel motor driver for the delivery robot.

    Each wheel is wired to an H-bridge through two direction inputs, so every
    movement is just a set of eight digital levels. All pin writes and state
    changes go through one re-entrant lock; `emergency_stop` can be called from
    any thread and preempts a running turn-around.
    """

    def __init__(self, config: Optional[MotorConfig] = None,
                 pins: Optional[Dict[str, Tuple[object, object]]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            config: Motor pin assignment and timings
            pins: Optional wheel name -> (in1, in2) output devices. Anything with
                  on()/off()/value/close() works; defaults to gpiozero devices
            sleep: Used for the stop settle delay
        """
        self.config = config or MotorConfig()
        self._sleep = sleep
        self._lock = threading.RLock()
        self._abort = threading.Event()
        self._turn_guard = threading.Lock()
        self._state = MotionState.STOPPED

        if pins is None:
            pins = self._create_outputs()
        missing = set(self.config.wheel_pins()) - set(pins)
        if missing:
            raise ValueError(f"Missing motor outputs for wheels: {', '.join(sorted(missing))}")
        self.outputs = {wheel: tuple(pins[wheel]) for wheel in self.config.wheel_pins()}

        self._write_pattern(MOTION_PATTERNS[MotionState.STOPPED])
        logger.info(f"Motor controller initialized: {self.config.wheel_pins()}")

    def _create_outputs(self) -> Dict[str, Tuple[object, object]]:
        outputs = {}
        for wheel, (in1, in2) in self.config.wheel_pins().items():
            outputs[wheel] = (DigitalOutputDevice(in1, initial_value=False),
                              DigitalOutputDevice(in2, initial_value=False))
            logger.debug(f"{wheel} motor on GPIO {in1}/{in2}")
        return outputs

    @property
    def state(self) -> MotionState:
        return self._state

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    # ------------------------------------------------------------------
    # Pin writes
    # ------------------------------------------------------------------

    def _write_signal(self, wheel: str, index: int, device, level: bool):
        try:
            if level:
                device.on()
            else:
                device.off()
        except Exception as e:
            logger.error(f"Failed to write {wheel} in{index + 1}={int(level)}: {e}")

    def _write_pattern(self, pattern: Dict[str, Tuple[bool, bool]]):
        """Write all eight signals; a failing signal never blocks the others."""
        for wheel, devices in self.outputs.items():
            for index, (device, level) in enumerate(zip(devices, pattern[wheel])):
                self._write_signal(wheel, index, device, level)

    def _asserted_outputs(self):
        asserted = []
        for wheel, devices in self.outputs.items():
            for index, device in enumerate(devices):
                try:
                    if device.value:
                        asserted.append(f"{wheel}.in{index + 1}")
                except Exception as e:
                    logger.error(f"Failed to read back {wheel} in{index + 1}: {e}")
        return asserted

    def _set_state(self, state: MotionState):
        with self._lock:
            if self._state == state:
                return
            self._write_pattern(MOTION_PATTERNS[state])
            previous, self._state = self._state, state
            logger.debug(f"Motion: {previous.value} -> {state.value}")

    # ------------------------------------------------------------------
    # Movement commands
    # ------------------------------------------------------------------

    def move_forward(self):
        self._set_state(MotionState.FORWARD)

    def move_backward(self):
        self._set_state(MotionState.BACKWARD)

    def turn_left(self):
        self._set_state(MotionState.TURN_LEFT)

    def turn_right(self):
        self._set_state(MotionState.TURN_RIGHT)

    def veer_left(self):
        self._set_state(MotionState.VEER_LEFT)

    def veer_right(self):
        self._set_state(MotionState.VEER_RIGHT)

    def search_left(self):
        self._set_state(MotionState.SEARCH_LEFT)

    def search_right(self):
        self._set_state(MotionState.SEARCH_RIGHT)

    def stop(self):
        """
        Stop all wheels and verify the outputs actually dropped.

        After a settle delay every output is read back; if any is still high
        the stop is written once more.
        """
        with self._lock:
            if self._state == MotionState.STOPPED:
                return

            self._write_pattern(MOTION_PATTERNS[MotionState.STOPPED])
            self._state = MotionState.STOPPED
            self._sleep(self.config.stop_settle_delay)

            asserted = self._asserted_outputs()
            if asserted:
                logger.critical(f"Motors still driven after stop: {', '.join(asserted)}; retrying")
                self._write_pattern(MOTION_PATTERNS[MotionState.STOPPED])
                asserted = self._asserted_outputs()
                if asserted:
                    logger.critical(f"Stop retry failed, outputs still driven: {', '.join(asserted)}")
            logger.debug("Motors stopped")

    def emergency_stop(self):
        """Cut every output now, whatever state the robot believes it is in."""
        self._abort.set()
        with self._lock:
            self._write_pattern(MOTION_PATTERNS[MotionState.STOPPED])
            self._state = MotionState.STOPPED
        logger.warning("EMERGENCY STOP - all motor outputs off")

    def turn_around(self) -> bool:
        """
        Spin in place for the configured duration, then stop.

        Blocks the caller. Returns False if a turn-around was already running
        or an emergency stop cut it short.
        """
        if not self._turn_guard.acquire(blocking=False):
            logger.warning("Turn-around already in progress, ignoring request")
            return False
        try:
            with self._lock:
                self._abort.clear()
                logger.info(f"Turning around ({self.config.turn_around_duration}s)")
                self._write_pattern(TURN_AROUND_PATTERN)
                self._state = MotionState.TURN_LEFT

                aborted = self._abort.wait(self.config.turn_around_duration)
                if aborted:
                    logger.warning("Turn-around aborted by emergency stop")
                    return False

                self.stop()
                logger.info("Turn-around complete")
                return True
        finally:
            self._turn_guard.release()

    def close(self):
        """Stop the motors and release the GPIO outputs."""
        self._abort.set()
        with self._lock:
            self._write_pattern(MOTION_PATTERNS[MotionState.STOPPED])
            self._state = MotionState.STOPPED
        for wheel, devices in self.outputs.items():
            for device in devices:
                try:
                    device.close()
                except Exception as e:
                    logger.warning(f"Error closing {wheel} output: {e}")
        logger.info("Motor controller closed")
