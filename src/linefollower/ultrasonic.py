#!/usr/bin/env python3

import time
import logging
import threading
from typing import Callable, List, Optional

from gpiozero import DigitalInputDevice, DigitalOutputDevice

from .config import UltrasonicConfig

logger = logging.getLogger(__name__)


class RangeSensor:
    """
    HC-SR04 ultrasonic range sensor polled on a background thread.

    Every `period` seconds a trigger pulse is sent and the echo pulse is
    timed. Readings outside the sensor's trustworthy range are dropped and
    the last good distance is kept, so one bad echo never clears an obstacle.
    """

    def __init__(self, config: Optional[UltrasonicConfig] = None,
                 trigger=None, echo=None,
                 clock: Callable[[], float] = time.perf_counter,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or UltrasonicConfig()
        self._clock = clock
        self._sleep = sleep

        self.trigger = trigger if trigger is not None else DigitalOutputDevice(
            self.config.trig_pin, initial_value=False)
        self.echo = echo if echo is not None else DigitalInputDevice(
            self.config.echo_pin, pull_up=False)

        self._lock = threading.Lock()
        self._distance: Optional[float] = None
        self._obstacle = False
        self.distance_changed: List[Callable[[float], None]] = []

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(f"Range sensor on GPIO trig={self.config.trig_pin} echo={self.config.echo_pin}, "
                    f"stop distance {self.config.stop_distance}m")

    @property
    def obstacle_detected(self) -> bool:
        return self._obstacle

    def read(self) -> Optional[float]:
        """Latest accepted distance in meters, or None before the first good reading."""
        with self._lock:
            return self._distance

    def add_listener(self, callback: Callable[[float], None]):
        self.distance_changed.append(callback)

    def measure(self) -> Optional[float]:
        """Fire one trigger pulse and time the echo. Returns meters, or None on timeout."""
        self.trigger.off()
        self.trigger.on()
        self._sleep(self.config.trigger_pulse)
        self.trigger.off()

        deadline = self._clock() + self.config.echo_timeout
        while not self.echo.value:
            if self._clock() > deadline:
                logger.debug("Ultrasonic echo never started")
                return None
        pulse_start = self._clock()

        deadline = pulse_start + self.config.echo_timeout
        while self.echo.value:
            if self._clock() > deadline:
                logger.debug("Ultrasonic echo never ended")
                return None
        pulse_end = self._clock()

        return (pulse_end - pulse_start) * self.config.speed_of_sound / 2

    def accept_reading(self, distance: Optional[float]) -> bool:
        """
        Validate and latch a distance reading.

        Returns True if the reading was accepted. Listeners are only told
        about accepted readings.
        """
        if distance is None:
            return False
        if not self.config.min_distance <= distance <= self.config.max_distance:
            logger.debug(f"Discarding out-of-range distance {distance:.3f}m")
            return False

        with self._lock:
            self._distance = distance
            obstacle = distance < self.config.stop_distance
            if obstacle and not self._obstacle:
                logger.warning(f"Obstacle detected at {distance:.2f}m")
            elif self._obstacle and not obstacle:
                logger.info(f"Obstacle cleared ({distance:.2f}m)")
            self._obstacle = obstacle

        for callback in list(self.distance_changed):
            try:
                callback(distance)
            except Exception as e:
                logger.error(f"Distance listener failed: {e}")
        return True

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='range-sensor', daemon=True)
        self._thread.start()
        logger.info("Range sensor started")

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.config.period + 2 * self.config.echo_timeout + 0.5)
            self._thread = None
        logger.info("Range sensor stopped")

    def close(self):
        self.stop()
        for device in (self.trigger, self.echo):
            try:
                device.close()
            except Exception as e:
                logger.warning(f"Error closing range sensor device: {e}")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.accept_reading(self.measure())
            except Exception as e:
                logger.debug(f"Ultrasonic measurement failed: {e}")
            self._stop_event.wait(self.config.period)
