#!/usr/bin/env python3

import time
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Sequence

from .beacons import BeaconArrival, BeaconProximityOracle, find_arrival
from .config import NavigationConfig
from .line_detector import LineDetection, LineDetector, parse_rgb
from .motor_controller import MotionState, MotorController
from .pid import PIDController
from .ultrasonic import RangeSensor

logger = logging.getLogger(__name__)


class LastDirection(Enum):
    LEFT = 'left'
    RIGHT = 'right'
    FORWARD = 'forward'


@dataclass
class LineLossState:
    consecutive_lost_frames: int = 0
    last_direction: LastDirection = LastDirection.FORWARD

    def reset(self):
        self.consecutive_lost_frames = 0
        self.last_direction = LastDirection.FORWARD


def steering_command(error: int, config: NavigationConfig) -> MotionState:
    """Motion for a visible line; a positive error means the line is to the left."""
    magnitude = abs(error)
    if magnitude < config.small_error:
        return MotionState.FORWARD
    # Anything short of extreme_error gets a gentle veer; there is no separate medium band
    if magnitude < config.extreme_error:
        return MotionState.VEER_LEFT if error > 0 else MotionState.VEER_RIGHT
    return MotionState.TURN_LEFT if error > 0 else MotionState.TURN_RIGHT


def line_loss_command(loss: LineLossState, config: NavigationConfig) -> MotionState:
    """
    Motion while the line is missing.

    For a short loss keep heading the way the line was last seen. After
    `max_line_lost_frames` sweep in a repeating cycle: first away from the
    last known side, then back toward it.
    """
    if loss.consecutive_lost_frames < config.max_line_lost_frames:
        if loss.last_direction == LastDirection.LEFT:
            return MotionState.VEER_LEFT
        if loss.last_direction == LastDirection.RIGHT:
            return MotionState.VEER_RIGHT
        return MotionState.FORWARD

    search_index = loss.consecutive_lost_frames - config.max_line_lost_frames
    sweep_away = search_index % config.search_cycle_frames < config.search_cycle_frames // 2
    line_was_left = loss.last_direction == LastDirection.LEFT

    if sweep_away:
        return MotionState.SEARCH_RIGHT if line_was_left else MotionState.SEARCH_LEFT
    return MotionState.SEARCH_LEFT if line_was_left else MotionState.SEARCH_RIGHT


class NavigationSegment:
    """State of one follow run, from start command to stop or arrival."""

    def __init__(self, config: NavigationConfig, now: float):
        self.pid = PIDController(kp=config.kp, ki=config.ki, kd=config.kd,
                                 integral_limit=config.integral_limit)
        self.line_loss = LineLossState()
        self.started_at = now
        self.grace_started_at = now
        self.frames_processed = 0
        self.line_detected = False
        self.last_grace_log_frame: Optional[int] = None

        self.fps = 0.0
        self._fps_window_start = now
        self._fps_window_frames = 0

    def restart_grace(self, now: float):
        self.grace_started_at = now
        self.pid.reset()
        self.line_loss.reset()
        self.line_detected = False

    def grace_elapsed(self, now: float) -> float:
        return now - self.grace_started_at

    def count_frame(self, now: float, report_interval: float) -> Optional[float]:
        """Count a processed frame; returns the FPS when a report is due."""
        self.frames_processed += 1
        self._fps_window_frames += 1
        window = now - self._fps_window_start
        if window >= report_interval:
            self.fps = self._fps_window_frames / window
            self._fps_window_frames = 0
            self._fps_window_start = now
            return self.fps
        return None

    def to_dict(self, now: float, grace_period: float) -> Dict:
        return {
            'elapsed': now - self.started_at,
            'grace_remaining': max(0.0, grace_period - self.grace_elapsed(now)),
            'frames_processed': self.frames_processed,
            'fps': self.fps,
            'line_loss': {
                'consecutive_lost_frames': self.line_loss.consecutive_lost_frames,
                'last_direction': self.line_loss.last_direction.value
            },
            'pid': self.pid.get_stats()
        }


class NavigationController:
    """
    Closed-loop line follower for the delivery robot.

    One control thread runs `run()`: each tick checks beacon arrival (after
    the start-up grace period), then the obstacle flag, then steers from the
    camera's line detection. Everything else (web handlers, the back office)
    only flips flags through the public methods.
    """

    def __init__(self, camera, detector: LineDetector, motors: MotorController,
                 range_sensor: Optional[RangeSensor], oracle: BeaconProximityOracle,
                 config: Optional[NavigationConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], None]] = None):
        self.camera = camera
        self.detector = detector
        self.motors = motors
        self.range_sensor = range_sensor
        self.oracle = oracle
        self.config = config or NavigationConfig()
        self._clock = clock

        self._shutdown = threading.Event()
        self._sleep = sleep if sleep is not None else self._shutdown.wait

        self._follow_requested = False
        self._grace_reset_pending = False
        self._obstacle_detected = False
        self._line_color = None

        self.segment: Optional[NavigationSegment] = None
        self.last_detection: Optional[LineDetection] = None
        self.last_arrival: Optional[BeaconArrival] = None

        self._commands = {
            MotionState.STOPPED: motors.stop,
            MotionState.FORWARD: motors.move_forward,
            MotionState.BACKWARD: motors.move_backward,
            MotionState.TURN_LEFT: motors.turn_left,
            MotionState.TURN_RIGHT: motors.turn_right,
            MotionState.VEER_LEFT: motors.veer_left,
            MotionState.VEER_RIGHT: motors.veer_right,
            MotionState.SEARCH_LEFT: motors.search_left,
            MotionState.SEARCH_RIGHT: motors.search_right,
        }

        if range_sensor is not None:
            range_sensor.add_listener(self._on_distance_changed)

        logger.info(f"Navigation controller ready: {self.config.target_fps} FPS target, "
                    f"PID kp={self.config.kp} ki={self.config.ki} kd={self.config.kd}, "
                    f"beacon grace period {self.config.beacon_grace_period}s")

    # ------------------------------------------------------------------
    # External commands
    # ------------------------------------------------------------------

    def start_following(self):
        logger.info("Line following requested")
        self._follow_requested = True

    def stop_following(self):
        logger.info("Stop line following requested")
        self._follow_requested = False
        self._grace_reset_pending = True

    def is_following(self) -> bool:
        return self._follow_requested

    @property
    def line_color(self):
        return self._line_color

    def set_line_color(self, color: Optional[Sequence[int]]):
        """Follow a colored marker line instead of black; None goes back to black."""
        self._line_color = parse_rgb(color)
        if self._line_color is None:
            logger.info("Line color cleared, following black line")
        else:
            logger.info(f"Line color set to RGB{self._line_color}")

    def turn_around(self) -> bool:
        """Blocking 180 degree turn; refused while line following is requested."""
        if self._follow_requested or self.segment is not None:
            logger.warning("Refusing turn-around while line following is active")
            return False
        return self.motors.turn_around()

    def emergency_stop(self):
        self._follow_requested = False
        self._grace_reset_pending = True
        self.motors.emergency_stop()

    def shutdown(self):
        self._shutdown.set()

    def _on_distance_changed(self, distance: float):
        self._obstacle_detected = self.range_sensor.obstacle_detected

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def run(self):
        """Run the control loop until `shutdown()` is called."""
        logger.info("Navigation loop started")
        try:
            while not self._shutdown.is_set():
                loop_start = self._clock()
                try:
                    active = self.tick()
                except Exception:
                    logger.exception("Error in navigation tick")
                    active = self.segment is not None

                if active:
                    processing_time = self._clock() - loop_start
                    self._sleep(max(0.001, self.config.frame_delay - processing_time))
                else:
                    self._sleep(self.config.idle_poll)
        finally:
            self.motors.stop()
            logger.info("Navigation loop stopped")

    def _sync_segment(self, now: float):
        if self._follow_requested:
            if self.segment is None:
                self.segment = NavigationSegment(self.config, now)
                self._obstacle_detected = False
                self._grace_reset_pending = False
                logger.info(f"Starting line following - new navigation segment, "
                            f"beacon detection disabled for {self.config.beacon_grace_period}s")
            elif self._grace_reset_pending:
                self.segment.restart_grace(now)
                self._obstacle_detected = False
                self._grace_reset_pending = False
                logger.warning("Follow restarted before the loop noticed the stop - "
                               f"restarting {self.config.beacon_grace_period}s grace period")
        else:
            if self.segment is not None:
                logger.info("Stopping line following")
                self.motors.stop()
                self.segment = None
            self._grace_reset_pending = False

    def tick(self) -> bool:
        """
        Run one control iteration.

        Returns True if a navigation segment was active, which tells the loop
        to pace itself at the frame rate rather than the idle poll.
        """
        now = self._clock()
        self._sync_segment(now)
        segment = self.segment
        if segment is None:
            return False

        elapsed = segment.grace_elapsed(now)
        grace_over = elapsed >= self.config.beacon_grace_period
        self._log_grace_status(segment, elapsed, grace_over)

        if grace_over and self._check_beacon_arrival(elapsed):
            return True

        if self._obstacle_detected:
            logger.warning("OBSTACLE DETECTED - stopping motors")
            self.motors.stop()
            self._sleep(self.config.obstacle_idle)
            return True

        frame = self.camera.get_current_frame()
        detection = self.detector.detect_line(frame, self._line_color)
        self.last_detection = detection

        fps = segment.count_frame(now, self.config.fps_report_interval)
        if segment.frames_processed % 10 == 0:
            logger.info(f"Frame #{segment.frames_processed}: detected={detection.detected}, "
                        f"position={detection.position}, error={detection.error}, "
                        f"method={detection.method.value}")
        if fps is not None:
            logger.info(f"Line following running at {fps:.1f} FPS")

        self._process_detection(segment, detection)
        return True

    def _log_grace_status(self, segment: NavigationSegment, elapsed: float, grace_over: bool):
        frames = segment.frames_processed
        if frames % 50 != 0 or segment.last_grace_log_frame == frames:
            return
        segment.last_grace_log_frame = frames
        if grace_over:
            logger.info(f"Grace period over - beacon detection active ({elapsed:.1f}s elapsed)")
        else:
            remaining = self.config.beacon_grace_period - elapsed
            logger.info(f"Grace period active - beacon detection disabled "
                        f"(remaining: {remaining:.1f}s / {self.config.beacon_grace_period}s)")

    def _check_beacon_arrival(self, elapsed: float) -> bool:
        match = find_arrival(self.oracle.get_detected_beacons(), self.oracle.get_configured_targets())
        if match is None:
            return False

        beacon, target = match
        logger.warning(f"TARGET REACHED! Beacon {beacon.mac_address} RSSI: {beacon.rssi} dBm >= "
                       f"{target.rssi_threshold} dBm - stopping (elapsed: {elapsed:.1f}s)")
        self.last_arrival = BeaconArrival(
            mac_address=beacon.mac_address,
            rssi=beacon.rssi,
            threshold=target.rssi_threshold,
            elapsed=elapsed,
            name=target.name or beacon.name
        )
        self._follow_requested = False
        self._grace_reset_pending = False
        self.segment = None
        self.motors.stop()
        return True

    def _process_detection(self, segment: NavigationSegment, detection: LineDetection):
        loss = segment.line_loss

        if detection.detected and detection.position is not None:
            loss.consecutive_lost_frames = 0
            if not segment.line_detected:
                logger.info("Line detected")
                segment.line_detected = True

            error = detection.error
            output = segment.pid.update(error)
            if segment.frames_processed % 20 == 0:
                logger.info(f"Line error: {error}, PID output: {output:.2f}")

            if error > 0:
                loss.last_direction = LastDirection.LEFT
            elif error < 0:
                loss.last_direction = LastDirection.RIGHT

            command = steering_command(error, self.config)
            logger.debug(f"Motor command: {command.value} (error={error})")
            self._commands[command]()
            return

        if segment.line_detected:
            logger.warning(f"Line lost (counter: {loss.consecutive_lost_frames})")
            segment.line_detected = False
        elif loss.consecutive_lost_frames % 20 == 0:
            logger.info(f"Still searching for line (lost frames: {loss.consecutive_lost_frames})")

        loss.consecutive_lost_frames += 1
        command = line_loss_command(loss, self.config)
        self._commands[command]()

        if loss.consecutive_lost_frames < self.config.max_line_lost_frames:
            logger.debug(f"Brief line loss, continuing {loss.last_direction.value}")
            self._sleep(self.config.brief_loss_delay)
        else:
            logger.debug(f"Line search: {command.value}")

    def get_status(self) -> Dict:
        """JSON-ready snapshot of the controller for the status API."""
        now = self._clock()
        segment = self.segment
        distance = self.range_sensor.read() if self.range_sensor is not None else None
        return {
            'following': self._follow_requested,
            'active': segment is not None,
            'motion_state': self.motors.state.value,
            'distance': distance,
            'obstacle': self._obstacle_detected,
            'line_color': list(self._line_color) if self._line_color else None,
            'segment': segment.to_dict(now, self.config.beacon_grace_period) if segment else None,
            'last_detection': self.last_detection.to_dict() if self.last_detection else None,
            'last_arrival': self.last_arrival.to_dict() if self.last_arrival else None
        }
