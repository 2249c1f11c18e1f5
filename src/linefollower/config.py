#!/usr/bin/env python3

import json
from dataclasses import dataclass, field, asdict, fields
from typing import Dict, Optional


# ============================================================================
#
#                              ROBOT CONFIGURATION
#
# ============================================================================

# -- Motor GPIO pins (BCM numbering), two direction inputs per wheel --
FRONT_LEFT_PINS = (5, 6)
FRONT_RIGHT_PINS = (19, 26)
BACK_LEFT_PINS = (16, 20)
BACK_RIGHT_PINS = (13, 21)

STOP_SETTLE_DELAY_S = 0.05      # Wait before re-reading pins after a stop
TURN_AROUND_DURATION_S = 3.0    # Time spent rotating for a 180 degree turn

# -- Ultrasonic range sensor (HC-SR04) --
ULTRASONIC_TRIG_PIN = 23
ULTRASONIC_ECHO_PIN = 24
ULTRASONIC_PERIOD_S = 0.5
ULTRASONIC_ECHO_TIMEOUT_S = 0.1
ULTRASONIC_TRIGGER_PULSE_S = 10e-6
SPEED_OF_SOUND_M_S = 343.0
MIN_VALID_DISTANCE_M = 0.02
MAX_VALID_DISTANCE_M = 4.0
STOP_DISTANCE_M = 0.15          # Obstacle closer than this stops the robot

# -- Line detection --
ROI_TOP_PERCENT = 0.3           # Analyse the bottom 70% of the frame
BINARY_THRESHOLD = 60
BLUR_SIZE = (5, 5)
ADAPTIVE_BLOCK_SIZE = 11
ADAPTIVE_C = 7
MIN_CONTOUR_AREA = 50
MIN_VALID_CONTOUR_AREA = 100
MIN_ASPECT_RATIO = 2.0
COLOR_TOLERANCE = 30
LINE_MEMORY_TIMEOUT_S = 3.0
SNAPSHOT_CACHE_S = 0.1
SNAPSHOT_JPEG_QUALITY = 88

# -- Navigation & control --
TARGET_FPS = 13
KP = 0.2
KI = 0.0                        # Integral term disabled
KD = 0.05
INTEGRAL_LIMIT = 100.0
SMALL_ERROR_PX = 30
EXTREME_ERROR_PX = 150
MAX_LINE_LOST_FRAMES = 20
SEARCH_CYCLE_FRAMES = 40
BRIEF_LOSS_DELAY_S = 0.05
OBSTACLE_IDLE_S = 0.1
IDLE_POLL_S = 0.1
BEACON_GRACE_PERIOD_S = 10.0
FPS_REPORT_INTERVAL_S = 5.0

# -- Camera --
CAMERA_INDEX = 0
CAMERA_WIDTH = 320
CAMERA_HEIGHT = 240
CAMERA_FPS = 30
CAMERA_START_TIMEOUT_S = 15.0

# -- Web dashboard --
WEB_HOST = '0.0.0.0'
WEB_PORT = 5000

# ============================================================================
#
#                         END OF CONFIGURATION
#
# ============================================================================


@dataclass
class DetectionConfig:
    roi_top_percent: float = ROI_TOP_PERCENT
    binary_threshold: int = BINARY_THRESHOLD
    blur_size: tuple = BLUR_SIZE
    adaptive_block_size: int = ADAPTIVE_BLOCK_SIZE
    adaptive_c: int = ADAPTIVE_C
    min_contour_area: int = MIN_CONTOUR_AREA
    min_valid_contour_area: int = MIN_VALID_CONTOUR_AREA
    min_aspect_ratio: float = MIN_ASPECT_RATIO
    color_tolerance: float = COLOR_TOLERANCE
    line_memory_timeout: float = LINE_MEMORY_TIMEOUT_S
    snapshot_cache_seconds: float = SNAPSHOT_CACHE_S
    snapshot_jpeg_quality: int = SNAPSHOT_JPEG_QUALITY


@dataclass
class MotorConfig:
    front_left: tuple = FRONT_LEFT_PINS
    front_right: tuple = FRONT_RIGHT_PINS
    back_left: tuple = BACK_LEFT_PINS
    back_right: tuple = BACK_RIGHT_PINS
    stop_settle_delay: float = STOP_SETTLE_DELAY_S
    turn_around_duration: float = TURN_AROUND_DURATION_S

    def wheel_pins(self) -> Dict[str, tuple]:
        """Wheel name -> (in1, in2) pin pair, in the order pins are written."""
        return {
            'front_left': tuple(self.front_left),
            'front_right': tuple(self.front_right),
            'back_left': tuple(self.back_left),
            'back_right': tuple(self.back_right),
        }


@dataclass
class UltrasonicConfig:
    trig_pin: int = ULTRASONIC_TRIG_PIN
    echo_pin: int = ULTRASONIC_ECHO_PIN
    period: float = ULTRASONIC_PERIOD_S
    echo_timeout: float = ULTRASONIC_ECHO_TIMEOUT_S
    trigger_pulse: float = ULTRASONIC_TRIGGER_PULSE_S
    speed_of_sound: float = SPEED_OF_SOUND_M_S
    min_distance: float = MIN_VALID_DISTANCE_M
    max_distance: float = MAX_VALID_DISTANCE_M
    stop_distance: float = STOP_DISTANCE_M


@dataclass
class NavigationConfig:
    target_fps: int = TARGET_FPS
    kp: float = KP
    ki: float = KI
    kd: float = KD
    integral_limit: float = INTEGRAL_LIMIT
    small_error: int = SMALL_ERROR_PX
    extreme_error: int = EXTREME_ERROR_PX
    max_line_lost_frames: int = MAX_LINE_LOST_FRAMES
    search_cycle_frames: int = SEARCH_CYCLE_FRAMES
    brief_loss_delay: float = BRIEF_LOSS_DELAY_S
    obstacle_idle: float = OBSTACLE_IDLE_S
    idle_poll: float = IDLE_POLL_S
    beacon_grace_period: float = BEACON_GRACE_PERIOD_S
    fps_report_interval: float = FPS_REPORT_INTERVAL_S

    @property
    def frame_delay(self) -> float:
        """Frame budget in seconds, truncated to whole milliseconds."""
        return (1000 // self.target_fps) / 1000.0


@dataclass
class CameraConfig:
    index: int = CAMERA_INDEX
    width: int = CAMERA_WIDTH
    height: int = CAMERA_HEIGHT
    fps: int = CAMERA_FPS
    start_timeout: float = CAMERA_START_TIMEOUT_S


@dataclass
class WebConfig:
    enabled: bool = True
    host: str = WEB_HOST
    port: int = WEB_PORT


@dataclass
class RobotConfig:
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    motors: MotorConfig = field(default_factory=MotorConfig)
    ultrasonic: UltrasonicConfig = field(default_factory=UltrasonicConfig)
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)
    web: WebConfig = field(default_factory=WebConfig)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'RobotConfig':
        config = cls()
        for section_name, values in (data or {}).items():
            if section_name not in _SECTIONS:
                raise ValueError(f"Unknown configuration section '{section_name}'")
            if not isinstance(values, dict):
                raise ValueError(f"Configuration section '{section_name}' must be an object")
            section = getattr(config, section_name)
            known = {f.name for f in fields(section)}
            for key, value in values.items():
                if key not in known:
                    raise ValueError(f"Unknown key '{key}' in configuration section '{section_name}'")
                if isinstance(value, list):
                    value = tuple(value)
                setattr(section, key, value)
        return config


_SECTIONS = {f.name for f in fields(RobotConfig)}


def load_config(path: Optional[str] = None) -> RobotConfig:
    """
    Build the robot configuration, optionally overriding defaults from a JSON file.

    The file holds one object per section, e.g.
    {"detection": {"binary_threshold": 70}, "ultrasonic": {"trig_pin": 17}}
    """
    if not path:
        return RobotConfig()
    with open(path, 'r', encoding='utf-8') as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a JSON object")
    return RobotConfig.from_dict(data)
