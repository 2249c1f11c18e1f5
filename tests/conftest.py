import numpy as np
import pytest
from gpiozero import Device
from gpiozero.pins.mock import MockFactory

from linefollower.beacons import StaticBeaconOracle
from linefollower.config import MotorConfig, NavigationConfig, UltrasonicConfig
from linefollower.line_detector import LineDetector
from linefollower.motor_controller import MotorController
from linefollower.navigation import NavigationController
from linefollower.ultrasonic import RangeSensor

FRAME_HEIGHT = 240
FRAME_WIDTH = 320


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSleep:
    """Records sleeps and advances the fake clock instead of blocking."""

    def __init__(self, clock):
        self.clock = clock
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)
        self.clock.advance(seconds)


class FakeOutput:
    """Digital output with the on()/off()/value/close() surface of a gpiozero device."""

    def __init__(self, stuck_high=False, fail=False):
        self.value = False
        self.stuck_high = stuck_high
        self.fail = fail
        self.writes = []
        self.closed = False

    def on(self):
        if self.fail:
            raise OSError("GPIO write failed")
        self.writes.append(True)
        self.value = True

    def off(self):
        if self.fail:
            raise OSError("GPIO write failed")
        self.writes.append(False)
        if not self.stuck_high:
            self.value = False

    def close(self):
        self.closed = True


class FakeCamera:
    def __init__(self, frame=None):
        self.frame = frame

    def get_current_frame(self):
        return self.frame

    def is_active(self):
        return self.frame is not None


def make_pins(**overrides):
    pins = {}
    for wheel in ('front_left', 'front_right', 'back_left', 'back_right'):
        pins[wheel] = overrides.get(wheel, (FakeOutput(), FakeOutput()))
    return pins


def pin_levels(motors):
    """Current (in1, in2) levels per wheel."""
    return {wheel: (a.value, b.value) for wheel, (a, b) in motors.outputs.items()}


def blank_frame(color=(255, 255, 255)):
    frame = np.zeros((FRAME_HEIGHT, FRAME_WIDTH, 3), dtype=np.uint8)
    frame[:, :] = color
    return frame


def bar_frame(center_x, bar_width=100, bar_height=20, top=150,
              color=(0, 0, 0), background=(255, 255, 255)):
    """White frame with a wide bar (line-shaped region) centered at `center_x`."""
    frame = blank_frame(background)
    left = max(0, center_x - bar_width // 2)
    right = min(FRAME_WIDTH, left + bar_width)
    frame[top:top + bar_height, left:right] = color
    return frame


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def motors():
    return MotorController(MotorConfig(turn_around_duration=0.01), pins=make_pins(),
                           sleep=lambda seconds: None)


@pytest.fixture
def range_sensor():
    return RangeSensor(UltrasonicConfig(), trigger=FakeOutput(), echo=FakeOutput())


@pytest.fixture
def oracle():
    return StaticBeaconOracle()


@pytest.fixture
def camera():
    return FakeCamera(bar_frame(FRAME_WIDTH // 2))


@pytest.fixture
def detector(clock):
    return LineDetector(clock=clock)


@pytest.fixture
def controller(camera, detector, motors, range_sensor, oracle, clock, sleep):
    return NavigationController(camera, detector, motors, range_sensor, oracle,
                                config=NavigationConfig(), clock=clock, sleep=sleep)


@pytest.fixture
def mock_factory():
    """gpiozero mock pins, for code paths that build real gpiozero devices."""
    previous = Device.pin_factory
    Device.pin_factory = MockFactory()
    yield Device.pin_factory
    Device.pin_factory.reset()
    Device.pin_factory = previous
