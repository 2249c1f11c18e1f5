import json

import pytest

from linefollower.config import NavigationConfig, RobotConfig, load_config


def test_defaults():
    config = RobotConfig()
    assert config.detection.roi_top_percent == 0.3
    assert config.motors.wheel_pins() == {
        'front_left': (5, 6),
        'front_right': (19, 26),
        'back_left': (16, 20),
        'back_right': (13, 21),
    }
    assert config.ultrasonic.stop_distance == 0.15
    assert config.navigation.beacon_grace_period == 10.0
    assert config.web.port == 5000


def test_frame_delay_truncates_to_milliseconds():
    assert NavigationConfig().frame_delay == pytest.approx(0.076)
    assert NavigationConfig(target_fps=30).frame_delay == pytest.approx(0.033)


def test_load_without_path_gives_defaults():
    assert load_config(None) == RobotConfig()


def test_load_overrides(tmp_path):
    path = tmp_path / 'robot.json'
    path.write_text(json.dumps({
        'detection': {'binary_threshold': 70, 'blur_size': [7, 7]},
        'motors': {'front_left': [17, 27]},
        'web': {'enabled': False}
    }))
    config = load_config(str(path))
    assert config.detection.binary_threshold == 70
    assert config.detection.blur_size == (7, 7)
    assert config.motors.wheel_pins()['front_left'] == (17, 27)
    assert config.web.enabled is False
    assert config.navigation == NavigationConfig()


@pytest.mark.parametrize('data', [
    {'lidar': {}},
    {'detection': {'threshold': 70}},
    {'motors': [1, 2]},
    # veer covers everything below extreme_error; there is no medium band
    {'navigation': {'medium_error': 80}},
])
def test_unknown_settings_rejected(data):
    with pytest.raises(ValueError):
        RobotConfig.from_dict(data)


def test_non_object_file_rejected(tmp_path):
    path = tmp_path / 'robot.json'
    path.write_text('[1, 2, 3]')
    with pytest.raises(ValueError):
        load_config(str(path))


def test_to_dict_is_json_ready():
    data = RobotConfig().to_dict()
    json.dumps(data)
    assert set(data) == {'detection', 'motors', 'ultrasonic', 'navigation', 'camera', 'web'}
