import pytest

from conftest import bar_frame, blank_frame

from linefollower.config import RobotConfig
from linefollower.motor_controller import MotionState
from linefollower.web import WebVisualization

TARGET_MAC = 'AA:BB:CC:DD:EE:12'


@pytest.fixture
def client(controller, oracle, camera, detector):
    web = WebVisualization(controller, oracle, camera, detector, RobotConfig())
    web.app.config['TESTING'] = True
    return web.app.test_client()


def test_status(client):
    response = client.get('/api/status')
    assert response.status_code == 200
    data = response.get_json()
    assert data['following'] is False
    assert data['motion_state'] == 'stopped'
    assert data['camera_active'] is True
    assert data['config']['web']['port'] == 5000


def test_follow_start_and_stop(client, controller):
    assert client.post('/api/follow/start').get_json() == {'following': True}
    assert controller.is_following()
    assert client.post('/api/follow/stop').get_json() == {'following': False}
    assert not controller.is_following()


def test_line_color(client, controller):
    response = client.post('/api/line_color', json={'color': [0, 0, 255]})
    assert response.status_code == 200
    assert response.get_json() == {'color': [0, 0, 255]}
    assert controller.line_color == (0, 0, 255)

    response = client.post('/api/line_color', json={'color': None})
    assert response.get_json() == {'color': None}
    assert controller.line_color is None


@pytest.mark.parametrize('body', [
    {'color': [0, 0]},
    {'color': [0, 0, 999]},
    {'color': 'blue'},
    {'color': 7},
    {'colour': [0, 0, 255]},
    [0, 0, 255],
])
def test_line_color_rejects_bad_input(client, body):
    response = client.post('/api/line_color', json=body)
    assert response.status_code == 400
    assert 'error' in response.get_json()


def test_turn_around_conflicts_with_following(client, controller):
    controller.start_following()
    assert client.post('/api/turn_around').status_code == 409

    controller.stop_following()
    response = client.post('/api/turn_around')
    assert response.status_code == 200
    assert response.get_json() == {'completed': True}


def test_emergency_stop(client, controller):
    controller.start_following()
    controller.tick()
    assert controller.motors.state == MotionState.FORWARD

    response = client.post('/api/emergency_stop')
    assert response.status_code == 200
    assert not controller.is_following()
    assert controller.motors.state == MotionState.STOPPED


def test_beacon_targets(client, oracle):
    assert client.get('/api/beacons/targets').get_json() == []

    response = client.put('/api/beacons/targets', json=[
        {'mac_address': TARGET_MAC, 'rssi_threshold': -60, 'name': 'Room 12'},
        {'mac_address': 'AA:BB:CC:DD:EE:00', 'rssi_threshold': -70, 'is_navigation_target': False},
    ])
    assert response.status_code == 200
    assert len(response.get_json()) == 2
    assert oracle.get_configured_targets()[0].name == 'Room 12'
    assert client.get('/api/beacons/targets').get_json()[1]['is_navigation_target'] is False


def test_beacon_targets_rejects_bad_input(client, oracle):
    assert client.put('/api/beacons/targets', json={'mac_address': TARGET_MAC}).status_code == 400
    assert client.put('/api/beacons/targets', json=[{'mac_address': TARGET_MAC}]).status_code == 400
    assert oracle.get_configured_targets() == []


def test_beacon_detections(client, oracle):
    response = client.put('/api/beacons/detections', json=[{'mac_address': TARGET_MAC, 'rssi': -48}])
    assert response.status_code == 200
    assert oracle.get_detected_beacons()[0].rssi == -48
    assert client.put('/api/beacons/detections', json=[{'rssi': -48}]).status_code == 400


def test_snapshot(client):
    response = client.get('/snapshot.jpg')
    assert response.status_code == 200
    assert response.mimetype == 'image/jpeg'
    assert response.data[:2] == b'\xff\xd8'


def test_snapshot_without_frame(client, camera):
    camera.frame = None
    response = client.get('/snapshot.jpg')
    assert response.status_code == 503


def test_video_feed_streams_jpeg_parts(controller, oracle, camera, detector):
    camera.frame = bar_frame(120)
    web = WebVisualization(controller, oracle, camera, detector)
    frames = web.generate_frames()
    part = next(frames)
    assert part.startswith(b'--frame\r\nContent-Type: image/jpeg\r\n\r\n\xff\xd8')


def test_floor_color_check(client, controller, camera):
    assert client.get('/api/floor_color').status_code == 400

    controller.set_line_color([0, 0, 255])
    camera.frame = blank_frame((0, 0, 255))
    response = client.get('/api/floor_color')
    assert response.status_code == 200
    assert response.get_json() == {'color': [0, 0, 255], 'on_color': True}

    camera.frame = bar_frame(160)
    assert client.get('/api/floor_color').get_json()['on_color'] is False

    camera.frame = None
    assert client.get('/api/floor_color').status_code == 503
