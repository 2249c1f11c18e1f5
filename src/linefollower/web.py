#!/usr/bin/env python3

import time
import logging
from flask import Flask, Response, jsonify, request

from .beacons import BeaconTargetConfig, DetectedBeacon

logger = logging.getLogger(__name__)


class WebVisualization:
    """Flask app exposing robot status, follow commands and the annotated camera view."""

    def __init__(self, controller, oracle, camera, detector, config=None):
        self.controller = controller
        self.oracle = oracle
        self.camera = camera
        self.detector = detector
        self.config = config
        self.app = Flask(__name__)

        self.setup_routes()

    def setup_routes(self):
        """Setup Flask routes"""

        @self.app.route('/api/status')
        def get_status():
            data = self.controller.get_status()
            data['camera_active'] = self.camera.is_active() if self.camera is not None else False
            data['detector'] = self.detector.get_status()
            if self.config is not None:
                data['config'] = self.config.to_dict()
            return jsonify(data)

        @self.app.route('/api/follow/start', methods=['POST'])
        def start_following():
            self.controller.start_following()
            return jsonify({'following': True})

        @self.app.route('/api/follow/stop', methods=['POST'])
        def stop_following():
            self.controller.stop_following()
            return jsonify({'following': False})

        @self.app.route('/api/line_color', methods=['POST'])
        def set_line_color():
            data = request.get_json(silent=True)
            if not isinstance(data, dict) or 'color' not in data:
                return _bad_request("Body must be a JSON object with a 'color' field")
            try:
                self.controller.set_line_color(data['color'])
            except (TypeError, ValueError) as e:
                return _bad_request(str(e))
            color = self.controller.line_color
            return jsonify({'color': list(color) if color else None})

        @self.app.route('/api/floor_color')
        def floor_color():
            """Is the robot standing on the configured marker color right now?"""
            color = self.controller.line_color
            if color is None:
                return _bad_request("No marker color set; POST /api/line_color first")
            frame = self.camera.get_current_frame()
            if frame is None:
                return jsonify({'error': 'No camera frame available'}), 503
            return jsonify({'color': list(color),
                            'on_color': self.detector.detect_floor_color(frame, color)})

        @self.app.route('/api/turn_around', methods=['POST'])
        def turn_around():
            if self.controller.is_following():
                return jsonify({'error': 'Cannot turn around while line following is active'}), 409
            completed = self.controller.turn_around()
            if not completed:
                return jsonify({'error': 'Turn-around did not complete'}), 409
            return jsonify({'completed': True})

        @self.app.route('/api/emergency_stop', methods=['POST'])
        def emergency_stop():
            self.controller.emergency_stop()
            return jsonify({'stopped': True})

        @self.app.route('/api/beacons/targets', methods=['GET', 'PUT'])
        def beacon_targets():
            if request.method == 'PUT':
                try:
                    targets = [BeaconTargetConfig.from_dict(item) for item in _json_list(request)]
                except ValueError as e:
                    return _bad_request(str(e))
                self.oracle.set_configured_targets(targets)
            return jsonify([t.to_dict() for t in self.oracle.get_configured_targets()])

        @self.app.route('/api/beacons/detections', methods=['PUT'])
        def beacon_detections():
            try:
                detections = [DetectedBeacon.from_dict(item) for item in _json_list(request)]
            except ValueError as e:
                return _bad_request(str(e))
            self.oracle.update_detections(detections)
            return jsonify([d.to_dict() for d in self.oracle.get_detected_beacons()])

        @self.app.route('/snapshot.jpg')
        def snapshot():
            jpeg = self.detector.snapshot_jpeg(self.camera.get_current_frame)
            if jpeg is None:
                return jsonify({'error': 'No camera frame available'}), 503
            return Response(jpeg, mimetype='image/jpeg')

        @self.app.route('/video_feed')
        def video_feed():
            """Video streaming route"""
            return Response(self.generate_frames(),
                            mimetype='multipart/x-mixed-replace; boundary=frame')

    def generate_frames(self):
        """Generate annotated camera frames for video streaming"""
        while True:
            try:
                jpeg = self.detector.snapshot_jpeg(self.camera.get_current_frame)
                if jpeg is not None:
                    yield (b'--frame\r\n'
                           b'Content-Type: image/jpeg\r\n\r\n' + jpeg + b'\r\n')
                time.sleep(0.1)  # 10 FPS for web streaming
            except Exception as e:
                logger.error(f"Video streaming error: {e}")
                time.sleep(1)

    def start_web_server(self, host='0.0.0.0', port=5000):
        """Start Flask web server"""
        logger.info(f"Starting web server on http://{host}:{port}")
        self.app.run(host=host, port=port, debug=False, threaded=True, use_reloader=False)


def _bad_request(message: str):
    return jsonify({'error': message}), 400


def _json_list(req) -> list:
    data = req.get_json(silent=True)
    if not isinstance(data, list):
        raise ValueError("Body must be a JSON array")
    return data
