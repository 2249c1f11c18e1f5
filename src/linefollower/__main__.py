#!/usr/bin/env python3

import sys
import signal
import logging
import argparse
import threading

from .beacons import StaticBeaconOracle
from .camera import CameraNotActiveError, CameraStream
from .config import load_config
from .line_detector import LineDetector
from .motor_controller import MotorController
from .navigation import NavigationController
from .ultrasonic import RangeSensor
from .web import WebVisualization

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='linefollower',
        description='Camera line-following navigation for the laundry delivery robot')
    parser.add_argument('--config', help='JSON file overriding the default configuration')
    parser.add_argument('--host', help='Web server host (default from config)')
    parser.add_argument('--port', type=int, help='Web server port (default from config)')
    parser.add_argument('--no-web', action='store_true', help='Do not start the web server')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--follow', action='store_true', help='Start line following immediately')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"Could not load configuration: {e}")
        return 2
    if args.host:
        config.web.host = args.host
    if args.port:
        config.web.port = args.port
    if args.no_web:
        config.web.enabled = False

    camera = CameraStream(config.camera)
    try:
        camera.start()
        camera.wait_until_active()
    except CameraNotActiveError as e:
        logger.error(f"Camera failed to start: {e}")
        camera.stop()
        return 1

    detector = LineDetector(config.detection)
    motors = MotorController(config.motors)
    range_sensor = RangeSensor(config.ultrasonic)
    oracle = StaticBeaconOracle()
    controller = NavigationController(camera, detector, motors, range_sensor, oracle,
                                      config=config.navigation)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        controller.shutdown()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if config.web.enabled:
        web_viz = WebVisualization(controller, oracle, camera, detector, config)
        web_thread = threading.Thread(target=web_viz.start_web_server,
                                      args=(config.web.host, config.web.port),
                                      name='web', daemon=True)
        web_thread.start()

    range_sensor.start()
    if args.follow:
        controller.start_following()

    try:
        controller.run()
    finally:
        range_sensor.close()
        motors.close()
        camera.stop()
        logger.info("Robot shutdown complete.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
