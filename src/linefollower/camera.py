#!/usr/bin/env python3

import cv2
import numpy as np
import time
import logging
import threading
from typing import Optional

try:
    from picamera2 import Picamera2
except ImportError:
    Picamera2 = None

from .config import CameraConfig

logger = logging.getLogger(__name__)


class CameraNotActiveError(RuntimeError):
    """The camera did not deliver a frame within the start-up timeout."""


class CameraStream:
    """
    Background camera capture that always holds the latest RGB frame.

    Uses the Pi camera through picamera2 when it is installed, otherwise any
    OpenCV capture device. Readers never wait for a new frame; they get the
    most recent one, possibly the same one twice.
    """

    def __init__(self, config: Optional[CameraConfig] = None):
        self.config = config or CameraConfig()
        self.cap = None
        self.backend = None

        self._lock = threading.Lock()
        self._frame: Optional[np.ndarray] = None
        self._frame_count = 0
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _open(self):
        if Picamera2 is not None:
            self.cap = Picamera2()
            config = self.cap.create_preview_configuration(
                main={"size": (self.config.width, self.config.height), "format": "RGB888"}
            )
            self.cap.configure(config)
            self.cap.start()
            self.backend = 'picamera2'
        else:
            self.cap = cv2.VideoCapture(self.config.index)
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
            self.cap.set(cv2.CAP_PROP_FPS, self.config.fps)
            if not self.cap.isOpened():
                raise CameraNotActiveError(f"Could not open camera device {self.config.index}")
            self.backend = 'opencv'
        logger.info(f"Camera opened with {self.backend} at "
                    f"{self.config.width}x{self.config.height}@{self.config.fps}fps")

    def _capture(self) -> Optional[np.ndarray]:
        if self.backend == 'picamera2':
            # RGB888 arrives in BGR byte order
            frame = self.cap.capture_array()
            return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        ret, frame = self.cap.read()
        if not ret:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def start(self):
        if self._running.is_set():
            return
        self._open()
        self._running.set()
        self._thread = threading.Thread(target=self._capture_loop, name='camera', daemon=True)
        self._thread.start()

    def _capture_loop(self):
        frame_interval = 1.0 / max(1, self.config.fps)
        while self._running.is_set():
            try:
                frame = self._capture()
            except Exception as e:
                logger.error(f"Error capturing frame: {e}")
                frame = None

            if frame is None:
                time.sleep(frame_interval)
                continue

            with self._lock:
                self._frame = frame
                self._frame_count += 1

    def get_current_frame(self) -> Optional[np.ndarray]:
        """Latest RGB frame, or None if nothing has been captured yet."""
        with self._lock:
            return self._frame

    def is_active(self) -> bool:
        with self._lock:
            return self._running.is_set() and self._frame is not None

    def wait_until_active(self, timeout: Optional[float] = None):
        """Block until the first frame arrives; raises CameraNotActiveError on timeout."""
        timeout = self.config.start_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while not self.is_active():
            if time.monotonic() > deadline:
                raise CameraNotActiveError(f"Camera not active after {timeout}s")
            time.sleep(0.1)
        logger.info("Camera stream active")

    def stop(self):
        self._running.clear()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self.cap is not None:
            try:
                if self.backend == 'picamera2':
                    self.cap.stop()
                    self.cap.close()
                else:
                    self.cap.release()
                logger.info("Camera released")
            except Exception as e:
                logger.error(f"Error releasing camera: {e}")
        self.cap = None
        with self._lock:
            self._frame = None
