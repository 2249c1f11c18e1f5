#!/usr/bin/env python3

import cv2
import numpy as np
import time
import logging
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import DetectionConfig
from .line_memory import LineMemory

logger = logging.getLogger(__name__)

# Used when no frame is available to size the result from
DEFAULT_FRAME_WIDTH = 320

# Mask pixels above this value count as line pixels
WHITE_PIXEL_THRESHOLD = 128

RGB = Tuple[int, int, int]


class DetectionMethod(Enum):
    DIRECT = 'direct'
    MEMORY = 'memory'
    NONE = 'none'


@dataclass(frozen=True)
class LineDetection:
    """
    One frame's answer to "where is the line?".

    `age_since_last_direct` is None until the line has been seen directly once.
    """
    detected: bool
    position: Optional[int]
    frame_width: int
    frame_center: int
    error: int
    method: DetectionMethod
    using_memory: bool
    age_since_last_direct: Optional[float]
    timestamp: float

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['method'] = self.method.value
        return data


@dataclass(frozen=True)
class Region:
    """Bounding box of one 4-connected group of line pixels."""
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    @property
    def center_x(self) -> int:
        return self.x + self.width // 2


def parse_rgb(color: Optional[Sequence]) -> Optional[RGB]:
    """Validate an [r, g, b] triple; None means "follow the black line"."""
    if color is None:
        return None
    if isinstance(color, (str, bytes)) or len(color) != 3:
        raise ValueError(f"Line color must be three values [r, g, b], got {color!r}")
    channels = []
    for value in color:
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
            raise ValueError(f"Color channels must be integers, got {value!r}")
        if not 0 <= value <= 255:
            raise ValueError(f"Color channels must be within 0-255, got {value}")
        channels.append(int(value))
    return tuple(channels)


# ---------------------------------------------------------------------------
# Mask strategies: each turns an RGB region of interest into a 0/255 mask
# ---------------------------------------------------------------------------

def black_line_mask(roi: np.ndarray, config: DetectionConfig) -> np.ndarray:
    """
    Dark line on a lighter floor. A fixed global threshold catches solid black
    tape, an adaptive threshold catches faint or unevenly lit stretches; a pixel
    counts as line if either method says so.
    """
    gray = cv2.cvtColor(roi, cv2.COLOR_RGB2GRAY)
    blurred = cv2.GaussianBlur(gray, tuple(config.blur_size), 0)

    _, binary = cv2.threshold(blurred, config.binary_threshold, 255, cv2.THRESH_BINARY_INV)
    adaptive = cv2.adaptiveThreshold(blurred, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                                     cv2.THRESH_BINARY_INV,
                                     config.adaptive_block_size, config.adaptive_c)

    return np.maximum(binary, adaptive)


def color_mask(roi: np.ndarray, target_color: RGB, config: DetectionConfig) -> np.ndarray:
    """Pixels within `color_tolerance` (Euclidean RGB distance) of the target color."""
    diff = roi.astype(np.int32) - np.array(target_color, dtype=np.int32)
    distance = np.sqrt(np.sum(diff * diff, axis=2))

    mask = np.where(distance <= config.color_tolerance, 255, 0).astype(np.uint8)
    return cv2.GaussianBlur(mask, (5, 5), 1.0)


def select_mask_strategy(target_color: Optional[RGB],
                         config: DetectionConfig) -> Callable[[np.ndarray], np.ndarray]:
    if target_color is None:
        return partial(black_line_mask, config=config)
    return partial(color_mask, target_color=target_color, config=config)


# ---------------------------------------------------------------------------
# Line localisation on a mask
# ---------------------------------------------------------------------------

def find_regions(mask: np.ndarray) -> List[Region]:
    """
    Find every 4-connected region of line pixels, top to bottom.

    OpenCV's connected-component labelling does the fill; it is iterative, so
    a full-frame region is as safe as a small one.
    """
    binary = (mask > WHITE_PIXEL_THRESHOLD).astype(np.uint8)
    count, _, stats, _ = cv2.connectedComponentsWithStats(binary, connectivity=4)

    regions = []
    # Label 0 is the background
    for label in range(1, count):
        x, y, width, height = (int(v) for v in stats[label, :cv2.CC_STAT_AREA])
        regions.append(Region(x, y, width, height))

    regions.sort(key=lambda r: (r.y, r.x))
    return regions


def contour_position(mask: np.ndarray, config: DetectionConfig) -> Optional[int]:
    """Center of the largest wide, line-shaped region, or None."""
    valid = []
    for region in find_regions(mask):
        if region.area < config.min_contour_area:
            continue
        if region.aspect_ratio >= config.min_aspect_ratio and region.area >= config.min_valid_contour_area:
            valid.append(region)

    if not valid:
        return None

    best = max(valid, key=lambda r: r.area)
    logger.debug(f"Contour detection: area={best.area}, bounds={best}, center={best.center_x}")
    return best.center_x


def column_sum_position(mask: np.ndarray) -> Optional[int]:
    """Column with the most line intensity, or None if the mask is empty."""
    column_sums = mask.sum(axis=0, dtype=np.int64)
    if column_sums.size == 0:
        return None
    max_sum = int(column_sums.max())
    if max_sum <= 0:
        return None
    position = int(np.argmax(column_sums))
    logger.debug(f"Column sum detection: max_sum={max_sum} at position {position}")
    return position


class LineDetector:
    """
    Camera-based line detection for the delivery robot.

    Finds the floor line (black by default, or a configured marker color) in
    the lower part of each frame and reports its signed pixel offset from the
    frame center. Contour detection runs first; the column-sum fallback picks
    up broken or faint lines that fail the contour shape checks.
    """

    def __init__(self, config: Optional[DetectionConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or DetectionConfig()
        self._clock = clock
        self.memory = LineMemory(timeout=self.config.line_memory_timeout, clock=clock)

        # JPEG snapshot cache for the diagnostic endpoint
        self._snapshot_lock = threading.Lock()
        self._cached_jpeg: Optional[bytes] = None
        self._cached_jpeg_time: Optional[float] = None

        self.frames_processed = 0
        self.last_detection: Optional[LineDetection] = None

        logger.info(f"Line detector initialized: ROI {self.config.roi_top_percent * 100:.0f}% down, "
                    f"binary threshold {self.config.binary_threshold}, "
                    f"adaptive {self.config.adaptive_block_size}/{self.config.adaptive_c}")
        logger.info(f"   Contour area: {self.config.min_contour_area}/{self.config.min_valid_contour_area}, "
                    f"aspect ratio: {self.config.min_aspect_ratio}, "
                    f"memory timeout: {self.config.line_memory_timeout}s")

    def roi_top(self, frame_height: int) -> int:
        """First row of the region of interest."""
        roi_height = int(frame_height * (1.0 - self.config.roi_top_percent))
        return frame_height - roi_height

    def detect_line(self, frame: Optional[np.ndarray],
                    target_color: Optional[RGB] = None) -> LineDetection:
        """
        Detect the line in one frame, falling back to line memory.

        Args:
            frame: RGB camera frame (H x W x 3), or None if the camera had nothing
            target_color: Optional (r, g, b) marker color; None follows a black line

        Returns:
            LineDetection with method DIRECT, MEMORY or NONE
        """
        self.frames_processed += 1
        now = self._clock()

        if frame is None:
            logger.warning("No frame available from camera stream")
            age = self.memory.age()
            result = LineDetection(
                detected=False,
                position=None,
                frame_width=DEFAULT_FRAME_WIDTH,
                frame_center=DEFAULT_FRAME_WIDTH // 2,
                error=0,
                method=DetectionMethod.NONE,
                using_memory=False,
                age_since_last_direct=age,
                timestamp=now
            )
            self.last_detection = result
            return result

        frame_width = _frame_width(frame)
        frame_center = frame_width // 2
        position = self._locate_line(frame, target_color)

        if position is not None:
            self.memory.remember(position)
            result = LineDetection(
                detected=True,
                position=position,
                frame_width=frame_width,
                frame_center=frame_center,
                error=frame_center - position,
                method=DetectionMethod.DIRECT,
                using_memory=False,
                age_since_last_direct=0.0,
                timestamp=now
            )
            logger.debug(f"Line detected at position {position} (error: {result.error})")
        else:
            remembered, age = self.memory.recall()
            if remembered is not None:
                result = LineDetection(
                    detected=True,
                    position=remembered,
                    frame_width=frame_width,
                    frame_center=frame_center,
                    error=frame_center - remembered,
                    method=DetectionMethod.MEMORY,
                    using_memory=True,
                    age_since_last_direct=age,
                    timestamp=now
                )
                logger.debug(f"Using line memory: position {remembered} (age: {age:.1f}s)")
            else:
                result = LineDetection(
                    detected=False,
                    position=None,
                    frame_width=frame_width,
                    frame_center=frame_center,
                    error=0,
                    method=DetectionMethod.NONE,
                    using_memory=False,
                    age_since_last_direct=age,
                    timestamp=now
                )
                logger.debug("No line detected and no valid memory")

        self.last_detection = result
        return result

    def detect_line_position(self, frame: np.ndarray,
                             target_color: Optional[RGB] = None) -> Optional[int]:
        """Direct detection only: never reads or updates line memory."""
        return self._locate_line(frame, target_color)

    def reset_line_memory(self):
        self.memory.clear()

    def _locate_line(self, frame: np.ndarray, target_color: Optional[RGB]) -> Optional[int]:
        """Run the mask strategy and both detectors on the ROI; faults count as no line."""
        start = time.perf_counter()
        try:
            _check_frame(frame)
            height = frame.shape[0]
            roi = frame[self.roi_top(height):, :]

            mask = select_mask_strategy(target_color, self.config)(roi)

            position = contour_position(mask, self.config)
            if position is not None:
                return position

            return column_sum_position(mask)
        except Exception as e:
            logger.error(f"Error processing frame for line detection: {e}")
            return None
        finally:
            logger.debug(f"Line detection took {(time.perf_counter() - start) * 1000:.1f}ms")

    def detect_floor_color(self, frame: Optional[np.ndarray], target_color: Optional[Sequence]) -> bool:
        """
        Check whether the floor just ahead of the robot matches a marker color.

        Samples a grid (every 5 px) 60 px tall and 60 px wide, centered
        horizontally and starting at the top of the ROI. True when more than
        half of the samples are within color tolerance.
        """
        try:
            color = parse_rgb(target_color)
        except ValueError as e:
            logger.warning(f"Ignoring floor color check: {e}")
            return False
        if color is None or frame is None:
            return False

        try:
            _check_frame(frame)
        except ValueError as e:
            logger.error(f"Cannot check floor color: {e}")
            return False

        height, width = frame.shape[:2]
        roi_y = int(height * self.config.roi_top_percent)
        center_x = width // 2
        sample_radius = 30

        ys = range(roi_y, min(height, roi_y + 60), 5)
        xs = [x for x in range(center_x - sample_radius, center_x + sample_radius, 5) if 0 <= x < width]
        if not ys or not xs:
            return False

        samples = frame[np.ix_(list(ys), xs)].astype(np.int32)
        diff = samples - np.array(color, dtype=np.int32)
        distance = np.sqrt(np.sum(diff * diff, axis=2))

        total = distance.size
        matches = int(np.count_nonzero(distance <= self.config.color_tolerance))
        return total > 0 and matches * 100 // total > 50

    # ------------------------------------------------------------------
    # Diagnostic snapshot
    # ------------------------------------------------------------------

    def annotate_frame(self, frame: np.ndarray, position: Optional[int]) -> np.ndarray:
        """Return a BGR copy of an RGB frame with the detection overlay drawn on it."""
        debug_frame = cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)
        height, width = debug_frame.shape[:2]
        center_x = width // 2
        roi_y = int(height * self.config.roi_top_percent)

        # Frame center (blue) and ROI boundary (yellow)
        cv2.line(debug_frame, (center_x, 0), (center_x, height), (255, 0, 0), 2)
        cv2.line(debug_frame, (0, roi_y), (width, roi_y), (0, 255, 255), 1)

        if position is not None:
            error = center_x - position
            cv2.line(debug_frame, (position, roi_y), (position, height), (0, 255, 0), 3)

            # Red when the line is left of center, cyan when right
            error_y = height - 30
            error_color = (0, 0, 255) if error > 0 else (255, 255, 0)
            cv2.line(debug_frame, (center_x, error_y), (position, error_y), error_color, 2)
            cv2.putText(debug_frame, f"Error: {error}px", (10, 20),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)
        else:
            cv2.putText(debug_frame, "NO LINE", (10, 20),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 0, 255), 1)

        return debug_frame

    def snapshot_jpeg(self, frame_provider: Callable[[], Optional[np.ndarray]]) -> Optional[bytes]:
        """
        Annotated JPEG of the current camera frame.

        Cached for `snapshot_cache_seconds` so a dashboard polling rapidly does
        not re-run detection on every request.
        """
        with self._snapshot_lock:
            if (self._cached_jpeg is not None and
                    self._clock() - self._cached_jpeg_time < self.config.snapshot_cache_seconds):
                return self._cached_jpeg

        frame = frame_provider()
        if frame is None:
            logger.debug("No current frame available for JPEG conversion")
            return None

        try:
            position = self.detect_line_position(frame)
            annotated = self.annotate_frame(frame, position)
            ok, buffer = cv2.imencode('.jpg', annotated,
                                      [cv2.IMWRITE_JPEG_QUALITY, self.config.snapshot_jpeg_quality])
            if not ok:
                logger.error("JPEG encoding of snapshot failed")
                return None
            jpeg = buffer.tobytes()
        except Exception as e:
            logger.error(f"Error generating snapshot JPEG: {e}")
            return None

        with self._snapshot_lock:
            self._cached_jpeg = jpeg
            self._cached_jpeg_time = self._clock()
        return jpeg

    def get_status(self) -> Dict:
        return {
            'frames_processed': self.frames_processed,
            'last_detection': self.last_detection.to_dict() if self.last_detection else None,
            'memory': self.memory.get_status()
        }


def _check_frame(frame: np.ndarray):
    if not isinstance(frame, np.ndarray):
        raise ValueError(f"Frame must be a numpy array, got {type(frame).__name__}")
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError(f"Expected an RGB frame (H x W x 3), got shape {frame.shape}")
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise ValueError("Frame is empty")
    if frame.dtype != np.uint8:
        raise ValueError(f"Expected an 8-bit frame, got {frame.dtype}")


def _frame_width(frame) -> int:
    shape = getattr(frame, 'shape', ())
    if len(shape) >= 2 and shape[1] > 0:
        return int(shape[1])
    return DEFAULT_FRAME_WIDTH
