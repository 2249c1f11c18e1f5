#!/usr/bin/env python3

import logging
import threading
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


def _require_mac(data: Dict) -> str:
    mac = data.get('mac_address')
    if not isinstance(mac, str) or not mac.strip():
        raise ValueError("Beacon entry needs a non-empty 'mac_address'")
    return mac.strip()


def _require_number(data: Dict, key: str) -> float:
    # Kept as given: truncating -60.9 dBm to -60 would make a weak beacon look stronger
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Beacon entry needs a numeric '{key}'")
    return value


def _optional_bool(data: Dict, key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"Beacon entry '{key}' must be true or false, got {value!r}")
    return value


@dataclass(frozen=True)
class BeaconTargetConfig:
    """A beacon the back office configured, with the RSSI that counts as arrival."""
    mac_address: str
    rssi_threshold: float
    is_navigation_target: bool = True
    name: Optional[str] = None

    def matches(self, mac_address: str) -> bool:
        return self.mac_address.lower() == mac_address.lower()

    @classmethod
    def from_dict(cls, data: Dict) -> 'BeaconTargetConfig':
        if not isinstance(data, dict):
            raise ValueError("Beacon target must be an object")
        return cls(
            mac_address=_require_mac(data),
            rssi_threshold=_require_number(data, 'rssi_threshold'),
            is_navigation_target=_optional_bool(data, 'is_navigation_target', True),
            name=data.get('name')
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class DetectedBeacon:
    """One beacon currently heard by the scanner."""
    mac_address: str
    rssi: float
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'DetectedBeacon':
        if not isinstance(data, dict):
            raise ValueError("Detected beacon must be an object")
        return cls(
            mac_address=_require_mac(data),
            rssi=_require_number(data, 'rssi'),
            name=data.get('name')
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class BeaconArrival:
    """Record of the robot stopping at a target beacon."""
    mac_address: str
    rssi: float
    threshold: float
    elapsed: float
    name: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


def find_arrival(detected: Iterable[DetectedBeacon],
                 targets: Iterable[BeaconTargetConfig]) -> Optional[Tuple[DetectedBeacon, BeaconTargetConfig]]:
    """
    First detected beacon that is a navigation target and is at least as
    strong as its configured threshold.
    """
    navigation_targets = [t for t in targets if t.is_navigation_target]
    if not navigation_targets:
        return None

    for beacon in detected:
        target = next((t for t in navigation_targets if t.matches(beacon.mac_address)), None)
        if target is not None and beacon.rssi >= target.rssi_threshold:
            return beacon, target
    return None


class BeaconProximityOracle:
    """Where the navigation loop asks which beacons are around and which ones matter."""

    def get_detected_beacons(self) -> List[DetectedBeacon]:
        raise NotImplementedError

    def get_configured_targets(self) -> List[BeaconTargetConfig]:
        raise NotImplementedError


class StaticBeaconOracle(BeaconProximityOracle):
    """
    In-memory beacon snapshots.

    The Bluetooth scanner pushes what it hears with `update_detections`, the
    back office pushes the destination list with `set_configured_targets`.
    Both replace the previous snapshot wholesale.
    """

    def __init__(self, targets: Optional[Iterable[BeaconTargetConfig]] = None,
                 detections: Optional[Iterable[DetectedBeacon]] = None):
        self._lock = threading.Lock()
        self._targets = list(targets or [])
        self._detections = list(detections or [])

    def get_detected_beacons(self) -> List[DetectedBeacon]:
        with self._lock:
            return list(self._detections)

    def get_configured_targets(self) -> List[BeaconTargetConfig]:
        with self._lock:
            return list(self._targets)

    def set_configured_targets(self, targets: Iterable[BeaconTargetConfig]):
        targets = list(targets)
        with self._lock:
            self._targets = targets
        names = [t.name or t.mac_address for t in targets if t.is_navigation_target]
        logger.info(f"Beacon targets updated: {len(targets)} configured, navigation targets: {names}")

    def update_detections(self, detections: Iterable[DetectedBeacon]):
        detections = list(detections)
        with self._lock:
            self._detections = detections
        logger.debug(f"Beacon detections updated: {len(detections)} beacons in range")
