from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Union

import numpy as np


class PacketKind(IntEnum):
    MARKERS = 1
    INERTIAL = 2
    STATUS = 3


NO_MARKER_ID = 0xFF


@dataclass(frozen=True)
class MarkerObservation:
    x: float
    y: float
    marker_id: Optional[int] = None  # correspondence hint, None if unknown
    radius: int = 0


@dataclass(frozen=True)
class MarkerSet:
    observations: tuple[MarkerObservation, ...] = ()

    def __len__(self) -> int:
        return len(self.observations)

    def points(self) -> np.ndarray:
        return np.array([(o.x, o.y) for o in self.observations], dtype=np.float64).reshape(-1, 2)


@dataclass(frozen=True)
class InertialSample:
    timestamp_us: int
    gyro: tuple[float, float, float]  # rad/s
    accel: tuple[float, float, float]  # m/s^2
    mag: Optional[tuple[float, float, float]] = None  # uT


@dataclass(frozen=True)
class StatusReport:
    stream_mask: int
    active: bool
    error_count: int = 0


Payload = Union[MarkerSet, InertialSample, StatusReport]


@dataclass(frozen=True)
class TelemetryPacket:
    version: int
    sequence: int
    timestamp_us: int
    kind: PacketKind
    payload: Payload


def _frozen(a) -> np.ndarray:
    arr = np.array(a, dtype=np.float64)
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True)
class PoseEstimate:
    """Device pose in the marker reference frame.

    ``orientation`` is a (w, x, y, z) quaternion rotating device-frame vectors
    into the reference frame, ``position`` the device origin in that frame.
    ``rvec``/``tvec`` are the raw solver outputs (reference -> camera).
    """

    orientation: np.ndarray
    position: np.ndarray
    rvec: np.ndarray
    tvec: np.ndarray
    reprojection_error: float
    confidence: float
    sequence: int
    timestamp_us: int
    valid: bool = True

    def __post_init__(self):
        for name in ("orientation", "position", "rvec", "tvec"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))


@dataclass
class FilterState:
    orientation: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0, 0.0]))
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    variance: float = 1.0
    timestamp_us: Optional[int] = None
    initialized: bool = False

    def copy(self) -> "FilterState":
        return FilterState(
            self.orientation.copy(),
            self.gyro_bias.copy(),
            self.position.copy(),
            self.variance,
            self.timestamp_us,
            self.initialized,
        )


@dataclass(frozen=True)
class FusedFrame:
    timestamp_us: int
    orientation: np.ndarray
    position: np.ndarray
    stale: bool
    pose_sequence: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "orientation", _frozen(self.orientation))
        object.__setattr__(self, "position", _frozen(self.position))
