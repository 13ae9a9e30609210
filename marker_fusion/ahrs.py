"""Attitude filter fusing inertial samples with optical pose fixes.

Between optical updates the orientation is propagated from the gyroscope
with a Mahony-style complementary correction toward the accelerometer's
gravity direction (and the magnetometer's heading, when present). Optical
poses pull orientation and position toward the solver's answer with weights
chosen by a ``TrustStrategy``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import CalibrationModel, FilterConfig
from .errors import FilterDivergence
from .ip_types import FilterState, InertialSample, PoseEstimate
from .protocol import GRAVITY
from .transforms import (
    matrix_from_quat,
    quat_angle_between,
    quat_between_vectors,
    quat_from_rotvec,
    quat_multiply,
    quat_normalize,
    quat_slerp,
)


class TrustStrategy(ABC):
    """Decides how far an optical pose moves the filter state."""

    def predict(self, state: FilterState, dt: float) -> None:
        return None

    @abstractmethod
    def weights(self, state: FilterState, pose: PoseEstimate) -> tuple[float, float]:
        """Return (rotation weight, position weight), each in [0, 1]."""
        ...

    def corrected(self, state: FilterState, rotation_weight: float) -> None:
        return None


class FixedGainTrust(TrustStrategy):
    """Constant gains scaled by the pose's confidence."""

    def __init__(self, rotation_gain: float = 0.3, position_gain: float = 0.8):
        self.rotation_gain = rotation_gain
        self.position_gain = position_gain

    def weights(self, state: FilterState, pose: PoseEstimate) -> tuple[float, float]:
        c = float(np.clip(pose.confidence, 0.0, 1.0))
        return (
            float(np.clip(self.rotation_gain * c, 0.0, 1.0)),
            float(np.clip(self.position_gain * c, 0.0, 1.0)),
        )


class CovarianceTrust(TrustStrategy):
    """Scalar Kalman-style gain.

    Orientation variance grows with ``gyro_noise * dt`` and shrinks with
    every optical fix whose variance is ``optical_noise / confidence``.
    """

    def __init__(self, gyro_noise: float = 0.01, optical_noise: float = 0.002, position_gain: float = 0.8):
        self.gyro_noise = gyro_noise
        self.optical_noise = optical_noise
        self.position_gain = position_gain

    def predict(self, state: FilterState, dt: float) -> None:
        state.variance += self.gyro_noise * dt

    def weights(self, state: FilterState, pose: PoseEstimate) -> tuple[float, float]:
        c = max(float(pose.confidence), 1e-6)
        r = self.optical_noise / c
        k = state.variance / (state.variance + r)
        return float(k), float(np.clip(self.position_gain * c, 0.0, 1.0))

    def corrected(self, state: FilterState, rotation_weight: float) -> None:
        state.variance = max((1.0 - rotation_weight) * state.variance, 1e-12)


def build_trust(config: FilterConfig) -> TrustStrategy:
    if config.trust == "fixed":
        return FixedGainTrust(config.rotation_gain, config.position_gain)
    if config.trust == "covariance":
        return CovarianceTrust(config.gyro_noise, config.optical_noise, config.position_gain)
    raise ValueError(f"unknown trust strategy: {config.trust}")


@dataclass
class FilterStats:
    propagated: int = 0
    outliers: int = 0
    bad_timestamps: int = 0
    gaps: int = 0
    renormalized: int = 0
    optical_corrections: int = 0


class OrientationFilter:
    def __init__(
        self,
        config: Optional[FilterConfig] = None,
        world_up=(0.0, 0.0, 1.0),
        imu_rotation=(1.0, 0.0, 0.0, 0.0),
        trust: Optional[TrustStrategy] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or FilterConfig()
        self.trust = trust or build_trust(self.config)
        self.log = logger or logging.getLogger(__name__)
        up = np.asarray(world_up, dtype=np.float64)
        self.world_up = up / np.linalg.norm(up)
        self.R_mount = matrix_from_quat(np.asarray(imu_rotation, dtype=np.float64))
        self.stats = FilterStats()
        self._state = FilterState()
        self._has_optical = False
        self._mag_ref: Optional[np.ndarray] = None

    @classmethod
    def from_calibration(
        cls,
        calibration: CalibrationModel,
        config: Optional[FilterConfig] = None,
        trust: Optional[TrustStrategy] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "OrientationFilter":
        return cls(config, calibration.world_up, calibration.imu_rotation, trust, logger)

    @property
    def state(self) -> FilterState:
        """A copy of the current estimate."""
        return self._state.copy()

    def _reject(self, counter: str, message: str) -> bool:
        setattr(self.stats, counter, getattr(self.stats, counter) + 1)
        self.log.warning("inertial sample skipped: %s", FilterDivergence(message))
        return False

    def propagate(self, sample: InertialSample) -> bool:
        """Integrate one inertial sample. Returns False when the sample was skipped."""
        cfg = self.config
        st = self._state
        gyro = self.R_mount @ np.asarray(sample.gyro, dtype=np.float64)
        accel = self.R_mount @ np.asarray(sample.accel, dtype=np.float64)
        mag = None if sample.mag is None else self.R_mount @ np.asarray(sample.mag, dtype=np.float64)

        if not (np.all(np.isfinite(gyro)) and np.all(np.isfinite(accel))):
            return self._reject("outliers", "non-finite inertial values")
        w_norm = float(np.linalg.norm(gyro))
        a_norm = float(np.linalg.norm(accel))
        if w_norm > cfg.max_gyro_rad_s:
            return self._reject("outliers", f"|w|={w_norm:.2f} rad/s over {cfg.max_gyro_rad_s}")
        if a_norm > cfg.max_accel_m_s2:
            return self._reject("outliers", f"|a|={a_norm:.2f} m/s^2 over {cfg.max_accel_m_s2}")

        if st.timestamp_us is None:
            st.timestamp_us = sample.timestamp_us
            if not st.initialized and a_norm > 1e-6:
                st.orientation = quat_between_vectors(accel, self.world_up)
                st.initialized = True
            return True

        if sample.timestamp_us <= st.timestamp_us:
            return self._reject(
                "bad_timestamps", f"timestamp {sample.timestamp_us} not after {st.timestamp_us}"
            )
        dt = (sample.timestamp_us - st.timestamp_us) / 1e6
        if dt > cfg.max_dt_s:
            self.stats.gaps += 1
            self.log.warning("inertial gap of %.3fs, re-anchoring without integration", dt)
            st.timestamp_us = sample.timestamp_us
            return False

        R = matrix_from_quat(st.orientation)
        omega = gyro - st.gyro_bias

        if a_norm > 1e-6 and abs(a_norm - GRAVITY) <= cfg.accel_gate * GRAVITY:
            up_body = R.T @ self.world_up
            err = np.cross(accel / a_norm, up_body)
            omega = omega + cfg.accel_gain * err
            st.gyro_bias = st.gyro_bias - cfg.bias_gain * err * dt

        if mag is not None and cfg.mag_gain > 0.0:
            omega = omega + cfg.mag_gain * self._heading_error(R, mag)

        q = quat_multiply(st.orientation, quat_from_rotvec(omega * dt))
        norm = float(np.linalg.norm(q))
        if abs(norm - 1.0) > cfg.norm_tolerance:
            self.stats.renormalized += 1
            self.log.debug("quaternion norm %.9f renormalized", norm)
        st.orientation = quat_normalize(q)
        st.timestamp_us = sample.timestamp_us
        self.trust.predict(st, dt)
        self.stats.propagated += 1
        return True

    def _heading_error(self, R: np.ndarray, mag: np.ndarray) -> np.ndarray:
        m_norm = float(np.linalg.norm(mag))
        if m_norm < 1e-9:
            return np.zeros(3)
        m = mag / m_norm
        up_body = R.T @ self.world_up
        m_h = m - float(m @ up_body) * up_body
        h_norm = float(np.linalg.norm(m_h))
        if h_norm < 1e-6:
            return np.zeros(3)
        m_h /= h_norm
        if self._mag_ref is None:
            # heading reference is whatever horizontal field we see first
            self._mag_ref = R @ m_h
            return np.zeros(3)
        ref_body = R.T @ self._mag_ref
        return np.cross(m_h, ref_body)

    def correct(self, pose: Optional[PoseEstimate]) -> bool:
        """Blend an optical pose into the state. None or invalid poses are ignored."""
        if pose is None or not pose.valid:
            return False
        st = self._state
        target_q = quat_normalize(np.array(pose.orientation, dtype=np.float64))
        target_p = np.array(pose.position, dtype=np.float64)

        if not self._has_optical:
            st.orientation = target_q
            st.position = target_p
            self.trust.corrected(st, 1.0)
            st.initialized = True
            self._has_optical = True
            self._mag_ref = None
        else:
            w_rot, w_pos = self.trust.weights(st, pose)
            st.orientation = quat_slerp(st.orientation, target_q, w_rot)
            st.position = st.position + w_pos * (target_p - st.position)
            self.trust.corrected(st, w_rot)
        self.stats.optical_corrections += 1
        return True

    def orientation_error(self, pose: PoseEstimate) -> float:
        """Angle (rad) between the filter and an optical pose."""
        return quat_angle_between(self._state.orientation, pose.orientation)
