from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from .config import CalibrationModel, SolverConfig
from .errors import IllConditionedSolve, InsufficientCorrespondences
from .ip_types import MarkerSet, PoseEstimate
from .transforms import camera_pose_in_reference, quat_from_matrix

MIN_CORRESPONDENCES = 4


@dataclass
class SolverStats:
    solved: int = 0
    insufficient: int = 0
    ill_conditioned: int = 0
    ambiguous: int = 0


@dataclass
class _Candidate:
    ids: tuple[int, ...]
    rvec: np.ndarray
    tvec: np.ndarray
    rms: float
    worst: float


def _collinearity(points: np.ndarray) -> float:
    """Ratio of the two largest singular values of the centered point cloud.

    0 means all points lie on a line (or coincide).
    """
    centered = points - points.mean(axis=0)
    s = np.linalg.svd(centered, compute_uv=False)
    if s[0] < 1e-12:
        return 0.0
    return float(s[1] / s[0])


class PoseSolver:
    """Perspective-n-point solve of the sensor pose from one marker set.

    Observations with a marker id are matched to the calibration directly.
    Observations without one are tried against every unclaimed marker, and
    the assignment with the lowest reprojection error is kept.
    """

    def __init__(
        self,
        calibration: CalibrationModel,
        config: Optional[SolverConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.calibration = calibration
        self.config = config or SolverConfig()
        self.log = logger or logging.getLogger(__name__)
        self.min_correspondences = max(MIN_CORRESPONDENCES, self.config.min_correspondences)
        # cv2 wants writable arrays; the calibration's are read-only
        self.K = np.array(calibration.camera_matrix, dtype=np.float64)
        self.dist = np.array(calibration.dist_coeffs, dtype=np.float64)
        self.stats = SolverStats()
        self.last_failure: Optional[Exception] = None

    def solve(self, markers: MarkerSet, sequence: int = 0, timestamp_us: int = 0) -> Optional[PoseEstimate]:
        """Return a pose, or None when no trustworthy pose exists for this set."""
        try:
            pose = self.solve_or_raise(markers, sequence, timestamp_us)
        except InsufficientCorrespondences as exc:
            self.stats.insufficient += 1
            self.last_failure = exc
            self.log.debug("seq=%d no pose: %s", sequence, exc)
            return None
        except IllConditionedSolve as exc:
            self.stats.ill_conditioned += 1
            self.last_failure = exc
            self.log.debug("seq=%d no pose: %s", sequence, exc)
            return None
        self.stats.solved += 1
        self.last_failure = None
        return pose

    def solve_or_raise(self, markers: MarkerSet, sequence: int = 0, timestamp_us: int = 0) -> PoseEstimate:
        known = self.calibration.marker_points
        claimed: dict[int, int] = {}
        unlabeled: list[int] = []
        for i, obs in enumerate(markers.observations):
            mid = obs.marker_id
            if mid is None or mid in claimed:
                unlabeled.append(i)
            elif mid in known:
                claimed[mid] = i
            else:
                self.log.debug("ignoring marker id %d absent from calibration", mid)

        free_ids = [mid for mid in self.calibration.marker_ids if mid not in claimed]
        available = len(claimed) + min(len(unlabeled), len(free_ids))
        if available < self.min_correspondences:
            raise InsufficientCorrespondences(
                f"{available} usable correspondences, need {self.min_correspondences}"
            )

        points = markers.points()
        candidates: list[_Candidate] = []
        failure: Optional[IllConditionedSolve] = None
        for obs_idx, ids in self._assignments(claimed, unlabeled, free_ids):
            try:
                candidates.append(self._solve_one(ids, points[list(obs_idx)]))
            except IllConditionedSolve as exc:
                failure = exc

        if not candidates:
            raise failure or IllConditionedSolve("no assignment produced a solution")

        candidates.sort(key=lambda c: (c.rms, c.worst))
        best = candidates[0]
        if len(candidates) > 1:
            runner_up = candidates[1]
            tol = self.config.tie_tolerance_px
            tied = abs(runner_up.rms - best.rms) <= tol and abs(runner_up.worst - best.worst) <= tol
            same_pose = np.allclose(runner_up.rvec, best.rvec, atol=1e-6) and np.allclose(
                runner_up.tvec, best.tvec, atol=1e-6
            )
            if tied and not same_pose:
                self.stats.ambiguous += 1
                raise IllConditionedSolve("marker assignment is ambiguous")

        R_ref_cam, position = camera_pose_in_reference(best.rvec, best.tvec)
        confidence = 1.0 / (1.0 + best.rms / self.config.max_reprojection_error_px)
        return PoseEstimate(
            orientation=quat_from_matrix(R_ref_cam),
            position=position,
            rvec=best.rvec.reshape(3),
            tvec=best.tvec.reshape(3),
            reprojection_error=best.rms,
            confidence=confidence,
            sequence=sequence,
            timestamp_us=timestamp_us,
        )

    def _assignments(self, claimed: dict[int, int], unlabeled: list[int], free_ids: list[int]):
        """Yield (observation indices, marker ids) pairs to try."""
        base_obs = tuple(claimed.values())
        base_ids = tuple(claimed.keys())
        if not unlabeled or not free_ids:
            yield base_obs, base_ids
            return

        if len(unlabeled) <= len(free_ids):
            combos = (
                (tuple(unlabeled), perm) for perm in itertools.permutations(free_ids, len(unlabeled))
            )
        else:
            # more unlabeled points than free markers: some points are spurious
            combos = (
                (perm, tuple(free_ids)) for perm in itertools.permutations(unlabeled, len(free_ids))
            )

        limit = self.config.max_assignments
        for n, (obs_idx, ids) in enumerate(combos):
            if n >= limit:
                self.log.debug("assignment search truncated at %d candidates", limit)
                return
            yield base_obs + tuple(obs_idx), base_ids + tuple(ids)

    def _solve_one(self, ids: tuple[int, ...], image_points: np.ndarray) -> _Candidate:
        object_points = self.calibration.object_points(ids)
        threshold = self.config.collinearity_threshold
        if _collinearity(object_points) < threshold:
            raise IllConditionedSolve("marker geometry is (near-)collinear")
        if _collinearity(image_points) < threshold:
            raise IllConditionedSolve("observed markers are (near-)collinear")

        obj = object_points.reshape(-1, 1, 3)
        img = image_points.astype(np.float64).reshape(-1, 1, 2)
        try:
            ok, rvec, tvec = cv2.solvePnP(obj, img, self.K, self.dist, flags=cv2.SOLVEPNP_SQPNP)
            if ok:
                rvec, tvec = cv2.solvePnPRefineLM(obj, img, self.K, self.dist, rvec, tvec)
        except cv2.error as exc:
            raise IllConditionedSolve(f"solvePnP failed: {exc}") from exc
        if not ok or not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
            raise IllConditionedSolve("solvePnP returned no finite solution")

        R, _ = cv2.Rodrigues(rvec)
        depths = (object_points @ R.T + tvec.reshape(1, 3))[:, 2]
        if np.any(depths <= 0.0):
            raise IllConditionedSolve("solution places markers behind the sensor")

        projected, _ = cv2.projectPoints(obj, rvec, tvec, self.K, self.dist)
        residuals = np.linalg.norm(projected.reshape(-1, 2) - image_points.reshape(-1, 2), axis=1)
        rms = float(np.sqrt(np.mean(residuals ** 2)))
        worst = float(residuals.max())
        if rms > self.config.max_reprojection_error_px:
            raise IllConditionedSolve(f"reprojection error {rms:.2f}px over limit")
        return _Candidate(ids, rvec.reshape(3, 1), tvec.reshape(3, 1), rms, worst)
