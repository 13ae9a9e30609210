import cv2
import numpy as np
import pytest

from marker_fusion.config import CalibrationModel
from marker_fusion.ip_types import InertialSample, MarkerObservation, MarkerSet
from marker_fusion.protocol import GRAVITY, encode_packet, make_packet

MARKERS = {
    1: (0.0, 0.0, 0.0),
    2: (0.12, 0.0, 0.0),
    3: (0.0, 0.10, 0.0),
    4: (0.11, 0.09, 0.03),
    5: (0.05, -0.04, 0.05),
}
CAMERA_MATRIX = np.array([[600.0, 0.0, 320.0], [0.0, 600.0, 240.0], [0.0, 0.0, 1.0]])
RVEC = np.array([0.1, -0.2, 0.05])
TVEC = np.array([-0.05, -0.03, 0.6])


def project_markers(calibration, ids, rvec=RVEC, tvec=TVEC):
    obj = calibration.object_points(ids).reshape(-1, 1, 3)
    K = np.array(calibration.camera_matrix)
    dist = np.array(calibration.dist_coeffs)
    img, _ = cv2.projectPoints(obj, np.asarray(rvec, float), np.asarray(tvec, float), K, dist)
    return img.reshape(-1, 2)


def labeled_set(calibration, ids=None, rvec=RVEC, tvec=TVEC, labeled=True) -> MarkerSet:
    ids = list(ids or calibration.marker_ids)
    pts = project_markers(calibration, ids, rvec, tvec)
    return MarkerSet(
        tuple(
            MarkerObservation(float(x), float(y), mid if labeled else None, 3)
            for (x, y), mid in zip(pts, ids)
        )
    )


def level_sample(t_us: int, gyro=(0.0, 0.0, 0.0)) -> InertialSample:
    return InertialSample(t_us, tuple(gyro), (0.0, 0.0, GRAVITY))


@pytest.fixture
def calibration():
    return CalibrationModel(MARKERS, CAMERA_MATRIX, np.zeros(5))


@pytest.fixture
def telemetry_stream(calibration):
    """Encoded frames for a short session: 200 Hz inertial, 50 Hz markers."""

    def _build(n_inertial: int = 100) -> list[bytes]:
        frames = []
        seq = 0
        markers = labeled_set(calibration)
        for i in range(n_inertial):
            t = 1_000_000 + i * 5_000
            frames.append(encode_packet(make_packet(seq, t, level_sample(t, gyro=(0.0, 0.0, 0.1)))))
            seq += 1
            if i % 4 == 0:
                frames.append(encode_packet(make_packet(seq, t + 1, markers)))
                seq += 1
        return frames

    return _build


@pytest.fixture
def make_markers(calibration):
    def _make(ids=None, rvec=RVEC, tvec=TVEC, labeled=True) -> MarkerSet:
        return labeled_set(calibration, ids, rvec, tvec, labeled)

    return _make


@pytest.fixture
def true_pose():
    """(rvec, tvec) the synthetic marker sets are projected with."""
    return RVEC.copy(), TVEC.copy()
