from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import numpy as np

from .errors import ConfigurationError
from .logging_utils import parse_level


@dataclass
class TransportConfig:
    """Where telemetry bytes come from."""

    type: str = "serial"  # "serial", "replay"
    port: str = "/dev/ttyACM0"
    baudrate: int = 115200
    read_timeout_s: float = 0.05
    stall_timeout_s: float = 2.0
    chunk_size: int = 512
    replay_path: Optional[str] = None
    realtime: bool = True
    speed: float = 1.0


@dataclass
class DecoderConfig:
    sync: str = "a55a"  # hex
    max_body_len: int = 1024
    sequence_restart_window: int = 256  # larger backward jumps mean the device restarted


@dataclass
class SolverConfig:
    min_correspondences: int = 4
    max_reprojection_error_px: float = 4.0
    collinearity_threshold: float = 0.05
    max_assignments: int = 720
    tie_tolerance_px: float = 1e-6


@dataclass
class FilterConfig:
    accel_gain: float = 0.5
    mag_gain: float = 0.2
    bias_gain: float = 0.01
    accel_gate: float = 0.15  # fraction of 1 g
    max_gyro_rad_s: float = 35.0
    max_accel_m_s2: float = 160.0
    max_dt_s: float = 0.5
    norm_tolerance: float = 1e-6
    trust: str = "fixed"  # "fixed", "covariance"
    rotation_gain: float = 0.3
    position_gain: float = 0.8
    gyro_noise: float = 0.01  # rad^2/s
    optical_noise: float = 0.002  # rad^2


@dataclass
class SyncConfig:
    staleness_ms: float = 100.0
    output_rate_hz: Optional[float] = None  # None: one frame per filter update


@dataclass
class PipelineConfig:
    packet_queue_size: int = 256
    output_queue_size: int = 256
    poll_interval_s: float = 0.1
    reconnect_initial_s: float = 0.25
    reconnect_max_s: float = 5.0
    reconnect_attempts: int = 10
    replay_retention: int = 10000
    drop_on_overflow: bool = True
    join_timeout_s: float = 2.0


@dataclass
class FusionConfig:
    device_name: str = "tracker"
    calibration_path: str = "calib/tracker.yaml"
    session_root: Optional[str] = None
    log_level: str = "INFO"
    log_levels: dict[str, str] = field(default_factory=dict)  # per component, e.g. {"decoder": "DEBUG"}
    transport: TransportConfig = field(default_factory=TransportConfig)
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "FusionConfig":
        """Set top-level or dotted (``"transport.port"``) keys, skipping None."""
        for key, value in kwargs.items():
            if value is None:
                continue
            target = self
            *parents, leaf = key.split(".")
            for p in parents:
                target = getattr(target, p)
            if hasattr(target, leaf):
                setattr(target, leaf, value)
        return self


@dataclass(frozen=True)
class CalibrationModel:
    """Marker geometry and sensor intrinsics. Immutable for a session."""

    marker_points: Mapping[int, tuple[float, float, float]]
    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray
    world_up: tuple[float, float, float] = (0.0, 0.0, 1.0)
    imu_rotation: tuple[float, float, float, float] = (1.0, 0.0, 0.0, 0.0)

    def __post_init__(self):
        K = np.array(self.camera_matrix, dtype=np.float64).reshape(3, 3)
        dist = np.array(self.dist_coeffs, dtype=np.float64).reshape(-1, 1)
        K.flags.writeable = False
        dist.flags.writeable = False
        object.__setattr__(self, "camera_matrix", K)
        object.__setattr__(self, "dist_coeffs", dist)
        object.__setattr__(self, "marker_points", MappingProxyType(dict(self.marker_points)))

    @property
    def marker_ids(self) -> list[int]:
        return sorted(self.marker_points)

    def object_points(self, ids) -> np.ndarray:
        return np.array([self.marker_points[i] for i in ids], dtype=np.float64).reshape(-1, 3)


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "YAML config requested but PyYAML is not installed. "
            "Install with: pip install pyyaml"
        ) from exc
    with path.open("r", encoding="utf-8") as fp:
        try:
            data = yaml.safe_load(fp) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("YAML config root must be a mapping")
    return data


def _read_document(p: Path) -> dict[str, Any]:
    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON/YAML object")
    return raw


def _coerce(current: Any, value: Any) -> Any:
    if value is None or current is None:
        return value
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str):
        return str(value)
    return value


def _apply_section(target: Any, raw: dict[str, Any], where: str) -> None:
    if not isinstance(raw, dict):
        raise ValueError(f"{where} must be a mapping")
    known = {f.name for f in fields(target)}
    for key, value in raw.items():
        if key not in known:
            raise ValueError(f"unknown config key: {where}.{key}")
        current = getattr(target, key)
        if is_dataclass(current):
            _apply_section(current, value, f"{where}.{key}")
        else:
            setattr(target, key, _coerce(current, value))


def load_config(path: str | Path) -> FusionConfig:
    """Read a JSON/YAML config over the defaults; any problem is a ConfigurationError."""
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Config not found: {p}")

    cfg = FusionConfig()
    try:
        _apply_section(cfg, _read_document(p), "config")
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"invalid config {p}: {exc}") from exc
    if cfg.solver.min_correspondences < 4:
        raise ConfigurationError("solver.min_correspondences must be at least 4")
    if cfg.filter.trust not in {"fixed", "covariance"}:
        raise ConfigurationError(f"unknown filter.trust: {cfg.filter.trust}")
    try:
        parse_level(cfg.log_level)
        for level in cfg.log_levels.values():
            parse_level(level)
    except (ValueError, AttributeError) as exc:
        raise ConfigurationError(f"invalid log level in {p}: {exc}") from exc
    return cfg


def _camera_matrix(raw: dict[str, Any]) -> np.ndarray:
    if "camera_matrix" in raw:
        return np.array(raw["camera_matrix"], dtype=np.float64).reshape(3, 3)
    try:
        fx, fy = float(raw["fx"]), float(raw["fy"])
        cx, cy = float(raw["cx"]), float(raw["cy"])
    except KeyError as exc:
        raise ConfigurationError(f"calibration is missing intrinsic {exc}") from exc
    return np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])


def load_calibration(path: str | Path) -> CalibrationModel:
    """Read marker geometry and intrinsics; any problem is a ConfigurationError."""
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Calibration not found: {p}")
    try:
        raw = _read_document(p)
        markers_raw = raw.get("markers")
        if not isinstance(markers_raw, dict) or not markers_raw:
            raise ConfigurationError("calibration needs a non-empty 'markers' mapping of id -> [x, y, z]")
        markers = {}
        for k, v in markers_raw.items():
            xyz = tuple(float(c) for c in v)
            if len(xyz) != 3:
                raise ConfigurationError(f"marker {k} must have 3 coordinates")
            markers[int(k)] = xyz
        K = _camera_matrix(raw)
        dist = np.array(raw.get("dist_coeffs", [0.0] * 5), dtype=np.float64)
        up = tuple(float(c) for c in raw.get("world_up", (0.0, 0.0, 1.0)))
        imu_rot = tuple(float(c) for c in raw.get("imu_rotation", (1.0, 0.0, 0.0, 0.0)))
    except ConfigurationError:
        raise
    except (ValueError, TypeError) as exc:
        raise ConfigurationError(f"invalid calibration {p}: {exc}") from exc

    if len(up) != 3 or np.linalg.norm(up) < 1e-9:
        raise ConfigurationError("world_up must be a non-zero 3-vector")
    if len(imu_rot) != 4:
        raise ConfigurationError("imu_rotation must be a (w, x, y, z) quaternion")
    return CalibrationModel(markers, K, dist, up, imu_rot)
