import json
from pathlib import Path

import numpy as np
import pytest

from marker_fusion.config import FusionConfig, load_calibration, load_config
from marker_fusion.errors import ConfigurationError


def test_load_config_json(tmp_path: Path):
    cfg_path = tmp_path / "tracker.json"
    cfg_path.write_text(
        json.dumps(
            {
                "device_name": "wand",
                "transport": {"port": "/dev/ttyACM3", "baudrate": 921600},
                "sync": {"staleness_ms": 50},
                "filter": {"trust": "covariance"},
            }
        ),
        encoding="utf-8",
    )

    cfg = load_config(cfg_path)
    assert cfg.device_name == "wand"
    assert cfg.transport.port == "/dev/ttyACM3"
    assert cfg.transport.baudrate == 921600
    assert cfg.sync.staleness_ms == 50.0
    assert isinstance(cfg.sync.staleness_ms, float)
    assert cfg.filter.trust == "covariance"
    assert cfg.solver.min_correspondences == 4

    cfg.apply_overrides(device_name="wand2", **{"transport.port": "/dev/ttyACM4", "sync.output_rate_hz": None})
    assert cfg.device_name == "wand2"
    assert cfg.transport.port == "/dev/ttyACM4"
    assert cfg.sync.output_rate_hz is None


def test_load_config_yaml(tmp_path: Path):
    pytest.importorskip("yaml")
    cfg_path = tmp_path / "tracker.yaml"
    cfg_path.write_text(
        "device_name: yamltracker\n"
        "transport:\n"
        "  type: replay\n"
        "  replay_path: rec.jsonl\n"
        "sync:\n"
        "  output_rate_hz: 60\n",
        encoding="utf-8",
    )

    cfg = load_config(cfg_path)
    assert cfg.device_name == "yamltracker"
    assert cfg.transport.type == "replay"
    assert cfg.sync.output_rate_hz == 60


def test_config_defaults():
    cfg = FusionConfig()
    assert cfg.decoder.sync == "a55a"
    assert cfg.sync.staleness_ms == 100.0
    assert cfg.pipeline.packet_queue_size > 0
    assert cfg.as_dict()["transport"]["type"] == "serial"


def test_unknown_key_is_rejected(tmp_path: Path):
    cfg_path = tmp_path / "bad.json"
    cfg_path.write_text(json.dumps({"solver": {"magic": 1}}), encoding="utf-8")
    with pytest.raises(ConfigurationError, match="solver.magic"):
        load_config(cfg_path)


def test_min_correspondences_below_four_is_rejected(tmp_path: Path):
    cfg_path = tmp_path / "bad.json"
    cfg_path.write_text(json.dumps({"solver": {"min_correspondences": 3}}), encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(cfg_path)


def test_missing_config():
    with pytest.raises(ConfigurationError):
        load_config("/nonexistent/tracker.json")


def test_load_calibration_with_intrinsics(tmp_path: Path):
    path = tmp_path / "calib.json"
    path.write_text(
        json.dumps(
            {
                "markers": {"1": [0, 0, 0], "2": [0.1, 0, 0], "3": [0, 0.1, 0], "4": [0.1, 0.1, 0.02]},
                "fx": 610.0,
                "fy": 605.0,
                "cx": 320.0,
                "cy": 240.0,
                "world_up": [0, 0, -1],
            }
        ),
        encoding="utf-8",
    )

    calib = load_calibration(path)
    assert calib.marker_ids == [1, 2, 3, 4]
    assert calib.camera_matrix[0, 0] == 610.0
    assert calib.camera_matrix[1, 2] == 240.0
    assert np.allclose(calib.dist_coeffs.ravel(), 0.0)
    assert calib.world_up == (0.0, 0.0, -1.0)
    assert calib.object_points([2, 4]).shape == (2, 3)
    assert not calib.camera_matrix.flags.writeable
    with pytest.raises(TypeError):
        calib.marker_points[5] = (0.0, 0.0, 0.0)
    with pytest.raises(TypeError):
        del calib.marker_points[1]
    assert calib.marker_ids == [1, 2, 3, 4]


@pytest.mark.parametrize(
    "doc",
    [
        {"fx": 1, "fy": 1, "cx": 0, "cy": 0},
        {"markers": {"1": [0, 0]}, "fx": 1, "fy": 1, "cx": 0, "cy": 0},
        {"markers": {"1": [0, 0, 0]}, "fx": 1},
        {"markers": {"1": [0, 0, 0]}, "camera_matrix": [[1, 0, 0], [0, 1, 0], [0, 0, 1]], "world_up": [0, 0, 0]},
        {"markers": {"x": [0, 0, 0]}, "camera_matrix": [[1, 0, 0], [0, 1, 0], [0, 0, 1]]},
    ],
)
def test_bad_calibration_is_configuration_error(tmp_path: Path, doc):
    path = tmp_path / "calib.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_calibration(path)


def test_missing_calibration(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        load_calibration(tmp_path / "nope.yaml")


@pytest.mark.parametrize(
    "text, suffix",
    [
        ("{not json", ".json"),
        ("[1, 2]", ".json"),
        ('{"transport": "serial"}', ".json"),
        ('{"sync": {"staleness_ms": "soon"}}', ".json"),
        ('{"log_levels": {"decoder": "LOUD"}}', ".json"),
        ("transport: [unclosed", ".yaml"),
    ],
)
def test_bad_config_is_configuration_error(tmp_path: Path, text, suffix):
    if suffix == ".yaml":
        pytest.importorskip("yaml")
    cfg_path = tmp_path / f"bad{suffix}"
    cfg_path.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(cfg_path)


def test_component_log_levels_are_loaded(tmp_path: Path):
    cfg_path = tmp_path / "tracker.json"
    cfg_path.write_text(json.dumps({"log_levels": {"decoder": "DEBUG", "solver": "WARNING"}}), encoding="utf-8")

    cfg = load_config(cfg_path)
    assert cfg.log_levels == {"decoder": "DEBUG", "solver": "WARNING"}
    assert FusionConfig().log_levels == {}
