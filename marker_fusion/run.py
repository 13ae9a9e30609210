import argparse
import signal
import sys

from .config import FusionConfig, load_calibration, load_config
from .errors import FusionError
from .logging_utils import setup_logger
from .output import CsvOutput
from .transport import build_transport
from .worker import FusionPipeline


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Fuse optical marker and inertial telemetry from one tracker")
    ap.add_argument("--config", required=True, help="Path to JSON/YAML config")

    ap.add_argument("--device-name")
    ap.add_argument("--port", help="Serial port of the tracker")
    ap.add_argument("--baudrate", type=int)
    ap.add_argument("--replay", help="Replay a recorded session instead of reading a port")
    ap.add_argument("--fast", action="store_true", help="Replay as fast as possible")
    ap.add_argument("--speed", type=float)
    ap.add_argument("--calib")
    ap.add_argument("--out")
    ap.add_argument("--rate", type=float, help="Fixed output rate in Hz")
    ap.add_argument("--staleness-ms", type=float)
    ap.add_argument("--log-level")
    ap.add_argument("--no-csv", action="store_true")

    return ap


def _apply_args(cfg: FusionConfig, args: argparse.Namespace) -> FusionConfig:
    transport_type = None
    if args.replay:
        transport_type = "replay"
    elif args.port:
        transport_type = "serial"

    cfg.apply_overrides(
        device_name=args.device_name,
        calibration_path=args.calib,
        session_root=args.out,
        log_level=args.log_level,
        **{
            "transport.type": transport_type,
            "transport.port": args.port,
            "transport.baudrate": args.baudrate,
            "transport.replay_path": args.replay,
            "transport.realtime": False if args.fast else None,
            "transport.speed": args.speed,
            "sync.output_rate_hz": args.rate,
            "sync.staleness_ms": args.staleness_ms,
        },
    )
    return cfg


def main() -> int:
    ap = _build_parser()
    args = ap.parse_args()

    try:
        cfg = _apply_args(load_config(args.config), args)
        logger = setup_logger(cfg.device_name, cfg.log_level, cfg.log_levels)
    except (FusionError, ValueError) as exc:
        setup_logger(args.device_name or FusionConfig.device_name).error("startup failed: %s", exc)
        return 2

    try:
        calibration = load_calibration(cfg.calibration_path)
        transport = build_transport(cfg.transport)
        pipeline = FusionPipeline(cfg, calibration, transport, logger=logger)
    except (FusionError, ValueError) as exc:
        logger.error("startup failed: %s", exc)
        return 2

    def _handle_signal(_sig, _frame):
        pipeline.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    outputs = [] if args.no_csv or not cfg.session_root else [CsvOutput()]
    try:
        summary = pipeline.run(outputs)
    except FusionError as exc:
        logger.error("session failed: %s", exc)
        return 1
    print(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
