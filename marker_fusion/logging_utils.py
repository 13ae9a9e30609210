import logging
from typing import Mapping, Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s [%(device)s/%(component)s] %(message)s"

Level = Union[int, str]


class DeviceNameFilter(logging.Filter):
    """Stamp the device name and the component (child logger suffix) on records."""

    def __init__(self, device_name: str, root_name: str):
        super().__init__()
        self.device_name = device_name
        self.root_name = root_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.device = self.device_name
        if record.name.startswith(self.root_name + "."):
            record.component = record.name[len(self.root_name) + 1:]
        else:
            record.component = "pipeline"
        return True


def parse_level(level: Level) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level}")
    return value


def _attach(logger: logging.Logger, handler: logging.Handler, device_name: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(DeviceNameFilter(device_name, logger.name))
    logger.addHandler(handler)
    return handler


def setup_logger(
    device_name: str,
    level: Level = logging.INFO,
    component_levels: Optional[Mapping[str, Level]] = None,
) -> logging.Logger:
    """Return the device logger; ``component_levels`` tunes children like ``decoder``."""
    logger = logging.getLogger(f"marker_fusion.{device_name}")
    logger.setLevel(parse_level(level))

    if not logger.handlers:
        _attach(logger, logging.StreamHandler(), device_name)

    for component, component_level in (component_levels or {}).items():
        logger.getChild(component).setLevel(parse_level(component_level))

    return logger


def add_file_handler(logger: logging.Logger, device_name: str, log_path: str) -> logging.Handler:
    return _attach(logger, logging.FileHandler(log_path), device_name)
