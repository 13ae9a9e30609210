from __future__ import annotations

import csv
import io
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import numpy as np

from .ip_types import FusedFrame


class OutputSink(ABC):
    @abstractmethod
    def open(self, session_dir: Path) -> None: ...

    @abstractmethod
    def write_frame(self, frame: FusedFrame) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


def _row(frame: FusedFrame) -> list:
    q = np.asarray(frame.orientation).reshape(-1).tolist()
    p = np.asarray(frame.position).reshape(-1).tolist()
    seq = "" if frame.pose_sequence is None else frame.pose_sequence
    return [frame.timestamp_us, *q, *p, int(frame.stale), seq]


class CsvOutput(OutputSink):
    HEADER = [
        "timestamp_us",
        "qw", "qx", "qy", "qz",
        "px", "py", "pz",
        "stale", "pose_seq",
    ]

    def __init__(self, filename: str = "fused.csv"):
        self.filename = filename
        self.path: Optional[Path] = None
        self._fh = None
        self._w = None

    def open(self, session_dir: Path) -> None:
        self.path = Path(session_dir) / self.filename
        self._fh = open(self.path, "w", newline="")
        self._w = csv.writer(self._fh)
        self._w.writerow(self.HEADER)

    def write_frame(self, frame: FusedFrame) -> None:
        if self._w is None:
            return
        self._w.writerow(_row(frame))

    @classmethod
    def to_csv_line(cls, frame: FusedFrame) -> str:
        buf = io.StringIO()
        csv.writer(buf).writerow(_row(frame))
        return buf.getvalue().strip()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._w = None


class NullOutput(OutputSink):
    def open(self, session_dir: Path) -> None:
        return None

    def write_frame(self, frame: FusedFrame) -> None:
        return None

    def close(self) -> None:
        return None
