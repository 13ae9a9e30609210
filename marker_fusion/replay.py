"""Bounded packet log and the JSON Lines recording format.

Each recording line is one packet::

    {"t_us": 1700000000000000, "seq": 12, "kind": "inertial", "raw": "a55a01..."}

``raw`` is the complete encoded frame, so a recording replays byte for byte
through the same decoder as the live link.
"""

from __future__ import annotations

import json
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .ip_types import TelemetryPacket
from .transport import ReplayTransport


@dataclass(frozen=True)
class RecordedPacket:
    received_us: int
    sequence: int
    kind: str
    raw: bytes

    def to_json(self) -> str:
        return json.dumps(
            {"t_us": self.received_us, "seq": self.sequence, "kind": self.kind, "raw": self.raw.hex()}
        )

    @classmethod
    def from_json(cls, line: str) -> "RecordedPacket":
        d = json.loads(line)
        return cls(int(d["t_us"]), int(d["seq"]), str(d["kind"]), bytes.fromhex(d["raw"]))


def record_from_packet(packet: TelemetryPacket, raw: bytes, received_us: int) -> RecordedPacket:
    return RecordedPacket(received_us, packet.sequence, packet.kind.name.lower(), bytes(raw))


def read_recording(path) -> Iterator[RecordedPacket]:
    with Path(path).open("r", encoding="utf-8") as fp:
        for line in fp:
            line = line.strip()
            if line:
                yield RecordedPacket.from_json(line)


class ReplayRecorder:
    """Appends packets to a recording file as they arrive."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fh = None

    def open(self) -> None:
        self._fh = self.path.open("a", encoding="utf-8")

    def append(self, record: RecordedPacket) -> None:
        if self._fh is None:
            return
        self._fh.write(record.to_json() + "\n")

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


class ReplayBuffer:
    """Append-only FIFO of recorded packets, oldest evicted first."""

    def __init__(self, retention: int = 10000, recorder: Optional[ReplayRecorder] = None):
        if retention <= 0:
            raise ValueError("retention must be positive")
        self.retention = retention
        self.recorder = recorder
        self.evicted = 0
        self._items: deque[RecordedPacket] = deque(maxlen=retention)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def append(self, record: RecordedPacket) -> None:
        with self._lock:
            if len(self._items) == self.retention:
                self.evicted += 1
            self._items.append(record)
        if self.recorder is not None:
            self.recorder.append(record)

    def snapshot(self) -> list[RecordedPacket]:
        with self._lock:
            return list(self._items)

    def save(self, path: str | Path) -> Path:
        p = Path(path)
        with p.open("w", encoding="utf-8") as fp:
            for rec in self.snapshot():
                fp.write(rec.to_json() + "\n")
        return p

    @classmethod
    def load(cls, path: str | Path, retention: Optional[int] = None) -> "ReplayBuffer":
        records = list(read_recording(path))
        buf = cls(retention or max(1, len(records)))
        for rec in records:
            buf.append(rec)
        return buf

    def to_transport(self, realtime: bool = False, speed: float = 1.0) -> ReplayTransport:
        return ReplayTransport(
            [(r.received_us, r.raw) for r in self.snapshot()], realtime=realtime, speed=speed
        )
