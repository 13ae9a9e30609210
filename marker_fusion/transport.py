"""Byte-stream transports.

A transport delivers ordered bytes from the tracking device or a recording:

- Serial/USB-CDC devices via pyserial
- Replay of a recorded session, paced or as fast as consumed
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import serial

from .errors import Disconnected, EndOfStream, LinkUnavailable


class BaseTransport(ABC):
    """Abstract byte source.

    ``read_chunk`` returns ``b""`` when nothing arrived within the short read
    timeout, and raises ``Disconnected`` once the link is gone or stalled.
    """

    #: True when the source may be consumed faster than real time
    fast: bool = False

    @abstractmethod
    def open(self) -> None:
        """Open the link. Raises LinkUnavailable."""
        ...

    @abstractmethod
    def read_chunk(self) -> bytes:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def interrupt(self) -> None:
        """Wake a reader blocked in ``read_chunk``. Reads already bounded by a timeout need nothing."""
        return None

    def __enter__(self) -> "BaseTransport":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class SerialTransport(BaseTransport):
    """USB/serial device link.

    A read that yields nothing for ``stall_timeout_s`` is turned into
    ``Disconnected`` so the pipeline can reconnect instead of hanging.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        read_timeout_s: float = 0.05,
        stall_timeout_s: float = 2.0,
        chunk_size: int = 512,
    ):
        self.port = port
        self.baudrate = baudrate
        self.read_timeout_s = read_timeout_s
        self.stall_timeout_s = stall_timeout_s
        self.chunk_size = chunk_size
        self.conn: Any = None
        self._last_data = 0.0

    def open(self) -> None:
        try:
            self.conn = serial.Serial(self.port, self.baudrate, timeout=self.read_timeout_s)
        except (serial.SerialException, OSError, ValueError) as exc:
            self.conn = None
            raise LinkUnavailable(f"Failed to open {self.port}: {exc}") from exc
        self._last_data = time.monotonic()

    def read_chunk(self) -> bytes:
        conn = self.conn
        if conn is None:
            raise Disconnected(f"{self.port} is not open")
        try:
            waiting = conn.in_waiting
            data = conn.read(max(1, min(self.chunk_size, waiting or 1)))
        except (serial.SerialException, OSError) as exc:
            raise Disconnected(f"{self.port}: {exc}") from exc
        now = time.monotonic()
        if data:
            self._last_data = now
            return bytes(data)
        if now - self._last_data > self.stall_timeout_s:
            raise Disconnected(f"{self.port}: no data for {self.stall_timeout_s:.1f}s")
        return b""

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            finally:
                self.conn = None


class ReplayTransport(BaseTransport):
    """Re-emits recorded frames, one frame per read.

    ``records`` is an iterable of ``(timestamp_us, raw_frame_bytes)``. With
    ``realtime`` the gaps between recorded timestamps are reproduced (divided
    by ``speed``); otherwise frames are returned as fast as they are read.
    """

    def __init__(self, records: Iterable[tuple[int, bytes]], realtime: bool = False, speed: float = 1.0):
        self._records = list(records)
        self.realtime = realtime
        self.speed = speed if speed > 0 else 1.0
        self.fast = not realtime
        self._index = 0
        self._opened = False
        self._t0_wall: Optional[float] = None
        self._t0_rec: Optional[int] = None
        self._wake = threading.Event()

    @classmethod
    def from_file(cls, path, realtime: bool = False, speed: float = 1.0) -> "ReplayTransport":
        from .replay import read_recording

        try:
            records = [(r.received_us, r.raw) for r in read_recording(path)]
        except FileNotFoundError as exc:
            raise LinkUnavailable(f"Replay file not found: {path}") from exc
        return cls(records, realtime=realtime, speed=speed)

    @property
    def remaining(self) -> int:
        return len(self._records) - self._index

    def open(self) -> None:
        # reopening continues where the last connection stopped
        self._opened = True
        self._t0_wall = None
        self._wake.clear()

    def read_chunk(self) -> bytes:
        if not self._opened:
            raise Disconnected("replay transport is closed")
        if self._index >= len(self._records):
            raise EndOfStream(f"replay finished after {len(self._records)} frames")
        ts, raw = self._records[self._index]
        if self.realtime and not self._pace(ts):
            return b""
        self._index += 1
        return raw

    def _pace(self, ts: int) -> bool:
        """Wait until ``ts`` is due. False if ``interrupt``/``close`` cut the wait short."""
        now = time.monotonic()
        if self._t0_wall is None:
            self._t0_wall, self._t0_rec = now, ts
            return True
        due = self._t0_wall + (ts - self._t0_rec) / 1e6 / self.speed
        if due > now:
            return not self._wake.wait(due - now)
        return True

    def interrupt(self) -> None:
        self._wake.set()

    def close(self) -> None:
        self._opened = False
        self._wake.set()


def build_transport(cfg) -> BaseTransport:
    """Create the transport described by a ``TransportConfig``."""
    if cfg.type == "serial":
        return SerialTransport(
            cfg.port,
            cfg.baudrate,
            cfg.read_timeout_s,
            cfg.stall_timeout_s,
            cfg.chunk_size,
        )
    if cfg.type == "replay":
        if not cfg.replay_path:
            raise ValueError("transport.replay_path is required for replay")
        return ReplayTransport.from_file(cfg.replay_path, realtime=cfg.realtime, speed=cfg.speed)
    raise ValueError(f"unknown transport type: {cfg.type}")
