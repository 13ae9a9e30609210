"""Framed binary telemetry protocol.

Frame layout (little-endian)::

    sync(2) version(1) kind(1) length(2) sequence(4) timestamp_us(8) payload(length) crc32(4)

The CRC covers everything after the sync marker up to the end of the payload.
``Decoder`` is incremental: feed it arbitrary chunks and it returns whole
packets, resynchronizing on the sync marker after any bad frame.
"""

from __future__ import annotations

import logging
import math
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .errors import MalformedPacket
from .ip_types import (
    NO_MARKER_ID,
    InertialSample,
    MarkerObservation,
    MarkerSet,
    PacketKind,
    Payload,
    StatusReport,
    TelemetryPacket,
)

PROTOCOL_VERSION = 1
DEFAULT_SYNC = b"\xa5\x5a"
DEFAULT_MAX_BODY_LEN = 1024
DEFAULT_RESTART_WINDOW = 256
_SEQ_MODULUS = 1 << 32

_HEADER = struct.Struct("<BBHIQ")
_CRC = struct.Struct("<I")
_MARKER = struct.Struct("<ffBB")
_VEC3 = struct.Struct("<hhh")
_STATUS = struct.Struct("<BBH")

GRAVITY = 9.80665
ACCEL_LSB_PER_G = 16384.0
GYRO_LSB_PER_DPS = 16.4
MAG_UT_PER_LSB = 0.15
_FLAG_MAG = 0x01


def _to_counts(values, scale: float) -> tuple[int, int, int]:
    counts = tuple(int(round(v * scale)) for v in values)
    for c in counts:
        if not -32768 <= c <= 32767:
            raise ValueError(f"inertial value out of range: {values}")
    return counts


def _encode_markers(m: MarkerSet) -> bytes:
    if len(m) > 255:
        raise ValueError("at most 255 markers per packet")
    out = bytearray([len(m)])
    for o in m.observations:
        mid = NO_MARKER_ID if o.marker_id is None else int(o.marker_id)
        out += _MARKER.pack(o.x, o.y, mid, o.radius)
    return bytes(out)


def _decode_markers(body: bytes) -> MarkerSet:
    if not body:
        raise MalformedPacket("payload", "empty marker payload")
    count = body[0]
    if len(body) != 1 + count * _MARKER.size:
        raise MalformedPacket("payload", f"{count} markers do not fit {len(body)} bytes")
    obs = []
    for i in range(count):
        x, y, mid, radius = _MARKER.unpack_from(body, 1 + i * _MARKER.size)
        if not (math.isfinite(x) and math.isfinite(y)):
            raise MalformedPacket("payload", "non-finite marker coordinate")
        obs.append(MarkerObservation(x, y, None if mid == NO_MARKER_ID else mid, radius))
    return MarkerSet(tuple(obs))


def _encode_inertial(s: InertialSample) -> bytes:
    flags = _FLAG_MAG if s.mag is not None else 0
    accel = _to_counts(s.accel, ACCEL_LSB_PER_G / GRAVITY)
    gyro = _to_counts(s.gyro, GYRO_LSB_PER_DPS * 180.0 / math.pi)
    out = bytes([flags]) + _VEC3.pack(*accel) + _VEC3.pack(*gyro)
    if s.mag is not None:
        out += _VEC3.pack(*_to_counts(s.mag, 1.0 / MAG_UT_PER_LSB))
    return out


def _decode_inertial(body: bytes, timestamp_us: int) -> InertialSample:
    if not body:
        raise MalformedPacket("payload", "empty inertial payload")
    flags = body[0]
    expected = 1 + 2 * _VEC3.size + (_VEC3.size if flags & _FLAG_MAG else 0)
    if len(body) != expected:
        raise MalformedPacket("payload", f"inertial payload is {len(body)} bytes, expected {expected}")
    accel = tuple(c / ACCEL_LSB_PER_G * GRAVITY for c in _VEC3.unpack_from(body, 1))
    gyro = tuple(math.radians(c / GYRO_LSB_PER_DPS) for c in _VEC3.unpack_from(body, 1 + _VEC3.size))
    mag = None
    if flags & _FLAG_MAG:
        mag = tuple(c * MAG_UT_PER_LSB for c in _VEC3.unpack_from(body, 1 + 2 * _VEC3.size))
    return InertialSample(timestamp_us, gyro, accel, mag)


def _encode_status(s: StatusReport) -> bytes:
    return _STATUS.pack(s.stream_mask, 1 if s.active else 0, s.error_count)


def _decode_status(body: bytes) -> StatusReport:
    if len(body) != _STATUS.size:
        raise MalformedPacket("payload", f"status payload is {len(body)} bytes")
    mask, active, errors = _STATUS.unpack(body)
    return StatusReport(mask, active != 0, errors)


_ENCODERS: dict[PacketKind, Callable[..., bytes]] = {
    PacketKind.MARKERS: _encode_markers,
    PacketKind.INERTIAL: _encode_inertial,
    PacketKind.STATUS: _encode_status,
}

_DECODERS: dict[PacketKind, Callable[[bytes, int], Payload]] = {
    PacketKind.MARKERS: lambda body, ts: _decode_markers(body),
    PacketKind.INERTIAL: _decode_inertial,
    PacketKind.STATUS: lambda body, ts: _decode_status(body),
}


def encode_packet(packet: TelemetryPacket, sync: bytes = DEFAULT_SYNC) -> bytes:
    body = _ENCODERS[PacketKind(packet.kind)](packet.payload)
    if len(body) > 0xFFFF:
        raise ValueError("payload too long")
    header = _HEADER.pack(packet.version, int(packet.kind), len(body), packet.sequence, packet.timestamp_us)
    crc = zlib.crc32(header + body) & 0xFFFFFFFF
    return sync + header + body + _CRC.pack(crc)


def make_packet(sequence: int, timestamp_us: int, payload: Payload) -> TelemetryPacket:
    if isinstance(payload, MarkerSet):
        kind = PacketKind.MARKERS
    elif isinstance(payload, InertialSample):
        kind = PacketKind.INERTIAL
    elif isinstance(payload, StatusReport):
        kind = PacketKind.STATUS
    else:
        raise TypeError(f"unsupported payload type: {type(payload).__name__}")
    return TelemetryPacket(PROTOCOL_VERSION, sequence, timestamp_us, kind, payload)


class DecoderState(Enum):
    SEEKING_SYNC = "seeking-sync"
    READING_HEADER = "reading-header"
    READING_BODY = "reading-body"
    VALIDATING = "validating"
    EMIT = "emit"


@dataclass
class DecoderStats:
    packets: int = 0
    bytes_discarded: int = 0
    malformed: int = 0
    crc_errors: int = 0
    length_errors: int = 0
    version_errors: int = 0
    unknown_kind: int = 0
    payload_errors: int = 0
    sequence_gaps: int = 0
    dropped_packets: int = 0
    duplicates: int = 0
    out_of_order: int = 0
    sequence_restarts: int = 0


class Decoder:
    def __init__(
        self,
        sync: bytes = DEFAULT_SYNC,
        max_body_len: int = DEFAULT_MAX_BODY_LEN,
        logger: Optional[logging.Logger] = None,
        restart_window: int = DEFAULT_RESTART_WINDOW,
    ):
        if not sync:
            raise ValueError("sync marker must not be empty")
        self.sync = bytes(sync)
        self.max_body_len = max_body_len
        self.log = logger or logging.getLogger(__name__)
        self.stats = DecoderStats()
        self.state = DecoderState.SEEKING_SYNC
        self._buf = bytearray()
        self._header: Optional[tuple[int, int, int, int, int]] = None
        self._pending: Optional[TelemetryPacket] = None
        self.restart_window = restart_window
        self._last_seq: Optional[int] = None
        self._resynced = False

    @property
    def frame_overhead(self) -> int:
        return len(self.sync) + _HEADER.size + _CRC.size

    def resync(self, reset_sequence: bool = False) -> None:
        """Forget buffered bytes, e.g. after a reconnect.

        Sequence tracking survives unless ``reset_sequence`` is set, so gaps
        across a reconnect still show up in the stats. A backward jump in the
        first packet after a resync is taken as a restarted device stream.
        """
        if self._buf:
            self.stats.bytes_discarded += len(self._buf)
        self._buf.clear()
        self._header = None
        self._pending = None
        self.state = DecoderState.SEEKING_SYNC
        self._resynced = True
        if reset_sequence:
            self._last_seq = None

    def feed(self, data: bytes) -> list[TelemetryPacket]:
        return [pkt for pkt, _raw in self.feed_frames(data)]

    def feed_frames(self, data: bytes) -> list[tuple[TelemetryPacket, bytes]]:
        """Like ``feed`` but also returns each packet's exact frame bytes."""
        self._buf += data
        out: list[tuple[TelemetryPacket, bytes]] = []
        while True:
            frame = self._step()
            if frame is not None:
                out.append(frame)
            elif self._needs_more():
                break
        return out

    def _needs_more(self) -> bool:
        sync_len = len(self.sync)
        if self.state is DecoderState.SEEKING_SYNC:
            return self._buf.find(self.sync) < 0
        if self.state is DecoderState.READING_HEADER:
            return len(self._buf) < sync_len + _HEADER.size
        if self.state is DecoderState.READING_BODY:
            return len(self._buf) < self._frame_len()
        return False

    def _frame_len(self) -> int:
        assert self._header is not None
        return len(self.sync) + _HEADER.size + self._header[2] + _CRC.size

    def _discard(self, n: int) -> None:
        if n:
            del self._buf[:n]
            self.stats.bytes_discarded += n

    def _reject(self, err: MalformedPacket) -> None:
        self.stats.malformed += 1
        counter = {
            "crc": "crc_errors",
            "length": "length_errors",
            "version": "version_errors",
            "kind": "unknown_kind",
            "payload": "payload_errors",
        }.get(err.reason)
        if counter:
            setattr(self.stats, counter, getattr(self.stats, counter) + 1)
        self.log.warning("malformed packet dropped (%s)", err)
        # skip the false sync byte and scan again
        self._discard(1)
        self._header = None
        self.state = DecoderState.SEEKING_SYNC

    def _step(self) -> Optional[tuple[TelemetryPacket, bytes]]:
        if self.state is DecoderState.SEEKING_SYNC:
            idx = self._buf.find(self.sync)
            if idx < 0:
                # keep a possible partial marker at the tail
                keep = len(self.sync) - 1
                self._discard(max(0, len(self._buf) - keep))
                return None
            self._discard(idx)
            self.state = DecoderState.READING_HEADER
            return None

        if self.state is DecoderState.READING_HEADER:
            start = len(self.sync)
            if len(self._buf) < start + _HEADER.size:
                return None
            header = _HEADER.unpack_from(self._buf, start)
            version, kind, length, _seq, _ts = header
            if version != PROTOCOL_VERSION:
                self._reject(MalformedPacket("version", f"unsupported version {version}"))
                return None
            if length > self.max_body_len:
                self._reject(MalformedPacket("length", f"body length {length} > {self.max_body_len}"))
                return None
            self._header = header
            self.state = DecoderState.READING_BODY
            return None

        if self.state is DecoderState.READING_BODY:
            if len(self._buf) < self._frame_len():
                return None
            self.state = DecoderState.VALIDATING
            return None

        if self.state is DecoderState.VALIDATING:
            try:
                pkt = self._validate()
            except MalformedPacket as err:
                self._reject(err)
                return None
            self.state = DecoderState.EMIT
            self._pending = pkt
            return None

        # EMIT
        pkt = self._pending
        self._pending = None
        n = self._frame_len()
        raw = bytes(self._buf[:n])
        del self._buf[:n]
        self._header = None
        self.state = DecoderState.SEEKING_SYNC
        self.stats.packets += 1
        self._track_sequence(pkt.sequence)
        return pkt, raw

    def _validate(self) -> TelemetryPacket:
        assert self._header is not None
        version, kind, length, seq, ts = self._header
        start = len(self.sync)
        body_start = start + _HEADER.size
        end = body_start + length
        (crc,) = _CRC.unpack_from(self._buf, end)
        actual = zlib.crc32(bytes(self._buf[start:end])) & 0xFFFFFFFF
        if crc != actual:
            raise MalformedPacket("crc", f"expected {crc:08x}, got {actual:08x}")
        try:
            pkind = PacketKind(kind)
        except ValueError:
            raise MalformedPacket("kind", f"unknown packet kind {kind}") from None
        payload = _DECODERS[pkind](bytes(self._buf[body_start:end]), ts)
        return TelemetryPacket(version, seq, ts, pkind, payload)

    def _track_sequence(self, seq: int) -> None:
        """Count gaps, duplicates and reordering; u32 sequence numbers wrap."""
        last = self._last_seq
        resynced, self._resynced = self._resynced, False
        self._last_seq = seq
        if last is None:
            return
        step = (seq - last) % _SEQ_MODULUS
        if step == 0:
            self.stats.duplicates += 1
            self.log.warning("duplicate sequence number %d", seq)
        elif step < _SEQ_MODULUS // 2:
            if step > 1:
                self.stats.sequence_gaps += 1
                self.stats.dropped_packets += step - 1
                self.log.warning("sequence gap: %d -> %d (%d dropped)", last, seq, step - 1)
        elif resynced or _SEQ_MODULUS - step > self.restart_window:
            self.stats.sequence_restarts += 1
            self.log.warning("sequence restarted: %d -> %d", last, seq)
        else:
            self.stats.out_of_order += 1
            self.log.warning("out-of-order sequence number %d after %d", seq, last)
            # keep counting from the newest number seen
            self._last_seq = last
