from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .ahrs import OrientationFilter
from .config import CalibrationModel, FusionConfig
from .errors import Disconnected, EndOfStream, FusionError, LinkUnavailable
from .ip_types import FusedFrame, PacketKind, TelemetryPacket
from .logging_utils import add_file_handler, setup_logger
from .output import OutputSink
from .protocol import Decoder
from .replay import ReplayBuffer, ReplayRecorder, record_from_packet
from .solver import PoseSolver
from .storage import SessionStorage
from .sync import FrameSynchronizer
from .transport import BaseTransport

_END = object()


@dataclass
class PipelineStats:
    packets: int = 0
    frames_skipped: int = 0
    reconnects: int = 0
    poses: int = 0
    no_pose: int = 0
    status_reports: int = 0
    frames_out: int = 0


@dataclass
class SessionSummary:
    session_path: Optional[str]
    frames_emitted: int
    stale_frames: int
    packets: int
    malformed: int
    dropped_packets: int
    frames_skipped: int
    reconnects: int
    log_path: Optional[str]
    avg_rate: float
    errors: int


class FusionPipeline:
    """Transport -> decoder -> {solver, filter} -> synchronizer -> output queue.

    The reader thread owns the transport and decoder; the processor thread
    owns solver, filter and synchronizer. They only share the bounded
    packet queue.
    """

    def __init__(
        self,
        config: FusionConfig,
        calibration: CalibrationModel,
        transport: BaseTransport,
        logger: Optional[logging.Logger] = None,
        replay_buffer: Optional[ReplayBuffer] = None,
    ):
        self.config = config
        self.calibration = calibration
        self.transport = transport
        self.logger = logger or setup_logger(config.device_name, config.log_level, config.log_levels)
        pcfg = config.pipeline

        self.decoder = Decoder(
            bytes.fromhex(config.decoder.sync),
            config.decoder.max_body_len,
            logger=self.logger.getChild("decoder"),
            restart_window=config.decoder.sequence_restart_window,
        )
        self.solver = PoseSolver(calibration, config.solver, logger=self.logger.getChild("solver"))
        self.filter = OrientationFilter.from_calibration(
            calibration, config.filter, logger=self.logger.getChild("ahrs")
        )
        self.sync = FrameSynchronizer(config.sync, logger=self.logger.getChild("sync"))
        self.replay = replay_buffer or ReplayBuffer(pcfg.replay_retention)
        self.stats = PipelineStats()
        self.error: Optional[BaseException] = None

        self._packets: queue.Queue = queue.Queue(maxsize=pcfg.packet_queue_size)
        self._output: queue.Queue = queue.Queue(maxsize=pcfg.output_queue_size)
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._may_drop = bool(transport.fast and pcfg.drop_on_overflow)
        self._handlers = {
            PacketKind.MARKERS: self._on_markers,
            PacketKind.INERTIAL: self._on_inertial,
            PacketKind.STATUS: self._on_status,
        }

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Open the link and start both threads. LinkUnavailable is fatal here."""
        if self._threads:
            raise RuntimeError("pipeline already started")
        self.transport.open()
        self.logger.info("link open: %s", type(self.transport).__name__)
        self._threads = [
            threading.Thread(target=self._reader_loop, name="fusion-reader", daemon=True),
            threading.Thread(target=self._processor_loop, name="fusion-processor", daemon=True),
        ]
        for t in self._threads:
            t.start()

    def stop(self) -> None:
        self._stop_event.set()
        self.transport.interrupt()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for both threads; True if they finished."""
        timeout = self.config.pipeline.join_timeout_s if timeout is None else timeout
        deadline = time.monotonic() + timeout
        for t in self._threads:
            t.join(max(0.0, deadline - time.monotonic()))
        return not self.running

    def frames(self) -> Iterator[FusedFrame]:
        """Yield fused frames until the stream ends or the pipeline stops."""
        poll = self.config.pipeline.poll_interval_s
        while True:
            try:
                item = self._output.get(timeout=poll)
            except queue.Empty:
                if not self.running and self._output.empty():
                    return
                continue
            if item is _END:
                return
            yield item

    def run(self, outputs: Optional[list[OutputSink]] = None) -> SessionSummary:
        """Run a whole session, feeding every frame to ``outputs``.

        With ``session_root`` configured, the session directory gets the
        config manifest, a log file, the packet recording and whatever the
        outputs write there.
        """
        outputs = outputs or []
        storage = None
        recorder = None
        file_handler = None
        if self.config.session_root:
            storage = SessionStorage(self.config.session_root, name=f"{self.config.device_name}_session")
            storage.begin()
            storage.write_manifest(self.config.as_dict())
            file_handler = add_file_handler(self.logger, self.config.device_name, str(storage.log_path))
            recorder = ReplayRecorder(storage.recording_path)
            recorder.open()
            self.replay.recorder = recorder
            for out in outputs:
                out.open(Path(storage.session_dir))

        try:
            self.logger.info("session started: %s", storage.session_dir if storage else "<no storage>")
            self.logger.info("config: %s", self.config.as_dict())
            t0 = time.time()
            try:
                self.start()
                for frame in self.frames():
                    for out in outputs:
                        out.write_frame(frame)
            finally:
                self.stop()
                self.join()
                for out in outputs:
                    try:
                        out.close()
                    except OSError as exc:
                        self.logger.warning("closing output failed: %s", exc)
                if recorder is not None:
                    self.replay.recorder = None
                    recorder.close()

            summary = self._summarize(storage, time.time() - t0)
            self.logger.info(
                "summary frames=%d stale=%d packets=%d malformed=%d dropped=%d skipped=%d reconnects=%d",
                summary.frames_emitted,
                summary.stale_frames,
                summary.packets,
                summary.malformed,
                summary.dropped_packets,
                summary.frames_skipped,
                summary.reconnects,
            )
        finally:
            if file_handler is not None:
                self.logger.removeHandler(file_handler)
                file_handler.close()

        if self.error is not None:
            raise self.error
        return summary

    def _summarize(self, storage: Optional[SessionStorage], elapsed: float) -> SessionSummary:
        d = self.decoder.stats
        f = self.filter.stats
        return SessionSummary(
            session_path=str(storage.session_dir) if storage else None,
            frames_emitted=self.sync.frames_emitted,
            stale_frames=self.sync.stale_frames,
            packets=d.packets,
            malformed=d.malformed,
            dropped_packets=d.dropped_packets,
            frames_skipped=self.stats.frames_skipped,
            reconnects=self.stats.reconnects,
            log_path=str(storage.log_path) if storage else None,
            avg_rate=self.sync.frames_emitted / max(elapsed, 1e-6),
            errors=d.malformed + f.outliers + f.bad_timestamps,
        )

    # -- channel helpers ---------------------------------------------------

    def _put(self, q: queue.Queue, item, droppable: bool = False) -> bool:
        if droppable:
            try:
                q.put_nowait(item)
            except queue.Full:
                self.stats.frames_skipped += 1
            return True
        poll = self.config.pipeline.poll_interval_s
        while not self._stop_event.is_set():
            try:
                q.put(item, timeout=poll)
                return True
            except queue.Full:
                continue
        return False

    def _put_end(self, q: queue.Queue) -> None:
        if self._put(q, _END):
            return
        try:
            q.put_nowait(_END)
        except queue.Full:
            pass

    # -- reader thread -----------------------------------------------------

    def _reader_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    chunk = self.transport.read_chunk()
                except EndOfStream as exc:
                    self.logger.info("stream ended: %s", exc)
                    break
                except Disconnected as exc:
                    self.logger.warning("link lost: %s", exc)
                    if not self._reconnect():
                        if not self._stop_event.is_set():
                            self.error = exc
                        break
                    continue
                if not chunk:
                    continue
                received_us = time.time_ns() // 1000
                for pkt, raw in self.decoder.feed_frames(chunk):
                    self.replay.append(record_from_packet(pkt, raw, received_us))
                    if not self._put(self._packets, pkt, droppable=self._may_drop):
                        break
        except Exception as exc:
            self.logger.exception("reader failed")
            self.error = exc
            self._stop_event.set()
        finally:
            try:
                self.transport.close()
            except (FusionError, OSError) as exc:
                self.logger.warning("closing link failed: %s", exc)
            self._put_end(self._packets)

    def _reconnect(self) -> bool:
        pcfg = self.config.pipeline
        try:
            self.transport.close()
        except (FusionError, OSError) as exc:
            self.logger.debug("close after disconnect failed: %s", exc)
        delay = pcfg.reconnect_initial_s
        for attempt in range(1, pcfg.reconnect_attempts + 1):
            if self._stop_event.wait(delay):
                return False
            try:
                self.transport.open()
            except LinkUnavailable as exc:
                self.logger.warning("reconnect attempt %d/%d failed: %s", attempt, pcfg.reconnect_attempts, exc)
                delay = min(delay * 2.0, pcfg.reconnect_max_s)
                continue
            self.decoder.resync()
            self.stats.reconnects += 1
            self.logger.info("reconnected after %d attempt(s)", attempt)
            return True
        self.logger.error("giving up after %d reconnect attempts", pcfg.reconnect_attempts)
        return False

    # -- processor thread --------------------------------------------------

    def _processor_loop(self) -> None:
        poll = self.config.pipeline.poll_interval_s
        try:
            while not self._stop_event.is_set():
                try:
                    pkt = self._packets.get(timeout=poll)
                except queue.Empty:
                    continue
                if pkt is _END:
                    break
                self.stats.packets += 1
                self._handlers[pkt.kind](pkt)
        except Exception as exc:
            self.logger.exception("processor failed")
            self.error = exc
            self._stop_event.set()
        finally:
            self._put_end(self._output)

    def _on_markers(self, pkt: TelemetryPacket) -> None:
        pose = self.solver.solve(pkt.payload, pkt.sequence, pkt.timestamp_us)
        if pose is None:
            self.stats.no_pose += 1
            return
        self.stats.poses += 1
        self.filter.correct(pose)
        self.sync.accept_pose(pose)
        self.logger.debug(
            "seq=%d pose err=%.3fpx conf=%.2f", pkt.sequence, pose.reprojection_error, pose.confidence
        )

    def _on_inertial(self, pkt: TelemetryPacket) -> None:
        if not self.filter.propagate(pkt.payload):
            return
        frame = self.sync.update(self.filter.state)
        if frame is None:
            return
        if self._put(self._output, frame):
            self.stats.frames_out += 1

    def _on_status(self, pkt: TelemetryPacket) -> None:
        self.stats.status_reports += 1
        status = pkt.payload
        if status.error_count:
            self.logger.warning("device reports %d errors (mask=%#x)", status.error_count, status.stream_mask)
        else:
            self.logger.debug("status mask=%#x active=%s", status.stream_mask, status.active)
