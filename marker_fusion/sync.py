from __future__ import annotations

import logging
from typing import Optional

from .config import SyncConfig
from .ip_types import FilterState, FusedFrame, PoseEstimate


class FrameSynchronizer:
    """Combines the filter's orientation with the latest optical position.

    Emits on every filter update, or at ``output_rate_hz`` when set. A frame
    is stale exactly when no pose has been accepted yet or the last one is
    older than ``staleness_ms``.
    """

    def __init__(self, config: Optional[SyncConfig] = None, logger: Optional[logging.Logger] = None):
        self.config = config or SyncConfig()
        self.log = logger or logging.getLogger(__name__)
        self.threshold_us = int(round(self.config.staleness_ms * 1000.0))
        rate = self.config.output_rate_hz
        self.period_us: Optional[int] = int(round(1e6 / rate)) if rate else None
        self.last_pose: Optional[PoseEstimate] = None
        self.frames_emitted = 0
        self.stale_frames = 0
        self._last_emitted_us: Optional[int] = None
        self._next_due_us: Optional[int] = None

    def accept_pose(self, pose: Optional[PoseEstimate]) -> None:
        if pose is None or not pose.valid:
            return
        if self.last_pose is not None and pose.timestamp_us < self.last_pose.timestamp_us:
            self.log.debug("ignoring pose older than the accepted one (seq=%d)", pose.sequence)
            return
        self.last_pose = pose

    def is_stale(self, timestamp_us: int) -> bool:
        if self.last_pose is None:
            return True
        return (timestamp_us - self.last_pose.timestamp_us) > self.threshold_us

    def update(self, state: FilterState, timestamp_us: Optional[int] = None) -> Optional[FusedFrame]:
        """Tick the synchronizer; returns a frame when one is due."""
        t = state.timestamp_us if timestamp_us is None else timestamp_us
        if t is None:
            return None
        if self._last_emitted_us is not None and t <= self._last_emitted_us:
            self.log.debug("not emitting frame at %d: not after %d", t, self._last_emitted_us)
            return None
        if self.period_us is not None:
            if self._next_due_us is None:
                self._next_due_us = t
            if t < self._next_due_us:
                return None
            # skip whole periods that passed without a tick
            missed = (t - self._next_due_us) // self.period_us
            self._next_due_us += (missed + 1) * self.period_us

        pose = self.last_pose
        position = pose.position if pose is not None else state.position
        stale = self.is_stale(t)
        frame = FusedFrame(
            timestamp_us=t,
            orientation=state.orientation,
            position=position,
            stale=stale,
            pose_sequence=pose.sequence if pose is not None else None,
        )
        self._last_emitted_us = t
        self.frames_emitted += 1
        if stale:
            self.stale_frames += 1
        return frame
