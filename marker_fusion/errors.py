"""Error taxonomy for the tracking pipeline."""


class FusionError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(FusionError):
    """Configuration or calibration is missing or invalid. Fatal."""


class LinkUnavailable(FusionError):
    """The device link could not be opened."""


class Disconnected(FusionError):
    """The link dropped mid-session (read error, end-of-stream or stall)."""


class EndOfStream(FusionError):
    """A finite source (replay) has delivered its last byte."""


class MalformedPacket(FusionError):
    """A frame failed length, version, kind or integrity validation."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason


class InsufficientCorrespondences(FusionError):
    """Too few marker correspondences for a pose solve."""


class IllConditionedSolve(FusionError):
    """Degenerate geometry or an unusable solver result."""


class FilterDivergence(FusionError):
    """An inertial sample or filter state violated a sanity bound."""
