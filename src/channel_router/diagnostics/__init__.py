"""Channel diagnostics: single-channel tests and batch model tests."""

from .batch import BatchEvent, BatchTester
from .probe import ChannelProbe, ProbeResult

__all__ = [
    "BatchEvent",
    "BatchTester",
    "ChannelProbe",
    "ProbeResult",
]
