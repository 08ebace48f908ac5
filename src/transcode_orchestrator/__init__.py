"""Job orchestration and monitoring engine for remote HLS transcoding."""

__version__ = "0.1.0"
