"""Background video-processing job queue."""

__version__ = "0.1.0"
