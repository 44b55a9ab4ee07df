"""Background runner for assistant CLI jobs with file-backed lifecycle state."""

__version__ = "0.1.0"
