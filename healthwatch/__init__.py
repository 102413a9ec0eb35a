"""Health Watch — channel scheduling and failure-detection engine."""

__version__ = "0.1.0"
