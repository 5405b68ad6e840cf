"""Per-process metrics read from procfs, and self-monitoring reports."""

__version__ = "0.1.0"

__all__ = ["helpers", "procfs", "process", "report", "resolve", "types"]