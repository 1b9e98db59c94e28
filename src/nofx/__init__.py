"""NOFX - step-execution core for multi-step tool runs."""

__version__ = "0.1.0"
