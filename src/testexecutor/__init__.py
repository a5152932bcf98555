"""testexecutor - periodically runs a test command and serves its latest result."""

__version__ = "0.1.0"
