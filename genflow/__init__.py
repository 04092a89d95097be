"""genflow - execution engine for graphs of long-running generation jobs."""

__version__ = "0.1.0"
