"""Order lifecycle engine for a job-dispatch marketplace."""

__version__ = "0.1.0"
