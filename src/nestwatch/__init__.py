"""nestwatch: filter matching and idempotent listing notifications."""

__version__ = "0.1.0"
