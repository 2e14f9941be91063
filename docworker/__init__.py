"""Document processing job queue and worker pool."""

__version__ = "1.0.0"
