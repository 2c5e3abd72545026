"""Document repository service with resumable chunked uploads."""

__version__ = "0.1.0"
