"""Redis-backed leased job queue with a gRPC controller, worker and storage layer."""

__version__ = "0.1.0"
__all__ = ["__version__"]