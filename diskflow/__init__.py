"""Priority-based IO rate limiting, IO classification types and in-process metrics."""

__version__ = "0.1.0"

__all__ = ["types", "metrics", "limiter_core", "rate_limiter"]