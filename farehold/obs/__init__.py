"""Observability helpers.

Structured JSON logging, in-process metrics, request/search scoped context
and the ASGI timing middleware.
"""

__all__ = [
    "middleware",
    "metrics",
    "logger",
    "context",
]
