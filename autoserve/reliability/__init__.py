"""Retry and backoff helpers."""

from .retry import BackoffPolicy, BackoffTracker

__all__ = ["BackoffPolicy", "BackoffTracker"]
