"""Metrics exposition."""

from .prometheus import PrometheusExporter

__all__ = ["PrometheusExporter"]
