"""Execution substrates that host replicas."""

from .base import ExecutionSubstrate
from .local import LocalSubstrate, LocalReplicaHandle

__all__ = ['ExecutionSubstrate', 'LocalSubstrate', 'LocalReplicaHandle']
