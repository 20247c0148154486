"""Raft peer state transitions and linearizability checking."""

__version__ = "0.1.0"