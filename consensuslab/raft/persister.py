"""Stable storage for Raft state and service snapshots."""

from __future__ import annotations

import threading
from typing import Optional, Union

BytesLike = Union[bytes, bytearray, memoryview]


def _clone(data: Optional[BytesLike]) -> bytes:
    return bytes(data) if data is not None else b""


class Persister:
    """Holds the persisted Raft state and the latest snapshot.

    Both are saved together so that they never get out of step.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raftstate = b""
        self._snapshot = b""

    def copy(self) -> Persister:
        """Return a new persister holding the same contents."""
        with self._lock:
            other = Persister()
            other._raftstate = self._raftstate
            other._snapshot = self._snapshot
            return other

    def read_raft_state(self) -> bytes:
        with self._lock:
            return self._raftstate

    def raft_state_size(self) -> int:
        with self._lock:
            return len(self._raftstate)

    def save(self, raftstate: Optional[BytesLike], snapshot: Optional[BytesLike]) -> None:
        """Store Raft state and snapshot as one atomic action."""
        state = _clone(raftstate)
        snap = _clone(snapshot)
        with self._lock:
            self._raftstate = state
            self._snapshot = snap

    def read_snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def snapshot_size(self) -> int:
        with self._lock:
            return len(self._snapshot)

    def __repr__(self) -> str:
        return (
            f"Persister(raftstate={self.raft_state_size()} bytes, "
            f"snapshot={self.snapshot_size()} bytes)"
        )