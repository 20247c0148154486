"""The per-peer Raft state and the handlers that only touch that state.

``RaftState`` is not synchronised by itself; the owner holds a lock around
every call, just as the peer does around its own fields.
"""

from __future__ import annotations

import logging
import pickle
import random
import time
from typing import Any, Optional

from .messages import (
    HeartBeatArgs,
    HeartBeatReply,
    LogEntry,
    RequestVoteArgs,
    RequestVoteReply,
    ServerState,
    dprintf,
)
from .persister import Persister

_logger = logging.getLogger("consensuslab.raft")

_DECODE_ERRORS = (
    pickle.UnpicklingError,
    EOFError,
    ValueError,
    TypeError,
    AttributeError,
    IndexError,
    ImportError,
)


class RaftState:
    """Persistent and volatile state of one Raft peer.

    The log always starts with a dummy entry whose index is the last index
    covered by the snapshot (0 and term -1 before any snapshot).
    """

    def __init__(self, me: int, peer_count: int, persister: Persister) -> None:
        self.me = me
        self.peer_count = peer_count
        self.persister = persister

        self.state = ServerState.FOLLOWER
        self.election_start = time.monotonic()
        self.election_interval = 0  # milliseconds

        self.current_term = 0
        self.vote_for = -1
        self.log: list[LogEntry] = [LogEntry(term=-1, index=0, data=None)]
        self.snapshot: bytes = b""

        self.commit_index = 0
        self.last_applied = 0

        self.next_index = [0] * peer_count
        self.match_index = [0] * peer_count

        self.read_persist(persister.read_raft_state())
        self.snapshot = persister.read_snapshot()
        self.reset_indexes()

    # ----------------------------------------------------------------- log

    def first_log(self) -> LogEntry:
        """The dummy entry standing for the snapshot."""
        return self.log[0]

    def last_log(self) -> LogEntry:
        return self.log[-1]

    # --------------------------------------------------------- persistence

    def encode(self) -> bytes:
        """Serialise the term, the vote and the log."""
        entries = [(entry.term, entry.index, entry.data) for entry in self.log]
        return pickle.dumps((self.current_term, self.vote_for, entries))

    def persist(self) -> None:
        """Save the encoded state together with the current snapshot."""
        self.persister.save(self.encode(), self.snapshot)

    def read_persist(self, data: Optional[bytes]) -> None:
        """Restore state saved by :meth:`persist`; empty data is ignored."""
        if not data:
            return
        try:
            current_term, vote_for, entries = pickle.loads(data)
            log = [LogEntry(term=term, index=index, data=value) for term, index, value in entries]
            if not log:
                raise ValueError("persisted log is empty")
            current_term = int(current_term)
            vote_for = int(vote_for)
        except _DECODE_ERRORS as exc:
            _logger.warning("server [%d] failed to decode persisted state: %s", self.me, exc)
            return
        self.current_term = current_term
        self.vote_for = vote_for
        self.log = log
        self.last_applied = self.first_log().index
        self.commit_index = self.first_log().index
        dprintf(
            "server[%d]restart,the lastapplied is:%d, the commitIndex is:%d",
            self.me,
            self.last_applied,
            self.commit_index,
        )

    # ------------------------------------------------------------ timing

    def set_election_time(self, interval: int) -> None:
        """Restart the election timer with a random timeout plus ``interval`` ms."""
        self.election_start = time.monotonic()
        self.election_interval = random.randrange(200) + 150 + interval

    def election_due(self) -> bool:
        """Whether the election timeout has passed."""
        elapsed_ms = (time.monotonic() - self.election_start) * 1000.0
        return elapsed_ms > self.election_interval

    # ------------------------------------------------------------- terms

    def add_current_term(self, term: int) -> None:
        """Move to a newer ``term`` as a follower with no vote cast."""
        if term <= self.current_term:
            dprintf(
                "error, add_current_term got term %d, current term is %d",
                term,
                self.current_term,
            )
            return
        self.current_term = term
        self.state = ServerState.FOLLOWER
        self.vote_for = -1
        self.set_election_time(0)
        self.persist()

    # ---------------------------------------------------------- snapshot

    def trim_to_snapshot(self, index: int, snapshot: bytes) -> bool:
        """Drop the log up to and including ``index`` in favour of ``snapshot``.

        Returns False, changing nothing, when ``index`` is not inside the log.
        """
        first = self.first_log()
        last = self.last_log()
        if index <= first.index or index > last.index:
            dprintf(
                "server[%d] ignored snapshot at %d, log spans %d..%d",
                self.me,
                index,
                first.index,
                last.index,
            )
            return False
        position = index - first.index
        kept = self.log[position]
        self.log = [LogEntry(term=kept.term, index=kept.index, data=None)] + self.log[position + 1:]
        self.snapshot = bytes(snapshot) if snapshot is not None else b""
        self.persist()
        return True

    # ---------------------------------------------------------- handlers

    def handle_request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        """Decide on a vote request and return the reply."""
        reply = RequestVoteReply(term=self.current_term, vote_granted=False)
        reply.vote_granted = self._decide_vote(args)
        if reply.vote_granted:
            self.set_election_time(300)
            self.state = ServerState.FOLLOWER
            self.persist()
        dprintf(
            "server[%d] voted on request from %d, term %d, granted %s",
            self.me,
            args.candidate_id,
            args.term,
            reply.vote_granted,
        )
        return reply

    def _decide_vote(self, args: RequestVoteArgs) -> bool:
        if args.term < self.current_term:
            return False
        if args.term > self.current_term:
            self.add_current_term(args.term)
        if args.term == self.current_term and self.vote_for == args.candidate_id:
            return True
        if self.vote_for != -1:
            return False

        local_last_index = -1
        local_last_term = -1
        if self.log:
            local_last_index = self.last_log().index
            local_last_term = self.last_log().term

        up_to_date = args.last_log_term > local_last_term or (
            args.last_log_term == local_last_term and args.last_log_index >= local_last_index
        )
        if up_to_date:
            self.vote_for = args.candidate_id
        return up_to_date

    def handle_heart_beat(self, args: HeartBeatArgs) -> HeartBeatReply:
        """Handle a bare heartbeat and return the reply."""
        reply = HeartBeatReply(term=self.current_term)
        if args.term < self.current_term:
            return reply
        if args.term == self.current_term and self.state == ServerState.CANDIDATE:
            self.state = ServerState.FOLLOWER
        if args.term > self.current_term:
            self.add_current_term(args.term)
            return reply
        self.set_election_time(200)
        return reply

    # --------------------------------------------------------- elections

    def begin_election(self) -> Optional[RequestVoteArgs]:
        """Start an election if the timer has expired.

        Returns the vote request to send to every other peer, or None when
        no election is due.
        """
        if not self.election_due():
            return None
        if self.state not in (ServerState.FOLLOWER, ServerState.CANDIDATE):
            return None
        self.set_election_time(600)
        self.current_term += 1
        self.state = ServerState.CANDIDATE
        self.vote_for = self.me
        self.persist()

        args = RequestVoteArgs(term=self.current_term, candidate_id=self.me)
        if not self.log:
            args.last_log_index = -1
            args.last_log_term = -1
        else:
            last = self.last_log()
            args.last_log_term = last.term
            args.last_log_index = last.index
        return args

    def reset_indexes(self) -> None:
        """Initialise leader bookkeeping right after winning an election."""
        next_value = self.last_log().index + 1
        self.next_index = [next_value] * self.peer_count
        self.match_index = [0] * self.peer_count
        if 0 <= self.me < self.peer_count:
            self.match_index[self.me] = self.last_log().index

    # ----------------------------------------------------------- commands

    def append_command(self, command: Any) -> tuple[int, int, bool]:
        """Append ``command`` to the log if this peer is leader.

        Returns ``(index, term, is_leader)``; index is 0 when not leader.
        """
        if self.state != ServerState.LEADER:
            return 0, self.current_term, False
        entry = LogEntry(term=self.current_term, index=self.last_log().index + 1, data=command)
        self.log.append(entry)
        self.match_index[self.me] = entry.index
        self.persist()
        return entry.index, entry.term, True

    def __repr__(self) -> str:
        return (
            f"RaftState(me={self.me}, term={self.current_term}, state={self.state.name}, "
            f"vote_for={self.vote_for}, log={len(self.log)} entries, "
            f"commit={self.commit_index}, applied={self.last_applied})"
        )