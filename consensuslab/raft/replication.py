"""Log replication and snapshot installation between a leader and its followers.

Every function works on a :class:`RaftState` and expects the caller to hold
the peer's lock for the whole call.
"""

from __future__ import annotations

import logging
from typing import Optional

from .messages import (
    ApplyMsg,
    LogEntry,
    MsgType,
    RequestSnapShotArgs,
    RequestSnapShotReply,
    SendLogArgs,
    SendLogReply,
    ServerState,
    dprintf,
)
from .state import RaftState

_logger = logging.getLogger("consensuslab.raft")


def handle_append_entries(state: RaftState, args: SendLogArgs) -> SendLogReply:
    """Handle an AppendEntries request (heartbeat or entries) on a follower.

    Commit progress shows as a larger ``state.commit_index`` afterwards.
    """
    reply = SendLogReply(success=False)
    try:
        _append_entries(state, args, reply)
    finally:
        reply.term = state.current_term
        # reset the timer on every return path that came from a current leader
        if args.term >= state.current_term:
            state.set_election_time(200)
    return reply


def _append_entries(state: RaftState, args: SendLogArgs, reply: SendLogReply) -> None:
    if args.term < state.current_term:
        dprintf(
            "server[%d] rejected append entries from %d, term %d < %d",
            state.me,
            args.leader_id,
            args.term,
            state.current_term,
        )
        return
    if args.term > state.current_term:
        state.add_current_term(args.term)

    prev_index = args.prev_log_index
    prev_term = args.prev_log_term
    entries = list(args.entries)

    if prev_index > state.last_log().index:
        reply.success = False
        return

    first = state.first_log()
    if prev_index < first.index and entries:
        if entries[-1].index <= first.index:
            # everything sent is already covered by the snapshot
            reply.success = True
            return
        entries = next(
            (entries[position:] for position, entry in enumerate(entries) if entry.index > first.index),
            entries,
        )
        prev_index = first.index
        prev_term = first.term

    if prev_index > first.index and state.log[prev_index - first.index].term != prev_term:
        reply.success = False
        return

    if state.state == ServerState.CANDIDATE:
        state.state = ServerState.FOLLOWER

    if entries:
        incoming_last = entries[-1]
        already_present = (
            state.last_log().index >= incoming_last.index
            and state.log[incoming_last.index - first.index].term == incoming_last.term
        )
        if not already_present:
            state.log = state.log[: prev_index - first.index + 1] + [
                LogEntry(term=entry.term, index=entry.index, data=entry.data) for entry in entries
            ]

    state.persist()

    if args.leader_commit > state.commit_index:
        new_commit = min(args.leader_commit, state.last_log().index)
        if new_commit > state.commit_index:
            state.commit_index = new_commit
    reply.success = True


def handle_install_snapshot(
    state: RaftState, args: RequestSnapShotArgs
) -> tuple[RequestSnapShotReply, Optional[ApplyMsg]]:
    """Handle an InstallSnapshot request on a follower.

    Returns the reply and, when the snapshot replaced the log, the message
    to hand to the service; otherwise None.
    """
    reply = RequestSnapShotReply(term=state.current_term)
    try:
        return reply, _install_snapshot(state, args)
    finally:
        state.persist()


def _install_snapshot(state: RaftState, args: RequestSnapShotArgs) -> Optional[ApplyMsg]:
    if args.term < state.current_term:
        return None
    if args.term > state.current_term:
        state.add_current_term(args.term)
    if state.state == ServerState.CANDIDATE:
        state.state = ServerState.FOLLOWER

    first = state.first_log()
    last = state.last_log()
    index = args.last_included_index
    if index <= first.index or (
        index <= last.index and state.log[index - first.index].term == args.last_included_term
    ):
        dprintf(
            "server[%d] discarded snapshot at %d, log spans %d..%d",
            state.me,
            index,
            first.index,
            last.index,
        )
        return None

    state.log = [LogEntry(term=args.last_included_term, index=index, data=None)]
    state.snapshot = bytes(args.data) if args.data is not None else b""
    state.set_election_time(200)
    return ApplyMsg(
        snapshot_valid=True,
        snapshot=state.snapshot,
        snapshot_index=index,
        snapshot_term=args.last_included_term,
    )


def build_append_args(state: RaftState, peer: int) -> Optional[SendLogArgs]:
    """Prepare the AppendEntries request for ``peer``.

    Returns None when this peer is not leader or ``peer`` is itself. When the
    entries the peer needs are gone into the snapshot, the returned args have
    ``should_send_snapshot`` set and nothing else filled in. The caller should
    record ``state.next_index[peer]`` after this call for the reply.
    """
    if state.state != ServerState.LEADER or peer == state.me:
        return None

    args = SendLogArgs()
    first = state.first_log()
    if first.term != -1 and state.next_index[peer] <= first.index:
        args.should_send_snapshot = True
        return args
    if first.term == -1 and state.next_index[peer] == first.index:
        state.next_index[peer] = first.index + 1
    if state.next_index[peer] < 0:
        _logger.error("server[%d] found next index of %d below zero", state.me, peer)
        state.next_index[peer] = 0

    position = state.next_index[peer] - first.index
    if position < 1:
        raise RuntimeError(
            f"leader {state.me} has no entry before next index {state.next_index[peer]} of peer {peer}"
        )
    prev = state.log[position - 1]

    args.leader_id = state.me
    args.term = state.current_term
    args.prev_log_index = prev.index
    args.prev_log_term = prev.term
    args.entries = list(state.log[position:])
    args.leader_commit = state.commit_index
    args.msg_type = MsgType.LOG if args.entries else MsgType.HEART_BEAT
    return args


def build_snapshot_args(state: RaftState) -> Optional[RequestSnapShotArgs]:
    """Prepare an InstallSnapshot request, or None when not leader."""
    if state.state != ServerState.LEADER:
        return None
    first = state.first_log()
    return RequestSnapShotArgs(
        term=state.current_term,
        leader_id=state.me,
        last_included_index=first.index,
        last_included_term=first.term,
        offset=0,
        data=state.snapshot,
        done=True,
    )


def advance_commit_index(state: RaftState) -> bool:
    """Raise the leader's commit index over entries of its own term held by a majority.

    Returns whether the commit index moved.
    """
    before = state.commit_index
    first = state.first_log()
    begin = max(state.commit_index + 1, first.index + 1)
    for index in range(begin, state.last_log().index + 1):
        holders = sum(1 for match in state.match_index if match >= index)
        if holders <= state.peer_count // 2:
            break
        # only entries of the current term are committed by counting
        if index > state.commit_index and state.log[index - first.index].term == state.current_term:
            state.commit_index = index
    return state.commit_index != before


def on_append_reply(
    state: RaftState, peer: int, args: SendLogArgs, reply: SendLogReply, recorded_next: int
) -> bool:
    """Update the leader's view of ``peer`` from an AppendEntries reply.

    Returns whether the commit index moved.
    """
    if reply.term > state.current_term:
        state.add_current_term(reply.term)
        return False
    if state.state != ServerState.LEADER or state.current_term != args.term:
        return False

    if reply.success:
        if not args.entries:
            return False
        last_sent = args.entries[-1]
        if last_sent.index > state.match_index[peer]:
            state.match_index[peer] = last_sent.index
        if last_sent.index + 1 > state.next_index[peer]:
            state.next_index[peer] = last_sent.index + 1
        return advance_commit_index(state)

    if state.next_index[peer] != recorded_next:
        return False
    first = state.first_log()
    back = state.next_index[peer] - 1
    if back <= first.index:
        # a snapshot was taken meanwhile; the next round sends it
        state.next_index[peer] = first.index
        return False
    back = min(back, state.last_log().index)
    conflict_term = state.log[back - first.index].term
    # skip back over the whole run of the conflicting term
    while back >= first.index and state.log[back - first.index].term == conflict_term:
        back -= 1
    state.next_index[peer] = back + 1
    return False


def on_snapshot_reply(
    state: RaftState,
    peer: int,
    sent_term: int,
    sent_next: int,
    sent_match: int,
    sent_last: int,
    reply: RequestSnapShotReply,
) -> bool:
    """Update the leader's view of ``peer`` after it accepted a snapshot.

    ``sent_*`` are the leader's term, the peer's next and match index and the
    snapshot's last index at the time it was sent. Returns whether the
    commit index moved.
    """
    if reply.term > state.current_term:
        state.add_current_term(reply.term)
        return False
    if state.state != ServerState.LEADER or state.current_term != sent_term:
        return False
    if state.next_index[peer] == sent_next and sent_last + 1 > state.next_index[peer]:
        state.next_index[peer] = sent_last + 1
    if state.match_index[peer] == sent_match and sent_last > state.match_index[peer]:
        state.match_index[peer] = sent_last
    return advance_commit_index(state)