import pytest

from consensuslab.raft.messages import (
    LogEntry,
    MsgType,
    RequestSnapShotArgs,
    RequestSnapShotReply,
    SendLogArgs,
    SendLogReply,
    ServerState,
)
from consensuslab.raft.persister import Persister
from consensuslab.raft.replication import (
    advance_commit_index,
    build_append_args,
    build_snapshot_args,
    handle_append_entries,
    handle_install_snapshot,
    on_append_reply,
    on_snapshot_reply,
)
from consensuslab.raft.state import RaftState


def make_follower(me=1, peers=3):
    return RaftState(me, peers, Persister())


def make_leader(terms, me=0, peers=3):
    """A leader whose log (after the dummy) holds one entry per given term."""
    st = RaftState(me, peers, Persister())
    st.current_term = max(terms) if terms else 1
    for position, term in enumerate(terms, start=1):
        st.log.append(LogEntry(term=term, index=position, data=f"cmd{position}"))
    st.state = ServerState.LEADER
    st.reset_indexes()
    return st


def entries(term, start, count):
    return [LogEntry(term=term, index=start + k, data=start + k) for k in range(count)]


# ------------------------------------------------------ append entries


def test_append_rejects_stale_term():
    st = make_follower()
    st.current_term = 5
    reply = handle_append_entries(st, SendLogArgs(term=3, leader_id=0, entries=entries(3, 1, 1)))
    assert reply.success is False
    assert reply.term == 5
    assert len(st.log) == 1


def test_append_adopts_newer_term_and_appends():
    st = make_follower()
    sent = entries(2, 1, 3)
    reply = handle_append_entries(
        st, SendLogArgs(term=2, leader_id=0, prev_log_index=0, prev_log_term=-1, entries=sent)
    )
    assert reply.success is True
    assert reply.term == 2
    assert st.current_term == 2
    assert [e.index for e in st.log[1:]] == [e.index for e in sent]
    assert st.last_log().data == sent[-1].data


def test_append_fails_when_prev_beyond_log():
    st = make_follower()
    reply = handle_append_entries(
        st, SendLogArgs(term=1, leader_id=0, prev_log_index=4, prev_log_term=1, entries=entries(1, 5, 1))
    )
    assert reply.success is False
    assert st.last_log().index == 0


def test_append_fails_on_prev_term_mismatch():
    st = make_follower()
    handle_append_entries(st, SendLogArgs(term=1, leader_id=0, entries=entries(1, 1, 2)))
    reply = handle_append_entries(
        st, SendLogArgs(term=2, leader_id=0, prev_log_index=2, prev_log_term=2, entries=entries(2, 3, 1))
    )
    assert reply.success is False
    assert st.last_log().index == 2


def test_append_truncates_conflicting_suffix():
    st = make_follower()
    handle_append_entries(st, SendLogArgs(term=1, leader_id=0, entries=entries(1, 1, 4)))
    replacement = entries(2, 3, 1)
    reply = handle_append_entries(
        st, SendLogArgs(term=2, leader_id=0, prev_log_index=2, prev_log_term=1, entries=replacement)
    )
    assert reply.success is True
    assert st.last_log().index == replacement[-1].index
    assert st.last_log().term == replacement[-1].term


def test_append_advances_commit_to_min_of_leader_commit_and_last():
    st = make_follower()
    sent = entries(1, 1, 3)
    handle_append_entries(st, SendLogArgs(term=1, leader_id=0, entries=sent, leader_commit=10))
    assert st.commit_index == sent[-1].index
    handle_append_entries(
        st, SendLogArgs(term=1, leader_id=0, prev_log_index=3, prev_log_term=1, leader_commit=2)
    )
    assert st.commit_index == sent[-1].index


def test_append_candidate_steps_down():
    st = make_follower()
    st.current_term = 3
    st.state = ServerState.CANDIDATE
    reply = handle_append_entries(st, SendLogArgs(term=3, leader_id=0))
    assert reply.success is True
    assert st.state == ServerState.FOLLOWER


def test_append_below_snapshot_is_trimmed():
    st = make_follower()
    handle_append_entries(st, SendLogArgs(term=1, leader_id=0, entries=entries(1, 1, 5)))
    assert st.trim_to_snapshot(3, b"snap")
    sent = entries(1, 2, 5)
    reply = handle_append_entries(
        st, SendLogArgs(term=1, leader_id=0, prev_log_index=1, prev_log_term=1, entries=sent)
    )
    assert reply.success is True
    assert st.first_log().index == 3
    assert st.last_log().index == sent[-1].index
    assert [e.index for e in st.log] == list(range(3, sent[-1].index + 1))


def test_append_entirely_inside_snapshot_succeeds_unchanged():
    st = make_follower()
    handle_append_entries(st, SendLogArgs(term=1, leader_id=0, entries=entries(1, 1, 5)))
    st.trim_to_snapshot(4, b"snap")
    before = list(st.log)
    reply = handle_append_entries(
        st, SendLogArgs(term=1, leader_id=0, prev_log_index=0, prev_log_term=-1, entries=entries(1, 1, 2))
    )
    assert reply.success is True
    assert st.log == before


def test_append_persists_log():
    st = make_follower()
    sent = entries(1, 1, 2)
    handle_append_entries(st, SendLogArgs(term=1, leader_id=0, entries=sent))
    restored = RaftState(1, 3, st.persister)
    assert restored.log == st.log
    assert restored.current_term == st.current_term


# ---------------------------------------------------- install snapshot


def test_install_snapshot_stale_term_ignored():
    st = make_follower()
    st.current_term = 4
    reply, msg = handle_install_snapshot(
        st, RequestSnapShotArgs(term=2, last_included_index=5, last_included_term=2, data=b"x")
    )
    assert msg is None
    assert reply.term == 4
    assert st.first_log().index == 0


def test_install_snapshot_beyond_log_replaces_it():
    st = make_follower()
    handle_append_entries(st, SendLogArgs(term=1, leader_id=0, entries=entries(1, 1, 2)))
    args = RequestSnapShotArgs(term=1, last_included_index=9, last_included_term=1, data=b"state")
    reply, msg = handle_install_snapshot(st, args)
    assert msg is not None
    assert msg.snapshot_valid is True
    assert msg.snapshot == b"state"
    assert msg.snapshot_index == args.last_included_index
    assert msg.snapshot_term == args.last_included_term
    assert st.log == [LogEntry(term=1, index=9, data=None)]
    assert st.persister.read_snapshot() == b"state"


def test_install_snapshot_matching_entry_is_discarded():
    st = make_follower()
    handle_append_entries(st, SendLogArgs(term=1, leader_id=0, entries=entries(1, 1, 4)))
    before = list(st.log)
    _, msg = handle_install_snapshot(
        st, RequestSnapShotArgs(term=1, last_included_index=2, last_included_term=1, data=b"s")
    )
    assert msg is None
    assert st.log == before


def test_install_snapshot_reply_carries_old_term():
    st = make_follower()
    st.current_term = 1
    reply, _ = handle_install_snapshot(
        st, RequestSnapShotArgs(term=3, last_included_index=1, last_included_term=3, data=b"s")
    )
    assert reply.term == 1
    assert st.current_term == 3


# ------------------------------------------------------------ leader side


def test_build_append_args_none_when_not_leader_or_self():
    st = make_follower()
    assert build_append_args(st, 0) is None
    leader = make_leader([1])
    assert build_append_args(leader, leader.me) is None


def test_build_append_args_heartbeat_and_entries():
    leader = make_leader([1, 1])
    args = build_append_args(leader, 1)
    assert args.msg_type == MsgType.HEART_BEAT
    assert args.entries == []
    assert args.prev_log_index == leader.last_log().index
    leader.next_index[1] = 1
    args = build_append_args(leader, 1)
    assert args.msg_type == MsgType.LOG
    assert args.entries == leader.log[1:]
    assert args.prev_log_index == 0
    assert args.prev_log_term == -1
    assert args.term == leader.current_term
    assert args.leader_id == leader.me


def test_build_append_args_requests_snapshot():
    leader = make_leader([1, 1, 1, 1])
    leader.trim_to_snapshot(3, b"snap")
    leader.next_index[2] = 2
    args = build_append_args(leader, 2)
    assert args.should_send_snapshot is True


def test_build_snapshot_args():
    leader = make_leader([1, 1, 1])
    leader.trim_to_snapshot(2, b"snap")
    args = build_snapshot_args(leader)
    assert args.last_included_index == leader.first_log().index
    assert args.last_included_term == leader.first_log().term
    assert args.data == b"snap"
    assert args.done is True
    assert build_snapshot_args(make_follower()) is None


def test_advance_commit_index_needs_majority_and_current_term():
    leader = make_leader([1, 2, 2])
    leader.match_index[1] = leader.last_log().index
    assert advance_commit_index(leader) is True
    assert leader.commit_index == leader.last_log().index


def test_advance_commit_index_skips_old_term_entries():
    leader = make_leader([1, 1])
    leader.current_term = 2
    leader.match_index[1] = leader.last_log().index
    assert advance_commit_index(leader) is False
    assert leader.commit_index == 0


def test_on_append_reply_success_updates_indexes():
    leader = make_leader([1, 1, 1])
    leader.next_index[1] = 1
    args = build_append_args(leader, 1)
    committed = on_append_reply(leader, 1, args, SendLogReply(term=1, success=True), 1)
    assert committed is True
    assert leader.match_index[1] == leader.last_log().index
    assert leader.next_index[1] == leader.last_log().index + 1
    assert leader.commit_index == leader.last_log().index


def test_on_append_reply_failure_backs_up_by_term():
    leader = make_leader([1, 1, 2, 2])
    recorded = leader.next_index[1]
    args = build_append_args(leader, 1)
    on_append_reply(leader, 1, args, SendLogReply(term=2, success=False), recorded)
    nxt = leader.next_index[1]
    assert leader.log[nxt - 1].term == 1
    assert leader.log[nxt].term == 2


def test_on_append_reply_ignores_stale_recorded_next():
    leader = make_leader([1, 1])
    args = build_append_args(leader, 1)
    before = leader.next_index[1]
    on_append_reply(leader, 1, args, SendLogReply(term=1, success=False), before + 7)
    assert leader.next_index[1] == before


def test_on_append_reply_higher_term_steps_down():
    leader = make_leader([1])
    args = build_append_args(leader, 1)
    assert on_append_reply(leader, 1, args, SendLogReply(term=9, success=False), 2) is False
    assert leader.state == ServerState.FOLLOWER
    assert leader.current_term == 9


def test_on_snapshot_reply_updates_peer():
    leader = make_leader([1, 1, 1, 1])
    leader.trim_to_snapshot(3, b"snap")
    leader.next_index[1] = 1
    leader.match_index[1] = 0
    last = leader.first_log().index
    on_snapshot_reply(leader, 1, leader.current_term, 1, 0, last, RequestSnapShotReply(term=1))
    assert leader.next_index[1] == last + 1
    assert leader.match_index[1] == last


def test_on_snapshot_reply_higher_term_steps_down():
    leader = make_leader([1, 1])
    moved = on_snapshot_reply(leader, 1, 1, 0, 0, 0, RequestSnapShotReply(term=5))
    assert moved is False
    assert leader.state == ServerState.FOLLOWER
    assert leader.current_term == 5


@pytest.mark.parametrize("terms", [[1], [1, 1, 1], [1, 2, 3]])
def test_replicated_log_matches_leader(terms):
    leader = make_leader(terms)
    follower = make_follower()
    leader.next_index[1] = 1
    args = build_append_args(leader, 1)
    reply = handle_append_entries(follower, args)
    assert reply.success is True
    assert follower.log[1:] == leader.log[1:]
    on_append_reply(leader, 1, args, reply, 1)
    assert leader.match_index[1] == leader.last_log().index