# consensuslab

Two building blocks for working with replicated state machines:

- `consensuslab.porcupine` checks whether a recorded history of concurrent
  operations is linearizable against a sequential model.
- `consensuslab.raft` holds the state of a Raft peer and the transitions
  behind leader election, log replication, persistence and snapshots, as
  plain functions that you drive yourself.

It has no dependencies beyond the standard library.

## Installing

```
pip install .
pip install ".[test]"   # adds pytest
```

## Checking a history for linearizability

Describe the system as a `Model` with an initial state and a step function,
record operations with their call and return times, and check them:

```python
from consensuslab.porcupine.model import Model, Operation, CheckResult
from consensuslab.porcupine.checker import (
    check_operations,
    check_operations_timeout,
    check_operations_verbose,
)

def step(state, input_, output):
    kind, value = input_
    if kind == "write":
        return True, value
    return output == state, state

register = Model(init=lambda: 0, step=step)

history = [
    Operation(client_id=0, input=("write", 100), call=0, output=None, return_=100),
    Operation(client_id=1, input=("read", None), call=25, output=100, return_=75),
    Operation(client_id=2, input=("read", None), call=30, output=0, return_=60),
]

assert check_operations(register, history)
```

`step(state, input, output)` returns `(ok, new_state)` and must not change
`state`. `check_operations_timeout(model, history, timeout)` returns a
`CheckResult`: `OK`, `ILLEGAL`, or `UNKNOWN` when the time limit (in
seconds; 0 or `None` means no limit) ran out first. `check_operations_verbose`
also returns a `LinearizationInfo` whose `partial_linearizations` hold, per
partition, the longest linearizable prefixes found (lists of operation ids).

The same three entry points exist for event histories: `check_events`,
`check_events_timeout` and `check_events_verbose`. They take lists of `Event`
values of kind `EventKind.CALL` or `EventKind.RETURN`, where a call and its
return share an `id`.

A model may supply `partition` / `partition_event` to split a history into
pieces that are checked independently (in parallel threads), and `equal` to
compare states. Otherwise `no_partition`, `no_partition_event` and
`shallow_equal` are used. `describe_operation` and `describe_state` default
to `default_describe_operation` and `default_describe_state`.

`consensuslab.porcupine.bitset.Bitset` is the fixed-size bit set the checker
uses to record which operations are linearized.

## Raft state and transitions

`consensuslab.raft.state.RaftState(me, peer_count, persister)` holds one
peer's term, vote, log, commit and apply positions, and the leader's
`next_index` / `match_index`. The log always begins with a dummy entry
standing for the snapshot (index 0 and term -1 before any snapshot). On
creation it restores whatever the `Persister` holds.

`RaftState` is not synchronised; hold your own lock around every call.

On a follower:

```python
from consensuslab.raft.persister import Persister
from consensuslab.raft.state import RaftState
from consensuslab.raft.messages import LogEntry, SendLogArgs
from consensuslab.raft.replication import handle_append_entries

follower = RaftState(me=1, peer_count=3, persister=Persister())
reply = handle_append_entries(
    follower,
    SendLogArgs(
        term=1,
        leader_id=0,
        prev_log_index=0,
        prev_log_term=-1,
        entries=[LogEntry(term=1, index=1, data="x")],
        leader_commit=1,
    ),
)
assert reply.success and follower.commit_index == 1
```

On a leader:

```python
from consensuslab.raft.messages import SendLogReply, ServerState
from consensuslab.raft.replication import build_append_args, on_append_reply

leader = RaftState(me=0, peer_count=3, persister=Persister())
leader.state = ServerState.LEADER
leader.current_term = 1
leader.reset_indexes()

index, term, is_leader = leader.append_command("x")
args = build_append_args(leader, peer=1)
recorded_next = leader.next_index[1]
on_append_reply(leader, 1, args, SendLogReply(term=1, success=True), recorded_next)
assert leader.commit_index == 1
```

What is available:

- `RaftState`: `first_log`, `last_log`, `encode`, `persist`, `read_persist`,
  `set_election_time`, `election_due`, `add_current_term`,
  `trim_to_snapshot`, `handle_request_vote`, `handle_heart_beat`,
  `begin_election` (returns the `RequestVoteArgs` to send, or `None` when no
  election is due), `reset_indexes`, `append_command`.
- `consensuslab.raft.replication`: `handle_append_entries`,
  `handle_install_snapshot` (returns the reply and, when the snapshot
  replaced the log, the `ApplyMsg` for the service), `build_append_args`
  (sets `should_send_snapshot` when the peer needs the snapshot instead),
  `build_snapshot_args`, `advance_commit_index`, `on_append_reply`,
  `on_snapshot_reply`.
- `consensuslab.raft.messages`: the request and reply dataclasses
  (`RequestVoteArgs`, `HeartBeatArgs`, `SendLogArgs`, `RequestSnapShotArgs`
  and their replies), `LogEntry`, `ApplyMsg`, `ServerState`, `MsgType`, and
  `dprintf`, which logs to the `consensuslab.raft` logger when
  `messages.DEBUG` is true.
- `consensuslab.raft.persister.Persister`: thread-safe storage of the
  encoded Raft state and the snapshot, saved together with `save`, read with
  `read_raft_state` / `read_snapshot`, sized with `raft_state_size` /
  `snapshot_size`, duplicated with `copy`. It keeps everything in memory.

## What the package does not do

There is no running Raft server here. The package has no election timer
loop, no background replication or heartbeat sending, no RPC transport
between peers and no thread that delivers committed entries to a service.
Applying entries from `last_applied + 1` up to `commit_index`, sending the
built requests to other peers and calling the reply handlers are left to
the caller. Nothing is written to disk: `Persister` lives in memory.

## Running the tests

```
pytest
```