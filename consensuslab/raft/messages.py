"""Messages exchanged between Raft peers and with the service above."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

DEBUG = False

_logger = logging.getLogger("consensuslab.raft")


def dprintf(fmt: str, *args: Any) -> None:
    """Log a %-style debug message when ``DEBUG`` is on."""
    if DEBUG:
        _logger.debug(fmt, *args)


@dataclass
class ApplyMsg:
    """A committed command or an installed snapshot handed to the service."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0
    snapshot_valid: bool = False
    snapshot: Optional[bytes] = None
    snapshot_term: int = 0
    snapshot_index: int = 0


@dataclass
class LogEntry:
    """One log entry: the leader term that created it and its global index."""

    term: int = 0
    index: int = 0
    data: Any = None


class ServerState(enum.IntEnum):
    UNKNOWN = 0
    LEADER = 1
    FOLLOWER = 2
    CANDIDATE = 3


class MsgType(enum.IntEnum):
    UNKNOWN = 0
    HEART_BEAT = 1
    LOG = 2


@dataclass
class HeartBeatArgs:
    term: int = 0
    candidate_id: int = 0


@dataclass
class HeartBeatReply:
    term: int = 0


@dataclass
class SendLogArgs:
    """AppendEntries request; ``msg_type`` and ``should_send_snapshot`` are bookkeeping."""

    term: int = 0
    leader_id: int = 0
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0
    msg_type: MsgType = MsgType.UNKNOWN
    should_send_snapshot: bool = False


@dataclass
class SendLogReply:
    term: int = 0
    success: bool = False
    saved_log_index: int = 0


@dataclass
class RequestVoteArgs:
    term: int = 0
    candidate_id: int = 0
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass
class RequestSnapShotArgs:
    term: int = 0
    leader_id: int = 0
    last_included_index: int = 0
    last_included_term: int = 0
    offset: int = 0
    data: Optional[bytes] = None
    done: bool = False


@dataclass
class RequestSnapShotReply:
    term: int = 0