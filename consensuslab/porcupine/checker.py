"""Linearizability checking of operation and event histories."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .bitset import Bitset
from .model import CheckResult, Event, EventKind, Model, Operation


@dataclass
class _Entry:
    kind: EventKind
    value: Any
    id: int
    time: int
    client_id: int


@dataclass
class LinearizationInfo:
    """Per-partition entries and the longest partial linearizations found."""

    history: list = field(default_factory=list)
    partial_linearizations: list = field(default_factory=list)


class _Node:
    __slots__ = ("value", "match", "id", "next", "prev")

    def __init__(self, value: Any, match: Optional[_Node], id_: int) -> None:
        self.value = value
        self.match = match  # None for a return node
        self.id = id_
        self.next: Optional[_Node] = None
        self.prev: Optional[_Node] = None


def _make_entries(history: list[Operation]) -> list[_Entry]:
    entries = []
    for id_, op in enumerate(history):
        entries.append(_Entry(EventKind.CALL, op.input, id_, op.call, op.client_id))
        entries.append(_Entry(EventKind.RETURN, op.output, id_, op.return_, op.client_id))
    # at equal times, calls come before returns
    entries.sort(key=lambda e: (e.time, e.kind is EventKind.RETURN))
    return entries


def _renumber(events: list[Event]) -> list[Event]:
    mapping: dict[int, int] = {}
    renumbered = []
    for event in events:
        new_id = mapping.setdefault(event.id, len(mapping))
        renumbered.append(Event(event.kind, event.value, new_id, event.client_id))
    return renumbered


def _convert_entries(events: list[Event]) -> list[_Entry]:
    return [
        _Entry(event.kind, event.value, event.id, index, event.client_id)
        for index, event in enumerate(events)
    ]


def _insert_before(node: _Node, mark: Optional[_Node]) -> _Node:
    if mark is not None:
        before = mark.prev
        mark.prev = node
        node.next = mark
        if before is not None:
            node.prev = before
            before.next = node
    return node


def _make_linked_entries(entries: list[_Entry]) -> Optional[_Node]:
    root: Optional[_Node] = None
    returns: dict[int, _Node] = {}
    for entry in reversed(entries):
        if entry.kind is EventKind.RETURN:
            node = _Node(entry.value, None, entry.id)
            returns[entry.id] = node
        else:
            node = _Node(entry.value, returns.get(entry.id), entry.id)
        _insert_before(node, root)
        root = node
    return root


def _length(node: Optional[_Node]) -> int:
    count = 0
    while node is not None:
        node = node.next
        count += 1
    return count


def _lift(node: _Node) -> None:
    node.prev.next = node.next
    node.next.prev = node.prev
    match = node.match
    match.prev.next = match.next
    if match.next is not None:
        match.next.prev = match.prev


def _unlift(node: _Node) -> None:
    match = node.match
    match.prev.next = match
    if match.next is not None:
        match.next.prev = match
    node.prev.next = node
    node.next.prev = node


def _cache_contains(model: Model, cache: dict, linearized: Bitset, state: Any) -> bool:
    return any(
        linearized == seen and model.equal(state, seen_state)
        for seen, seen_state in cache.get(linearized.digest(), ())
    )


def _check_single(
    model: Model, history: list[_Entry], compute_partial: bool, kill: threading.Event
) -> tuple[bool, list]:
    entry = _make_linked_entries(history)
    n = _length(entry) // 2
    linearized = Bitset(n)
    cache: dict[int, list] = {}
    calls: list[tuple[_Node, Any]] = []
    # longest linearizable prefix that includes each entry
    longest: list[Optional[list[int]]] = [None] * n

    state = model.init()
    head = _insert_before(_Node(None, None, -1), entry)
    while head.next is not None:
        if kill.is_set():
            return False, longest
        if entry.match is not None:
            ok, new_state = model.step(state, entry.value, entry.match.value)
            if ok:
                new_linearized = linearized.clone().set(entry.id)
                if not _cache_contains(model, cache, new_linearized, new_state):
                    cache.setdefault(new_linearized.digest(), []).append(
                        (new_linearized, new_state)
                    )
                    calls.append((entry, state))
                    state = new_state
                    linearized.set(entry.id)
                    _lift(entry)
                    entry = head.next
                else:
                    entry = entry.next
            else:
                entry = entry.next
        else:
            if not calls:
                return False, longest
            if compute_partial:
                seq: Optional[list[int]] = None
                for node, _ in calls:
                    current = longest[node.id]
                    if current is None or len(calls) > len(current):
                        if seq is None:
                            seq = [call.id for call, _ in calls]
                        longest[node.id] = seq
            entry, state = calls.pop()
            linearized.clear(entry.id)
            _unlift(entry)
            entry = entry.next

    seq = [node.id for node, _ in calls]
    return True, [seq] * n


def _worker(index, model, subhistory, compute_info, kill, results) -> None:
    try:
        ok, longest = _check_single(model, subhistory, compute_info, kill)
    except BaseException as exc:  # reported to the waiting caller
        kill.set()
        results.put((index, exc, None))
        return
    results.put((index, ok, longest))


def _check_parallel(
    model: Model, history: list[list[_Entry]], compute_info: bool, timeout: Optional[float]
) -> tuple[CheckResult, LinearizationInfo]:
    kill = threading.Event()
    results: queue.Queue = queue.Queue()
    longest: list = [None] * len(history)
    for index, subhistory in enumerate(history):
        threading.Thread(
            target=_worker,
            args=(index, model, subhistory, compute_info, kill, results),
            daemon=True,
        ).start()

    deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
    ok = True
    timed_out = False
    count = 0

    def receive(wait: Optional[float]) -> bool:
        index, outcome, partial = results.get(timeout=wait)
        if isinstance(outcome, BaseException):
            kill.set()
            raise outcome
        longest[index] = partial
        return outcome

    while count < len(history):
        wait = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            outcome = receive(wait)
        except queue.Empty:
            # a timeout may hide an illegal history
            timed_out = True
            kill.set()
            break
        count += 1
        ok = ok and outcome
        if not ok and not compute_info:
            kill.set()
            break

    info = LinearizationInfo()
    if compute_info:
        while count < len(history):
            receive(None)
            count += 1
        partials = []
        for partition in longest:
            unique = {id(seq): seq for seq in partition or () if seq is not None}
            partials.append([list(seq) for seq in unique.values()])
        info = LinearizationInfo(history=history, partial_linearizations=partials)

    if not ok:
        result = CheckResult.ILLEGAL
    elif timed_out:
        result = CheckResult.UNKNOWN
    else:
        result = CheckResult.OK
    return result, info


def _check_events(model, history, verbose, timeout):
    partitions = model.partition_event(history)
    entries = [_convert_entries(_renumber(part)) for part in partitions]
    return _check_parallel(model, entries, verbose, timeout)


def _check_operations(model, history, verbose, timeout):
    partitions = model.partition(history)
    entries = [_make_entries(part) for part in partitions]
    return _check_parallel(model, entries, verbose, timeout)


def check_operations(model: Model, history: list[Operation]) -> bool:
    """Return whether the operation history is linearizable."""
    result, _ = _check_operations(model, history, False, None)
    return result is CheckResult.OK


def check_operations_timeout(
    model: Model, history: list[Operation], timeout: Optional[float]
) -> CheckResult:
    """Check with a timeout in seconds (0 or None: none); may give UNKNOWN."""
    result, _ = _check_operations(model, history, False, timeout)
    return result


def check_operations_verbose(
    model: Model, history: list[Operation], timeout: Optional[float]
) -> tuple[CheckResult, LinearizationInfo]:
    """Check and also return partial linearizations for each partition."""
    return _check_operations(model, history, True, timeout)


def check_events(model: Model, history: list[Event]) -> bool:
    """Return whether the event history is linearizable."""
    result, _ = _check_events(model, history, False, None)
    return result is CheckResult.OK


def check_events_timeout(
    model: Model, history: list[Event], timeout: Optional[float]
) -> CheckResult:
    """Check with a timeout in seconds (0 or None: none); may give UNKNOWN."""
    result, _ = _check_events(model, history, False, timeout)
    return result


def check_events_verbose(
    model: Model, history: list[Event], timeout: Optional[float]
) -> tuple[CheckResult, LinearizationInfo]:
    """Check and also return partial linearizations for each partition."""
    return _check_events(model, history, True, timeout)