"""Histories, models and results used by the linearizability checker."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass
class Operation:
    """A completed operation with its invocation and response times."""

    input: Any
    call: int
    output: Any
    return_: int
    client_id: int = 0


class EventKind(enum.Enum):
    CALL = False
    RETURN = True


@dataclass
class Event:
    """A single call or return; calls and returns are paired by ``id``."""

    kind: EventKind
    value: Any
    id: int
    client_id: int = 0


class CheckResult(str, enum.Enum):
    UNKNOWN = "Unknown"
    OK = "Ok"
    ILLEGAL = "Illegal"


def no_partition(history: list[Operation]) -> list[list[Operation]]:
    """Treat the whole history as one partition."""
    return [history]


def no_partition_event(history: list[Event]) -> list[list[Event]]:
    """Treat the whole event history as one partition."""
    return [history]


def shallow_equal(state1: Any, state2: Any) -> bool:
    return state1 == state2


def default_describe_operation(input_: Any, output: Any) -> str:
    return f"{input_} -> {output}"


def default_describe_state(state: Any) -> str:
    return f"{state}"


@dataclass
class Model:
    """A sequential specification of the system under test.

    ``step(state, input, output)`` returns ``(ok, new_state)`` and must not
    mutate ``state``.
    """

    init: Callable[[], Any]
    step: Callable[[Any, Any, Any], tuple]
    partition: Optional[Callable[[list], list]] = None
    partition_event: Optional[Callable[[list], list]] = None
    equal: Optional[Callable[[Any, Any], bool]] = None
    describe_operation: Optional[Callable[[Any, Any], str]] = None
    describe_state: Optional[Callable[[Any], str]] = None

    def __post_init__(self) -> None:
        if self.partition is None:
            self.partition = no_partition
        if self.partition_event is None:
            self.partition_event = no_partition_event
        if self.equal is None:
            self.equal = shallow_equal
        if self.describe_operation is None:
            self.describe_operation = default_describe_operation
        if self.describe_state is None:
            self.describe_state = default_describe_state