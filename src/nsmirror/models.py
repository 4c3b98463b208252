"""Value types shared by the mirror, the completion provider and sessions."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

# Type names reported for callables.  Exact, case-sensitive.
FUNCTION_TYPE_NAMES = frozenset({"closure", "builtin"})


class ItemKind(str, enum.Enum):
    VARIABLE = "variable"
    FUNCTION = "function"


class AccessorKind(str, enum.Enum):
    """How a child member is addressed from its parent."""

    DOLLAR = "dollar"          # by name:  parent$name
    AT = "at"                  # attribute: parent@name
    POSITIONAL = "positional"  # by position: parent[[i]]
    OTHER = "other"            # namespace members, anything else


class Property(enum.Flag):
    """Properties a caller asks the session to fill in on a ValueInfo."""

    NONE = 0
    EXPRESSION = enum.auto()
    ACCESSOR_KIND = enum.auto()
    TYPE_NAME = enum.auto()
    CLASSES = enum.auto()
    LENGTH = enum.auto()
    SLOT_COUNT = enum.auto()
    ATTRIBUTE_COUNT = enum.auto()
    DIM = enum.auto()
    FLAGS = enum.auto()
    HAS_CHILDREN = enum.auto()


class ValueFlags(enum.Flag):
    NONE = 0
    ATOMIC = enum.auto()
    RECURSIVE = enum.auto()
    HIDDEN = enum.auto()


class Representation(str, enum.Enum):
    """String representation hint for evaluate-and-describe."""

    NONE = "none"
    STR = "str"
    REPR = "repr"


def classify_kind(type_name: str | None) -> ItemKind:
    """``closure`` and ``builtin`` are functions, everything else a variable."""
    if type_name in FUNCTION_TYPE_NAMES:
        return ItemKind.FUNCTION
    return ItemKind.VARIABLE


# ── session-side descriptors ────────────────────────────────────────

@dataclass(frozen=True)
class StackFrame:
    """One frame of the session call stack."""

    index: int
    call: str
    is_global: bool = False
    environment: str = ""


@dataclass(frozen=True)
class ValueInfo:
    """Description of one evaluated value, as returned by a session.

    Only the fields matching the requested ``Property`` flags are filled;
    the rest keep their defaults.
    """

    name: str
    expression: str = ""
    accessor_kind: AccessorKind = AccessorKind.OTHER
    type_name: str | None = None
    classes: tuple[str, ...] = ()
    length: int | None = None
    slot_count: int | None = None
    attribute_count: int | None = None
    dim: tuple[int, ...] | None = None
    flags: ValueFlags = ValueFlags.NONE
    has_children: bool | None = None
    representation: str | None = None

    @property
    def is_hidden(self) -> bool:
        return bool(self.flags & ValueFlags.HIDDEN)


# ── tagged remote result ────────────────────────────────────────────

class OutcomeStatus(str, enum.Enum):
    OK = "ok"
    TIMEOUT = "timeout"
    EVALUATION_ERROR = "evaluation_error"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a remote call: a value on success, a tag otherwise.

    Timeouts, evaluation errors, transport errors and cancellation are all
    ordinary results, never exceptions.
    """

    status: OutcomeStatus
    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(OutcomeStatus.OK, value=value)

    @classmethod
    def timeout(cls, error: str = "timed out") -> "Outcome[Any]":
        return cls(OutcomeStatus.TIMEOUT, error=error)

    @classmethod
    def evaluation_error(cls, error: str) -> "Outcome[Any]":
        return cls(OutcomeStatus.EVALUATION_ERROR, error=error)

    @classmethod
    def transport_error(cls, error: str) -> "Outcome[Any]":
        return cls(OutcomeStatus.TRANSPORT_ERROR, error=error)

    @classmethod
    def cancelled(cls) -> "Outcome[Any]":
        return cls(OutcomeStatus.CANCELLED, error="cancelled")


# ── mirror / completion side ────────────────────────────────────────

@dataclass(frozen=True)
class VariableDescriptor:
    """A top-level variable as held in the mirror snapshot."""

    name: str
    kind: ItemKind = ItemKind.VARIABLE
    is_hidden: bool = False
    type_name: str = ""
    summary: str = field(default="", compare=False)

    @classmethod
    def from_value_info(cls, info: ValueInfo) -> "VariableDescriptor":
        return cls(
            name=info.name,
            kind=classify_kind(info.type_name),
            is_hidden=info.is_hidden,
            type_name=info.type_name or "",
            summary=info.representation or "",
        )


@dataclass(frozen=True)
class CompletionCandidate:
    display_name: str
    kind: ItemKind = ItemKind.VARIABLE
    description: str = ""
