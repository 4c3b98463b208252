"""Contract between the mirror/completion core and an evaluation session.

A session is anything that can run the calls below.  Two ship with the
package: :class:`nsmirror.kernel.KernelSession` (in-process IPython) and
:class:`nsmirror.subprocess_session.SubprocessSession` (IPython in a child
process).  Tests use small fakes.
"""

from __future__ import annotations

import abc
import logging
import threading
from typing import Callable, Protocol, runtime_checkable

from nsmirror.models import (
    Outcome,
    Property,
    Representation,
    StackFrame,
    ValueInfo,
)

log = logging.getLogger(__name__)

# Environment token / expression for the session's global namespace.
GLOBAL_ENVIRONMENT = "globals()"
GLOBAL_ENVIRONMENT_NAME = "Global Environment"

MutationCallback = Callable[[], None]


@runtime_checkable
class EvaluationSession(Protocol):
    def is_running(self) -> bool:
        """Cheap liveness check; never blocks on the remote side."""

    def traceback(self, *, timeout: float | None = None) -> Outcome[list[StackFrame]]:
        """Current call stack, outermost frame first."""

    def evaluate_and_describe(
        self,
        frame: StackFrame,
        expression: str,
        name: str,
        properties: Property,
        representation: Representation = Representation.NONE,
        *,
        timeout: float | None = None,
    ) -> Outcome[ValueInfo]:
        """Evaluate *expression* in *frame* and describe the result."""

    def describe_children(
        self,
        environment: str,
        expression: str,
        properties: Property,
        filter: str | None = None,
        max_count: int | None = None,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Outcome[list[ValueInfo]]:
        """Describe the members of *expression* evaluated in *environment*."""

    def subscribe(self, callback: MutationCallback) -> Callable[[], None]:
        """Call *callback* after every state mutation; returns an unsubscriber."""


class Subscribers:
    """Ordered list of mutation callbacks.

    A failing callback is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._callbacks: list[MutationCallback] = []
        self._lock = threading.Lock()

    def add(self, callback: MutationCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def notify(self) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb()
            except Exception:
                log.debug("mutation callback %r failed", cb, exc_info=True)

    def __len__(self) -> int:
        return len(self._callbacks)


class SessionChangeWatcher(abc.ABC):
    """Base for components that react to "session mutated" events.

    Subscribes on construction; subclasses override :meth:`session_mutated`.
    """

    def __init__(self, session: EvaluationSession) -> None:
        self.session = session
        self._unsubscribe: Callable[[], None] | None = session.subscribe(
            self._on_mutation
        )

    def _on_mutation(self) -> None:
        self.session_mutated()

    @abc.abstractmethod
    def session_mutated(self) -> None:
        """Called on the notifying thread after the session changed state."""

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
