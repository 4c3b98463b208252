"""Member completion over the mirror and the evaluation session.

``get_members("")`` and any text without a selector answer from the local
snapshot.  ``get_members("df$co")`` asks the session for the members of
``df``, waits at most ``wait_timeout`` seconds, and keeps the ones
addressed by ``$`` or ``@`` whose names start with ``co``.  Every failure
mode ends in an empty list.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from nsmirror.accessor import Scope, parse_path, trim_leading_selector
from nsmirror.mirror import SessionMirror
from nsmirror.models import (
    AccessorKind,
    CompletionCandidate,
    ItemKind,
    Outcome,
    Property,
    ValueInfo,
)
from nsmirror.protocol import GLOBAL_ENVIRONMENT, EvaluationSession

log = logging.getLogger(__name__)

MAX_WAIT_TIME = 2.0
MAX_RESULTS = 100

# How often a bounded wait looks at the cancellation token.
_CANCEL_POLL = 0.05

_NAMED_ACCESSORS = (AccessorKind.DOLLAR, AccessorKind.AT)


def wait_bounded(
    call: Callable[[], Outcome[Any]],
    *,
    executor: ThreadPoolExecutor,
    timeout: float,
    cancel: threading.Event | None = None,
) -> Outcome[Any]:
    """Run *call* on *executor* and wait at most *timeout* seconds.

    On expiry or cancellation the wait is abandoned; the call itself keeps
    running on its worker and its result is dropped.
    """
    if cancel is not None and cancel.is_set():
        return Outcome.cancelled()

    future: Future[Outcome[Any]] = executor.submit(call)
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            future.cancel()
            return Outcome.timeout(f"no reply within {timeout:g}s")
        done, _ = wait([future], timeout=min(remaining, _CANCEL_POLL))
        if done:
            break
        if cancel is not None and cancel.is_set():
            future.cancel()
            return Outcome.cancelled()

    try:
        return future.result()
    except Exception as exc:
        return Outcome.transport_error(f"{type(exc).__name__}: {exc}")


class VariableProvider:
    """Names of variables and members declared in the session workspace."""

    def __init__(
        self,
        session: EvaluationSession,
        mirror: SessionMirror,
        *,
        wait_timeout: float = MAX_WAIT_TIME,
        max_results: int = MAX_RESULTS,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.session = session
        self.mirror = mirror
        self.wait_timeout = wait_timeout
        self.max_results = max_results
        self._own_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="nsmirror-complete",
        )

    def close(self) -> None:
        if self._own_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def get_member_count(self, path: str | None) -> int:
        """Number of members under *path*.

        Exact for the global scope.  For nested paths this is always
        ``max_results``: the session has no cheap way to count members of
        an arbitrary expression.
        """
        if not path:
            return len(self.mirror.snapshot)
        return self.max_results

    def get_members(
        self,
        path: str | None,
        max_count: int,
        *,
        cancel: threading.Event | None = None,
    ) -> list[CompletionCandidate]:
        """Members of *path*; the last member name may be partially typed.

        ``"abc$def$g"`` returns members of ``abc$def`` starting with ``g``.
        Text without a selector returns every visible top-level variable;
        the caller does its own prefix matching there.
        """
        if max_count <= 0:
            return []

        parsed = parse_path(path)

        if parsed.scope is Scope.DEGENERATE:
            # Something odd like $$ or $@: nothing to evaluate.
            return []

        if parsed.scope is Scope.GLOBAL:
            out: list[CompletionCandidate] = []
            for var in self.mirror.snapshot.values():
                if len(out) >= max_count:
                    break
                if var.is_hidden:
                    continue
                out.append(CompletionCandidate(var.name, kind=var.kind))
            return out

        outcome = wait_bounded(
            lambda: self.session.describe_children(
                GLOBAL_ENVIRONMENT,
                parsed.base,
                Property.HAS_CHILDREN | Property.ACCESSOR_KIND,
                None,
                self.max_results,
                timeout=self.wait_timeout,
                cancel=cancel,
            ),
            executor=self._executor,
            timeout=self.wait_timeout,
            cancel=cancel,
        )
        if not outcome.ok:
            log.debug("members of %r unavailable (%s): %s",
                      parsed.base, outcome.status.value, outcome.error)
            return []

        return _named_members(outcome.value or (), parsed.prefix, max_count)


def _named_members(
    infos: Any, prefix: str, max_count: int,
) -> list[CompletionCandidate]:
    out: list[CompletionCandidate] = []
    for info in infos:
        if len(out) >= max_count:
            break
        if not isinstance(info, ValueInfo) or info.accessor_kind not in _NAMED_ACCESSORS:
            continue
        name = trim_leading_selector(info.name)
        if not name.startswith(prefix):
            continue
        out.append(CompletionCandidate(name, kind=ItemKind.VARIABLE))
    return out
