"""Local snapshot of the session's global variables.

The mirror listens for "session mutated" notifications and rebuilds its
snapshot from scratch each time:

    liveness → frames → global frame → evaluate globals() → children

At most one refresh runs at a time.  A notification that arrives while a
refresh is in flight is dropped, not queued; the next notification brings
the snapshot up to date again.  Any failure leaves the previous snapshot
in place.
"""

from __future__ import annotations

import enum
import logging
import threading
from types import MappingProxyType
from typing import Callable, Mapping

from nsmirror.models import Property, Representation, VariableDescriptor
from nsmirror.protocol import (
    GLOBAL_ENVIRONMENT,
    GLOBAL_ENVIRONMENT_NAME,
    EvaluationSession,
    SessionChangeWatcher,
)

log = logging.getLogger(__name__)

REFRESH_PROPERTIES = (
    Property.EXPRESSION
    | Property.ACCESSOR_KIND
    | Property.TYPE_NAME
    | Property.CLASSES
    | Property.LENGTH
    | Property.SLOT_COUNT
    | Property.ATTRIBUTE_COUNT
    | Property.DIM
    | Property.FLAGS
)

Snapshot = Mapping[str, VariableDescriptor]
UpdateListener = Callable[[Snapshot], None]


class MirrorState(str, enum.Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class SessionMirror(SessionChangeWatcher):
    """Keeps ``snapshot`` in step with the session's global namespace.

    With ``background=True`` (the default) each notification refreshes on
    a short-lived daemon thread so the notifier never waits on the
    session.  ``refresh()`` can also be called directly and runs in the
    caller's thread.
    """

    def __init__(
        self,
        session: EvaluationSession,
        *,
        refresh_timeout: float | None = None,
        background: bool = True,
    ) -> None:
        self.refresh_timeout = refresh_timeout
        self.background = background
        self._snapshot: dict[str, VariableDescriptor] = {}
        self._updating = threading.Lock()
        self._listeners: list[UpdateListener] = []
        super().__init__(session)

    # ── state ───────────────────────────────────────────────────────
    @property
    def state(self) -> MirrorState:
        return MirrorState.REFRESHING if self._updating.locked() else MirrorState.IDLE

    @property
    def snapshot(self) -> Snapshot:
        """Read-only view of the last successful refresh."""
        return MappingProxyType(self._snapshot)

    def add_listener(self, listener: UpdateListener) -> Callable[[], None]:
        """Call *listener* with the new snapshot after each successful refresh."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ── notifications ───────────────────────────────────────────────
    def session_mutated(self) -> None:
        if not self._updating.acquire(blocking=False):
            log.debug("refresh in flight, notification dropped")
            return
        if not self.background:
            self._run_refresh()
            return
        try:
            threading.Thread(
                target=self._run_refresh, name="nsmirror-refresh", daemon=True,
            ).start()
        except RuntimeError:
            self._updating.release()
            raise

    def refresh(self) -> bool:
        """Refresh now.  False if another refresh is running or this one failed."""
        if not self._updating.acquire(blocking=False):
            return False
        return self._run_refresh()

    def _run_refresh(self) -> bool:
        # Caller holds self._updating.
        try:
            snapshot = self._build_snapshot()
            if snapshot is not None:
                self._snapshot = snapshot
        except Exception:
            log.debug("mirror refresh failed", exc_info=True)
            snapshot = None
        finally:
            self._updating.release()

        if snapshot is None:
            return False
        log.debug("mirror refreshed: %d variables", len(snapshot))
        view = MappingProxyType(snapshot)
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                log.debug("mirror listener %r failed", listener, exc_info=True)
        return True

    def _build_snapshot(self) -> dict[str, VariableDescriptor] | None:
        session = self.session
        if not session.is_running():
            return None

        frames = session.traceback(timeout=self.refresh_timeout)
        if not frames.ok:
            log.debug("traceback failed: %s", frames.error)
            return None

        frame = next((f for f in frames.value or () if f.is_global), None)
        if frame is None:
            return None

        env = session.evaluate_and_describe(
            frame, GLOBAL_ENVIRONMENT, GLOBAL_ENVIRONMENT_NAME,
            REFRESH_PROPERTIES, Representation.STR,
            timeout=self.refresh_timeout,
        )
        if not env.ok:
            log.debug("global environment evaluation failed: %s", env.error)
            return None

        # The root level is never truncated.
        children = session.describe_children(
            frame.environment or GLOBAL_ENVIRONMENT,
            env.value.expression or GLOBAL_ENVIRONMENT,
            REFRESH_PROPERTIES,
            None,
            None,
            timeout=self.refresh_timeout,
        )
        if not children.ok:
            log.debug("global environment children failed: %s", children.error)
            return None

        snapshot: dict[str, VariableDescriptor] = {}
        for info in children.value or ():
            snapshot[info.name] = VariableDescriptor.from_value_info(info)
        return snapshot
