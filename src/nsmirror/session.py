"""One evaluation session with its mirror and completion provider.

Callers build a Workspace around the session they own; nothing here keeps
a process-wide registry.
"""

from __future__ import annotations

import logging

from nsmirror.completion import VariableProvider
from nsmirror.mirror import SessionMirror
from nsmirror.protocol import EvaluationSession
from nsmirror.settings import SettingsManager, get_settings

log = logging.getLogger(__name__)


class Workspace:
    """Holds the session, its mirror and its completion provider."""

    def __init__(
        self,
        session: EvaluationSession,
        *,
        settings: SettingsManager | None = None,
        background: bool = True,
    ) -> None:
        settings = settings or get_settings()
        self.session = session
        self.mirror = SessionMirror(
            session,
            refresh_timeout=settings.refresh_timeout,
            background=background,
        )
        self.provider = VariableProvider(
            session,
            self.mirror,
            wait_timeout=settings.wait_timeout,
            max_results=settings.max_results,
        )
        # Pick up whatever the session already holds.
        self.mirror.refresh()

    def close(self) -> None:
        self.provider.close()
        self.mirror.close()
        log.debug("workspace closed")
