"""What an evaluation session asks of the host UI.

Messages, help pages, plots and the plot locator all end up in windows the
host owns, so every call here is moved onto the UI thread first.
"""

from __future__ import annotations

import enum
import logging
import threading
import webbrowser
from dataclasses import dataclass
from typing import Callable, Protocol

from nsmirror.dispatch import Dispatcher, run_on_ui

log = logging.getLogger(__name__)


class MessageButtons(str, enum.Enum):
    OK = "ok"
    CANCEL = "cancel"
    YES = "yes"
    NO = "no"


@dataclass(frozen=True)
class LocatorResult:
    clicked: bool = False
    x: int = 0
    y: int = 0


class Host(Protocol):
    """UI-side services; every method is called on the UI thread."""

    def show_error_message(self, message: str) -> None: ...

    def show_message(self, message: str, buttons: tuple[MessageButtons, ...]) -> MessageButtons: ...

    def show_help_window(self, url: str) -> None: ...

    def load_plot(self, path: str) -> None: ...

    def start_locator(
        self,
        cancel: threading.Event,
        done: Callable[[LocatorResult], None],
    ) -> bool:
        """Begin locator mode; False if there is no plot to locate on."""

    def read_input(self, prompt: str) -> str | None: ...


class SessionCallback:
    def __init__(
        self,
        host: Host,
        dispatcher: Dispatcher,
        *,
        help_browser: str = "external",
    ) -> None:
        self.host = host
        self.dispatcher = dispatcher
        self.help_browser = help_browser

    def show_error_message(self, message: str) -> None:
        self.dispatcher.dispatch(self.host.show_error_message, message)

    def show_message(
        self,
        message: str,
        buttons: tuple[MessageButtons, ...] = (MessageButtons.OK,),
    ) -> MessageButtons:
        return run_on_ui(self.dispatcher, self.host.show_message, message, buttons)

    def show_help(self, url: str) -> None:
        """Show a help URL in the external browser or the host's help window."""
        log.debug("help: %s (%s)", url, self.help_browser)
        if self.help_browser == "external":
            webbrowser.open(url)
            return
        run_on_ui(self.dispatcher, self.host.show_help_window, url)

    def plot(self, path: str) -> None:
        self.dispatcher.dispatch(self.host.load_plot, str(path))

    def locator(
        self,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> LocatorResult:
        """Wait for the user to pick a point on the current plot.

        Cancellation, timeout, or a host without a plot all give an
        un-clicked result.
        """
        cancel = cancel or threading.Event()
        done = threading.Event()
        results: list[LocatorResult] = []

        def finish(result: LocatorResult) -> None:
            results.append(result)
            done.set()

        started = run_on_ui(self.dispatcher, self.host.start_locator, cancel, finish)
        if not started:
            return LocatorResult()

        waited = 0.0
        while not done.wait(0.05):
            waited += 0.05
            if cancel.is_set() or (timeout is not None and waited >= timeout):
                cancel.set()
                return LocatorResult()
        return results[0]

    def read_user_input(self, prompt: str, max_length: int = 4096) -> str:
        text = run_on_ui(self.dispatcher, self.host.read_input, prompt)
        if text is None:
            return "\n"
        return text[:max_length]
