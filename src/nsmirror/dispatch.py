"""How background work reaches the host UI thread.

The core only needs one guarantee from a dispatcher: work handed to it runs
exactly once, in submission order, on the UI thread.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from textual.app import App

log = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        """Fire and forget."""

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Schedule and return a future for the result."""

    def is_ui_thread(self) -> bool: ...


def run_on_ui(
    dispatcher: Dispatcher,
    fn: Callable[..., Any],
    *args: Any,
    timeout: float | None = None,
) -> Any:
    """Call *fn* on the UI thread and return its result.

    Runs inline when already on the UI thread.
    """
    if dispatcher.is_ui_thread():
        return fn(*args)
    return dispatcher.submit(fn, *args).result(timeout)


def _run_into(future: Future, fn: Callable[..., Any], args: tuple) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        result = fn(*args)
    except Exception as exc:
        log.debug("dispatched call %r failed", fn, exc_info=True)
        future.set_exception(exc)
    else:
        future.set_result(result)


_STOP = object()


class ThreadDispatcher:
    """A dedicated thread acting as the UI thread (headless hosts, tests)."""

    def __init__(self, name: str = "nsmirror-ui") -> None:
        self._queue: queue.SimpleQueue[Any] = queue.SimpleQueue()
        self._closed = False
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            _run_into(*item)

    def is_ui_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        if self._closed:
            raise RuntimeError("dispatcher is closed")
        future: Future = Future()
        self._queue.put((future, fn, args))
        return future

    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        self.submit(fn, *args)

    def close(self, timeout: float | None = 2.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        if not self.is_ui_thread():
            self._thread.join(timeout)


class TextualDispatcher:
    """Dispatch onto a running textual App's thread.

    Construct it on the app thread (e.g. in ``on_mount``).
    """

    def __init__(self, app: App) -> None:
        self.app = app
        self._ui_thread = threading.get_ident()

    def is_ui_thread(self) -> bool:
        return threading.get_ident() == self._ui_thread

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        future: Future = Future()
        if self.is_ui_thread():
            self.app.call_later(_run_into, future, fn, args)
            return future
        try:
            if self.app.is_running:
                self.app.call_from_thread(_run_into, future, fn, args)
            else:
                future.cancel()
        except RuntimeError:
            # Happens if a worker finishes while the app is closing.
            future.cancel()
        return future

    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        self.submit(fn, *args)
