"""Evaluation session running IPython in a dedicated child process."""

from __future__ import annotations

import atexit
import itertools
import logging
import multiprocessing as mp
import os
import threading
import time
import weakref
from typing import Any, Callable

import dill

from nsmirror.models import Outcome, Property, Representation, StackFrame, ValueInfo
from nsmirror.protocol import MutationCallback, Subscribers

log = logging.getLogger(__name__)

_LIVE_SESSIONS: "weakref.WeakSet[SubprocessSession]" = weakref.WeakSet()


def _worker_main(conn: Any, namespace_blob: bytes | None) -> None:
    """Child-process RPC worker wrapping one KernelSession."""
    try:
        from IPython.core.interactiveshell import InteractiveShell

        from nsmirror.kernel import KernelSession

        kernel = KernelSession(shell=InteractiveShell())
        if namespace_blob:
            kernel.shell.user_ns.update(dill.loads(namespace_blob))

        conn.send({"id": 0, "ok": True, "pid": os.getpid()})

        while True:
            req = conn.recv()
            rid = req.get("id")
            op = str(req.get("op", ""))

            if op == "close":
                conn.send({"id": rid, "ok": True})
                break

            if op == "execute":
                entry = kernel.execute(str(req.get("code", "")), tag=req.get("tag"))
                conn.send({"id": rid, "ok": True, "entry": entry})
                continue

            if op == "push":
                kernel.shell.push(dill.loads(req["blob"]))
                conn.send({"id": rid, "ok": True})
                continue

            if op == "traceback":
                conn.send({"id": rid, "ok": True, "outcome": kernel.traceback()})
                continue

            if op == "evaluate":
                outcome = kernel.evaluate_and_describe(
                    req["frame"], req["expression"], req["name"],
                    req["properties"], req["representation"],
                )
                conn.send({"id": rid, "ok": True, "outcome": outcome})
                continue

            if op == "describe_children":
                outcome = kernel.describe_children(
                    req["environment"], req["expression"], req["properties"],
                    req.get("filter"), req.get("max_count"),
                )
                conn.send({"id": rid, "ok": True, "outcome": outcome})
                continue

            conn.send({"id": rid, "ok": False, "error": f"Unknown op: {op}"})

    except EOFError:
        pass
    except Exception as exc:
        try:
            conn.send({"id": -1, "ok": False, "error": f"{type(exc).__name__}: {exc}"})
        except Exception:
            pass
    finally:
        try:
            conn.close()
        except Exception:
            pass


def _close_live_sessions() -> None:
    for session in list(_LIVE_SESSIONS):
        try:
            session.close()
        except Exception:
            pass


atexit.register(_close_live_sessions)


class SubprocessSession:
    """Client side of an IPython kernel living in a child process.

    Every request carries an id; replies to requests the caller already
    gave up on are discarded when they arrive late.
    """

    def __init__(
        self,
        *,
        namespace: dict[str, Any] | None = None,
        start_timeout: float = 15.0,
        default_timeout: float = 30.0,
    ) -> None:
        self.default_timeout = default_timeout
        self._ctx = mp.get_context("spawn")
        self._conn, child_conn = self._ctx.Pipe()
        blob = dill.dumps(namespace) if namespace else None
        self._proc = self._ctx.Process(
            target=_worker_main,
            args=(child_conn, blob),
            daemon=True,
        )
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._closed = False
        self._subscribers = Subscribers()

        self._proc.start()
        child_conn.close()

        ready = self._recv(0, timeout=start_timeout)
        if not ready.get("ok"):
            raise RuntimeError(ready.get("error", "kernel process failed to start"))

        self._pid = int(ready.get("pid", -1))
        _LIVE_SESSIONS.add(self)
        log.info("Kernel process started (pid %d)", self._pid)

    @property
    def pid(self) -> int:
        return self._pid

    # ── transport ───────────────────────────────────────────────────
    def _recv(self, rid: int, *, timeout: float) -> dict[str, Any]:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self._conn.poll(remaining):
                if not self._proc.is_alive():
                    raise RuntimeError("kernel process exited")
                raise TimeoutError("kernel response timeout")
            msg = self._conn.recv()
            if not isinstance(msg, dict):
                raise RuntimeError("invalid kernel response")
            if msg.get("id") in (rid, -1):
                return msg
            log.debug("discarding stale reply %r", msg.get("id"))

    def _rpc(self, op: str, *, timeout: float | None = None, **kwargs: Any) -> dict[str, Any]:
        if self._closed:
            raise RuntimeError("kernel session is closed")
        timeout = self.default_timeout if timeout is None else timeout

        start = time.monotonic()
        if not self._lock.acquire(timeout=timeout):
            raise TimeoutError("kernel busy")
        try:
            rid = next(self._ids)
            self._conn.send({"id": rid, "op": op, **kwargs})
            resp = self._recv(rid, timeout=max(0.0, timeout - (time.monotonic() - start)))
        finally:
            self._lock.release()

        if not resp.get("ok"):
            raise RuntimeError(str(resp.get("error", "kernel request failed")))
        return resp

    def _call(self, op: str, timeout: float | None, **kwargs: Any) -> Outcome[Any]:
        """RPC returning a worker-side Outcome, with transport failures tagged."""
        try:
            resp = self._rpc(op, timeout=timeout, **kwargs)
        except TimeoutError as exc:
            return Outcome.timeout(str(exc))
        except (RuntimeError, OSError, EOFError) as exc:
            log.debug("%s failed", op, exc_info=True)
            return Outcome.transport_error(f"{type(exc).__name__}: {exc}")
        return resp["outcome"]

    # ── evaluation protocol ─────────────────────────────────────────
    def is_running(self) -> bool:
        return not self._closed and self._proc.is_alive()

    def subscribe(self, callback: MutationCallback) -> Callable[[], None]:
        return self._subscribers.add(callback)

    def traceback(self, *, timeout: float | None = None) -> Outcome[list[StackFrame]]:
        return self._call("traceback", timeout)

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
        return self._call(
            "evaluate", timeout,
            frame=frame, expression=expression, name=name,
            properties=properties, representation=representation,
        )

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
        if cancel is not None and cancel.is_set():
            return Outcome.cancelled()
        return self._call(
            "describe_children", timeout,
            environment=environment, expression=expression,
            properties=properties, filter=filter, max_count=max_count,
        )

    # ── mutations ───────────────────────────────────────────────────
    def execute(self, code: str, tag: str | None = None) -> dict[str, Any]:
        """Run *code* in the child kernel and return its history entry."""
        resp = self._rpc("execute", code=code, tag=tag)
        self._subscribers.notify()
        return dict(resp.get("entry", {}))

    def push(self, **kwargs: Any) -> None:
        """Inject variables into the child namespace."""
        self._rpc("push", blob=dill.dumps(kwargs))
        self._subscribers.notify()

    # ── shutdown ────────────────────────────────────────────────────
    def close(self) -> None:
        if self._closed:
            return

        try:
            if self._proc.is_alive():
                self._rpc("close", timeout=3.0)
        except Exception:
            pass
        self._closed = True

        try:
            if self._proc.is_alive():
                self._proc.join(timeout=1.0)
        except Exception:
            pass

        try:
            if self._proc.is_alive():
                self._proc.terminate()
                self._proc.join(timeout=1.0)
        except Exception:
            pass

        try:
            self._conn.close()
        except Exception:
            pass

        _LIVE_SESSIONS.discard(self)
        log.info("Kernel process stopped (pid %d)", self._pid)

    def __del__(self) -> None:
        try:
            self.close()
        except Exception:
            pass

    def __repr__(self) -> str:
        status = "closed" if self._closed else ("alive" if self._proc.is_alive() else "dead")
        return f"SubprocessSession(pid={self._pid}, status={status})"
