"""In-process evaluation session backed by IPython.

Wraps an ``InteractiveShell`` and answers the calls of
:class:`nsmirror.protocol.EvaluationSession` against its user namespace.
Accessor chains are evaluated step by step: the head is ordinary Python,
``$name`` selects by key (or data-frame column) and ``@name`` selects an
attribute::

    session.describe_children(GLOBAL_ENVIRONMENT, "cfg$db", Property.NONE)

All calls run synchronously in the caller's thread, so ``timeout`` is
accepted for protocol compatibility and otherwise ignored.  Callers that
need a bound run the call on a worker thread (see :mod:`nsmirror.completion`).
"""

from __future__ import annotations

import ast
import functools
import io
import logging
import re
import threading
import types
from collections.abc import Mapping
from contextlib import redirect_stdout, redirect_stderr
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Callable, Iterator, TYPE_CHECKING

from IPython.core.interactiveshell import InteractiveShell

from nsmirror.models import (
    AccessorKind,
    Outcome,
    Property,
    Representation,
    StackFrame,
    ValueFlags,
    ValueInfo,
)
from nsmirror.protocol import GLOBAL_ENVIRONMENT, MutationCallback, Subscribers

if TYPE_CHECKING:
    from nsmirror.callbacks import SessionCallback

log = logging.getLogger(__name__)

# IPython internals and names we inject; never shown as user variables.
_HIDDEN_NAMES = frozenset({
    "In", "Out", "get_ipython", "exit", "quit", "open",
    "show_help", "show_plot",
})

_CHAIN_RE = re.compile(r"([$@])")
_SUBSCRIPT_RE = re.compile(r"^(?P<name>[^\[]*)(?P<subs>(?:\[[^\]]*\])*)$")
_INDEX_RE = re.compile(r"\[([^\]]*)\]")

_ATOMIC_TYPES = (int, float, complex, bool, str, bytes, type(None))


class KernelSession:
    """Wraps an IPython InteractiveShell as an evaluation session.

    Can attach to an *existing* shell (e.g. the running IPython session).
    Mutation notifications fire after every executed cell and every
    :meth:`push`.
    """

    def __init__(
        self,
        shell: InteractiveShell | None = None,
        *,
        callback: SessionCallback | None = None,
    ) -> None:
        self.shell = shell or InteractiveShell.instance()
        self.callback = callback
        self.history: list[dict[str, Any]] = []
        self._subscribers = Subscribers()
        self._closed = False
        self._lock = threading.RLock()
        self.shell.events.register("post_run_cell", self._post_run_cell)
        self._init_namespace()

    def _init_namespace(self) -> None:
        """Inject helpers without overwriting user values."""
        ns = self.shell.user_ns
        if self.callback is not None:
            ns.setdefault("show_help", self.callback.show_help)
            ns.setdefault("show_plot", self.callback.plot)
        ns["_kernel"] = self

    def attach_callback(self, callback: SessionCallback) -> None:
        """Route errors, help and plots to *callback* from now on."""
        self.callback = callback
        self._init_namespace()

    def _post_run_cell(self, *args: Any) -> None:
        self._subscribers.notify()

    # ── lifecycle ───────────────────────────────────────────────────
    def is_running(self) -> bool:
        return not self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.shell.events.unregister("post_run_cell", self._post_run_cell)
        except ValueError:
            pass
        log.info("Kernel session closed")

    def subscribe(self, callback: MutationCallback) -> Callable[[], None]:
        return self._subscribers.add(callback)

    # ── execute code ────────────────────────────────────────────────
    def execute(self, code: str, tag: str | None = None) -> dict[str, Any]:
        """Run *code* in IPython and capture stdout/stderr."""
        stdout_buf = io.StringIO()
        stderr_buf = io.StringIO()

        with redirect_stdout(stdout_buf), redirect_stderr(stderr_buf):
            result = self.shell.run_cell(code, silent=False)

        entry: dict[str, Any] = {
            "code": code,
            "stdout": stdout_buf.getvalue(),
            "stderr": stderr_buf.getvalue(),
            "success": result.success,
            "ts": datetime.now(timezone.utc).isoformat(),
        }
        if tag:
            entry["tag"] = tag
        if result.result is not None:
            entry["result"] = repr(result.result)

        exc = result.error_in_exec or result.error_before_exec
        if exc is not None:
            entry["error"] = f"{type(exc).__name__}: {exc}"
            if self.callback is not None:
                self.callback.show_error_message(entry["error"])

        self.history.append(entry)
        return entry

    def push(self, **kwargs: Any) -> None:
        """Inject variables into the namespace (no history trace)."""
        self.shell.push(kwargs)
        self._subscribers.notify()

    # ── evaluation protocol ─────────────────────────────────────────
    def traceback(self, *, timeout: float | None = None) -> Outcome[list[StackFrame]]:
        if self._closed:
            return Outcome.transport_error("kernel session is closed")
        # Between cells the only frame is the module-level one.
        return Outcome.success([
            StackFrame(index=0, call="<module>", is_global=True,
                       environment=GLOBAL_ENVIRONMENT),
        ])

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
        if self._closed:
            return Outcome.transport_error("kernel session is closed")
        try:
            with self._lock:
                ns = self._namespace(frame.environment)
                value = evaluate_chain(expression, ns)
                info = describe_value(
                    name, expression, value, AccessorKind.OTHER,
                    properties, representation,
                )
        except Exception as exc:
            return Outcome.evaluation_error(f"{type(exc).__name__}: {exc}")
        return Outcome.success(info)

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
        if self._closed:
            return Outcome.transport_error("kernel session is closed")
        if cancel is not None and cancel.is_set():
            return Outcome.cancelled()
        out: list[ValueInfo] = []
        try:
            with self._lock:
                ns = self._namespace(environment)
                value = evaluate_chain(expression, ns)
                if value is ns:
                    children = _namespace_members(ns)
                else:
                    children = iter_children(value, expression)
                for name, child_expr, kind, child in children:
                    if max_count is not None and len(out) >= max_count:
                        break
                    if cancel is not None and cancel.is_set():
                        return Outcome.cancelled()
                    if filter and not fnmatchcase(name, filter):
                        continue
                    rep = (Representation.STR if kind is AccessorKind.OTHER
                           else Representation.NONE)
                    try:
                        info = describe_value(
                            name, child_expr, child, kind, properties, rep,
                        )
                    except Exception:
                        # One bad value must not hide its siblings.
                        log.debug("describing %s failed", child_expr, exc_info=True)
                        info = _bare_info(name, child_expr, child, kind, properties, rep)
                    out.append(info)
        except Exception as exc:
            return Outcome.evaluation_error(f"{type(exc).__name__}: {exc}")
        return Outcome.success(out)

    def _namespace(self, environment: str) -> dict[str, Any]:
        ns = self.shell.user_ns
        if not environment or environment == GLOBAL_ENVIRONMENT:
            return ns
        env = evaluate_chain(environment, ns)
        if isinstance(env, types.ModuleType):
            return vars(env)
        if isinstance(env, dict):
            return env
        raise TypeError(f"{environment!r} is not an environment")


# ── accessor-chain evaluation ───────────────────────────────────────

def evaluate_chain(expression: str, namespace: dict[str, Any]) -> Any:
    """Evaluate ``head$name@attr...`` against *namespace*."""
    head, *rest = _CHAIN_RE.split(expression)
    value = eval(head, namespace)
    for selector, member in zip(rest[::2], rest[1::2]):
        value = _select(value, selector, member)
    return value


def _select(value: Any, selector: str, member: str) -> Any:
    m = _SUBSCRIPT_RE.match(member)
    if m is None:
        raise SyntaxError(f"bad member: {member!r}")
    name = m.group("name")
    if selector == "@":
        value = getattr(value, name)
    else:
        try:
            value = value[name]
        except (TypeError, KeyError):
            if not hasattr(value, name):
                raise
            value = getattr(value, name)
    for index in _INDEX_RE.findall(m.group("subs")):
        value = value[ast.literal_eval(index)]
    return value


def _namespace_members(ns: dict[str, Any]) -> Iterator[tuple[str, str, AccessorKind, Any]]:
    for k, v in list(ns.items()):
        yield k, k, AccessorKind.OTHER, v


def iter_children(value: Any, expression: str) -> Iterator[tuple[str, str, AccessorKind, Any]]:
    """Yield ``(name, expression, accessor_kind, value)`` for each member."""
    if isinstance(value, Mapping):
        for k, v in list(value.items()):
            if isinstance(k, str):
                yield f"${k}", f"{expression}${k}", AccessorKind.DOLLAR, v
            else:
                yield f"[[{k!r}]]", f"{expression}[{k!r}]", AccessorKind.POSITIONAL, v
        return

    columns = getattr(value, "columns", None)
    if columns is not None and not isinstance(value, type) and hasattr(value, "__getitem__"):
        for c in list(columns):
            yield f"${c}", f"{expression}${c}", AccessorKind.DOLLAR, value[c]
        return

    if isinstance(value, (list, tuple)):
        for i, v in enumerate(value):
            yield f"[[{i}]]", f"{expression}[{i}]", AccessorKind.POSITIONAL, v
        return

    if isinstance(value, _ATOMIC_TYPES):
        return

    try:
        attrs = vars(value)
    except TypeError:
        attrs = {}
    for k, v in list(attrs.items()):
        yield f"@{k}", f"{expression}@{k}", AccessorKind.AT, v
    for slot in _slots(value):
        if slot not in attrs and hasattr(value, slot):
            yield f"@{slot}", f"{expression}@{slot}", AccessorKind.AT, getattr(value, slot)


def _slots(value: Any) -> tuple[str, ...]:
    slots = getattr(type(value), "__slots__", ())
    if isinstance(slots, str):
        return (slots,)
    return tuple(slots)


# ── value description ───────────────────────────────────────────────

def type_name(value: Any) -> str:
    """Python type name, with callables folded to ``closure`` / ``builtin``."""
    if isinstance(value, types.BuiltinFunctionType):
        return "builtin"
    if isinstance(value, (types.FunctionType, types.MethodType, functools.partial)):
        return "closure"
    return type(value).__name__


def is_hidden_name(name: str) -> bool:
    bare = name[1:] if name[:1] in ("$", "@") else name
    return bare.startswith("_") or name in _HIDDEN_NAMES


def _length(value: Any) -> int | None:
    if isinstance(value, (str, bytes)) or not hasattr(value, "__len__"):
        return None
    try:
        return len(value)
    except Exception:
        return None


def _dim(value: Any) -> tuple[int, ...] | None:
    try:
        shape = getattr(value, "shape", None)
    except Exception:
        return None
    if isinstance(shape, tuple) and all(isinstance(n, int) for n in shape):
        return shape
    return None


def _attribute_count(value: Any) -> int:
    try:
        return len(vars(value))
    except Exception:
        return 0


def _has_children(value: Any) -> bool:
    try:
        return next(iter_children(value, ""), None) is not None
    except Exception:
        return False


def describe_value(
    name: str,
    expression: str,
    value: Any,
    accessor_kind: AccessorKind,
    properties: Property,
    representation: Representation = Representation.NONE,
) -> ValueInfo:
    """Build a ValueInfo with only the requested properties filled in."""
    kw: dict[str, Any] = {"name": name}
    if Property.EXPRESSION in properties:
        kw["expression"] = expression
    if Property.ACCESSOR_KIND in properties:
        kw["accessor_kind"] = accessor_kind
    if Property.TYPE_NAME in properties:
        kw["type_name"] = type_name(value)
    if Property.CLASSES in properties:
        kw["classes"] = tuple(c.__name__ for c in type(value).__mro__)
    if Property.LENGTH in properties:
        kw["length"] = _length(value)
    if Property.SLOT_COUNT in properties:
        kw["slot_count"] = len(_slots(value))
    if Property.ATTRIBUTE_COUNT in properties:
        kw["attribute_count"] = _attribute_count(value)
    if Property.DIM in properties:
        kw["dim"] = _dim(value)
    if Property.FLAGS in properties:
        flags = ValueFlags.NONE
        if isinstance(value, _ATOMIC_TYPES):
            flags |= ValueFlags.ATOMIC
        elif isinstance(value, (Mapping, list, tuple)):
            flags |= ValueFlags.RECURSIVE
        if is_hidden_name(name):
            flags |= ValueFlags.HIDDEN
        kw["flags"] = flags
    if Property.HAS_CHILDREN in properties:
        kw["has_children"] = _has_children(value)
    if representation is Representation.STR:
        kw["representation"] = summarise(value)
    elif representation is Representation.REPR:
        kw["representation"] = _short_repr(value)
    return ValueInfo(**kw)


# ── variable summariser ─────────────────────────────────────────────

def summarise(v: Any) -> str:
    """One-line human-readable summary of *v*.

    Never raises: a value whose ``repr``/``len`` blows up is summarised by
    its type name alone.
    """
    try:
        return _summarise(v)
    except Exception:
        log.debug("summary of %s failed", type(v).__name__, exc_info=True)
        return f"{type(v).__name__} (repr failed)"


def _summarise(v: Any) -> str:
    t = type(v).__name__

    if isinstance(v, (int, float, bool, complex)):
        return f"{t} = {v}"
    if isinstance(v, str):
        if len(v) <= 80:
            return f'str = "{v}"'
        return f'str, {len(v)} chars, starts: "{v[:60]}…"'
    if v is None:
        return "None"
    if isinstance(v, list):
        if not v:
            return "list, empty"
        return f"list, {len(v)} items, latest: {_short_repr(v[-1])}"
    if isinstance(v, dict):
        if not v:
            return "dict, empty"
        keys = list(v.keys())
        shown = ", ".join(repr(k) for k in keys[:6])
        return f"dict, {len(v)} keys: [{shown}{'…' if len(keys) > 6 else ''}]"
    if isinstance(v, (set, frozenset)):
        return f"{t}, {len(v)} items"
    if isinstance(v, tuple):
        return f"tuple = {v!r}" if len(v) <= 5 else f"tuple, {len(v)} items"
    if isinstance(v, types.ModuleType):
        return f"module {v.__name__}"

    columns = getattr(v, "columns", None)
    dim = _dim(v)
    if columns is not None and dim is not None and len(dim) == 2:
        cols = ", ".join(str(c) for c in list(columns)[:8])
        more = "…" if len(columns) > 8 else ""
        return f"{t}, {dim[0]} rows × {dim[1]} cols: [{cols}{more}]"
    if dim is not None:
        dtype = getattr(v, "dtype", None)
        return f"{t}, shape={dim}" + (f", dtype={dtype}" if dtype is not None else "")

    if callable(v):
        return f"{t} (callable)"
    r = repr(v)
    return f"{t} = {r}" if len(r) <= 80 else f"{t}, {_short_repr(v)}"


def _short_repr(v: Any, limit: int = 60) -> str:
    try:
        r = repr(v)
    except Exception:
        return f"<{type(v).__name__} (repr failed)>"
    return r if len(r) <= limit else r[:limit - 1] + "…"


def _bare_info(
    name: str,
    expression: str,
    value: Any,
    accessor_kind: AccessorKind,
    properties: Property,
    representation: Representation,
) -> ValueInfo:
    """ValueInfo from fields that cannot fail, for values describe_value chokes on."""
    kw: dict[str, Any] = {"name": name}
    if Property.EXPRESSION in properties:
        kw["expression"] = expression
    if Property.ACCESSOR_KIND in properties:
        kw["accessor_kind"] = accessor_kind
    if Property.TYPE_NAME in properties:
        kw["type_name"] = type(value).__name__
    if Property.FLAGS in properties:
        kw["flags"] = ValueFlags.HIDDEN if is_hidden_name(name) else ValueFlags.NONE
    if representation is not Representation.NONE:
        kw["representation"] = f"{type(value).__name__} (repr failed)"
    return ValueInfo(**kw)
