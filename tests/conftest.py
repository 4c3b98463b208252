import sys
import threading
import time

import pytest
from IPython.core.interactiveshell import InteractiveShell

from nsmirror.models import (
    AccessorKind,
    Outcome,
    StackFrame,
    ValueFlags,
    ValueInfo,
)
from nsmirror.protocol import GLOBAL_ENVIRONMENT, Subscribers
from nsmirror.settings import SettingsManager


def var(name, type_name="numeric", hidden=False):
    return ValueInfo(
        name=name,
        expression=name,
        type_name=type_name,
        flags=ValueFlags.HIDDEN if hidden else ValueFlags.NONE,
    )


def child(name, kind):
    return ValueInfo(name=name, accessor_kind=kind, has_children=False)


class FakeSession:
    """Scriptable stand-in for an evaluation session."""

    def __init__(self, variables=None, children=None, running=True):
        self.variables = list(variables or [])
        self.children = dict(children or {})
        self.running = running
        self.frames = [
            StackFrame(index=0, call="f()", is_global=False, environment="f"),
            StackFrame(index=1, call="<module>", is_global=True,
                       environment=GLOBAL_ENVIRONMENT),
        ]
        self.calls = []
        self.requests = []
        self.gate = None
        self.entered = threading.Event()
        self._subscribers = Subscribers()

    # protocol
    def is_running(self):
        return self.running

    def traceback(self, *, timeout=None):
        self.calls.append("traceback")
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        return Outcome.success(list(self.frames))

    def evaluate_and_describe(self, frame, expression, name, properties,
                              representation=None, *, timeout=None):
        self.calls.append("evaluate")
        return Outcome.success(ValueInfo(name=name, expression=expression))

    def describe_children(self, environment, expression, properties,
                          filter=None, max_count=None, *, timeout=None, cancel=None):
        self.calls.append("describe_children")
        self.requests.append({
            "environment": environment,
            "expression": expression,
            "properties": properties,
            "max_count": max_count,
        })
        if expression == GLOBAL_ENVIRONMENT:
            return Outcome.success(list(self.variables))
        result = self.children.get(expression, Outcome.evaluation_error("not found"))
        if callable(result):
            result = result()
        if isinstance(result, list):
            return Outcome.success(result)
        return result

    def subscribe(self, callback):
        return self._subscribers.add(callback)

    # test helpers
    def mutate(self):
        self._subscribers.notify()

    def nested_calls(self):
        return [r for r in self.requests if r["expression"] != GLOBAL_ENVIRONMENT]


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def fake_session():
    return FakeSession(
        variables=[
            var("x"),
            var("f", type_name="closure"),
            var(".tmp", hidden=True),
        ],
        children={
            "lst": [
                child("$a", AccessorKind.DOLLAR),
                child("$b", AccessorKind.DOLLAR),
                child("[[1]]", AccessorKind.POSITIONAL),
            ],
        },
    )


@pytest.fixture
def settings(tmp_path, monkeypatch):
    for env in ("NSMIRROR_WAIT_TIMEOUT", "NSMIRROR_MAX_RESULTS",
                "NSMIRROR_REFRESH_TIMEOUT", "NSMIRROR_HELP_BROWSER"):
        monkeypatch.delenv(env, raising=False)
    return SettingsManager(tmp_path / "settings.json")


@pytest.fixture
def shell(monkeypatch):
    # InteractiveShell swaps sys.modules["__main__"]; restore it afterwards so
    # later multiprocessing "spawn" tests see the real main module.
    monkeypatch.setitem(sys.modules, "__main__", sys.modules["__main__"])
    sh = InteractiveShell.instance()
    sh.reset(new_session=False)
    return sh
