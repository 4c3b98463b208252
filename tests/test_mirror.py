import threading

from conftest import FakeSession, var, wait_for

from nsmirror.mirror import REFRESH_PROPERTIES, MirrorState, SessionMirror
from nsmirror.models import ItemKind, Outcome
from nsmirror.protocol import GLOBAL_ENVIRONMENT


def test_refresh_builds_snapshot_in_session_order(fake_session):
    mirror = SessionMirror(fake_session, background=False)

    assert mirror.refresh()

    snap = mirror.snapshot
    assert list(snap) == ["x", "f", ".tmp"]
    assert snap["x"].kind is ItemKind.VARIABLE
    assert snap["f"].kind is ItemKind.FUNCTION
    assert snap[".tmp"].is_hidden
    assert mirror.state is MirrorState.IDLE


def test_refresh_walks_frames_then_global_environment(fake_session):
    mirror = SessionMirror(fake_session, background=False, refresh_timeout=3.0)
    mirror.refresh()

    assert fake_session.calls == ["traceback", "evaluate", "describe_children"]
    req = fake_session.requests[0]
    assert req["environment"] == GLOBAL_ENVIRONMENT
    assert req["expression"] == GLOBAL_ENVIRONMENT
    assert req["properties"] == REFRESH_PROPERTIES
    assert req["max_count"] is None


def test_removed_variables_disappear(fake_session):
    mirror = SessionMirror(fake_session, background=False)
    mirror.refresh()

    fake_session.variables = [var("y")]
    mirror.refresh()

    assert list(mirror.snapshot) == ["y"]


def test_old_snapshot_view_is_never_modified(fake_session):
    mirror = SessionMirror(fake_session, background=False)
    mirror.refresh()
    before = mirror.snapshot

    fake_session.variables = [var("y"), var("z")]
    mirror.refresh()

    assert list(before) == ["x", "f", ".tmp"]
    assert list(mirror.snapshot) == ["y", "z"]


def test_session_not_running_leaves_snapshot(fake_session):
    mirror = SessionMirror(fake_session, background=False)
    mirror.refresh()
    fake_session.running = False
    fake_session.variables = []

    assert not mirror.refresh()
    assert list(mirror.snapshot) == ["x", "f", ".tmp"]
    assert mirror.state is MirrorState.IDLE


def test_no_global_frame_aborts_refresh(fake_session):
    fake_session.frames = [fake_session.frames[0]]
    mirror = SessionMirror(fake_session, background=False)

    assert not mirror.refresh()
    assert dict(mirror.snapshot) == {}
    assert "evaluate" not in fake_session.calls


def test_failed_children_keep_previous_snapshot(fake_session):
    mirror = SessionMirror(fake_session, background=False)
    mirror.refresh()

    def broken(*args, **kwargs):
        return Outcome.transport_error("pipe closed")

    fake_session.describe_children = broken
    assert not mirror.refresh()
    assert list(mirror.snapshot) == ["x", "f", ".tmp"]


def test_exception_is_absorbed_and_mirror_returns_to_idle(fake_session):
    mirror = SessionMirror(fake_session, background=False)

    def explode(*args, **kwargs):
        raise RuntimeError("session crashed")

    fake_session.traceback = explode
    assert not mirror.refresh()
    assert mirror.state is MirrorState.IDLE
    # The guard was released: a later refresh runs normally.
    del fake_session.traceback
    assert mirror.refresh()


def test_notification_triggers_refresh(fake_session):
    mirror = SessionMirror(fake_session, background=False)
    fake_session.mutate()
    assert "x" in mirror.snapshot


def test_background_notification_refreshes_off_thread(fake_session):
    mirror = SessionMirror(fake_session)
    fake_session.mutate()
    assert wait_for(lambda: "x" in mirror.snapshot)
    assert wait_for(lambda: mirror.state is MirrorState.IDLE)


def test_notification_during_refresh_is_dropped():
    session = FakeSession(variables=[var("x")])
    session.gate = threading.Event()
    mirror = SessionMirror(session)

    session.mutate()
    assert session.entered.wait(5)
    assert mirror.state is MirrorState.REFRESHING

    session.mutate()
    session.mutate()
    assert not mirror.refresh()

    session.gate.set()
    assert wait_for(lambda: mirror.state is MirrorState.IDLE)
    assert session.calls.count("traceback") == 1

    session.mutate()
    assert wait_for(lambda: session.calls.count("traceback") == 2)


def test_listeners_receive_new_snapshot(fake_session):
    mirror = SessionMirror(fake_session, background=False)
    seen = []

    def bad_listener(snapshot):
        raise ValueError("listener bug")

    mirror.add_listener(bad_listener)
    remove = mirror.add_listener(lambda snap: seen.append(list(snap)))

    mirror.refresh()
    assert seen == [["x", "f", ".tmp"]]

    remove()
    mirror.refresh()
    assert len(seen) == 1


def test_close_stops_listening(fake_session):
    mirror = SessionMirror(fake_session, background=False)
    mirror.close()
    fake_session.mutate()
    assert fake_session.calls == []


def test_readers_see_old_or_new_snapshot_never_a_mix():
    session = FakeSession(variables=[var("a"), var("b")])
    mirror = SessionMirror(session, background=False)
    mirror.refresh()

    session.variables = [var("c")]
    session.gate = threading.Event()
    session.entered.clear()
    views = []
    mirror.add_listener(views.append)

    refresher = threading.Thread(target=mirror.refresh)
    refresher.start()
    assert session.entered.wait(5)

    during = []
    reader = threading.Thread(target=lambda: during.append(tuple(mirror.snapshot)))
    reader.start()
    reader.join(5)
    assert during == [("a", "b")]

    observed = set()
    done = threading.Event()

    def spin():
        while not done.is_set():
            observed.add(tuple(mirror.snapshot))

    spinner = threading.Thread(target=spin)
    spinner.start()
    session.gate.set()
    refresher.join(5)
    done.set()
    spinner.join(5)

    assert observed <= {("a", "b"), ("c",)}
    assert tuple(mirror.snapshot) == ("c",)
    assert [tuple(v) for v in views] == [("c",)]
