"""Textual variable explorer: the mirror as a tree, plus a code prompt.

Top-level nodes come from the mirror snapshot and are rebuilt after every
refresh.  Expanding a node asks the session for that value's members.
The prompt runs code in the session and suggests member completions as
you type (``cfg$d`` → ``cfg$db``).
"""

from __future__ import annotations

import asyncio
import re
import threading
from typing import Any, Callable

from rich.text import Text
from textual import work
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.suggester import Suggester
from textual.widgets import Input, Static, Tree

from nsmirror import __version__
from nsmirror.accessor import parse_path
from nsmirror.callbacks import LocatorResult, MessageButtons, SessionCallback
from nsmirror.completion import VariableProvider
from nsmirror.dispatch import TextualDispatcher
from nsmirror.mirror import Snapshot
from nsmirror.models import ItemKind, Property
from nsmirror.protocol import GLOBAL_ENVIRONMENT, GLOBAL_ENVIRONMENT_NAME
from nsmirror.session import Workspace
from nsmirror.settings import SettingsManager, get_settings

# Trailing accessor chain of the prompt text: "print(cfg$d" → "cfg$d"
_CHAIN_TAIL_RE = re.compile(r"[\w.$@\[\]]*$")
_PLACEHOLDER = "…"

CHILD_PROPERTIES = (
    Property.EXPRESSION | Property.ACCESSOR_KIND | Property.TYPE_NAME
    | Property.HAS_CHILDREN
)


class MemberSuggester(Suggester):
    """Inline completion for the trailing accessor chain.

    A new keystroke cancels the lookup still running for the previous one.
    """

    def __init__(self, provider: VariableProvider, limit: int = 50) -> None:
        super().__init__(use_cache=False, case_sensitive=True)
        self.provider = provider
        self.limit = limit
        self._cancel: threading.Event | None = None

    async def get_suggestion(self, value: str) -> str | None:
        path = _CHAIN_TAIL_RE.search(value).group(0)
        if not path:
            return None
        if self._cancel is not None:
            self._cancel.set()
        cancel = self._cancel = threading.Event()

        found = await asyncio.to_thread(
            self.provider.get_members, path, self.limit, cancel=cancel,
        )
        prefix = parse_path(path).prefix
        for c in found:
            if c.display_name.startswith(prefix) and c.display_name != prefix:
                return value + c.display_name[len(prefix):]
        return None


class VarsTree(Tree):
    """Global environment tree; member nodes are loaded on first expand."""


class ExplorerApp(App):
    """Variable explorer over one workspace."""

    TITLE = f"nsmirror {__version__}"

    CSS = """
    #main-area { height: 1fr; }
    #vars-tree { width: 1fr; }
    #side { width: 1fr; }
    #output { height: auto; }
    #help-panel { height: auto; color: #808080; }
    """

    BINDINGS = [
        ("ctrl+r", "refresh", "Refresh"),
        ("f2", "recall_path", "Recent path"),
    ]

    def __init__(
        self,
        workspace: Workspace,
        *,
        settings: SettingsManager | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.workspace = workspace
        self.settings = settings or get_settings()
        self.dispatcher: TextualDispatcher | None = None
        self._remove_listener: Callable[[], None] | None = None
        self._loaded: set[Any] = set()
        self._recall_index = -1

    @property
    def session(self):
        return self.workspace.session

    def compose(self) -> ComposeResult:
        with Horizontal(id="main-area"):
            yield VarsTree(GLOBAL_ENVIRONMENT_NAME, id="vars-tree")
            with Vertical(id="side"):
                with VerticalScroll():
                    yield Static("", id="output")
                yield Static("", id="help-panel")
        yield Input(
            placeholder="Python code… (→ accepts a member suggestion)",
            suggester=MemberSuggester(self.workspace.provider),
            id="prompt",
        )

    def on_mount(self) -> None:
        self.dispatcher = TextualDispatcher(self)
        callback = SessionCallback(
            self, self.dispatcher, help_browser=self.settings.help_browser,
        )
        attach = getattr(self.session, "attach_callback", None)
        if attach is not None:
            attach(callback)

        self._remove_listener = self.workspace.mirror.add_listener(
            lambda snap: self.dispatcher.dispatch(self._show_snapshot, snap)
        )
        self.query_one("#vars-tree", VarsTree).root.expand()
        self._show_snapshot(self.workspace.mirror.snapshot)
        self.query_one("#prompt", Input).focus()

    def on_unmount(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()

    # ── tree ────────────────────────────────────────────────────────
    def _show_snapshot(self, snapshot: Snapshot) -> None:
        tree = self.query_one("#vars-tree", VarsTree)
        tree.root.remove_children()
        for var in snapshot.values():
            if var.is_hidden:
                continue
            label = Text()
            label.append(var.name, style="#f0c674" if var.kind is ItemKind.VARIABLE else "#b5bd68")
            if var.summary:
                label.append(f"  {var.summary}", style="#808080")
            node = tree.root.add(label, data=var.name, allow_expand=True)
            node.add_leaf(_PLACEHOLDER)

    def on_tree_node_expanded(self, event: Tree.NodeExpanded) -> None:
        node = event.node
        if node.data is None or node.id in self._loaded:
            return
        self._loaded.add(node.id)
        self._load_children(node, node.data)

    @work(thread=True)
    def _load_children(self, node: Any, expression: str) -> None:
        outcome = self.session.describe_children(
            GLOBAL_ENVIRONMENT, expression, CHILD_PROPERTIES,
            None, self.workspace.provider.max_results,
            timeout=self.workspace.provider.wait_timeout,
        )
        self.dispatcher.dispatch(self._fill_node, node, outcome)

    def _fill_node(self, node: Any, outcome: Any) -> None:
        node.remove_children()
        if not outcome.ok:
            node.add_leaf(Text(f"({outcome.status.value})", style="#cc6666"))
            return
        if not outcome.value:
            node.add_leaf(Text("(no members)", style="dim"))
            return
        for info in outcome.value:
            label = Text(info.name, style="#f0c674")
            if info.type_name:
                label.append(f"  {info.type_name}", style="#808080")
            if info.has_children:
                child = node.add(label, data=info.expression, allow_expand=True)
                child.add_leaf(_PLACEHOLDER)
            else:
                node.add_leaf(label)

    def action_refresh(self) -> None:
        self.workspace.mirror.session_mutated()

    def action_recall_path(self) -> None:
        """Cycle the prompt through recently listed accessor chains."""
        paths = self.settings.get_recent_paths()
        if not paths:
            return
        self._recall_index = (self._recall_index + 1) % len(paths)
        prompt = self.query_one("#prompt", Input)
        prompt.value = paths[self._recall_index]
        prompt.cursor_position = len(prompt.value)

    # ── prompt ──────────────────────────────────────────────────────
    def on_input_submitted(self, event: Input.Submitted) -> None:
        code = event.value.strip()
        event.input.value = ""
        if not code:
            return
        if _CHAIN_TAIL_RE.fullmatch(code) and ("$" in code or "@" in code):
            # A bare accessor chain lists members instead of running code.
            self.settings.add_recent_path(code)
            self._recall_index = -1
            self._list_members(code)
            return
        self._execute(code)

    @work(thread=True)
    def _list_members(self, path: str) -> None:
        provider = self.workspace.provider
        found = provider.get_members(path, provider.max_results)
        names = ", ".join(c.display_name for c in found) or "(no members)"
        self.dispatcher.dispatch(
            self._show_entry, {"code": path, "result": names},
        )

    @work(thread=True)
    def _execute(self, code: str) -> None:
        entry = self.session.execute(code)
        self.dispatcher.dispatch(self._show_entry, entry)

    def _show_entry(self, entry: dict[str, Any]) -> None:
        out = Text()
        out.append(f">>> {entry.get('code', '')}\n", style="bold #8abeb7")
        for key, style in (("stdout", "#d4d4d4"), ("result", "#d4d4d4"), ("stderr", "#cc6666")):
            val = str(entry.get(key, "")).strip()
            if val:
                out.append(f"{val}\n", style=style)
        if entry.get("error"):
            out.append(f"✗ {entry['error']}\n", style="#cc6666")
        self.query_one("#output", Static).update(out)

    # ── host services for SessionCallback ───────────────────────────
    def show_error_message(self, message: str) -> None:
        self.notify(message, severity="error")

    def show_message(self, message: str, buttons: tuple[MessageButtons, ...]) -> MessageButtons:
        self.notify(message)
        return buttons[0] if buttons else MessageButtons.OK

    def show_help_window(self, url: str) -> None:
        self.query_one("#help-panel", Static).update(Text(f"Help: {url}"))

    def load_plot(self, path: str) -> None:
        self.notify(f"Plot written to {path}")

    def start_locator(self, cancel: threading.Event, done: Callable[[LocatorResult], None]) -> bool:
        # No plot surface in a terminal.
        return False

    def read_input(self, prompt: str) -> str | None:
        return None
