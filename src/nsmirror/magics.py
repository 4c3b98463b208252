"""IPython magics to inspect the mirror and try completions from the REPL.

Usage::

    %load_ext nsmirror
    %mirror            # list mirrored top-level variables
    %members cfg$d     # members of cfg starting with "d"
"""

from __future__ import annotations

from IPython.core.magic import Magics, line_magic, magics_class

from nsmirror.kernel import KernelSession
from nsmirror.models import ItemKind
from nsmirror.session import Workspace


@magics_class
class MirrorMagics(Magics):
    """Mirror and completion commands."""

    def __init__(self, shell, workspace: Workspace) -> None:
        super().__init__(shell)
        self.workspace = workspace

    @line_magic
    def mirror(self, line: str) -> None:
        """Show the mirrored global variables (``%mirror -a`` includes hidden)."""
        show_hidden = "-a" in line.split()
        snapshot = self.workspace.mirror.snapshot
        rows = [v for v in snapshot.values() if show_hidden or not v.is_hidden]
        if not rows:
            print("(empty)")
            return
        width = max(len(v.name) for v in rows)
        for v in rows:
            marker = "ƒ" if v.kind is ItemKind.FUNCTION else " "
            print(f"{marker} {v.name:<{width}}  {v.summary}")

    @line_magic
    def members(self, line: str) -> None:
        """Complete an accessor chain: ``%members df$co``"""
        path = line.strip()
        provider = self.workspace.provider
        found = provider.get_members(path, provider.max_results)
        if not found:
            print("(no members)")
            return
        for c in found:
            print(c.display_name)


def register(shell, workspace: Workspace | None = None) -> Workspace:
    """Register the magics on *shell*, mirroring that same shell by default."""
    if workspace is None:
        workspace = Workspace(KernelSession(shell=shell), background=False)
    shell.register_magics(MirrorMagics(shell, workspace))
    return workspace
