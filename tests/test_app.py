import asyncio

from textual.widgets import Input

from nsmirror.app import ExplorerApp
from nsmirror.kernel import KernelSession
from nsmirror.session import Workspace


def test_recall_cycles_through_recent_paths(shell, settings):
    settings.add_recent_path("cfg$db")
    settings.add_recent_path("obj@inner")
    kernel = KernelSession(shell=shell)
    workspace = Workspace(kernel, settings=settings, background=False)

    async def run():
        app = ExplorerApp(workspace, settings=settings)
        seen = []
        async with app.run_test() as pilot:
            for _ in range(3):
                await pilot.press("f2")
                seen.append(app.query_one("#prompt", Input).value)
        return seen

    try:
        assert asyncio.run(run()) == ["obj@inner", "cfg$db", "obj@inner"]
    finally:
        workspace.close()
        kernel.close()


def test_recall_without_history_leaves_prompt_empty(shell, settings):
    kernel = KernelSession(shell=shell)
    workspace = Workspace(kernel, settings=settings, background=False)

    async def run():
        app = ExplorerApp(workspace, settings=settings)
        async with app.run_test() as pilot:
            await pilot.press("f2")
            return app.query_one("#prompt", Input).value

    try:
        assert asyncio.run(run()) == ""
    finally:
        workspace.close()
        kernel.close()
