"""nsmirror - live variable mirror and member completion for IPython sessions."""

__version__ = "0.1.0"


def explore(shell=None) -> None:
    """Open the variable explorer on an IPython session.

    Your existing namespace is what you see.  Exit with ctrl+q, keep
    working in the REPL, then call ``explore()`` again.

    Usage::

        In [1]: cfg = {"db": {"host": "localhost"}, "debug": True}
        In [2]: from nsmirror import explore
        In [3]: explore()          # tree shows cfg; type cfg$d for members
    """
    from nsmirror.app import ExplorerApp
    from nsmirror.kernel import KernelSession
    from nsmirror.session import Workspace

    if shell is None:
        from IPython import get_ipython
        shell = get_ipython()

    kernel = KernelSession(shell=shell)
    workspace = Workspace(kernel)
    try:
        ExplorerApp(workspace).run()
    finally:
        workspace.close()
        kernel.close()


def load_ipython_extension(ipython) -> None:
    """``%load_ext nsmirror``: register ``%mirror`` and ``%members``."""
    from nsmirror.magics import register
    register(ipython)
