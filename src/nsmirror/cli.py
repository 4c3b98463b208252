"""CLI entry point for nsmirror."""

import argparse
import logging
from pathlib import Path

from nsmirror import __version__


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="nsmirror",
        description="Browse and complete the variables of a live IPython session.",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "script",
        nargs="?",
        default=None,
        help="Python file to run in the session before the explorer opens.",
    )
    parser.add_argument(
        "--in-process",
        action="store_true",
        help="Run the kernel in this process instead of a child process.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Write debug logs to this file (the terminal belongs to the UI).",
    )
    args = parser.parse_args()

    if args.log_file:
        logging.basicConfig(
            filename=args.log_file,
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )

    from nsmirror.app import ExplorerApp
    from nsmirror.session import Workspace

    if args.in_process:
        from nsmirror.kernel import KernelSession
        session = KernelSession()
    else:
        from nsmirror.subprocess_session import SubprocessSession
        session = SubprocessSession()

    try:
        if args.script:
            session.execute(Path(args.script).read_text(), tag="script")
        workspace = Workspace(session)
        try:
            ExplorerApp(workspace).run()
        finally:
            workspace.close()
    finally:
        session.close()


if __name__ == "__main__":
    main()
