"""CLI entry point for codecraft."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.table import Table

    from codecraft.store import StateDB


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the codecraft CLI."""
    parser = argparse.ArgumentParser(
        prog="codecraft",
        description="AI coding agent for GitHub repositories, served over HTTP",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Generate .codecraft/codecraft.toml from source defaults",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port")

    login_parser = subparsers.add_parser("login", help="Store a GitHub token for a user")
    login_parser.add_argument("--user", required=True, help="User id")
    login_parser.add_argument("--token", required=True, help="GitHub access token")

    projects_parser = subparsers.add_parser(
        "projects", help="Show connected projects and their activity"
    )
    projects_parser.add_argument(
        "--user", default=None, help="Only show projects of this user"
    )

    _args = parser.parse_args(argv)
    _setup_logging(_args.verbose)

    if _args.init:
        from codecraft.config import init_config

        path = init_config(Path.cwd())
        print(f"Wrote {path}")
        return 0

    if _args.command == "serve":
        from codecraft.server import CodecraftServer

        server = CodecraftServer(Path.cwd(), host=_args.host, port=_args.port)
        server.run()
        return 0

    if _args.command == "login":
        from codecraft.config import load_config
        from codecraft.store import StateDB

        config = load_config(Path.cwd())
        with StateDB(config.db_path(Path.cwd())) as db:
            db.set_token(_args.user, _args.token)
        print(f"Stored GitHub token for {_args.user}")
        return 0

    if _args.command == "projects":
        _show_projects(_args.user)
        return 0

    parser.print_help()
    return 0


def _setup_logging(verbose: bool) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _render_projects(db: StateDB, user_id: str | None = None) -> Table:
    from rich.table import Table

    table = Table(title="CodeCraft projects")
    table.add_column("Repository", style="cyan")
    table.add_column("User")
    table.add_column("Branch")
    table.add_column("Language")
    table.add_column("Conversations", justify="right")
    table.add_column("Messages", justify="right")
    table.add_column("Commits", justify="right", style="green")

    for project in db.list_projects(user_id):
        stats = db.project_stats(project["id"])
        table.add_row(
            project["repo_full_name"],
            project["user_id"],
            project["default_branch"],
            project["language"] or "-",
            str(stats["conversations"]),
            str(stats["messages"]),
            str(stats["commits"]),
        )
    return table


def _show_projects(user_id: str | None) -> None:
    from rich.console import Console

    from codecraft.config import load_config
    from codecraft.store import StateDB

    config = load_config(Path.cwd())
    with StateDB(config.db_path(Path.cwd())) as db:
        Console().print(_render_projects(db, user_id))


def _get_version() -> str:
    from codecraft import __version__

    return __version__


if __name__ == "__main__":
    sys.exit(main())
