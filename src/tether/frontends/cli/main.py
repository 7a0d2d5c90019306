"""CLI entry point."""

from __future__ import annotations

import os
import sys


def main() -> None:
    """Main entry point for the CLI."""
    import importlib.util

    if importlib.util.find_spec("rich_click") is None:
        print("CLI dependencies not installed. Run: pip install tether")
        sys.exit(1)

    _run_cli()


def build_cli():
    """Build the root command group."""
    import rich_click as click

    from tether.core.logging_config import configure_logging

    click.rich_click.USE_RICH_MARKUP = True
    click.rich_click.USE_MARKDOWN = True
    click.rich_click.SHOW_ARGUMENTS = True
    click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
    click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
    click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
    click.rich_click.MAX_WIDTH = 100

    @click.group()
    @click.version_option(package_name="tether")
    @click.option(
        "--log-level",
        default=None,
        help="Log level (default: TETHER_LOG_LEVEL or WARNING)",
    )
    def cli(log_level: str | None) -> None:
        """Tether - Bridge chat conversations to interactive CLIs.

        **Commands:**

            tether classify    Classify CLI output text

            tether chat        Chat with an interactive CLI through a session

            tether run         Run a command with live output and a timeout

            tether sessions    List persisted sessions
        """
        configure_logging(level=log_level or os.environ.get("TETHER_LOG_LEVEL", "WARNING"))

    from tether.frontends.cli.commands import chat_cmd, classify_cmd, run_cmd, sessions_cmd

    cli.add_command(classify_cmd)
    cli.add_command(chat_cmd)
    cli.add_command(run_cmd)
    cli.add_command(sessions_cmd)
    return cli


def _run_cli() -> None:
    """CLI definition and runner."""
    build_cli()()


if __name__ == "__main__":
    main()
