"""CLI frontend for tether.

Commands:
    tether classify    Classify CLI output text
    tether chat        Chat with an interactive CLI through a session
    tether run         Run a command with streamed output and a timeout
    tether sessions    List persisted sessions

Example:
    $ tether chat --backend pty --command claude
    $ tether run "make test" --timeout 120
    $ cat output.txt | tether classify --lines
"""

from tether.frontends.cli.main import main

__all__ = ["main"]
