#!/usr/bin/env python3
"""Simple session example - using core only.

Runs bash as the "CLI" behind a PTY session, sends a couple of lines and
prints the classified events that come back.

Usage:
    python examples/core_only/simple_session.py
"""

import asyncio

from tether.core import SessionManager, load_config
from tether.core.types import SessionEventType


async def main():
    config = load_config(session_type="pty", cli_path="bash", persistence=False)
    manager = SessionManager(config)
    await manager.start()

    session = await manager.get_or_create_session("example-user", "example-channel")
    print(f"Session: {session.id}")

    events = session.subscribe()
    await session.send_message("echo 'Status: warming up'")
    await session.send_message("echo the answer is 42")

    # Collect whatever arrives in the next second
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 1.0
    while (remaining := deadline - loop.time()) > 0:
        try:
            event = await asyncio.wait_for(events.get(), remaining)
        except asyncio.TimeoutError:
            break
        if event.type is SessionEventType.OUTPUT:
            print(event.output)

    print()
    print("History:")
    for message in session.messages:
        print(f"  {message.role.value}: {message.content!r}")

    await manager.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
