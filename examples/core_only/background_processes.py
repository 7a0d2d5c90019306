#!/usr/bin/env python3
"""Background process example - using core only.

Starts a couple of background commands, polls their output, kills one and
runs a streaming command with a timeout.

Usage:
    python examples/core_only/background_processes.py
"""

import asyncio

from tether.core import ProcessRegistry, StreamingTimeoutError


async def main():
    registry = ProcessRegistry(max_processes=5)

    ticker = await registry.start("for i in 1 2 3 4 5; do echo tick $i; sleep 0.2; done", ".", "me")
    sleeper = await registry.start("sleep 30", ".", "me", name="sleeper")

    await asyncio.sleep(0.5)
    print("ticker so far:")
    print(registry.get_output(ticker, lines=3))

    result = await registry.kill(sleeper)
    print(f"killed sleeper: {result}")

    try:
        await registry.start_streaming("sleep 5", ".", timeout=0.5)
    except StreamingTimeoutError as err:
        print(f"streaming command: {err}")

    await asyncio.sleep(1.0)
    print(registry.stats().to_dict())

    await registry.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
