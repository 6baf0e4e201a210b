"""
Test helpers shared by unit and integration tests.
"""

import asyncio


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def settle(rounds: int = 5):
    """Let scheduled tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)
