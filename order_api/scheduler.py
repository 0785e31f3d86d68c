"""
Time source for advancement ticks. The controller only ever waits through a Scheduler,
so tests can fire ticks by hand instead of sleeping for real.
"""
import asyncio
from typing import Protocol


class Scheduler(Protocol):
    async def sleep(self, seconds: float) -> None:
        ...


class AsyncioScheduler:
    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
