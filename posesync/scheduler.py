"""
Frame scheduler for the orchestrator.

Drives ``tick`` from an asyncio loop. Ticks are the only suspension points;
pose reports and jumps issued from other tasks run between them.
"""

import asyncio
from typing import Optional

from rich.console import Console

from .orchestrator import PoseSyncOrchestrator

console = Console()


class ManualClock:
    """Clock advanced explicitly, for simulations and replay."""

    def __init__(self, start: float = 0.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def run_frames(
    orchestrator: PoseSyncOrchestrator,
    fps: float = 60.0,
    max_frames: Optional[int] = None,
    stop_when_idle: bool = True,
    realtime: bool = True,
) -> int:
    """
    Tick the orchestrator at a fixed frame rate.

    Args:
        orchestrator: Orchestrator to drive
        fps: Frames per second; each tick advances by 1 / fps seconds
        max_frames: Stop after this many ticks (None = no limit)
        stop_when_idle: Return as soon as no animation is in flight
        realtime: Sleep for the frame time between ticks; otherwise only yield

    Returns:
        Number of ticks issued
    """
    if fps <= 0:
        raise ValueError(f"fps must be positive, got {fps}")
    frame_time = 1.0 / fps

    frames = 0
    while max_frames is None or frames < max_frames:
        if stop_when_idle and not orchestrator.is_animating:
            break
        orchestrator.tick(frame_time)
        frames += 1
        await asyncio.sleep(frame_time if realtime else 0)

    return frames


class FrameTicker:
    """Background task ticking an orchestrator until stopped."""

    def __init__(self, orchestrator: PoseSyncOrchestrator, fps: float = 60.0, realtime: bool = True):
        self.orchestrator = orchestrator
        self.fps = fps
        self.realtime = realtime
        self.frames = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.ensure_future(self._loop())

    async def _loop(self):
        frame_time = 1.0 / self.fps
        while True:
            self.orchestrator.tick(frame_time)
            self.frames += 1
            await asyncio.sleep(frame_time if self.realtime else 0)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if self.orchestrator.config.verbose:
            console.print(f"[blue]Ticker stopped after {self.frames} frames[/blue]")
