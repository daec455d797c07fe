"""IP garbage collection engine: wiring and lifecycle of the GC loops."""

import asyncio
from typing import Optional

from kubernetes.client import CoreV1Api

from .context import EngineContext
from .executor import ReleaseExecutorPool
from .store import PodEntry
from .sweeper import ClusterSweeper
from .tracer import Tracer
from .watcher import PodEventWatcher


class GCEngine:
    """
    Runs the watcher, tracer, sweeper and release workers of one replica.

    Responsibilities:
    - Start and stop every long-lived loop together
    - Trigger a sweep on every election win so a new leader rebuilds its state
    - Expose the manual trigger, diagnostics and health hooks
    """

    def __init__(self, context: EngineContext, core_v1: Optional[CoreV1Api] = None):
        """
        Initialize the engine.

        Args:
            context: Engine context
            core_v1: Core API client for the Pod watch stream; the watch is not
                started without one
        """
        self.context = context
        self.settings = context.settings
        self.logger = context.logger
        self.executor = ReleaseExecutorPool(context)
        self.tracer = Tracer(context)
        self.sweeper = ClusterSweeper(context, self.executor)
        self.watcher = PodEventWatcher(context, core_v1)

        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start every loop as a background task."""
        if self._running:
            self.logger.warning("GC engine already running")
            return
        if not self.settings.enable_gc_ip:
            self.logger.warning("IP garbage collection is disabled, nothing to start")
            return

        self._running = True
        elected = self.context.leader.elected()
        loops = {
            "leader-election": self.context.leader.run(),
            "election-listener": self._watch_elections(elected),
            "pod-dispatcher": self.watcher.dispatch(),
            "tracer": self.tracer.run(),
            "sweeper": self.sweeper.run(),
            "release-executor": self.executor.run(),
        }
        if self.watcher.core_v1 is not None:
            loops["pod-watcher"] = self.watcher.run()
        else:
            self.logger.warning("No CoreV1Api client, pod watch is disabled")

        for name, coro in loops.items():
            self._tasks.append(asyncio.create_task(coro, name=name))
        self.logger.info(f"GC engine started with {len(self._tasks)} loops")

    async def stop(self) -> None:
        """Cancel every loop and wait for them to finish."""
        if not self._running:
            return
        self.logger.info("Stopping GC engine...")
        self._running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.watcher.stop()

        self.logger.info("GC engine stopped")

    async def _watch_elections(self, elected: asyncio.Queue) -> None:
        while True:
            await elected.get()
            self.logger.info("Elected leader, trigger a sweep to rebuild GC state")
            self.sweeper.trigger()

    def trigger_sweep_now(self) -> None:
        """Run a sweep as soon as possible. Concurrent requests collapse into one."""
        self.logger.info("Received manual sweep request")
        self.sweeper.trigger()

    def list_tracked_pods(self) -> list[PodEntry]:
        """Read-only snapshot of the liveness store."""
        return self.context.store.list()

    def health(self) -> bool:
        """
        Whether the engine is working.

        Returns:
            True if GC is disabled, or every loop is alive and the pod watch
            has synced
        """
        if not self.settings.enable_gc_ip:
            return True
        if not self._running:
            return False
        for task in self._tasks:
            if task.done():
                self.logger.warning(f"GC loop {task.get_name()} is not running")
                return False
        if self.watcher.core_v1 is not None and not self.watcher.synced:
            return False
        return True
