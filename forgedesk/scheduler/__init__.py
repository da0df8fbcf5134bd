"""
ForgeDesk — Session Sweeper
Periodic eviction of expired admin sessions. Owned by the app lifespan:
start() when the server starts, stop() on shutdown. Nothing runs at import.
"""
import asyncio

from forgedesk.config import SESSION_SWEEP_INTERVAL_SECONDS


class SessionSweeper:
    def __init__(self, manager, interval_seconds: float = SESSION_SWEEP_INTERVAL_SECONDS):
        self.manager = manager
        self.interval = interval_seconds
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> int:
        evicted = self.manager.sweep_expired()
        if evicted:
            print(f"[Sweeper] Evicted {evicted} expired admin session(s)")
        return evicted

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.run_once()
            except Exception as e:
                print(f"[Sweeper] Sweep failed: {type(e).__name__}: {e}")

    def start(self):
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
