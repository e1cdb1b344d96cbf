"""
Config change poller.

Every sync_interval seconds, re-download moltbot.json from S3 and compare
its modification time with the last one seen. A change restarts the gateway;
a config that just appeared starts it. Poll failures are logged and the tick
is skipped.
"""

import asyncio
from typing import Optional

from gateway_state import GatewayState
from gateway_supervisor import GatewaySupervisor
from state_mirror import StateMirror


class ConfigPoller:
    def __init__(
        self,
        mirror: StateMirror,
        state: GatewayState,
        supervisor: GatewaySupervisor,
        interval: float = 30.0,
    ):
        self.mirror = mirror
        self.state = state
        self.supervisor = supervisor
        self.interval = interval
        self.last_modified: Optional[float] = None
        self.restarts = 0
        self._stop = asyncio.Event()

    @property
    def config_key(self) -> str:
        return self.mirror.store.key_for(self.state.config.config_relpath)

    def _sync_cursor(self):
        """Adopt the supervisor's drift baseline after a (re)start."""
        if self.supervisor.config_mtime is not None:
            self.last_modified = self.supervisor.config_mtime

    async def tick(self) -> str:
        """Run one poll. Returns what happened: restarted, started, idle or skipped."""
        try:
            downloaded = await asyncio.to_thread(self.mirror.download_file, self.config_key)
            if not downloaded or not self.state.is_configured():
                return "skipped"

            mtime = self.state.config_mtime()
            previous = self.last_modified
            if previous is None:
                previous = self.supervisor.config_mtime

            if previous is not None and mtime != previous:
                print("[poller] Config changed in S3, restarting gateway...", flush=True)
                self.last_modified = mtime
                self.restarts += 1
                await self.supervisor.restart("config changed")
                self._sync_cursor()
                return "restarted"

            if not self.supervisor.is_running:
                await self.supervisor.start()
                self._sync_cursor()
                return "started"

            self.last_modified = previous
            return "idle"
        except Exception as e:
            print(f"[poller] Error checking for config updates: {e}", flush=True)
            return "skipped"

    async def run(self):
        print(f"[poller] checking S3 for config changes every {self.interval:g}s", flush=True)
        self._stop.clear()
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.tick()

    def stop(self):
        self._stop.set()
