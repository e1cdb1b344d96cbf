"""
Gateway process supervisor.

Owns zero-or-one `moltbot gateway run` child process. All state changes go
through a single control loop that consumes events from a queue:

    start    -> spawn if configured and nothing is running
    restart  -> SIGTERM, wait for exit (bounded), spawn again
    reset    -> stop the child, delete local config, go idle
    exited   -> child terminated; schedule a retry after restart_delay
    retry    -> spawn again if still configured and nothing started since

States:
    idle       : no process, nothing requested
    waiting    : start requested but the deployment is not configured yet
    starting   : spawning the child
    running    : child is alive
    restarting : stopping the child before a new spawn
    exited     : child terminated, retry pending

Spawning goes through a launcher object so the loop can be driven in tests
without real processes.
"""

import asyncio
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from gateway_state import GatewayState
from scrub import scrub_argv
from wrapper_config import WrapperConfig

IDLE = "idle"
WAITING = "waiting"
STARTING = "starting"
RUNNING = "running"
RESTARTING = "restarting"
EXITED = "exited"


class SubprocessLauncher:
    """Spawns the gateway with stdout/stderr inherited from this service."""

    async def launch(self, argv: list[str], env: dict[str, str]):
        return await asyncio.create_subprocess_exec(*argv, env=env)


@dataclass
class _Event:
    kind: str
    future: Optional[asyncio.Future] = None
    data: dict[str, Any] = field(default_factory=dict)


def describe_exit(code: Optional[int]) -> str:
    """'code=1 signal=None' style description of a returncode."""
    if code is not None and code < 0:
        try:
            sig = signal.Signals(-code).name
        except ValueError:
            sig = str(-code)
        return f"code=None signal={sig}"
    return f"code={code} signal=None"


class GatewaySupervisor:
    def __init__(self, config: WrapperConfig, state: GatewayState, launcher=None):
        self.config = config
        self.gateway_state = state
        self.launcher = launcher or SubprocessLauncher()

        self.state: str = IDLE
        self.process = None
        self.started_at: Optional[str] = None
        self.config_mtime: Optional[float] = None
        self.spawn_count: int = 0

        self._queue: Optional[asyncio.Queue] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._watchers: set[asyncio.Task] = set()
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._closing = False

    # ============================================================
    # Public API
    # ============================================================

    @property
    def is_running(self) -> bool:
        return self.process is not None

    @property
    def status(self) -> dict:
        return {
            "state": self.state,
            "running": self.is_running,
            "pid": getattr(self.process, "pid", None),
            "startedAt": self.started_at,
            "configMtime": self.config_mtime,
        }

    def start_loop(self):
        """Start the control loop on the running event loop."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._closing = False
        self._queue = asyncio.Queue()
        self._loop_task = asyncio.create_task(self._run(), name="gateway-supervisor")

    async def start(self) -> dict:
        return await self._request("start")

    async def restart(self, reason: str = "") -> dict:
        return await self._request("restart", reason=reason)

    async def reset(self) -> dict:
        return await self._request("reset")

    async def shutdown(self):
        """Terminate the child and stop the loop. Waits at most restart_grace."""
        self._closing = True
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        process = self.process
        if process is not None:
            print("[gateway] shutting down, sending SIGTERM to gateway", flush=True)
            self._signal(process, kill=False)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.restart_grace)
            except asyncio.TimeoutError:
                print("[gateway] gateway still running at shutdown, leaving it to exit", flush=True)
            self.process = None

        for task in list(self._watchers):
            task.cancel()
        self._watchers.clear()
        self.state = IDLE

    # ============================================================
    # Control loop
    # ============================================================

    async def _request(self, kind: str, **data) -> dict:
        if self._queue is None or self._loop_task is None or self._loop_task.done():
            self.start_loop()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_Event(kind, future, data))
        return await future

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
                if event.future is not None and not event.future.done():
                    event.future.set_result(self.status)
            except asyncio.CancelledError:
                if event.future is not None and not event.future.done():
                    event.future.cancel()
                raise
            except Exception as e:
                print(f"[gateway] error handling {event.kind}: {e}", flush=True)
                if event.future is not None and not event.future.done():
                    event.future.set_exception(e)

    async def _handle(self, event: _Event):
        if event.kind == "start":
            await self._do_start()
        elif event.kind == "restart":
            await self._do_restart(event.data.get("reason", ""))
        elif event.kind == "reset":
            await self._do_reset()
        elif event.kind == "exited":
            self._on_exited(event.data["process"], event.data["code"])
        elif event.kind == "retry":
            await self._on_retry()
        else:
            raise ValueError(f"Unknown supervisor event: {event.kind}")

    # ============================================================
    # Transitions
    # ============================================================

    def _build_command(self, token: str) -> tuple[list[str], dict[str, str]]:
        args = [
            "gateway",
            "run",
            "--bind",
            "0.0.0.0",
            "--port",
            str(self.config.port),
            "--auth",
            "token",
            "--token",
            token,
        ]
        env = {
            **os.environ,
            "MOLTBOT_STATE_DIR": str(self.config.state_dir),
            "MOLTBOT_WORKSPACE_DIR": str(self.config.workspace_dir),
            "MOLTBOT_GATEWAY_TOKEN": token,
        }
        return self.config.cli_args(args), env

    async def _do_start(self):
        if self.process is not None:
            return
        if not self.gateway_state.is_configured():
            print("[gateway] not configured yet, waiting...", flush=True)
            self.state = WAITING
            return

        self.state = STARTING
        try:
            token = self.gateway_state.resolve_token()
            self.config.state_dir.mkdir(parents=True, exist_ok=True)
            self.config.workspace_dir.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            print(f"[gateway] start failed: {e}", flush=True)
            self.state = EXITED
            self._schedule_retry()
            return

        argv, env = self._build_command(token)
        print(f"[gateway] starting with command: {scrub_argv(argv)}", flush=True)
        print(f"[gateway] STATE_DIR: {self.config.state_dir}", flush=True)
        print(f"[gateway] WORKSPACE_DIR: {self.config.workspace_dir}", flush=True)
        print(f"[gateway] config path: {self.config.config_path}", flush=True)

        try:
            process = await self.launcher.launch(argv, env)
        except OSError as e:
            print(f"[gateway] spawn error: {e}", flush=True)
            self.state = EXITED
            self._schedule_retry()
            return

        self.process = process
        self.spawn_count += 1
        self.started_at = datetime.now(timezone.utc).isoformat()
        self.config_mtime = self.gateway_state.config_mtime()
        self.state = RUNNING

        watcher = asyncio.create_task(self._watch(process))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

    async def _do_restart(self, reason: str):
        if self.process is not None:
            print(f"[gateway] restarting{f' ({reason})' if reason else ''}...", flush=True)
            self.state = RESTARTING
            await self._stop_process()
        await self._do_start()

    async def _do_reset(self):
        if self.process is not None:
            await self._stop_process()
        self.gateway_state.delete_config()
        self.config_mtime = None
        self.state = IDLE
        print("[gateway] reset: local config deleted, gateway stopped", flush=True)

    def _on_exited(self, process, code: Optional[int]):
        print(f"[gateway] exited {describe_exit(code)}", flush=True)
        if process is not self.process:
            # Superseded by a restart/reset; the new handle owns the state.
            return
        self.process = None
        self.state = EXITED
        self._schedule_retry()

    async def _on_retry(self):
        self._retry_handle = None
        if self.process is not None:
            return
        if not self.gateway_state.is_configured():
            self.state = WAITING
            return
        print("[gateway] attempting restart...", flush=True)
        await self._do_start()

    # ============================================================
    # Helpers
    # ============================================================

    async def _watch(self, process):
        code = await process.wait()
        if self._closing or self._queue is None:
            return
        await self._queue.put(_Event("exited", data={"process": process, "code": code}))

    def _schedule_retry(self):
        if self._closing or self._queue is None:
            return
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        queue = self._queue
        self._retry_handle = asyncio.get_running_loop().call_later(
            self.config.restart_delay, queue.put_nowait, _Event("retry")
        )

    @staticmethod
    def _signal(process, kill: bool):
        try:
            if kill:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass

    async def _stop_process(self):
        """SIGTERM, wait up to restart_grace, SIGKILL if needed. Always observes exit."""
        process = self.process
        self._signal(process, kill=False)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.restart_grace)
        except asyncio.TimeoutError:
            print("[gateway] gateway did not exit after SIGTERM, sending SIGKILL", flush=True)
            self._signal(process, kill=True)
            await process.wait()
        self.process = None
