#!/usr/bin/env python3
"""
Moltbot Gateway Service (S3-backed storage)

Responsibilities:
- Download state from S3 on startup
- Run the moltbot gateway process (supervised, auto-restart)
- Periodically check S3 for config changes
- Health / token side port for the setup service and the platform

Usage:
    moltbot-gateway
    python3 -m uvicorn gateway_server:create_app --factory --host 0.0.0.0 --port 8081
"""

import asyncio
import secrets
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException

from blob_store import BlobStore
from config_poller import ConfigPoller
from gateway_state import GatewayState
from gateway_supervisor import GatewaySupervisor
from state_mirror import StateMirror, init_storage
from wrapper_config import WrapperConfig


def check_internal_secret(config: WrapperConfig, provided: Optional[str]) -> bool:
    """Open when INTERNAL_SECRET is unset, otherwise require an exact match."""
    if not config.internal_secret:
        return True
    if not provided:
        return False
    return secrets.compare_digest(provided, config.internal_secret)


def create_app(
    config: Optional[WrapperConfig] = None,
    mirror: Optional[StateMirror] = None,
    launcher=None,
) -> FastAPI:
    config = config or WrapperConfig.from_env()
    if mirror is None:
        mirror = StateMirror(BlobStore.from_settings(config.s3), config.local_root)
    state = GatewayState(config)
    supervisor = GatewaySupervisor(config, state, launcher=launcher)
    poller = ConfigPoller(mirror, state, supervisor, interval=config.sync_interval)

    app = FastAPI(title="Moltbot Gateway Service", version="1.0.0", docs_url=None, redoc_url=None)
    app.state.config = config
    app.state.mirror = mirror
    app.state.gateway_state = state
    app.state.supervisor = supervisor
    app.state.poller = poller
    tasks: list[asyncio.Task] = []

    # ============================================================
    # Startup / Shutdown
    # ============================================================

    @app.on_event("startup")
    async def _startup():
        print("[gateway-service] starting...", flush=True)
        try:
            await asyncio.to_thread(init_storage, mirror)
        except Exception as e:
            print(f"[gateway-service] S3 init failed: {e}", flush=True)
            print("[gateway-service] Continuing without S3 state (first run?)", flush=True)

        print(f"[health] listening on port {config.health_port}", flush=True)
        print(f"[gateway-service] configured: {state.is_configured()}", flush=True)

        supervisor.start_loop()
        if not state.is_configured():
            print("[gateway-service] waiting for configuration from S3...", flush=True)
        await supervisor.start()

        tasks.append(asyncio.create_task(poller.run(), name="config-poller"))

    @app.on_event("shutdown")
    async def _shutdown():
        poller.stop()
        for task in tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        tasks.clear()
        await supervisor.shutdown()

    # ============================================================
    # Health & Token
    # ============================================================

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "configured": state.is_configured(),
            "processRunning": supervisor.is_running,
            "state": supervisor.state,
            "tokenPrefix": state.token_prefix(),
        }

    @app.get("/token")
    async def token(x_internal_secret: Optional[str] = Header(None)):
        """Full gateway token for the setup service."""
        if not check_internal_secret(config, x_internal_secret):
            raise HTTPException(status_code=403, detail="Forbidden")
        if not state.current_token:
            raise HTTPException(status_code=503, detail="Token not yet resolved")
        return {"token": state.current_token}

    @app.post("/reset")
    async def reset(x_internal_secret: Optional[str] = Header(None)):
        """Stop the gateway and delete its config locally and in S3."""
        if not check_internal_secret(config, x_internal_secret):
            raise HTTPException(status_code=403, detail="Forbidden")

        # Remote first so a poll tick in between cannot re-download it.
        remote_deleted = True
        try:
            await asyncio.to_thread(mirror.delete_file, config.config_relpath)
        except Exception as e:
            remote_deleted = False
            print(f"[s3] Failed to delete config from S3: {e}", flush=True)

        status = await supervisor.reset()
        poller.last_modified = None
        return {"ok": True, "remoteDeleted": remote_deleted, "supervisor": status}

    return app


def main():
    config = WrapperConfig.from_env()
    server = uvicorn.Server(
        uvicorn.Config(create_app(config), host="0.0.0.0", port=config.health_port, log_level="info")
    )
    server.run()
    if not server.started:
        print("[gateway-service] Fatal error: server failed to start", flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
