#!/usr/bin/env python3
"""
Moltbot Setup Service (S3-backed storage)

Responsibilities:
- Download state from S3 on startup
- Password-protected /setup wizard for initial configuration
- Run onboarding commands and upload the resulting config to S3
- Proxy HTTP and WebSocket traffic to the Gateway service

Usage:
    moltbot-setup
    python3 -m uvicorn setup_server:create_app --factory --host 0.0.0.0 --port 8080
"""

import asyncio
import base64
import json
import secrets
import subprocess
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, field_validator
from starlette.background import BackgroundTask

from blob_store import BlobStore
from gateway_proxy import GatewayProxy
from gateway_state import GatewayState
from moltbot_cli import (
    AUTH_GROUPS,
    VALID_FLOWS,
    MoltbotCli,
    build_onboard_args,
    channel_config_commands,
    gateway_config_commands,
)
from scrub import scrub, scrub_dict
from setup_page import SETUP_HTML, SETUP_JS
from state_mirror import StateMirror, init_storage
from wrapper_config import WrapperConfig

READY_CHECK_PATHS = ("/moltbot", "/", "/health")
AUTH_REALM = 'Basic realm="Moltbot Setup"'


class OnboardRequest(BaseModel):
    flow: str = "quickstart"
    authChoice: Optional[str] = None
    authSecret: Optional[str] = None
    telegramToken: Optional[str] = None
    discordToken: Optional[str] = None
    slackBotToken: Optional[str] = None
    slackAppToken: Optional[str] = None

    @field_validator("flow")
    @classmethod
    def _known_flow(cls, value: str) -> str:
        value = (value or "quickstart").strip()
        if value not in VALID_FLOWS:
            raise ValueError(f"flow must be one of: {', '.join(VALID_FLOWS)}")
        return value


class PairingApproveRequest(BaseModel):
    channel: Optional[str] = None
    code: Optional[str] = None


# ============================================================
# Audit Logging
# ============================================================

def audit_log(config: WrapperConfig, event: str, details: dict):
    """Append a scrubbed event to the audit log."""
    details = scrub_dict(details)
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        **details,
    }
    try:
        config.audit_log.parent.mkdir(parents=True, exist_ok=True)
        with open(config.audit_log, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except OSError as e:
        print(f"[audit] WARNING: could not write audit log: {e}", flush=True)
    print(f"[audit] {event}: {details}", flush=True)


# ============================================================
# Helpers
# ============================================================

def check_setup_auth(config: WrapperConfig, authorization: str) -> None:
    """Validate HTTP Basic credentials against SETUP_PASSWORD (username ignored)."""
    if not config.setup_password:
        raise HTTPException(
            status_code=500,
            detail="SETUP_PASSWORD is not set. Set it in Railway Variables before using /setup.",
        )

    scheme, _, encoded = (authorization or "").partition(" ")
    if scheme != "Basic" or not encoded:
        raise HTTPException(status_code=401, detail="Auth required", headers={"WWW-Authenticate": AUTH_REALM})

    try:
        decoded = base64.b64decode(encoded).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        decoded = ""
    _, sep, password = decoded.partition(":")
    if not sep or not secrets.compare_digest(password.encode(), config.setup_password.encode()):
        raise HTTPException(status_code=401, detail="Invalid password", headers={"WWW-Authenticate": AUTH_REALM})


async def wait_for_gateway_ready(
    client: httpx.AsyncClient,
    gateway_url: str,
    token: Optional[str],
    timeout: float = 60.0,
    poll_interval: float = 0.5,
) -> bool:
    """Poll the gateway until any endpoint answers or timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    headers = {"Authorization": f"Bearer {token}"} if token else {}

    while loop.time() < deadline:
        for path in READY_CHECK_PATHS:
            try:
                await client.get(f"{gateway_url}{path}", headers=headers, timeout=5.0)
                print(f"[gateway] ready at {path}", flush=True)
                return True
            except httpx.HTTPError:
                continue
        await asyncio.sleep(poll_interval)

    print(f"[gateway] failed to become ready after {timeout:g}s", flush=True)
    return False


def build_backup_archive(config: WrapperConfig) -> Path:
    """Create a temporary .tar.gz of the state and workspace directories."""
    config.state_dir.mkdir(parents=True, exist_ok=True)
    config.workspace_dir.mkdir(parents=True, exist_ok=True)

    members = [
        config.relative_to_root(d)
        for d in (config.state_dir, config.workspace_dir)
        if d.exists()
    ]

    tmp = tempfile.NamedTemporaryFile(suffix=".tar.gz", delete=False)
    tmp.close()
    result = subprocess.run(
        ["tar", "-C", str(config.local_root), "-czf", tmp.name, *members],
        capture_output=True, text=True,
    )
    if result.returncode != 0:
        Path(tmp.name).unlink(missing_ok=True)
        raise RuntimeError(f"Failed to create archive: {result.stderr.strip()}")
    return Path(tmp.name)


# ============================================================
# Application
# ============================================================

def create_app(
    config: Optional[WrapperConfig] = None,
    mirror: Optional[StateMirror] = None,
    cli: Optional[MoltbotCli] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    config = config or WrapperConfig.from_env()
    if mirror is None:
        mirror = StateMirror(BlobStore.from_settings(config.s3), config.local_root)
    cli = cli or MoltbotCli(config)
    client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=10.0))
    state = GatewayState(config)
    proxy = GatewayProxy(config.gateway_url, state, client)

    app = FastAPI(title="Moltbot Setup", version="1.0.0", docs_url=None, redoc_url=None)
    app.state.config = config
    app.state.mirror = mirror
    app.state.cli = cli
    app.state.gateway_state = state
    app.state.proxy = proxy

    def require_setup_auth(request: Request):
        check_setup_auth(config, request.headers.get("authorization", ""))

    async def sync_config_to_s3() -> bool:
        """Upload moltbot.json (and gateway.token if present)."""
        try:
            await asyncio.to_thread(mirror.upload_file, config.config_relpath)
            if config.token_path.exists():
                await asyncio.to_thread(mirror.upload_file, config.token_relpath)
            print("[s3] Config synced to S3", flush=True)
            return True
        except Exception as e:
            print(f"[s3] Failed to sync config to S3: {e}", flush=True)
            return False

    # ------------------------------------------------------------
    # Startup / Shutdown
    # ------------------------------------------------------------

    @app.on_event("startup")
    async def _startup():
        print("[setup-service] starting...", flush=True)
        try:
            await asyncio.to_thread(init_storage, mirror)
        except Exception as e:
            print(f"[setup-service] S3 init failed: {e}", flush=True)
            print("[setup-service] Continuing without S3 state (first run?)", flush=True)

        if state.is_configured():
            state.resolve_token()

        print(f"[setup-service] setup wizard: http://localhost:{config.port}/setup", flush=True)
        print(f"[setup-service] configured: {state.is_configured()}", flush=True)
        print(f"[setup-service] gateway URL: {config.gateway_url}", flush=True)

    @app.on_event("shutdown")
    async def _shutdown():
        await proxy.aclose()

    # ------------------------------------------------------------
    # Wizard
    # ------------------------------------------------------------

    @app.get("/setup/healthz")
    async def setup_healthz():
        return {"ok": True}

    @app.get("/setup/app.js", dependencies=[Depends(require_setup_auth)])
    async def setup_app_js():
        return Response(content=SETUP_JS, media_type="application/javascript")

    @app.get("/setup", response_class=HTMLResponse, dependencies=[Depends(require_setup_auth)])
    async def setup_page():
        return HTMLResponse(SETUP_HTML)

    @app.get("/setup/api/status", dependencies=[Depends(require_setup_auth)])
    async def setup_status():
        version = await cli.version()
        channels_help = await cli.channels_help()

        try:
            resp = await client.get(f"{config.gateway_url}/health", timeout=5.0)
            gateway_status = "connected" if resp.is_success else "error"
        except httpx.HTTPError:
            gateway_status = "unreachable"

        return {
            "configured": state.is_configured(),
            "gatewayUrl": config.gateway_url,
            "gatewayStatus": gateway_status,
            "moltbotVersion": version,
            "channelsAddHelp": channels_help,
            "authGroups": AUTH_GROUPS,
        }

    @app.post("/setup/api/run", dependencies=[Depends(require_setup_auth)])
    async def setup_run(payload: Optional[OnboardRequest] = None):
        if state.is_configured():
            return {
                "ok": True,
                "output": "Already configured.\nUse Reset setup if you want to rerun onboarding.\n",
            }

        body = (payload or OnboardRequest()).model_dump()
        try:
            config.state_dir.mkdir(parents=True, exist_ok=True)
            config.workspace_dir.mkdir(parents=True, exist_ok=True)

            token = state.resolve_token()
            code, output = await cli.run(build_onboard_args(body, config, token))
            ok = code == 0 and state.is_configured()
            extra = ""

            if ok:
                for args in gateway_config_commands(config, token):
                    await cli.run(args)

                help_text = await cli.channels_help()
                for channel, args in channel_config_commands(body, help_text):
                    await cli.run(args)
                    extra += f"\n[{channel}] configured\n"

                extra += "\n[s3] Uploading config to S3...\n"
                if await sync_config_to_s3():
                    extra += "[s3] Config uploaded successfully\n"
                    extra += f"\nGateway service will detect the new config within {config.sync_interval:g} seconds.\n"
                else:
                    extra += "[s3] Warning: Failed to upload config to S3\n"

                extra += f"\nWaiting for gateway at {config.gateway_url}...\n"
                await asyncio.sleep(config.ready_initial_delay)
                ready = await wait_for_gateway_ready(
                    client, config.gateway_url, state.resolve_token(),
                    timeout=config.ready_timeout, poll_interval=config.ready_poll_interval,
                )
                extra += "Gateway is ready!\n" if ready else "Gateway not responding yet (may still be starting).\n"

            audit_log(config, "setup_run", {"ok": ok, "exit_code": code, "flow": body["flow"]})
            return JSONResponse({"ok": ok, "output": scrub(output + extra)}, status_code=200 if ok else 500)
        except Exception as e:
            print(f"[/setup/api/run] error: {e}", flush=True)
            return JSONResponse({"ok": False, "output": f"Internal error: {e}"}, status_code=500)

    @app.get("/setup/api/debug", dependencies=[Depends(require_setup_auth)])
    async def setup_debug():
        version = await cli.version()
        help_text = await cli.channels_help()
        return {
            "wrapper": {
                "python": sys.version.split()[0],
                "port": config.port,
                "stateDir": str(config.state_dir),
                "workspaceDir": str(config.workspace_dir),
                "configPath": str(config.config_path),
                "gatewayUrl": config.gateway_url,
                "s3Bucket": config.s3.bucket,
                "s3Prefix": config.s3.prefix,
            },
            "moltbot": {
                "entry": config.moltbot_entry,
                "node": config.moltbot_node,
                "version": version,
                "channelsAddHelpIncludesTelegram": "telegram" in help_text,
            },
        }

    @app.post("/setup/api/pairing/approve", dependencies=[Depends(require_setup_auth)])
    async def setup_pairing_approve(payload: Optional[PairingApproveRequest] = None):
        channel = ((payload and payload.channel) or "").strip()
        code = ((payload and payload.code) or "").strip()
        if not channel or not code:
            return JSONResponse({"ok": False, "error": "Missing channel or code"}, status_code=400)

        exit_code, output = await cli.run(["pairing", "approve", channel, code])
        ok = exit_code == 0
        audit_log(config, "pairing_approve", {"channel": channel, "ok": ok})
        return JSONResponse({"ok": ok, "output": scrub(output)}, status_code=200 if ok else 500)

    @app.post("/setup/api/reset", dependencies=[Depends(require_setup_auth)])
    async def setup_reset():
        try:
            state.delete_config()
        except OSError as e:
            return PlainTextResponse(str(e), status_code=500)

        try:
            await asyncio.to_thread(mirror.delete_file, config.config_relpath)
            print("[s3] Deleted config from S3", flush=True)
        except Exception as e:
            print(f"[s3] Failed to delete config from S3: {e}", flush=True)

        audit_log(config, "setup_reset", {"config": str(config.config_path)})
        return PlainTextResponse("OK - deleted config file locally and from S3. You can rerun setup now.")

    @app.get("/setup/export", dependencies=[Depends(require_setup_auth)])
    async def setup_export():
        try:
            archive = await asyncio.to_thread(build_backup_archive, config)
        except (OSError, RuntimeError) as e:
            print(f"[export] {e}", flush=True)
            raise HTTPException(status_code=500, detail=str(e))

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")
        audit_log(config, "backup_export", {"size": archive.stat().st_size})
        return FileResponse(
            str(archive),
            media_type="application/gzip",
            filename=f"moltbot-backup-{timestamp}.tar.gz",
            background=BackgroundTask(archive.unlink, missing_ok=True),
        )

    # ------------------------------------------------------------
    # Proxy to gateway (registered last)
    # ------------------------------------------------------------

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"])
    async def proxy_http(path: str, request: Request):
        return await proxy.handle_http(request)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        await proxy.handle_websocket(websocket)

    return app


def main():
    config = WrapperConfig.from_env()
    server = uvicorn.Server(uvicorn.Config(create_app(config), host="0.0.0.0", port=config.port, log_level="info"))
    server.run()
    if not server.started:
        print("[setup-service] Fatal error: server failed to start", flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
