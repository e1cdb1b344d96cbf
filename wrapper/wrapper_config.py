"""
Wrapper configuration.

Both services (setup wizard + proxy, gateway supervisor) read their settings
from the environment once at startup and pass the resulting WrapperConfig to
every component they construct.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_LOCAL_ROOT = "/tmp/moltbot-state"
CONFIG_FILENAME = "moltbot.json"
TOKEN_FILENAME = "gateway.token"


def _env(environ: Mapping[str, str], *names: str, default: str = "") -> str:
    """Return the first non-empty (stripped) value among names."""
    for name in names:
        value = (environ.get(name) or "").strip()
        if value:
            return value
    return default


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = (environ.get(name) or "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        print(f"[config] ignoring invalid {name}={value!r}, using {default}", flush=True)
        return default


@dataclass
class S3Settings:
    bucket: str = ""
    prefix: str = "moltbot/"
    endpoint: str = ""
    region: str = "auto"
    access_key_id: str = ""
    secret_access_key: str = ""

    def __post_init__(self):
        if self.prefix and not self.prefix.endswith("/"):
            self.prefix += "/"


@dataclass
class WrapperConfig:
    """Settings shared by the setup and gateway services."""

    port: int = 8080
    health_port: int = 8081
    local_root: Path = Path(DEFAULT_LOCAL_ROOT)
    state_dir: Optional[Path] = None
    workspace_dir: Optional[Path] = None
    config_path_override: Optional[Path] = None
    gateway_token_override: str = ""

    moltbot_entry: str = "/moltbot/dist/entry.js"
    moltbot_node: str = "node"

    sync_interval: float = 30.0
    restart_delay: float = 2.0
    restart_grace: float = 1.0

    setup_password: str = ""
    gateway_url: str = "http://gateway:8080"
    gateway_internal_port: int = 8080
    ready_timeout: float = 60.0
    ready_initial_delay: float = 3.0
    ready_poll_interval: float = 0.5

    internal_secret: str = ""
    audit_log: Path = Path("/tmp/moltbot-audit/audit.jsonl")

    s3: S3Settings = field(default_factory=S3Settings)

    def __post_init__(self):
        self.local_root = Path(self.local_root)
        if self.state_dir is None:
            self.state_dir = self.local_root / ".moltbot"
        if self.workspace_dir is None:
            self.workspace_dir = self.local_root / "workspace"
        self.state_dir = Path(self.state_dir)
        self.workspace_dir = Path(self.workspace_dir)
        self.gateway_url = self.gateway_url.rstrip("/")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WrapperConfig":
        env = os.environ if environ is None else environ
        local_root = Path(_env(env, "MOLTBOT_LOCAL_ROOT", default=DEFAULT_LOCAL_ROOT))
        state_dir = _env(env, "MOLTBOT_STATE_DIR")
        workspace_dir = _env(env, "MOLTBOT_WORKSPACE_DIR")
        config_path = _env(env, "MOLTBOT_CONFIG_PATH")

        s3 = S3Settings(
            bucket=_env(env, "RAILWAY_S3_BUCKET", "AWS_S3_BUCKET_NAME", "S3_BUCKET"),
            prefix=_env(env, "S3_PREFIX", default="moltbot/"),
            endpoint=_env(env, "RAILWAY_S3_ENDPOINT", "AWS_ENDPOINT_URL", "S3_ENDPOINT"),
            region=_env(env, "RAILWAY_S3_REGION", "AWS_DEFAULT_REGION", "S3_REGION", default="auto"),
            access_key_id=_env(env, "RAILWAY_S3_ACCESS_KEY_ID", "S3_ACCESS_KEY_ID"),
            secret_access_key=_env(env, "RAILWAY_S3_SECRET_ACCESS_KEY", "S3_SECRET_ACCESS_KEY"),
        )

        return cls(
            port=_env_int(env, "PORT", 8080),
            health_port=_env_int(env, "HEALTH_PORT", 8081),
            local_root=local_root,
            state_dir=Path(state_dir) if state_dir else None,
            workspace_dir=Path(workspace_dir) if workspace_dir else None,
            config_path_override=Path(config_path) if config_path else None,
            gateway_token_override=_env(env, "MOLTBOT_GATEWAY_TOKEN"),
            moltbot_entry=_env(env, "MOLTBOT_ENTRY", default="/moltbot/dist/entry.js"),
            moltbot_node=_env(env, "MOLTBOT_NODE", default="node"),
            sync_interval=_env_int(env, "S3_SYNC_INTERVAL_MS", 30_000) / 1000,
            restart_delay=_env_int(env, "MOLTBOT_RESTART_DELAY_MS", 2_000) / 1000,
            restart_grace=_env_int(env, "MOLTBOT_RESTART_GRACE_MS", 1_000) / 1000,
            setup_password=_env(env, "SETUP_PASSWORD"),
            gateway_url=_env(env, "GATEWAY_URL", default="http://gateway:8080"),
            gateway_internal_port=_env_int(env, "GATEWAY_INTERNAL_PORT", 8080),
            ready_timeout=_env_int(env, "GATEWAY_READY_TIMEOUT_MS", 60_000) / 1000,
            internal_secret=_env(env, "INTERNAL_SECRET"),
            audit_log=Path(_env(env, "AUDIT_LOG", default="/tmp/moltbot-audit/audit.jsonl")),
            s3=s3,
        )

    # ------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------

    @property
    def config_path(self) -> Path:
        return self.config_path_override or self.state_dir / CONFIG_FILENAME

    @property
    def token_path(self) -> Path:
        return self.state_dir / TOKEN_FILENAME

    def relative_to_root(self, path: Path) -> str:
        """Path relative to local_root, '/'-separated (used as blob key suffix)."""
        return Path(path).relative_to(self.local_root).as_posix()

    @property
    def config_relpath(self) -> str:
        return self.relative_to_root(self.config_path)

    @property
    def token_relpath(self) -> str:
        return self.relative_to_root(self.token_path)

    @property
    def workspace_relpath(self) -> str:
        return self.relative_to_root(self.workspace_dir)

    def cli_args(self, args: list[str]) -> list[str]:
        """Full argv for a moltbot CLI invocation."""
        return [self.moltbot_node, self.moltbot_entry, *args]
