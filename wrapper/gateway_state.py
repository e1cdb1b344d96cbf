"""
Gateway configuration presence and auth token resolution.

"Configured" means exactly one thing: the moltbot.json config file exists at
its well-known local path.
"""

import json
import os
import secrets
from typing import Optional

from wrapper_config import WrapperConfig


class GatewayState:
    def __init__(self, config: WrapperConfig):
        self.config = config
        self.current_token: Optional[str] = None

    def is_configured(self) -> bool:
        try:
            return self.config.config_path.exists()
        except OSError:
            return False

    def config_mtime(self) -> Optional[float]:
        try:
            return self.config.config_path.stat().st_mtime
        except OSError:
            return None

    def read_config(self) -> Optional[dict]:
        try:
            with open(self.config.config_path) as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def delete_config(self):
        self.config.config_path.unlink(missing_ok=True)

    def _token_from_config(self) -> Optional[str]:
        # Opaque CLI-owned JSON: any level may have an unexpected shape.
        node = self.read_config()
        for name in ("gateway", "auth", "token"):
            if not isinstance(node, dict):
                return None
            node = node.get(name)
        token = node
        if isinstance(token, str) and token.strip():
            return token.strip()
        return None

    def _token_from_file(self) -> Optional[str]:
        try:
            token = self.config.token_path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return token or None

    def _persist_token(self, token: str) -> bool:
        token_path = self.config.token_path
        try:
            token_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(token_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(token)
            os.chmod(token_path, 0o600)
            return True
        except OSError as e:
            print(f"[token] WARNING: could not persist generated token to {token_path}: {e}", flush=True)
            return False

    def resolve_token(self) -> str:
        """Resolve the gateway token.

        Order: MOLTBOT_GATEWAY_TOKEN override, gateway.auth.token in the
        config file, legacy gateway.token file, then a freshly generated
        token which is written to the legacy file (best-effort).
        """
        token = (
            self.config.gateway_token_override.strip()
            or self._token_from_config()
            or self._token_from_file()
        )
        if not token:
            token = secrets.token_hex(32)
            self._persist_token(token)
        self.current_token = token
        return token

    def token_prefix(self) -> Optional[str]:
        if not self.current_token:
            return None
        return self.current_token[:8] + "..."
