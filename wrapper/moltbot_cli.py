"""
moltbot CLI invocation.

The wrapped CLI is opaque: commands are run as `<node> <entry> <args...>`
and only the exit code plus combined stdout/stderr are used.
"""

import asyncio
import json
import os
from typing import Optional

from scrub import scrub, scrub_argv
from wrapper_config import WrapperConfig

AUTH_GROUPS = [
    {"value": "openai", "label": "OpenAI", "hint": "Codex OAuth + API key", "options": [
        {"value": "codex-cli", "label": "OpenAI Codex OAuth (Codex CLI)"},
        {"value": "openai-codex", "label": "OpenAI Codex (ChatGPT OAuth)"},
        {"value": "openai-api-key", "label": "OpenAI API key"},
    ]},
    {"value": "anthropic", "label": "Anthropic", "hint": "Claude Code CLI + API key", "options": [
        {"value": "claude-cli", "label": "Anthropic token (Claude Code CLI)"},
        {"value": "token", "label": "Anthropic token (paste setup-token)"},
        {"value": "apiKey", "label": "Anthropic API key"},
    ]},
    {"value": "google", "label": "Google", "hint": "Gemini API key + OAuth", "options": [
        {"value": "gemini-api-key", "label": "Google Gemini API key"},
        {"value": "google-antigravity", "label": "Google Antigravity OAuth"},
        {"value": "google-gemini-cli", "label": "Google Gemini CLI OAuth"},
    ]},
    {"value": "openrouter", "label": "OpenRouter", "hint": "API key", "options": [
        {"value": "openrouter-api-key", "label": "OpenRouter API key"},
    ]},
    {"value": "ai-gateway", "label": "Vercel AI Gateway", "hint": "API key", "options": [
        {"value": "ai-gateway-api-key", "label": "Vercel AI Gateway API key"},
    ]},
    {"value": "moonshot", "label": "Moonshot AI", "hint": "Kimi K2 + Kimi Code", "options": [
        {"value": "moonshot-api-key", "label": "Moonshot AI API key"},
        {"value": "kimi-code-api-key", "label": "Kimi Code API key"},
    ]},
    {"value": "zai", "label": "Z.AI (GLM 4.7)", "hint": "API key", "options": [
        {"value": "zai-api-key", "label": "Z.AI (GLM 4.7) API key"},
    ]},
    {"value": "minimax", "label": "MiniMax", "hint": "M2.1", "options": [
        {"value": "minimax-api", "label": "MiniMax M2.1"},
        {"value": "minimax-api-lightning", "label": "MiniMax M2.1 Lightning"},
    ]},
    {"value": "qwen", "label": "Qwen", "hint": "OAuth", "options": [
        {"value": "qwen-portal", "label": "Qwen OAuth"},
    ]},
    {"value": "copilot", "label": "Copilot", "hint": "GitHub + local proxy", "options": [
        {"value": "github-copilot", "label": "GitHub Copilot (GitHub device login)"},
        {"value": "copilot-proxy", "label": "Copilot Proxy (local)"},
    ]},
    {"value": "synthetic", "label": "Synthetic", "hint": "Anthropic-compatible", "options": [
        {"value": "synthetic-api-key", "label": "Synthetic API key"},
    ]},
    {"value": "opencode-zen", "label": "OpenCode Zen", "hint": "API key", "options": [
        {"value": "opencode-zen", "label": "OpenCode Zen (multi-model proxy)"},
    ]},
]

# authChoice -> CLI flag carrying the pasted secret
AUTH_SECRET_FLAGS = {
    "openai-api-key": "--openai-api-key",
    "apiKey": "--anthropic-api-key",
    "openrouter-api-key": "--openrouter-api-key",
    "ai-gateway-api-key": "--ai-gateway-api-key",
    "moonshot-api-key": "--moonshot-api-key",
    "kimi-code-api-key": "--kimi-code-api-key",
    "gemini-api-key": "--gemini-api-key",
    "zai-api-key": "--zai-api-key",
    "minimax-api": "--minimax-api-key",
    "minimax-api-lightning": "--minimax-api-key",
    "synthetic-api-key": "--synthetic-api-key",
    "opencode-zen": "--opencode-zen-api-key",
}

VALID_FLOWS = ("quickstart", "advanced", "manual")

SPAWN_ERROR_CODE = 127


def build_onboard_args(payload: dict, config: WrapperConfig, token: str) -> list[str]:
    """Non-interactive `onboard` arguments for a wizard payload."""
    args = [
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--json",
        "--no-install-daemon",
        "--skip-health",
        "--workspace", str(config.workspace_dir),
        "--gateway-bind", "0.0.0.0",
        "--gateway-port", str(config.gateway_internal_port),
        "--gateway-auth", "token",
        "--gateway-token", token,
        "--flow", payload.get("flow") or "quickstart",
    ]

    auth_choice = payload.get("authChoice")
    if auth_choice:
        args += ["--auth-choice", auth_choice]

        secret = (payload.get("authSecret") or "").strip()
        flag = AUTH_SECRET_FLAGS.get(auth_choice)
        if flag and secret:
            args += [flag, secret]

        if auth_choice == "token" and secret:
            args += ["--token-provider", "anthropic", "--token", secret]

    return args


def gateway_config_commands(config: WrapperConfig, token: str) -> list[list[str]]:
    """`config set` invocations that pin gateway networking and auth."""
    return [
        ["config", "set", "gateway.mode", "local"],
        ["config", "set", "gateway.auth.mode", "token"],
        ["config", "set", "gateway.auth.token", token],
        ["config", "set", "gateway.bind", "0.0.0.0"],
        ["config", "set", "gateway.port", str(config.gateway_internal_port)],
        ["config", "set", "gateway.controlUi.allowInsecureAuth", "true"],
    ]


def channel_config_commands(payload: dict, channels_help: str) -> list[tuple[str, list[str]]]:
    """(channel, argv) pairs for the channels in the payload the CLI supports."""
    commands = []

    def supports(name: str) -> bool:
        return name in (channels_help or "")

    telegram = (payload.get("telegramToken") or "").strip()
    if telegram and supports("telegram"):
        cfg = {
            "enabled": True,
            "dmPolicy": "pairing",
            "botToken": telegram,
            "groupPolicy": "allowlist",
            "streamMode": "partial",
        }
        commands.append(("telegram", ["config", "set", "--json", "channels.telegram", json.dumps(cfg)]))

    discord = (payload.get("discordToken") or "").strip()
    if discord and supports("discord"):
        cfg = {
            "enabled": True,
            "token": discord,
            "groupPolicy": "allowlist",
            "dm": {"policy": "pairing"},
        }
        commands.append(("discord", ["config", "set", "--json", "channels.discord", json.dumps(cfg)]))

    slack_bot = (payload.get("slackBotToken") or "").strip()
    slack_app = (payload.get("slackAppToken") or "").strip()
    if (slack_bot or slack_app) and supports("slack"):
        cfg = {"enabled": True}
        if slack_bot:
            cfg["botToken"] = slack_bot
        if slack_app:
            cfg["appToken"] = slack_app
        commands.append(("slack", ["config", "set", "--json", "channels.slack", json.dumps(cfg)]))

    return commands


class MoltbotCli:
    """Runs moltbot subcommands and collects exit code + combined output."""

    def __init__(self, config: WrapperConfig):
        self.config = config

    async def run(self, args: list[str], env: Optional[dict] = None) -> tuple[int, str]:
        argv = self.config.cli_args(args)
        print(f"[cli] {scrub_argv(argv)}", flush=True)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, **(env or {})},
            )
        except OSError as e:
            return SPAWN_ERROR_CODE, f"\n[spawn error] {e}\n"

        stdout, _ = await proc.communicate()
        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        code = proc.returncode if proc.returncode is not None else 0
        if code != 0:
            print(f"[cli] exit={code}: {scrub(output[-500:])}", flush=True)
        return code, output

    async def version(self) -> str:
        _, output = await self.run(["--version"])
        return output.strip()

    async def channels_help(self) -> str:
        _, output = await self.run(["channels", "add", "--help"])
        return output
