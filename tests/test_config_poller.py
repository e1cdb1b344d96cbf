#!/usr/bin/env python3
"""
Config poller tests.

Run with: python -m pytest tests/test_config_poller.py -v
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

from config_poller import ConfigPoller
from gateway_state import GatewayState
from gateway_supervisor import GatewaySupervisor
from state_mirror import StateMirror

CONFIG_KEY = "moltbot/.moltbot/moltbot.json"
T1 = datetime(2026, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(minutes=5)


def config_body(token: str = "poll-token-0123456789") -> bytes:
    return json.dumps({"gateway": {"auth": {"token": token}}}).encode()


def make_poller(config, store, launcher):
    mirror = StateMirror(store, config.local_root)
    state = GatewayState(config)
    supervisor = GatewaySupervisor(config, state, launcher=launcher)
    return ConfigPoller(mirror, state, supervisor, interval=config.sync_interval)


class TestTick:
    """Test single poll ticks."""

    def test_config_key(self, config, store, launcher):
        assert make_poller(config, store, launcher).config_key == CONFIG_KEY

    def test_unchanged_timestamp_never_restarts(self, config, store, launcher):
        """Test repeated polls of an unchanged object cause zero restarts."""
        store.add(CONFIG_KEY, config_body(), last_modified=T1)

        async def scenario():
            poller = make_poller(config, store, launcher)
            # Boot: hydrate then start, as the gateway service does
            await asyncio.to_thread(poller.mirror.download_all)
            await poller.supervisor.start()
            results = [await poller.tick(), await poller.tick(), await poller.tick()]
            await poller.supervisor.shutdown()
            return poller, results

        poller, results = asyncio.run(scenario())
        assert results == ["idle", "idle", "idle"]
        assert poller.restarts == 0
        assert len(launcher.processes) == 1

    def test_first_config_starts_gateway(self, config, store, launcher):
        """Test a config appearing in the store starts a waiting gateway."""

        async def scenario():
            poller = make_poller(config, store, launcher)
            waiting = await poller.supervisor.start()
            first = await poller.tick()
            store.add(CONFIG_KEY, config_body(), last_modified=T1)
            second = await poller.tick()
            third = await poller.tick()
            await poller.supervisor.shutdown()
            return poller, waiting, [first, second, third]

        poller, waiting, results = asyncio.run(scenario())
        assert waiting["state"] == "waiting"
        assert results == ["skipped", "started", "idle"]
        assert poller.restarts == 0
        assert len(launcher.processes) == 1

    def test_changed_timestamp_restarts_once(self, config, store, launcher):
        """Test a newer LastModified restarts the gateway exactly once."""
        store.add(CONFIG_KEY, config_body(), last_modified=T1)

        async def scenario():
            poller = make_poller(config, store, launcher)
            await poller.tick()
            store.add(CONFIG_KEY, config_body("rotated-token-0123456789"), last_modified=T2)
            changed = await poller.tick()
            again = await poller.tick()
            await poller.supervisor.shutdown()
            return poller, changed, again

        poller, changed, again = asyncio.run(scenario())
        assert changed == "restarted"
        assert again == "idle"
        assert poller.restarts == 1
        assert len(launcher.processes) == 2
        assert launcher.processes[0].signals == ["SIGTERM"]
        # New process runs with the rotated token
        assert launcher.commands[1][1]["MOLTBOT_GATEWAY_TOKEN"] == "rotated-token-0123456789"

    def test_store_failure_skips_tick(self, config, store, launcher):
        """Test a failing poll is logged and skipped, not raised."""
        store.add(CONFIG_KEY, config_body(), last_modified=T1)
        store.error = ConnectionError("s3 unreachable")

        async def scenario():
            poller = make_poller(config, store, launcher)
            return poller, await poller.tick()

        poller, result = asyncio.run(scenario())
        assert result == "skipped"
        assert launcher.processes == []


class TestRun:
    """Test the polling loop."""

    def test_run_polls_until_stopped(self, config, store, launcher):
        store.add(CONFIG_KEY, config_body(), last_modified=T1)

        async def scenario():
            poller = make_poller(config, store, launcher)
            poller.interval = 0.02
            task = asyncio.create_task(poller.run())
            await asyncio.sleep(0.15)
            poller.stop()
            await asyncio.wait_for(task, timeout=1)
            await poller.supervisor.shutdown()
            return poller

        poller = asyncio.run(scenario())
        gets = [call for call in store.calls if call == ("get", CONFIG_KEY)]
        assert len(gets) >= 2
        assert poller.restarts == 0
        assert len(launcher.processes) == 1
