"""Tests for the tunnel engine: command construction, error parsing and session lifecycle."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable
from pathlib import Path

import psutil
import pytest

from jumptray.config import ConfigStore
from jumptray.errors import SessionStartError, StartFailure
from jumptray.managers.tunnel import (
    Connected,
    Idle,
    TunnelEngine,
    TunnelState,
    build_ssh_command,
    parse_ssh_error,
)
from jumptray.models import AppConfig, JumpConfig, TunnelConfig

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake ssh is a shell script")

LONG_RUNNING = "exec sleep 30"


def _gone(proc: psutil.Process | int) -> bool:
    try:
        if isinstance(proc, int):
            proc = psutil.Process(proc)
        return proc.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def test_build_command() -> None:
    jump = JumpConfig(host="bastion", port=2222, user="alice")
    tunnels = [
        TunnelConfig(name="db", local_port=5432, remote_host="db.internal", remote_port=5432),
        TunnelConfig(name="web", local_port=8080, remote_host="web.internal", remote_port=80),
    ]
    cmd = build_ssh_command(jump, "/keys/id", tunnels)

    assert cmd[0] == "ssh"
    assert cmd[cmd.index("-p") + 1] == "2222"
    assert cmd[cmd.index("-i") + 1] == "/keys/id"
    assert "-N" in cmd
    assert "-T" in cmd
    for option in (
        "ExitOnForwardFailure=yes",
        "ServerAliveInterval=30",
        "ServerAliveCountMax=3",
        "StrictHostKeyChecking=accept-new",
    ):
        assert cmd[cmd.index(option) - 1] == "-o"
    forwards = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-L"]
    assert forwards == ["5432:db.internal:5432", "8080:web.internal:80"]
    assert cmd[-1] == "alice@bastion"


def test_build_command_custom_binary() -> None:
    cmd = build_ssh_command(JumpConfig(host="h", user="u"), "/k", [], ssh_binary="/opt/ssh")
    assert cmd[0] == "/opt/ssh"
    assert "-L" not in cmd


def test_parse_error_port_in_use() -> None:
    msg = parse_ssh_error("bind [127.0.0.1]:8080: Address already in use\nchannel_setup_fwd_listener")
    assert "port already in use" in msg.lower()


def test_parse_error_permission_denied() -> None:
    msg = parse_ssh_error("alice@example.com: Permission denied (publickey).")
    assert "permission denied" in msg.lower()


def test_parse_error_unknown() -> None:
    assert parse_ssh_error("some weird error nobody expected\n") == "some weird error nobody expected"


def test_parse_error_empty() -> None:
    assert parse_ssh_error("") == "Unknown SSH error"


# ---------------------------------------------------------------------------
# Start preconditions
# ---------------------------------------------------------------------------


class TestStartPreconditions:
    async def _start_expecting(self, store: ConfigStore, reason: StartFailure) -> SessionStartError:
        engine = TunnelEngine(store, ssh_binary="/nonexistent/ssh")
        with pytest.raises(SessionStartError) as exc_info:
            await engine.start()
        assert exc_info.value.reason is reason
        assert engine.state is TunnelState.IDLE
        assert not engine.is_connected()
        return exc_info.value

    @pytest.mark.asyncio
    async def test_no_enabled_tunnels(self, store: ConfigStore, ready_config: AppConfig) -> None:
        for t in ready_config.tunnels_for("UAT"):
            t.enabled = False
        store.save(ready_config)
        err = await self._start_expecting(store, StartFailure.NO_ENABLED_TUNNELS)
        assert "UAT" in str(err)

    @pytest.mark.asyncio
    async def test_empty_profile(self, store: ConfigStore) -> None:
        await self._start_expecting(store, StartFailure.NO_ENABLED_TUNNELS)

    @pytest.mark.asyncio
    async def test_missing_user(self, store: ConfigStore, ready_config: AppConfig) -> None:
        ready_config.jump.user = "   "
        store.save(ready_config)
        await self._start_expecting(store, StartFailure.MISSING_CREDENTIALS)

    @pytest.mark.asyncio
    async def test_missing_key(self, store: ConfigStore, ready_config: AppConfig, tmp_path: Path) -> None:
        ready_config.key_path = str(tmp_path / "absent_ed25519")
        store.save(ready_config)
        err = await self._start_expecting(store, StartFailure.KEY_NOT_FOUND)
        assert "absent_ed25519" in str(err)

    @pytest.mark.asyncio
    async def test_invalid_tunnel_named(self, store: ConfigStore, ready_config: AppConfig) -> None:
        ready_config.tunnels_for("UAT").append(
            TunnelConfig(name="broken", local_port=9000, remote_host=" ", remote_port=80)
        )
        store.save(ready_config)
        err = await self._start_expecting(store, StartFailure.INVALID_TUNNEL)
        assert "broken" in str(err)

    @pytest.mark.asyncio
    async def test_disabled_invalid_tunnel_ignored(
        self, store: ConfigStore, ready_config: AppConfig
    ) -> None:
        ready_config.tunnels_for("UAT").append(
            TunnelConfig(enabled=False, name="broken", local_port=0, remote_host="", remote_port=0)
        )
        store.save(ready_config)
        # gets past validation and fails at launch instead
        await self._start_expecting(store, StartFailure.LAUNCH_FAILED)

    @pytest.mark.asyncio
    async def test_missing_ssh_binary(self, store: ConfigStore, ready_config: AppConfig) -> None:
        store.save(ready_config)
        await self._start_expecting(store, StartFailure.LAUNCH_FAILED)


# ---------------------------------------------------------------------------
# Session lifecycle with a fake ssh
# ---------------------------------------------------------------------------


@posix_only
class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(
        self, store: ConfigStore, ready_config: AppConfig, make_script: Callable[[str, str], str]
    ) -> None:
        store.save(ready_config)
        ssh = make_script("ssh", 'echo "debug1: forwarding $*" >&2\n' + LONG_RUNNING)
        engine = TunnelEngine(store, ssh_binary=ssh, grace_period=0.3, stop_timeout=1.0)
        lines: list[str] = []

        await engine.start(lines.append)
        try:
            assert engine.is_connected()
            assert engine.state is TunnelState.CONNECTED
            session = engine.session
            assert isinstance(session, Connected)
            assert session.profile == "UAT"
        finally:
            result = await engine.stop(lines.append)

        assert result.was_running
        assert result.ok
        assert isinstance(engine.session, Idle)
        assert not engine.is_connected()
        assert session.process.returncode is not None
        assert "Connected" in lines
        assert "Disconnected" in lines
        assert any(line.startswith("[ssh] debug1: forwarding") and "15432:db.internal:5432" in line for line in lines)

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, store: ConfigStore) -> None:
        engine = TunnelEngine(store)
        result = await engine.stop()
        assert not result.was_running
        assert result.ok
        assert engine.state is TunnelState.IDLE
        # idempotent
        await engine.stop()
        assert engine.state is TunnelState.IDLE

    @pytest.mark.asyncio
    async def test_fast_exit(
        self, store: ConfigStore, ready_config: AppConfig, make_script: Callable[[str, str], str]
    ) -> None:
        store.save(ready_config)
        ssh = make_script("ssh", 'echo "deploy@bastion: Permission denied (publickey)." >&2\nexit 255')
        engine = TunnelEngine(store, ssh_binary=ssh, grace_period=0.5, stop_timeout=1.0)
        lines: list[str] = []

        with pytest.raises(SessionStartError) as exc_info:
            await engine.start(lines.append)

        err = exc_info.value
        assert err.reason is StartFailure.FAST_EXIT
        assert "code=255" in str(err)
        assert "authorized_keys" in str(err)
        assert "permission denied" in str(err).lower()
        assert engine.state is TunnelState.IDLE
        assert any("Permission denied" in line for line in lines)

    @pytest.mark.asyncio
    async def test_start_twice_leaves_one_process(
        self,
        store: ConfigStore,
        ready_config: AppConfig,
        make_script: Callable[[str, str], str],
        tmp_path: Path,
    ) -> None:
        store.save(ready_config)
        pids = tmp_path / "pids"
        ssh = make_script("ssh", f'echo $$ >> "{pids}"\n' + LONG_RUNNING)
        engine = TunnelEngine(store, ssh_binary=ssh, grace_period=0.3, stop_timeout=1.0)

        await engine.start()
        first = engine.session
        await engine.start()
        try:
            second = engine.session
            assert isinstance(first, Connected) and isinstance(second, Connected)
            assert first.process.pid != second.process.pid
            assert first.process.returncode is not None
            assert engine.is_connected()

            launched = [int(p) for p in pids.read_text().split()]
            alive = [pid for pid in launched if not _gone(pid)]
            assert alive == [second.process.pid]
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_concurrent_starts_leave_one_process(
        self, store: ConfigStore, ready_config: AppConfig, make_script: Callable[[str, str], str]
    ) -> None:
        store.save(ready_config)
        ssh = make_script("ssh", LONG_RUNNING)
        engine = TunnelEngine(store, ssh_binary=ssh, grace_period=0.2, stop_timeout=1.0)
        sessions: list[Connected] = []

        async def _start() -> None:
            await engine.start()
            assert isinstance(engine.session, Connected)
            sessions.append(engine.session)

        await asyncio.gather(_start(), _start())
        try:
            live = [s for s in sessions if s.alive]
            assert len(live) == 1
            assert live[0] is engine.session
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_config_reread_on_each_start(
        self, store: ConfigStore, ready_config: AppConfig, make_script: Callable[[str, str], str]
    ) -> None:
        store.save(ready_config)
        ssh = make_script("ssh", LONG_RUNNING)
        engine = TunnelEngine(store, ssh_binary=ssh, grace_period=0.2, stop_timeout=1.0)
        await engine.start()

        ready_config.profile_tunnels["UAT"] = [TunnelConfig(enabled=False)]
        store.save(ready_config)

        with pytest.raises(SessionStartError) as exc_info:
            await engine.start()
        assert exc_info.value.reason is StartFailure.NO_ENABLED_TUNNELS
        assert engine.state is TunnelState.IDLE

    @pytest.mark.asyncio
    async def test_stop_terminates_descendants(
        self, store: ConfigStore, ready_config: AppConfig, make_script: Callable[[str, str], str]
    ) -> None:
        store.save(ready_config)
        ssh = make_script("ssh", "sleep 30 &\nwait")
        engine = TunnelEngine(store, ssh_binary=ssh, grace_period=0.3, stop_timeout=1.0)

        await engine.start()
        session = engine.session
        assert isinstance(session, Connected)
        children = psutil.Process(session.process.pid).children(recursive=True)
        assert children

        result = await engine.stop()

        assert result.ok
        assert all(_gone(child) for child in children)

    @pytest.mark.asyncio
    async def test_failing_log_sink_does_not_break_start(
        self, store: ConfigStore, ready_config: AppConfig, make_script: Callable[[str, str], str]
    ) -> None:
        store.save(ready_config)
        ssh = make_script("ssh", 'echo "noise" >&2\n' + LONG_RUNNING)
        engine = TunnelEngine(store, ssh_binary=ssh, grace_period=0.3, stop_timeout=1.0)

        def _broken_sink(line: str) -> None:
            raise RuntimeError("sink is gone")

        await engine.start(_broken_sink)
        try:
            assert engine.is_connected()
        finally:
            result = await engine.stop(_broken_sink)
        assert result.ok
        assert engine.state is TunnelState.IDLE

    @pytest.mark.asyncio
    async def test_detects_exit_after_connect(
        self, store: ConfigStore, ready_config: AppConfig, make_script: Callable[[str, str], str]
    ) -> None:
        store.save(ready_config)
        ssh = make_script("ssh", "sleep 0.5")
        engine = TunnelEngine(store, ssh_binary=ssh, grace_period=0.1, stop_timeout=1.0)

        await engine.start()
        session = engine.session
        assert isinstance(session, Connected)
        await asyncio.wait_for(session.process.wait(), timeout=5)

        assert not engine.is_connected()
        result = await engine.stop()
        assert result.was_running
        assert engine.state is TunnelState.IDLE
