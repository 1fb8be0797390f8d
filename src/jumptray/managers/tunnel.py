"""SSH tunnel session lifecycle: one supervised ssh client at a time."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path

import psutil

from jumptray.config import ConfigStore
from jumptray.errors import SessionStartError, StartFailure, StopResult
from jumptray.key_manager import resolved_key_path
from jumptray.models import JumpConfig, TunnelConfig

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]

# Known SSH error patterns and their human-readable messages
SSH_ERROR_PATTERNS: list[tuple[str, str]] = [
    ("Address already in use", "Local port already in use"),
    ("Permission denied", "Authentication failed (permission denied)"),
    ("Host key verification failed", "Host key verification failed, check known_hosts"),
    ("Connection refused", "Connection refused by remote host"),
    ("Connection timed out", "Connection timed out"),
    ("Network is unreachable", "Network is unreachable"),
    ("No route to host", "No route to host"),
    ("Could not resolve hostname", "Could not resolve hostname"),
    ("Connection reset by peer", "Connection reset by remote host"),
    ("broken pipe", "Connection lost (broken pipe)"),
]

GRACE_PERIOD_S = 0.6
STOP_TIMEOUT_S = 3.0
KEEPALIVE_INTERVAL_S = 30
KEEPALIVE_COUNT_MAX = 3
STDERR_TAIL_LINES = 20


class TunnelState(Enum):
    IDLE = auto()
    CONNECTED = auto()


@dataclass(frozen=True)
class Idle:
    state: TunnelState = TunnelState.IDLE


@dataclass(frozen=True)
class Connected:
    """A launched ssh client plus the tasks pumping its output to the log sink."""

    process: asyncio.subprocess.Process
    profile: str
    readers: tuple[asyncio.Task[None], ...] = ()
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    state: TunnelState = TunnelState.CONNECTED

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


Session = Idle | Connected


def parse_ssh_error(stderr: str) -> str:
    """Extract a human-readable error from SSH stderr output."""
    stderr_lower = stderr.lower()
    for pattern, message in SSH_ERROR_PATTERNS:
        if pattern.lower() in stderr_lower:
            return message
    # Return the last non-empty line as fallback
    lines = [line.strip() for line in stderr.strip().splitlines() if line.strip()]
    return lines[-1] if lines else "Unknown SSH error"


def build_ssh_command(
    jump: JumpConfig,
    key_path: str,
    tunnels: list[TunnelConfig],
    ssh_binary: str = "ssh",
) -> list[str]:
    """Build the ssh command line for one session carrying every given forward."""
    cmd = [
        ssh_binary,
        "-p",
        str(jump.port),
        "-i",
        key_path,
        "-N",  # no remote command
        "-T",  # no pseudo-terminal
        "-o",
        "ExitOnForwardFailure=yes",
        "-o",
        f"ServerAliveInterval={KEEPALIVE_INTERVAL_S}",
        "-o",
        f"ServerAliveCountMax={KEEPALIVE_COUNT_MAX}",
        "-o",
        "StrictHostKeyChecking=accept-new",
    ]

    for tunnel in tunnels:
        cmd.extend(["-L", tunnel.to_ssh_arg()])

    cmd.append(jump.target)
    return cmd


def _emit(sink: LogSink | None, message: str) -> None:
    """Deliver one line to the sink. A failing sink loses that line, nothing else."""
    if sink is None:
        return
    try:
        sink(message)
    except Exception:
        logger.debug("Log sink dropped a line", exc_info=True)


async def _pump(stream: asyncio.StreamReader, sink: LogSink | None, tail: deque[str] | None) -> None:
    try:
        async for raw in stream:
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            if tail is not None:
                tail.append(line)
            logger.debug("[ssh] %s", line)
            _emit(sink, f"[ssh] {line}")
    except ValueError as e:
        # line longer than the stream buffer limit
        logger.warning("Stopped reading ssh output: %s", e)


class TunnelEngine:
    """Starts, stops and watches the single ssh client carrying all forwards."""

    def __init__(
        self,
        store: ConfigStore,
        ssh_binary: str = "ssh",
        grace_period: float = GRACE_PERIOD_S,
        stop_timeout: float = STOP_TIMEOUT_S,
    ) -> None:
        self._store = store
        self._ssh_binary = ssh_binary
        self._grace_period = grace_period
        self._stop_timeout = stop_timeout
        self._session: Session = Idle()
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> TunnelState:
        return self._session.state

    def is_connected(self) -> bool:
        session = self._session
        return isinstance(session, Connected) and session.alive

    async def start(self, log: LogSink | None = None) -> None:
        """Stop any running session, then launch ssh for the active profile.

        The config is re-read from the store on every call. Raises
        SessionStartError with a distinct reason for each kind of failure;
        the engine is Idle whenever it raises.
        """
        async with self._lock:
            await self._stop(log)
            await self._start(log)

    async def stop(self, log: LogSink | None = None) -> StopResult:
        """Terminate the session and its process tree. Never raises."""
        async with self._lock:
            return await self._stop(log)

    async def _start(self, log: LogSink | None) -> None:
        config = self._store.load()
        profile = config.active_profile
        tunnels = [t for t in config.tunnels_for(profile) if t.enabled]

        if not tunnels:
            raise SessionStartError(
                StartFailure.NO_ENABLED_TUNNELS, f"No enabled tunnels in profile: {profile}"
            )

        host = config.jump.host.strip()
        user = config.jump.user.strip()
        if not host or not user:
            raise SessionStartError(
                StartFailure.MISSING_CREDENTIALS,
                "Jump host/user is empty. Fill in Settings and save.",
            )

        key_path = str(resolved_key_path(config.key_path))
        if not Path(key_path).is_file():
            raise SessionStartError(
                StartFailure.KEY_NOT_FOUND,
                f"SSH private key not found: {key_path} (generate an SSH key first)",
            )

        for t in tunnels:
            if t.local_port <= 0 or t.remote_port <= 0 or not t.remote_host.strip():
                raise SessionStartError(
                    StartFailure.INVALID_TUNNEL, f"Invalid tunnel config: {t.name}"
                )

        jump = JumpConfig(host=host, port=config.jump.port, user=user)
        cmd = build_ssh_command(jump, key_path, tunnels, self._ssh_binary)
        logger.info("Starting tunnel session (%s): %s", profile, " ".join(cmd))
        _emit(log, f"Starting SSH tunnel ({profile})...")
        _emit(log, " ".join(cmd))

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SessionStartError(
                StartFailure.LAUNCH_FAILED, f"Failed to start {self._ssh_binary}: {e}"
            ) from e

        tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        assert process.stdout is not None and process.stderr is not None
        readers = (
            asyncio.create_task(_pump(process.stdout, log, None)),
            asyncio.create_task(_pump(process.stderr, log, tail)),
        )
        session = Connected(process=process, profile=profile, readers=readers, stderr_tail=tail)
        self._session = session

        # Give ssh time to fail fast if a forward can't bind or auth fails
        await asyncio.sleep(self._grace_period)

        if not session.alive:
            # Let the readers drain what ssh printed before it died
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.gather(*readers), timeout=self._stop_timeout)
            await self._stop(log)
            reason = parse_ssh_error("\n".join(tail)) if tail else ""
            message = (
                f"SSH exited immediately (code={process.returncode}). "
                "Check key / authorized_keys / host / port."
            )
            if reason:
                message += f" ({reason})"
            raise SessionStartError(StartFailure.FAST_EXIT, message)

        logger.info("Tunnel session connected (pid=%s, %d forwards)", process.pid, len(tunnels))
        _emit(log, "Connected")

    async def _stop(self, log: LogSink | None) -> StopResult:
        session = self._session
        if not isinstance(session, Connected):
            return StopResult(was_running=False)

        error = ""
        try:
            if session.alive:
                _emit(log, "Stopping SSH...")
                await self._terminate_tree(session.process)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning("Error stopping ssh (pid=%s): %s", session.process.pid, error)
            _emit(log, f"Stop error: {error}")
        finally:
            self._session = Idle()
            for task in session.readers:
                task.cancel()

        logger.info("Tunnel session stopped")
        _emit(log, "Disconnected")
        return StopResult(was_running=True, ok=not error, error=error)

    async def _terminate_tree(self, process: asyncio.subprocess.Process) -> None:
        """Terminate ssh and everything it spawned, killing what ignores SIGTERM."""
        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []

        for child in children:
            with contextlib.suppress(psutil.NoSuchProcess):
                child.terminate()

        if process.returncode is None:
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("ssh (pid=%s) ignored terminate, killing", process.pid)
            process.kill()
            await process.wait()

        if children:
            _, alive = await asyncio.to_thread(psutil.wait_procs, children, timeout=self._stop_timeout)
            for child in alive:
                with contextlib.suppress(psutil.NoSuchProcess):
                    child.kill()
