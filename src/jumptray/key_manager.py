"""SSH key generation, connectivity probe and key installation command."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from jumptray.errors import KeyGenerationError
from jumptray.models import JumpConfig

logger = logging.getLogger(__name__)

DEFAULT_KEY_NAME = "stp_tunnel_ed25519"
KEY_COMMENT = "jumptray"
PROBE_TOKEN = "SSH_OK"


def default_key_path() -> str:
    """Return the platform-default private key location (``~/.ssh/stp_tunnel_ed25519``)."""
    return str(Path.home() / ".ssh" / DEFAULT_KEY_NAME)


def resolved_key_path(key_path: str | Path) -> Path:
    """Expand ``~`` in a configured key path, falling back to the default key."""
    return Path(str(key_path).strip() or default_key_path()).expanduser()


def public_key_path(key_path: str | Path) -> Path:
    return Path(str(key_path) + ".pub")


def key_exists(key_path: str | Path) -> bool:
    return Path(key_path).is_file() and public_key_path(key_path).is_file()


def generate_key(key_path: str | Path, keygen_binary: str = "ssh-keygen") -> Path:
    """Generate an Ed25519 keypair at key_path unless one is already there.

    Runs ssh-keygen synchronously (it's instant with empty passphrase).
    Success means both the private and the public file exist afterward.
    """
    key_path = resolved_key_path(key_path)
    if key_exists(key_path):
        logger.info("SSH key already present at %s", key_path)
        return key_path

    key_dir = key_path.parent
    if not key_dir.exists():
        key_dir.mkdir(parents=True)
        os.chmod(key_dir, 0o700)

    try:
        result = subprocess.run(
            [
                keygen_binary,
                "-t", "ed25519",
                "-f", str(key_path),
                "-N", "",
                "-C", KEY_COMMENT,
            ],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        raise KeyGenerationError(f"Could not run {keygen_binary}: {e}") from e

    if not key_exists(key_path):
        detail = result.stderr.strip() or f"exit code {result.returncode}"
        raise KeyGenerationError(f"Key generation failed (files not found): {detail}")

    logger.info("Generated SSH key: %s", key_path)
    return key_path


@dataclass(frozen=True)
class ProbeResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and PROBE_TOKEN in self.stdout


def build_probe_command(jump: JumpConfig, key_path: str, ssh_binary: str = "ssh") -> list[str]:
    cmd = [
        ssh_binary,
        "-p", str(jump.port),
        "-o", "StrictHostKeyChecking=accept-new",
        "-o", "BatchMode=yes",
    ]
    if key_path:
        cmd.extend(["-i", key_path])
    cmd.append(jump.target)
    cmd.append(f"echo {PROBE_TOKEN}")
    return cmd


async def probe_connection(
    jump: JumpConfig, key_path: str, ssh_binary: str = "ssh"
) -> ProbeResult:
    """Connect to the jump host once and run a fixed echo command."""
    cmd = build_probe_command(jump, key_path, ssh_binary)
    logger.info("Probing %s", jump.target)
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    result = ProbeResult(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
    )
    if not result.ok:
        logger.warning("Probe of %s failed (code=%s): %s", jump.target, result.exit_code, result.stderr)
    return result


def build_install_command(user: str, host: str, port: int, public_key: str | Path) -> str:
    """Build the one-time command that appends a public key to authorized_keys.

    The command is meant for an interactive terminal: the user types the
    jump host password once and the key is installed.
    """
    remote = (
        "mkdir -p ~/.ssh && chmod 700 ~/.ssh && "
        "cat >> ~/.ssh/authorized_keys && chmod 600 ~/.ssh/authorized_keys && "
        "echo 'SSH key installed successfully'"
    )
    pub = Path(public_key).as_posix()
    return (
        f"ssh -p {port} -o StrictHostKeyChecking=accept-new "
        f"{shlex.quote(f'{user}@{host}')} {shlex.quote(remote)} < {shlex.quote(pub)}"
    )
