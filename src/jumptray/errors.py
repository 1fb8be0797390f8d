"""Exceptions and best-effort outcomes for jumptray."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jumptray.settings import ValidationReport


class JumpTrayError(Exception):
    """Base exception for all jumptray errors."""


class ConfigIOError(JumpTrayError):
    """Raised when the config document cannot be written."""


class ValidationError(JumpTrayError):
    """Raised when an edit buffer is committed with one or more problems."""

    def __init__(self, report: ValidationReport) -> None:
        super().__init__("Settings are not valid, fix them before saving:\n" + report.text)
        self.report = report


class StartFailure(Enum):
    NO_ENABLED_TUNNELS = "no enabled tunnels"
    MISSING_CREDENTIALS = "jump host/user empty"
    KEY_NOT_FOUND = "key not found"
    INVALID_TUNNEL = "invalid tunnel"
    LAUNCH_FAILED = "launch failed"
    FAST_EXIT = "connection failed"


class SessionStartError(JumpTrayError):
    """Raised when a tunnel session cannot be started."""

    def __init__(self, reason: StartFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class KeyGenerationError(JumpTrayError):
    """Raised when ssh-keygen does not leave a usable key pair behind."""


@dataclass(frozen=True)
class BackupResult:
    """Outcome of copying a corrupt config aside before it is reset."""

    ok: bool
    reason: str
    path: Path | None = None
    error: str = ""


@dataclass(frozen=True)
class StopResult:
    """Outcome of tearing a session down. The engine is Idle either way."""

    was_running: bool
    ok: bool = True
    error: str = ""
