"""Settings edit buffer: validate every field at once, then commit through the store."""

from __future__ import annotations

import copy
import logging
from collections import Counter
from dataclasses import dataclass, field, replace

from jumptray.config import ConfigStore
from jumptray.errors import ValidationError
from jumptray.models import AppConfig, JumpConfig, TunnelConfig

logger = logging.getLogger(__name__)

BASE_LOCAL_PORT = 2200
DEFAULT_REMOTE_HOST = "localhost"
DEFAULT_REMOTE_PORT = 22
MIN_PORT = 1
MAX_PORT = 65535


def _port_in_range(port: int) -> bool:
    return MIN_PORT <= port <= MAX_PORT


def parse_port(text: str) -> int | None:
    """Parse a port typed by the user, or None when it isn't a valid port."""
    try:
        port = int(text.strip())
    except ValueError:
        return None
    return port if _port_in_range(port) else None


@dataclass
class ValidationReport:
    """All problems found in an edit buffer, plus the cleaned-up values when there are none."""

    problems: list[str] = field(default_factory=list)
    jump: JumpConfig | None = None
    tunnels: list[TunnelConfig] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    @property
    def text(self) -> str:
        return "\n".join(self.problems)


class SettingsEditor:
    """A detached copy of the jump settings and one profile's tunnels.

    Nothing here touches the stored config until commit() succeeds, so a
    half-edited buffer is never visible to the tunnel engine.
    """

    def __init__(
        self,
        store: ConfigStore,
        config: AppConfig | None = None,
        profile: str | None = None,
    ) -> None:
        self._store = store
        self._config = copy.deepcopy(config) if config is not None else store.load()

        jump = self._config.jump
        self.jump_host = jump.host
        self.jump_port = str(jump.port if jump.port > 0 else 22)
        self.jump_user = jump.user

        self.profile = ""
        self.tunnels: list[TunnelConfig] = []
        self.selected_index: int | None = None
        self.select_profile(profile or self._config.active_profile)

    @property
    def profiles(self) -> list[str]:
        return list(self._config.profiles)

    def select_profile(self, name: str) -> None:
        """Switch the buffer to another profile, discarding unsaved tunnel edits."""
        if name not in self._config.profiles:
            raise ValueError(f"Unknown profile: {name}")
        self.profile = name
        self.tunnels = [replace(t) for t in self._config.tunnels_for(name)]
        self.selected_index = 0 if self.tunnels else None
        logger.debug("Loaded profile %s (%d tunnels)", name, len(self.tunnels))

    @property
    def selected(self) -> TunnelConfig | None:
        if self.selected_index is None:
            return None
        return self.tunnels[self.selected_index]

    def add_tunnel(self) -> TunnelConfig:
        """Append a tunnel on the lowest free local port at or above BASE_LOCAL_PORT."""
        used = {t.local_port for t in self.tunnels}
        port = BASE_LOCAL_PORT
        while port in used:
            port += 1

        tunnel = TunnelConfig(
            enabled=True,
            name=f"Tunnel-{port}",
            local_port=port,
            remote_host=DEFAULT_REMOTE_HOST,
            remote_port=DEFAULT_REMOTE_PORT,
        )
        self.tunnels.append(tunnel)
        self.selected_index = len(self.tunnels) - 1
        return tunnel

    def remove_selected(self, index: int | None = None) -> TunnelConfig | None:
        """Remove the tunnel at index (default: the selection) and move the selection."""
        if index is None:
            index = self.selected_index
        if index is None or not 0 <= index < len(self.tunnels):
            return None

        removed = self.tunnels.pop(index)
        if not self.tunnels:
            self.selected_index = None
        elif index >= len(self.tunnels):
            self.selected_index = len(self.tunnels) - 1
        else:
            self.selected_index = index
        return removed

    def validate(self) -> ValidationReport:
        """Check the whole buffer and report every problem found.

        On success the jump fields and tunnel names/hosts are trimmed in
        place and the report carries the values to commit.
        """
        problems: list[str] = []

        host = self.jump_host.strip()
        user = self.jump_user.strip()
        port = parse_port(self.jump_port)
        if not host:
            problems.append("Jump host must not be empty")
        if not user:
            problems.append("Jump user must not be empty")
        if port is None:
            problems.append(f"Jump port must be a number between {MIN_PORT} and {MAX_PORT}")

        if not self.tunnels:
            problems.append("At least one tunnel is required")
        elif not any(t.enabled for t in self.tunnels):
            problems.append("At least one tunnel must be enabled")

        counts = Counter(t.local_port for t in self.tunnels if t.enabled)
        duplicates = sorted(p for p, n in counts.items() if n > 1)
        if duplicates:
            problems.append(
                "Duplicate local ports among enabled tunnels: "
                + ", ".join(str(p) for p in duplicates)
            )

        for row, t in enumerate(self.tunnels, start=1):
            if not t.name.strip():
                problems.append(f"Tunnel {row}: name must not be empty")
            if not _port_in_range(t.local_port):
                problems.append(f"Tunnel {row}: local port must be between {MIN_PORT} and {MAX_PORT}")
            if not t.remote_host.strip():
                problems.append(f"Tunnel {row}: remote host must not be empty")
            if not _port_in_range(t.remote_port):
                problems.append(f"Tunnel {row}: remote port must be between {MIN_PORT} and {MAX_PORT}")

        if problems:
            return ValidationReport(problems=problems)

        assert port is not None
        self.jump_host = host
        self.jump_user = user
        self.jump_port = str(port)
        for t in self.tunnels:
            t.name = t.name.strip()
            t.remote_host = t.remote_host.strip()

        return ValidationReport(
            jump=JumpConfig(host=host, port=port, user=user),
            tunnels=[replace(t) for t in self.tunnels],
        )

    def commit(self) -> AppConfig:
        """Validate, then write the jump settings and this profile's tunnels to the store.

        Raises ValidationError (store untouched) or ConfigIOError.
        """
        report = self.validate()
        if not report.ok:
            raise ValidationError(report)
        assert report.jump is not None

        config = copy.deepcopy(self._config)
        config.jump = report.jump
        config.active_profile = self.profile
        config.set_tunnels(self.profile, report.tunnels)

        self._store.save(config)
        self._config = config
        logger.info("Saved settings for profile %s (%d tunnels)", self.profile, len(report.tunnels))
        return config
