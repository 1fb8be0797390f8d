"""Configuration persistence, normalization and legacy migration."""

from __future__ import annotations

import copy
import json
import logging
import shutil
import sys
from datetime import datetime
from pathlib import Path

from PySide6.QtCore import QStandardPaths

from jumptray.errors import BackupResult, ConfigIOError
from jumptray.key_manager import default_key_path
from jumptray.models import (
    DEFAULT_PROFILE,
    AppConfig,
    as_port,
    get_field,
    has_key,
    tunnels_from_list,
)

logger = logging.getLogger(__name__)

APP_DIR_NAME = "jumptray"
CONFIG_FILE_NAME = "config.json"

# Keys only the nested schema has. Profiles/ActiveProfile/KeyPath exist in both.
CURRENT_SCHEMA_KEYS = ("version", "jump", "profile_tunnels")
LEGACY_JUMP_KEYS = ("JumpHost", "JumpPort", "JumpUser")
LEGACY_TUNNELS_KEY = "Tunnels"


def default_config_dir() -> Path:
    """Per-user config directory: Application Support on macOS, the config location elsewhere."""
    if sys.platform == "darwin":
        location = QStandardPaths.StandardLocation.GenericDataLocation
    else:
        location = QStandardPaths.StandardLocation.GenericConfigLocation
    base = QStandardPaths.writableLocation(location)
    return (Path(base) if base else Path.home() / ".config") / APP_DIR_NAME


def normalize(config: AppConfig) -> AppConfig:
    """Return a copy of config with the document invariants restored."""
    cfg = copy.deepcopy(config)

    profiles: list[str] = []
    for name in cfg.profiles:
        name = name.strip()
        if name and name not in profiles:
            profiles.append(name)
    cfg.profiles = profiles or [DEFAULT_PROFILE]

    if cfg.active_profile not in cfg.profiles:
        cfg.active_profile = cfg.profiles[0]

    cfg.profile_tunnels.setdefault(cfg.active_profile, [])

    if not cfg.key_path.strip():
        cfg.key_path = default_key_path()

    if cfg.jump.port <= 0:
        cfg.jump.port = 22

    return cfg


def migrate_legacy(data: object) -> AppConfig | None:
    """Build a config from the flat legacy layout, or None when it doesn't apply."""
    if not isinstance(data, dict):
        return None

    has_jump = any(has_key(data, k) for k in LEGACY_JUMP_KEYS)
    has_tunnels = has_key(data, LEGACY_TUNNELS_KEY)
    if not has_jump and not has_tunnels:
        return None

    cfg = AppConfig()

    host = get_field(data, "JumpHost")
    if isinstance(host, str):
        cfg.jump.host = host
    user = get_field(data, "JumpUser")
    if isinstance(user, str):
        cfg.jump.user = user
    port = get_field(data, "JumpPort")
    if isinstance(port, (int, str)) and not isinstance(port, bool):
        try:
            cfg.jump.port = as_port(port, cfg.jump.port)
        except ValueError:
            logger.warning("Ignoring legacy JumpPort %r", port)

    key_path = get_field(data, "KeyPath")
    if isinstance(key_path, str):
        cfg.key_path = key_path

    profiles = get_field(data, "Profiles")
    if isinstance(profiles, list):
        names = [p.strip() for p in profiles if isinstance(p, str) and p.strip()]
        cfg.profiles = names or [DEFAULT_PROFILE]

    active = get_field(data, "ActiveProfile")
    if isinstance(active, str) and active.strip() in cfg.profiles:
        cfg.active_profile = active.strip()
    else:
        cfg.active_profile = cfg.profiles[0]

    if has_tunnels:
        try:
            tunnels = tunnels_from_list(get_field(data, LEGACY_TUNNELS_KEY))
        except (TypeError, ValueError) as e:
            logger.warning("Dropping unreadable legacy tunnel list: %s", e)
            tunnels = []
        cfg.set_tunnels(cfg.active_profile, tunnels)

    logger.info("Migrated legacy config (jump=%s, tunnels=%s)", has_jump, has_tunnels)
    return cfg


class ConfigStore:
    """Loads and saves AppConfig to a JSON file."""

    def __init__(self, config_path: Path | None = None) -> None:
        self.config_path = config_path or default_config_dir() / CONFIG_FILE_NAME
        self.last_recovery: BackupResult | None = None

    def exists(self) -> bool:
        return self.config_path.exists()

    def create_default(self) -> AppConfig:
        return normalize(AppConfig())

    def load(self) -> AppConfig:
        """Load config from disk. Never raises: corrupt files are backed up and reset."""
        self.last_recovery = None
        if not self.config_path.exists():
            logger.info("No config file found at %s, using defaults", self.config_path)
            return self.create_default()

        try:
            data = json.loads(self.config_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error("Failed to parse config at %s: %s", self.config_path, e)
            return self._backup_and_reset(f"unreadable document: {e}")

        config = self._parse_current(data)
        if config is None:
            config = migrate_legacy(data)
        if config is None:
            return self._backup_and_reset("unrecognized schema")
        return normalize(config)

    def save(self, config: AppConfig) -> None:
        """Save config to disk, creating parent directories as needed."""
        data = json.dumps(normalize(config).to_dict(), indent=2)
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(data + "\n", encoding="utf-8")
        except OSError as e:
            raise ConfigIOError(f"Could not write config to {self.config_path}: {e}") from e
        logger.info("Config saved to %s", self.config_path)

    def _parse_current(self, data: object) -> AppConfig | None:
        if not isinstance(data, dict) or not any(has_key(data, k) for k in CURRENT_SCHEMA_KEYS):
            return None
        try:
            return AppConfig.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Config at %s does not match the current schema: %s", self.config_path, e)
            return None

    def backup(self, reason: str) -> BackupResult:
        """Copy the current file aside with a timestamp. Best-effort."""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        target = self.config_path.with_name(f"config.bak_{stamp}.json")
        try:
            shutil.copyfile(self.config_path, target)
        except OSError as e:
            logger.warning("Could not back up %s: %s", self.config_path, e)
            return BackupResult(ok=False, reason=reason, error=str(e))
        logger.info("Backed up %s to %s", self.config_path, target)
        return BackupResult(ok=True, reason=reason, path=target)

    def _backup_and_reset(self, reason: str) -> AppConfig:
        logger.warning("Resetting config at %s (%s)", self.config_path, reason)
        self.last_recovery = self.backup(reason)

        fresh = self.create_default()
        try:
            self.save(fresh)
        except ConfigIOError as e:
            logger.error("Could not write default config: %s", e)
        return fresh
