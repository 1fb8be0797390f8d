"""Data models for the jump host, tunnels and the persisted app config."""

from __future__ import annotations

from dataclasses import dataclass, field

CONFIG_VERSION = 2
DEFAULT_PROFILE = "UAT"


def _fold(key: str) -> str:
    return key.replace("_", "").lower()


def get_field(data: dict[str, object], key: str, default: object = None) -> object:
    """Look up a key ignoring case and underscores (``local_port`` == ``LocalPort``)."""
    if key in data:
        return data[key]
    wanted = _fold(key)
    for k, v in data.items():
        if isinstance(k, str) and _fold(k) == wanted:
            return v
    return default


def has_key(data: dict[str, object], key: str) -> bool:
    wanted = _fold(key)
    return any(isinstance(k, str) and _fold(k) == wanted for k in data)


def as_port(value: object, default: int) -> int:
    """Accept a port as a number or a numeric string."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise TypeError(f"Invalid port: {value!r}")
    if isinstance(value, str):
        return int(value.strip())
    return int(value)  # type: ignore[arg-type]


def as_flag(value: object, default: bool) -> bool:
    """Accept only a real JSON boolean."""
    if value is None:
        return default
    if not isinstance(value, bool):
        raise TypeError(f"Invalid flag: {value!r}")
    return value


@dataclass
class JumpConfig:
    """The intermediate SSH server all forwards go through."""

    host: str = ""
    port: int = 22
    user: str = ""

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def to_dict(self) -> dict[str, object]:
        return {"host": self.host, "port": self.port, "user": self.user}

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> JumpConfig:
        return cls(
            host=str(get_field(data, "host", "") or ""),
            port=as_port(get_field(data, "port"), 22),
            user=str(get_field(data, "user", "") or ""),
        )


@dataclass
class TunnelConfig:
    """A single ``-L local_port:remote_host:remote_port`` forward."""

    enabled: bool = True
    name: str = "New Tunnel"
    local_port: int = 2200
    remote_host: str = "localhost"
    remote_port: int = 22

    def to_ssh_arg(self) -> str:
        return f"{self.local_port}:{self.remote_host}:{self.remote_port}"

    def to_dict(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "name": self.name,
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_port": self.remote_port,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TunnelConfig:
        return cls(
            enabled=as_flag(get_field(data, "enabled"), True),
            name=str(get_field(data, "name", "New Tunnel") or ""),
            local_port=as_port(get_field(data, "local_port"), 2200),
            remote_host=str(get_field(data, "remote_host", "localhost") or ""),
            remote_port=as_port(get_field(data, "remote_port"), 22),
        )


def tunnels_from_list(items: object) -> list[TunnelConfig]:
    if not isinstance(items, list):
        raise TypeError(f"Expected a list of tunnels, got {type(items).__name__}")
    tunnels = []
    for item in items:
        if not isinstance(item, dict):
            raise TypeError(f"Expected a tunnel object, got {type(item).__name__}")
        tunnels.append(TunnelConfig.from_dict(item))
    return tunnels


@dataclass
class AppConfig:
    """Top-level application configuration."""

    jump: JumpConfig = field(default_factory=JumpConfig)
    key_path: str = ""
    profiles: list[str] = field(default_factory=lambda: [DEFAULT_PROFILE])
    active_profile: str = DEFAULT_PROFILE
    auto_connect: bool = False
    profile_tunnels: dict[str, list[TunnelConfig]] = field(default_factory=dict)

    def tunnels_for(self, profile: str) -> list[TunnelConfig]:
        return self.profile_tunnels.get(profile, [])

    def set_tunnels(self, profile: str, tunnels: list[TunnelConfig]) -> None:
        self.profile_tunnels[profile] = tunnels

    def to_dict(self) -> dict[str, object]:
        return {
            "version": CONFIG_VERSION,
            "jump": self.jump.to_dict(),
            "key_path": self.key_path,
            "profiles": list(self.profiles),
            "active_profile": self.active_profile,
            "auto_connect": self.auto_connect,
            "profile_tunnels": {
                name: [t.to_dict() for t in tunnels]
                for name, tunnels in self.profile_tunnels.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> AppConfig:
        jump_data = get_field(data, "jump") or {}
        profiles_data = get_field(data, "profiles") or []
        tunnels_data = get_field(data, "profile_tunnels") or {}
        if not isinstance(jump_data, dict):
            raise TypeError("'jump' must be an object")
        if not isinstance(profiles_data, list):
            raise TypeError("'profiles' must be a list")
        if not isinstance(tunnels_data, dict):
            raise TypeError("'profile_tunnels' must be an object")
        return cls(
            jump=JumpConfig.from_dict(jump_data),
            key_path=str(get_field(data, "key_path", "") or ""),
            profiles=[str(p) for p in profiles_data if isinstance(p, str)],
            active_profile=str(get_field(data, "active_profile", "") or ""),
            auto_connect=as_flag(get_field(data, "auto_connect"), False),
            profile_tunnels={
                str(name): tunnels_from_list(items) for name, items in tunnels_data.items()
            },
        )
