"""Runtime configuration for puls."""

import argparse
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BOOT_CONFIG = "/etc/default/grub"

MIN_REFRESH = 0.1
MAX_REFRESH = 10.0
MIN_HISTORY = 10
MAX_HISTORY = 300


@dataclass(slots=True, frozen=True)
class AppConfig:
    """
    Immutable settings, fixed at startup.

    Out-of-range values are clamped rather than rejected.
    """

    safe_mode: bool = False
    refresh_interval: float = 1.0  # Seconds between ticks
    history_length: int = 60
    adapter_timeout: float | None = None  # Defaults to half the refresh interval
    stale_ticks: int = 3  # Ticks a stale value survives before turning N/A
    enable_containers: bool = True
    enable_gpu: bool = True
    enable_network: bool = True
    show_system_processes: bool = False
    container_engine: str = "docker"
    frame_rate: int = 30
    boot_config_path: str = DEFAULT_BOOT_CONFIG

    def __post_init__(self) -> None:
        refresh = min(max(float(self.refresh_interval), MIN_REFRESH), MAX_REFRESH)
        object.__setattr__(self, "refresh_interval", refresh)
        object.__setattr__(
            self, "history_length", min(max(int(self.history_length), MIN_HISTORY), MAX_HISTORY)
        )
        # An adapter must always give up before the tick it belongs to ends.
        timeout = refresh / 2 if self.adapter_timeout is None else float(self.adapter_timeout)
        object.__setattr__(self, "adapter_timeout", min(max(timeout, 0.01), refresh * 0.9))
        object.__setattr__(self, "stale_ticks", max(0, int(self.stale_ticks)))
        object.__setattr__(self, "frame_rate", min(max(int(self.frame_rate), 1), 60))

    @property
    def frame_interval(self) -> float:
        """Seconds between render frames."""
        return 1.0 / self.frame_rate

    def disabled_sources(self) -> frozenset[str]:
        """Names of the sources switched off by flags."""
        disabled = set()
        if not self.enable_containers:
            disabled.add("containers")
        if not self.enable_gpu:
            disabled.add("gpu")
        if not self.enable_network:
            disabled.add("network")
        return frozenset(disabled)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AppConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        return cls(**{k: v for k, v in data.items() if k in known})

    def with_overrides(self, **overrides: Any) -> "AppConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def with_args(self, args: argparse.Namespace) -> "AppConfig":
        """Apply command-line flags on top of this config."""
        return self.with_overrides(
            safe_mode=True if args.safe else None,
            refresh_interval=args.refresh,
            history_length=args.history,
            enable_gpu=False if args.no_gpu else None,
            enable_containers=False if args.no_docker else None,
            enable_network=False if args.no_network else None,
            show_system_processes=True if args.show_system else None,
        )


def default_config_path() -> Path:
    """Return the per-user config file location."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "puls" / "config.json"


def default_log_path() -> Path:
    """Return the per-user log file location."""
    xdg = os.environ.get("XDG_STATE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "state"
    return base / "puls" / "puls.log"


def load_config(path: Path | None = None) -> AppConfig:
    """
    Load settings from a JSON file.

    A missing file gives the defaults. An unreadable or malformed file is logged
    and also gives the defaults.
    """
    p = path or default_config_path()
    if not p.exists():
        return AppConfig()
    try:
        with open(p, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read config %s: %s", p, e)
        return AppConfig()
    if not isinstance(obj, dict):
        logger.warning("Config %s is not a JSON object, using defaults", p)
        return AppConfig()
    try:
        return AppConfig.from_mapping(obj)
    except (TypeError, ValueError) as e:
        logger.warning("Invalid value in config %s: %s", p, e)
        return AppConfig()
