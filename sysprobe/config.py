#!/usr/bin/env python3
"""
Configuration loading for sysprobe.

Settings come from INI files read in order (system, then user, then an
explicit --config path), later files overriding earlier ones. Command line
flags are applied on top by main.py.
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from .modules.errors import ValidationError

logger = logging.getLogger("sysprobe.config")

SYSTEM_CONFIG = "/etc/sysprobe/sysprobe.conf"
USER_CONFIG = os.path.join("~", ".config", "sysprobe", "sysprobe.conf")
DEFAULT_PATHS = (SYSTEM_CONFIG, USER_CONFIG)
OUTPUT_FORMATS = ("txt", "json", "html")
COLLECTOR_NAMES = ("storage", "raid", "graphics", "network", "system", "logs")


class ConfigError(ValidationError):
    """Configuration file is unreadable or holds an invalid value."""


@dataclass
class Settings:
    # [runner]
    timeout: float = 10.0
    jobs: int = 1
    benchmark_grace: float = 5.0
    # [benchmark]
    benchmark_duration: float = 30.0
    benchmark_interval: float = 1.0
    payload_mb: int = 1024
    benchmark_directory: Optional[str] = None
    # [graphics]
    compositor: Optional[str] = None
    home: Optional[str] = None
    # [network]
    ping_host: str = "google.com"
    ping_count: int = 3
    # [storage]
    scan_root: str = "/"
    large_file_size: str = "+1G"
    # [logs]
    log_hours: float = 1.0
    # [output]
    output_format: str = "txt"
    output_directory: Optional[str] = None
    # [collectors]
    collectors: Dict[str, bool] = field(default_factory=dict)
    loaded_from: List[str] = field(default_factory=list)

    def validate(self) -> "Settings":
        """Raise ConfigError on the first out-of-range value."""
        if self.timeout <= 0:
            raise ConfigError(f"[runner] timeout must be positive, got {self.timeout}")
        if self.jobs < 1:
            raise ConfigError(f"[runner] jobs must be at least 1, got {self.jobs}")
        if self.benchmark_grace < 0:
            raise ConfigError(f"[runner] benchmark_grace must not be negative, got {self.benchmark_grace}")
        if self.benchmark_duration <= 0:
            raise ConfigError(f"[benchmark] duration must be positive, got {self.benchmark_duration}")
        if not 0 < self.benchmark_interval <= self.benchmark_duration:
            raise ConfigError(f"[benchmark] interval must be positive and at most the duration, "
                              f"got {self.benchmark_interval}")
        if self.payload_mb <= 0:
            raise ConfigError(f"[benchmark] payload_mb must be positive, got {self.payload_mb}")
        if self.ping_count <= 0:
            raise ConfigError(f"[network] ping_count must be positive, got {self.ping_count}")
        if self.log_hours <= 0:
            raise ConfigError(f"[logs] hours must be positive, got {self.log_hours}")
        if self.output_format not in OUTPUT_FORMATS:
            raise ConfigError(f"[output] format must be one of {', '.join(OUTPUT_FORMATS)}, "
                              f"got {self.output_format!r}")
        return self


def compositor_from_environment(environ: Mapping[str, str]) -> Optional[str]:
    """Guess the compositor from WAYLAND_COMPOSITOR or XDG_CURRENT_DESKTOP."""
    value = environ.get("WAYLAND_COMPOSITOR") or environ.get("XDG_CURRENT_DESKTOP") or ""
    # XDG_CURRENT_DESKTOP may be a list such as "ubuntu:GNOME"
    names = [name for name in value.lower().split(":") if name]
    return names[-1] if names else None


def _get(parser: configparser.ConfigParser, section: str, option: str, getter: str, default):
    if not parser.has_option(section, option):
        return default
    try:
        return getattr(parser, getter)(section, option)
    except ValueError as e:
        raise ConfigError(f"[{section}] {option}: {e}")


def load_settings(config_path: Optional[str] = None, search_paths: Optional[Sequence[str]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the configuration files.

    Args:
        config_path: Explicit file that must exist (the --config option)
        search_paths: Optional files read first if present (DEFAULT_PATHS)
        environ: Environment used for the compositor default

    Returns:
        Validated Settings
    """
    environ = os.environ if environ is None else environ
    parser = configparser.ConfigParser()
    search_paths = DEFAULT_PATHS if search_paths is None else search_paths
    paths = [os.path.expanduser(p) for p in search_paths]
    if config_path:
        if not os.path.isfile(config_path):
            raise ConfigError(f"Configuration file not found: {config_path}")
        paths.append(config_path)

    try:
        loaded = parser.read(paths)
    except (configparser.Error, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot parse configuration: {e}")
    if config_path and os.path.abspath(config_path) not in [os.path.abspath(p) for p in loaded]:
        raise ConfigError(f"Configuration file not readable: {config_path}")
    for path in loaded:
        logger.debug("Loaded configuration from %s", path)

    defaults = Settings()
    settings = Settings(
        timeout=_get(parser, "runner", "timeout", "getfloat", defaults.timeout),
        jobs=_get(parser, "runner", "jobs", "getint", defaults.jobs),
        benchmark_grace=_get(parser, "runner", "benchmark_grace", "getfloat", defaults.benchmark_grace),
        benchmark_duration=_get(parser, "benchmark", "duration", "getfloat", defaults.benchmark_duration),
        benchmark_interval=_get(parser, "benchmark", "interval", "getfloat", defaults.benchmark_interval),
        payload_mb=_get(parser, "benchmark", "payload_mb", "getint", defaults.payload_mb),
        benchmark_directory=_get(parser, "benchmark", "directory", "get", None) or None,
        compositor=(_get(parser, "graphics", "compositor", "get", None)
                    or compositor_from_environment(environ)),
        home=_get(parser, "graphics", "home", "get", None) or environ.get("HOME"),
        ping_host=_get(parser, "network", "ping_host", "get", defaults.ping_host),
        ping_count=_get(parser, "network", "ping_count", "getint", defaults.ping_count),
        scan_root=_get(parser, "storage", "scan_root", "get", defaults.scan_root),
        large_file_size=_get(parser, "storage", "large_file_size", "get", defaults.large_file_size),
        log_hours=_get(parser, "logs", "hours", "getfloat", defaults.log_hours),
        output_format=_get(parser, "output", "format", "get", defaults.output_format),
        output_directory=_get(parser, "output", "directory", "get", None) or None,
        loaded_from=list(loaded),
    )
    if parser.has_section("collectors"):
        for name in parser.options("collectors"):
            if name not in COLLECTOR_NAMES:
                logger.warning("Ignoring unknown collector %r in [collectors]", name)
                continue
            settings.collectors[name] = _get(parser, "collectors", name, "getboolean", False)
    return settings.validate()


DEFAULT_CONFIG = """# Default configuration for sysprobe
# Later files override earlier ones: /etc/sysprobe/sysprobe.conf,
# ~/.config/sysprobe/sysprobe.conf, then --config PATH.

[runner]
# Seconds before an external command is killed
timeout = 10
# Collectors run in parallel when greater than 1
jobs = 1
# Extra seconds allowed to benchmark commands beyond the requested duration
benchmark_grace = 5

[benchmark]
duration = 30
interval = 1
payload_mb = 1024
# Scratch directory for storage benchmarks (system temp dir when empty)
directory =

[graphics]
# kwin, mutter, sway, hyprland, xfwm4 ... (taken from the environment when empty)
compositor =

[network]
ping_host = google.com
ping_count = 3

[storage]
scan_root = /
large_file_size = +1G

[logs]
hours = 1

[output]
# txt, json or html
format = txt
directory =

# Collectors checked by default in the menu (true/false)
[collectors]
storage = true
raid = true
graphics = true
network = true
system = true
logs = true
"""


def write_default_config(path: str, overwrite: bool = False) -> str:
    """Write a commented default configuration file and return its path."""
    path = os.path.expanduser(path)
    if os.path.exists(path) and not overwrite:
        raise ConfigError(f"Refusing to overwrite existing file: {path}")
    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            f.write(DEFAULT_CONFIG)
    except OSError as e:
        raise ConfigError(f"Failed to write {path}: {e}")
    logger.info("Created file: %s", path)
    return path
