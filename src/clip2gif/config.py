"""
Configuration management for clip2gif.

Handles:
- XDG Base Directory compliance
- TOML/INI configuration file loading
- Config dataclass with all options
- Configuration merging (system -> user -> CLI)
- Automatic script mode detection
"""

import configparser
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

# -------------------- SCRIPT MODE DETECTION --------------------


def is_script_mode() -> bool:
    """
    Detect if running non-interactively.

    Returns True if:
    - stdout is not a TTY (piped or redirected)
    - NO_COLOR environment variable is set
    - CLIP2GIF_SCRIPT_MODE environment variable is set
    """
    try:
        if not sys.stdout.isatty():
            return True
    except (AttributeError, ValueError):
        return True

    if os.getenv("NO_COLOR") or os.getenv("CLIP2GIF_SCRIPT_MODE"):
        return True

    return False


# Try TOML support (Python 3.11+ or tomli package)
try:
    import tomllib  # Python 3.11+

    TOML_AVAILABLE = True
except ImportError:
    try:
        import tomli as tomllib  # pip install tomli

        TOML_AVAILABLE = True
    except ImportError:
        TOML_AVAILABLE = False


# -------------------- XDG DIRECTORIES --------------------


def get_xdg_config_home() -> Path:
    """Get XDG config home directory."""
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def get_xdg_state_home() -> Path:
    """Get XDG state home directory."""
    return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))


def get_xdg_cache_home() -> Path:
    """Get XDG cache home directory."""
    return Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))


def get_app_dirs() -> Dict[str, Path]:
    """Return all application directories, creating them if needed."""
    dirs = {
        "config": get_xdg_config_home() / "clip2gif",
        "state": get_xdg_state_home() / "clip2gif",
        "logs": get_xdg_state_home() / "clip2gif" / "logs",
        "cache": get_xdg_cache_home() / "clip2gif",
        "engine": get_xdg_cache_home() / "clip2gif" / "engine",
        "tmp": get_xdg_cache_home() / "clip2gif" / "tmp",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs


# -------------------- CONFIGURATION DATACLASS --------------------

# "base|label"; system: resolves ffmpeg/ffprobe from PATH
DEFAULT_MIRRORS = ["system:|system ffmpeg"]


@dataclass
class Config:
    """All configuration options for clip2gif."""

    # Output settings
    output_dir: Optional[str] = None
    width: int = 480
    height: str = "auto"
    fps: int = 15
    quality: str = "balanced"
    filter: str = "none"
    loop: bool = True

    # Engine
    mirrors: List[str] = field(default_factory=lambda: list(DEFAULT_MIRRORS))
    timeout: float = 30.0  # per attempt, seconds
    http_timeout: float = 60.0

    # UI settings
    progress: bool = True
    json_progress: bool = False

    # Debug
    debug: bool = False

    def apply_script_mode(self) -> None:
        """Disable the progress display when not attached to a terminal."""
        if is_script_mode():
            self.progress = False

    @classmethod
    def for_library(cls, **kwargs) -> "Config":
        """
        Create a Config instance for library usage (no progress display).

        Example:
            >>> config = Config.for_library(width=320, quality="fast")
        """
        defaults: Dict[str, Any] = {"progress": False}
        defaults.update(kwargs)
        return cls(**defaults)


# -------------------- CONFIG FILE LOADING --------------------


def _parse_ini_value(value: str):
    """Parse INI value: bool, int, float, list (comma-sep), or string."""
    v = value.strip()
    if not v:
        return ""
    if v.lower() in ("true", "yes", "on"):
        return True
    if v.lower() in ("false", "no", "off"):
        return False
    try:
        return int(v)
    except ValueError:
        pass
    try:
        return float(v)
    except ValueError:
        pass
    if "," in v:
        return [x.strip() for x in v.split(",") if x.strip()]
    return v


def _load_ini_config(path: Path) -> Dict[str, Any]:
    """Load INI file and convert to nested dict."""
    cp = configparser.ConfigParser(interpolation=None)
    cp.read(path)
    result: Dict[str, Any] = {}
    for section in cp.sections():
        result[section] = {}
        for key, value in cp.items(section):
            result[section][key] = _parse_ini_value(value)
    return result


def _load_single_config(config_dir: Path) -> Dict[str, Any]:
    """Load config from a single directory (TOML or INI file)."""
    toml_path = config_dir / "config.toml"
    ini_path = config_dir / "config.ini"

    if TOML_AVAILABLE and toml_path.exists():
        try:
            with toml_path.open("rb") as f:
                return dict(tomllib.load(f))
        except (OSError, tomllib.TOMLDecodeError) as e:
            print(f"Warning: Failed to load {toml_path}: {e}", file=sys.stderr)
            return {}
    elif ini_path.exists():
        try:
            return _load_ini_config(ini_path)
        except (OSError, configparser.Error) as e:
            print(f"Warning: Failed to load {ini_path}: {e}", file=sys.stderr)
            return {}
    return {}


def _deep_merge_dicts(base: dict, override: dict) -> dict:
    """Deep merge two dicts, with override taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def load_config_file(config_dir: Path, system_config_dir: Path = Path("/etc/clip2gif")) -> dict:
    """
    Load config with priority:
    1. User config: ~/.config/clip2gif/config.toml (highest priority)
    2. System config: /etc/clip2gif/config.toml (lowest priority, optional)
    """
    system_config = {}
    if system_config_dir.exists():
        system_config = _load_single_config(system_config_dir)

    user_config = _load_single_config(config_dir)

    if system_config and user_config:
        return _deep_merge_dicts(system_config, user_config)
    elif user_config:
        return user_config
    elif system_config:
        return system_config
    return {}


def _get_default_config_toml() -> str:
    """Return default config as TOML string."""
    return """# clip2gif configuration file
# This file is auto-generated on first run

[output]
# dir = "~/Pictures/gifs"
width = 480
height = "auto"  # "auto" or pixels
fps = 15  # 8, 12, 15, 20, 24 or 30
quality = "balanced"  # fast, balanced, best
filter = "none"  # none, sharpen, vintage, bright
loop = true

[engine]
# Tried in order after the last source that worked.
# Each entry is "base" or "base|label"; base is an https:// or file://
# directory holding engine.json, ffmpeg and (optionally) ffprobe,
# or "system:" for the binaries on PATH.
mirrors = ["system:|system ffmpeg"]
timeout = 30  # seconds per attempt

[ui]
progress = true
json_progress = false
"""


def _get_default_config_ini() -> str:
    """Return default config as INI string."""
    return """# clip2gif configuration file
# This file is auto-generated on first run

[output]
width = 480
height = auto
fps = 15
quality = balanced
filter = none
loop = true

[engine]
# Comma-separated, tried in order
mirrors = system:|system ffmpeg
timeout = 30

[ui]
progress = true
json_progress = false
"""


def save_default_config(config_dir: Path) -> Path:
    """Create default config file (TOML if available, else INI). Returns path."""
    config_dir.mkdir(parents=True, exist_ok=True)

    if TOML_AVAILABLE:
        path = config_dir / "config.toml"
        if not path.exists():
            path.write_text(_get_default_config_toml())
        return path
    else:
        path = config_dir / "config.ini"
        if not path.exists():
            path.write_text(_get_default_config_ini())
        return path


def apply_config_to_args(file_config: dict, cfg: Config, explicit: Optional[Iterable[str]] = None) -> None:
    """
    Apply file config values to a Config instance.

    ``explicit`` names the Config attributes given on the command line;
    those keep their value even when it equals the default. Without it,
    only values already changed from their defaults are kept.
    """
    default_cfg = Config()
    explicit = set(explicit) if explicit is not None else None

    mappings = {
        ("output", "dir"): "output_dir",
        ("output", "width"): "width",
        ("output", "height"): "height",
        ("output", "fps"): "fps",
        ("output", "quality"): "quality",
        ("output", "filter"): "filter",
        ("output", "loop"): "loop",
        ("engine", "mirrors"): "mirrors",
        ("engine", "timeout"): "timeout",
        ("engine", "http_timeout"): "http_timeout",
        ("ui", "progress"): "progress",
        ("ui", "json_progress"): "json_progress",
    }

    for (section, key), attr_name in mappings.items():
        if section in file_config and key in file_config[section]:
            file_val = file_config[section][key]
            if explicit is not None:
                if attr_name in explicit:
                    continue
            elif getattr(cfg, attr_name) != getattr(default_cfg, attr_name):
                continue

            if attr_name == "mirrors":
                if isinstance(file_val, str) and file_val:
                    file_val = [file_val]
                if not isinstance(file_val, list) or not file_val:
                    continue
            elif attr_name == "height":
                file_val = str(file_val)
            elif attr_name == "output_dir":
                file_val = os.path.expanduser(str(file_val))
            setattr(cfg, attr_name, file_val)
