"""
Configuration management for Bashkeeper.

Config files are stored in ~/.bashkeeper/ (or $BASHKEEPER_HOME):
- config.yaml  - All settings (output limits, overflow directory, timeouts)
- .env         - Environment overrides loaded at startup
- logs/        - Rotating service log

This module provides:
- bashkeeper config          - Show current configuration
- bashkeeper config set      - Set a specific value
- bashkeeper config path     - Print the config file path

Precedence, lowest to highest: DEFAULT_CONFIG, config.yaml, environment
variables (including those loaded from .env).
"""

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml
from dotenv import load_dotenv

from bashkeeper_cli.colors import Colors, color

logger = logging.getLogger(__name__)


# =============================================================================
# Config paths
# =============================================================================

def get_bashkeeper_home() -> Path:
    """Get the Bashkeeper home directory (~/.bashkeeper)."""
    return Path(os.getenv("BASHKEEPER_HOME", Path.home() / ".bashkeeper"))

def get_config_path() -> Path:
    """Get the main config file path."""
    return get_bashkeeper_home() / "config.yaml"

def get_env_path() -> Path:
    """Get the .env file path."""
    return get_bashkeeper_home() / ".env"

def get_log_dir() -> Path:
    return get_bashkeeper_home() / "logs"

def ensure_bashkeeper_home():
    """Ensure the home directory structure exists."""
    get_log_dir().mkdir(parents=True, exist_ok=True)


# =============================================================================
# Config loading/saving
# =============================================================================

DEFAULT_CONFIG = {
    "output": {
        # Bytes kept per stream and per response before truncating
        "max_output_size": 51200,
        # Where full output is saved on overflow; empty = system temp dir
        "overflow_dir": "",
    },
    "run": {
        "timeout_ms": 30000,
        # Raw bytes read per stream before a synchronous command is killed
        "max_buffer": 10 * 1024 * 1024,
    },
    "background": {
        "max_chunks": 100,
        "recent_chunks": 10,
        "preview_bytes": 1000,
        "exited_ttl_seconds": 600,
        "max_exited": 64,
    },
    "logging": {
        "level": "INFO",
    },
}

# env var -> (dotted config key, type)
ENV_OVERRIDES = {
    "BASHKEEPER_MAX_OUTPUT_SIZE": ("output.max_output_size", int),
    "BASHKEEPER_OVERFLOW_DIR": ("output.overflow_dir", str),
    "BASHKEEPER_TIMEOUT_MS": ("run.timeout_ms", int),
    "BASHKEEPER_LOG_LEVEL": ("logging.level", str),
}


def _set_nested(config: dict, dotted_key: str, value):
    """Set a value at a nested dotted key path, creating intermediate dicts."""
    parts = dotted_key.split(".")
    current = config
    for part in parts[:-1]:
        if part not in current or not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base*, preserving nested defaults.

    Keys in *override* take precedence. If both values are dicts the merge
    recurses, so a user who overrides only ``output.overflow_dir`` keeps the
    default ``output.max_output_size``.
    """
    result = base.copy()
    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_env_file():
    """Load ~/.bashkeeper/.env into os.environ without overriding set variables."""
    env_path = get_env_path()
    if not env_path.exists():
        return
    try:
        load_dotenv(env_path, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(env_path, encoding="latin-1")


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply BASHKEEPER_* environment variables on top of *config* in place."""
    for env_var, (key, cast) in ENV_OVERRIDES.items():
        raw = os.getenv(env_var)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError:
            logger.warning("Ignoring %s=%r: expected %s", env_var, raw, cast.__name__)
            continue
        if cast is int and value <= 0:
            logger.warning("Ignoring %s=%r: must be a positive integer", env_var, raw)
            continue
        _set_nested(config, key, value)
    return config


def load_config() -> Dict[str, Any]:
    """Load configuration: defaults, then config.yaml, then environment overrides."""
    config_path = get_config_path()
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path.exists():
        try:
            with open(config_path) as f:
                user_config = yaml.safe_load(f) or {}
            if isinstance(user_config, dict):
                config = _deep_merge(config, user_config)
            else:
                logger.warning("Ignoring %s: top level is not a mapping", config_path)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to load config %s: %s", config_path, e)

    load_env_file()
    return apply_env_overrides(config)


def save_config(config: Dict[str, Any]):
    """Save configuration to config.yaml."""
    ensure_bashkeeper_home()
    with open(get_config_path(), "w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)


def _coerce(value: str):
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False
    if value.isdigit():
        return int(value)
    if value.replace(".", "", 1).isdigit():
        return float(value)
    return value


def set_config_value(key: str, value: str):
    """Set a configuration value in config.yaml (dotted keys, e.g. ``output.max_output_size``)."""
    # Read the raw user config (not merged with defaults) to avoid
    # dumping all default values back to the file
    config_path = get_config_path()
    user_config: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Rewriting unreadable config %s: %s", config_path, e)
            user_config = {}

    coerced = _coerce(value)
    _set_nested(user_config, key, coerced)
    save_config(user_config)
    print(f"✓ Set {key} = {coerced} in {config_path}")


# =============================================================================
# Config display
# =============================================================================

def show_config():
    """Display current configuration."""
    config = load_config()

    print()
    print(color("◆ Paths", Colors.CYAN, Colors.BOLD))
    print(f"  Config:       {get_config_path()}")
    print(f"  Env file:     {get_env_path()}")
    print(f"  Logs:         {get_log_dir()}")

    print()
    print(color("◆ Output", Colors.CYAN, Colors.BOLD))
    output = config.get("output", {})
    print(f"  Max size:     {output.get('max_output_size')} bytes")
    print(f"  Overflow dir: {output.get('overflow_dir') or color('(system temp dir)', Colors.DIM)}")

    print()
    print(color("◆ Run", Colors.CYAN, Colors.BOLD))
    run = config.get("run", {})
    print(f"  Timeout:      {run.get('timeout_ms')} ms")
    print(f"  Max buffer:   {run.get('max_buffer')} bytes")

    print()
    print(color("◆ Background", Colors.CYAN, Colors.BOLD))
    for key, value in config.get("background", {}).items():
        print(f"  {key + ':':<22}{value}")

    print()
    print(color("◆ Logging", Colors.CYAN, Colors.BOLD))
    print(f"  Level:        {config.get('logging', {}).get('level')}")

    overrides = [name for name in ENV_OVERRIDES if os.getenv(name)]
    if overrides:
        print()
        print(color(f"  Environment overrides active: {', '.join(overrides)}", Colors.YELLOW))
    print()


# =============================================================================
# Command handler
# =============================================================================

def config_command(args):
    """Handle config subcommands."""
    subcmd = getattr(args, "config_command", None)

    if subcmd is None or subcmd == "show":
        show_config()

    elif subcmd == "set":
        key = getattr(args, "key", None)
        value = getattr(args, "value", None)
        if not key or value is None:
            print("Usage: bashkeeper config set KEY VALUE")
            print()
            print("Examples:")
            print("  bashkeeper config set output.max_output_size 102400")
            print("  bashkeeper config set output.overflow_dir ~/.bashkeeper/overflow")
            sys.exit(1)
        set_config_value(key, value)

    elif subcmd == "path":
        print(get_config_path())

    else:
        print(f"Unknown config command: {subcmd}")
        sys.exit(1)
