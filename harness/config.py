"""
Configuration for the network sweep harness

Author: Vítor Eulálio Reis

This module contains the default values for every tunable, the YAML loader
and the environment overrides. Components receive the full nested config
dict and read their own section, e.g. config["trial"]["retries"].

Precedence (lowest to highest):
    1. Defaults in this module
    2. YAML file (config/harness_config.yaml by default)
    3. Environment variables (same names the original shell scripts used)
"""

import copy
import logging
import os
import shutil
from typing import Any, Dict, Mapping, Optional

import yaml

from harness.errors import ConfigurationError
from harness.models import SweepRole
from harness.shaping import parse_bandwidth_kbps, parse_delay_ms
from harness.sizes import parse_size

logger = logging.getLogger(__name__)

# =============================================================================
# ENDPOINT CONSTANTS
# =============================================================================
DEFAULT_SERVER_ADDRESS = "10.10.1.2"  # Server VM private IP
DEFAULT_PORT = 3120
DEFAULT_CLIENT_BIN = "./client"
DEFAULT_SERVER_BIN = "./server"

# =============================================================================
# TRIAL TIMING CONSTANTS
# =============================================================================
DEFAULT_RETRIES = 3  # Client attempts per grid cell
DEFAULT_TIMEOUT_SEC = 120.0  # Wall-clock limit for one client attempt
DEFAULT_RETRY_SLEEP_SEC = 0.5  # Pause between failed attempts
DEFAULT_SETTLE_SEC = 0.2  # Pause between trials so sockets fully close

# =============================================================================
# PROCESS LIFECYCLE CONSTANTS
# =============================================================================
DEFAULT_RECLAIM_PAUSE_SEC = 0.1  # Pause after fuser -k before rebinding
DEFAULT_STOP_GRACE_SEC = 2.0  # SIGTERM -> SIGKILL grace for a hung server

# =============================================================================
# SWEEP GRID
# =============================================================================
DEFAULT_DELAYS = ["0ms", "20ms", "40ms", "80ms"]
DEFAULT_BANDWIDTHS = ["1Mbps", "10Mbps", "25Mbps", "50Mbps"]
DEFAULT_SIZES = ["10K", "100K", "1M", "10M", "20M"]

# =============================================================================
# PATHS
# =============================================================================
DEFAULT_CONFIG_PATH = "config/harness_config.yaml"
DEFAULT_SEND_DIR = "./send_files"
DEFAULT_OUT_DIR = "./received_files"
DEFAULT_RESULTS_CSV = "./results_with_errors.csv"

# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================
LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Environment variable -> (section, key, type)
ENV_OVERRIDES = {
    "SERVER_IP": ("communication", "server_address", str),
    "PORT": ("communication", "port", int),
    "CLIENT_BIN": ("executables", "client", str),
    "SERVER_BIN": ("executables", "server", str),
    "SEND_DIR": ("paths", "send_dir", str),
    "OUT_DIR": ("paths", "out_dir", str),
    "RESULTS_CSV": ("paths", "results_csv", str),
    "RUN_TIMEOUT_SECONDS": ("trial", "timeout_sec", float),
    "RETRIES": ("trial", "retries", int),
    "RETRY_SLEEP": ("trial", "retry_sleep_sec", float),
    "IFNAME": ("shaping", "interface", str),
}


def default_config() -> Dict[str, Any]:
    """Fresh copy of the built-in configuration"""
    return {
        "communication": {
            "server_address": DEFAULT_SERVER_ADDRESS,
            "port": DEFAULT_PORT,
        },
        "executables": {
            "client": DEFAULT_CLIENT_BIN,
            "server": DEFAULT_SERVER_BIN,
        },
        "trial": {
            "retries": DEFAULT_RETRIES,
            "timeout_sec": DEFAULT_TIMEOUT_SEC,
            "retry_sleep_sec": DEFAULT_RETRY_SLEEP_SEC,
            "settle_sec": DEFAULT_SETTLE_SEC,
        },
        "process": {
            "reclaim_pause_sec": DEFAULT_RECLAIM_PAUSE_SEC,
            "stop_grace_sec": DEFAULT_STOP_GRACE_SEC,
            "use_sudo": True,
        },
        "shaping": {
            "enabled": True,
            "interface": None,  # Auto-detected from the server address
            "use_sudo": True,
            "preferred_tool": "tcset",
        },
        "sweep": {
            "delays": list(DEFAULT_DELAYS),
            "bandwidths": list(DEFAULT_BANDWIDTHS),
            "sizes": list(DEFAULT_SIZES),
        },
        "paths": {
            "send_dir": DEFAULT_SEND_DIR,
            "out_dir": DEFAULT_OUT_DIR,
            "results_csv": DEFAULT_RESULTS_CSV,
        },
    }


def _deep_merge(base: dict, override: Mapping) -> dict:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def apply_env_overrides(config: dict, environ: Mapping[str, str]) -> dict:
    """Overlay the original scripts' environment variables onto config"""
    for name, (section, key, cast) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            config[section][key] = cast(raw)
        except ValueError as e:
            raise ConfigurationError(f"{name}={raw!r} is not a valid {cast.__name__}") from e
        logger.debug(f"{name} overrides {section}.{key}")
    return config


def load_config(
    path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """
    Build the effective configuration.

    Args:
        path: YAML file to merge over the defaults. When None the default
            path is used if it exists.
        environ: Environment mapping (os.environ when None)

    Raises:
        ConfigurationError: explicit path missing or YAML malformed
    """
    config = default_config()

    if path is None and os.path.exists(DEFAULT_CONFIG_PATH):
        path = DEFAULT_CONFIG_PATH

    if path is not None:
        try:
            with open(path, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ConfigurationError(f"config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {path}: {e}") from e
        if not isinstance(loaded, Mapping):
            raise ConfigurationError(f"{path} must contain a mapping at top level")
        _deep_merge(config, loaded)
        logger.info(f"Loaded configuration from {path}")

    return apply_env_overrides(config, os.environ if environ is None else environ)


def _check_executable(label: str, path: str):
    resolved = path if os.path.sep in path else shutil.which(path)
    if not resolved or not os.path.isfile(resolved) or not os.access(resolved, os.X_OK):
        raise ConfigurationError(f"{label} binary not found or not executable at {path}")


def _number(config: dict, section: str, key: str, cast=float):
    value = config[section][key]
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"{section}.{key} must be a {cast.__name__} (got {value!r})"
        ) from e


def validate_config(config: dict, role: SweepRole = SweepRole.LOCAL):
    """
    Reject configurations that would fail every trial.

    Raises:
        ConfigurationError: with the first problem found
    """
    retries = _number(config, "trial", "retries", int)
    if retries < 1:
        raise ConfigurationError(f"trial.retries must be >= 1 (got {retries})")
    timeout = _number(config, "trial", "timeout_sec")
    if timeout <= 0:
        raise ConfigurationError(f"trial.timeout_sec must be positive (got {timeout})")

    # Pauses handed to time.sleep
    for section, key in (
        ("trial", "retry_sleep_sec"),
        ("trial", "settle_sec"),
        ("process", "reclaim_pause_sec"),
        ("process", "stop_grace_sec"),
    ):
        if _number(config, section, key) < 0:
            raise ConfigurationError(
                f"{section}.{key} must not be negative (got {config[section][key]})"
            )

    port = _number(config, "communication", "port", int)
    if not 0 < port < 65536:
        raise ConfigurationError(f"port out of range: {port}")

    sweep = config["sweep"]
    for key in ("delays", "bandwidths", "sizes"):
        if not sweep.get(key):
            raise ConfigurationError(f"sweep.{key} must list at least one value")

    parsers = {"delays": parse_delay_ms, "bandwidths": parse_bandwidth_kbps, "sizes": parse_size}
    for key, parse in parsers.items():
        for token in sweep[key]:
            try:
                parse(str(token))
            except ValueError as e:
                raise ConfigurationError(f"sweep.{key}: {e}") from e

    if role.drives_client:
        _check_executable("client", config["executables"]["client"])
    if role.drives_server:
        _check_executable("server", config["executables"]["server"])
