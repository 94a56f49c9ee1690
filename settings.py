"""
Server configuration: built-in defaults, optionally overridden by a YAML file
and then by command-line flags.

Example (config/server.yaml):

    host: 127.0.0.1
    port: 1502
    register_count: 200
    initial_registers:
      0: 100
    poll_interval_s: 0.5
    max_sessions: null
    log_level: INFO
    faults:
      drop_rate: 0.0
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Optional

import yaml

from faults import FaultInjector
from modbus_tcp import ModbusError

HOST = "127.0.0.1"
PORT = 1502  # dev port (502 needs admin rights)

DEFAULTS: Dict[str, Any] = {
    "host": HOST,
    "port": PORT,
    "register_count": 200,
    "initial_registers": {},
    "poll_interval_s": 0.5,
    "max_sessions": None,
    "log_level": "INFO",
    "faults": {
        "delay_ms_min": 0,
        "delay_ms_max": 0,
        "chunk_min": 1,
        "chunk_max": 1,
        "drop_rate": 0.0,
        "close_rate": 0.0,
    },
}


class ConfigError(ModbusError):
    pass


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Defaults merged with the YAML file at `path` (if any), validated."""
    config = copy.deepcopy(DEFAULTS)
    if path is None:
        return validate_config(config)

    try:
        with open(path, "r") as f:
            loaded = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    return validate_config(merge_config(config, loaded))


def merge_config(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if key not in DEFAULTS:
            raise ConfigError(f"unknown config key: {key}")
        if key == "faults":
            if not isinstance(value, dict):
                raise ConfigError("faults must be a mapping")
            unknown = set(value) - set(DEFAULTS["faults"])
            if unknown:
                raise ConfigError(f"unknown fault keys: {sorted(unknown)}")
            merged["faults"].update(value)
        else:
            merged[key] = value
    return merged


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    port = config["port"]
    if not isinstance(port, int) or not 0 <= port <= 65535:
        raise ConfigError(f"port must be 0..65535, got {port!r}")

    count = config["register_count"]
    if not isinstance(count, int) or not 1 <= count <= 0x10000:
        raise ConfigError(f"register_count must be 1..65536, got {count!r}")

    initial = config["initial_registers"] or {}
    if not isinstance(initial, dict):
        raise ConfigError("initial_registers must be a mapping of address: value")
    for addr, value in initial.items():
        if not isinstance(addr, int) or not 0 <= addr < count:
            raise ConfigError(f"initial register address {addr!r} outside 0..{count - 1}")
        if not isinstance(value, int) or not 0 <= value <= 0xFFFF:
            raise ConfigError(f"initial register {addr} value {value!r} is not a uint16")
    config["initial_registers"] = initial

    poll = config["poll_interval_s"]
    if not isinstance(poll, (int, float)) or poll <= 0:
        raise ConfigError(f"poll_interval_s must be > 0, got {poll!r}")

    max_sessions = config["max_sessions"]
    if max_sessions is not None and (not isinstance(max_sessions, int) or max_sessions < 1):
        raise ConfigError(f"max_sessions must be a positive int or null, got {max_sessions!r}")

    level = config["log_level"]
    if not isinstance(level, str) or not isinstance(logging.getLevelName(level.upper()), int):
        raise ConfigError(f"unknown log_level {level!r}")

    faults = config["faults"]
    for key in ("delay_ms_min", "delay_ms_max", "chunk_min", "chunk_max"):
        if not isinstance(faults[key], int) or isinstance(faults[key], bool):
            raise ConfigError(f"faults.{key} must be an int, got {faults[key]!r}")
    for key in ("drop_rate", "close_rate"):
        if not isinstance(faults[key], (int, float)) or isinstance(faults[key], bool):
            raise ConfigError(f"faults.{key} must be a number, got {faults[key]!r}")
    try:
        FaultInjector.from_config(faults)
    except ModbusError as e:
        raise ConfigError(f"faults: {e}") from e

    return config
