"""
Configuration loading for the VM disk mapper.

Values come from config/vm-disk-mapper.yaml (optional) merged over the
built-in defaults below. Command line flags are applied on top by the caller.
"""

import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG: Dict[str, Any] = {
    "vcenter": {
        "hostname": None,
        "port": 443,
        "username": None,
        "disable_ssl_verification": True,
        "connect_timeout": 5,
    },
    "guest": {
        # ESXi port used by the guest operations file transfer / VIX channel
        "port": 902,
        "port_timeout": 5,
        "script_timeout": 600,
        "poll_interval": 2,
        "vendor_signature": "VMware",
        "temp_dir": None,
    },
    "vm_filter": {
        "names": ["*"],
        "cluster": None,
    },
    "output": {
        "csv_path": "vm-disk-map.csv",
        "failure_log": "vm-disk-map-failures.log",
    },
    "credentials": {
        "cache_file": str(Path.home() / ".vm-disk-mapper" / "credentials.yaml"),
    },
}

REQUIRED_SECTIONS = list(DEFAULT_CONFIG.keys())


def default_config_path() -> Path:
    """config/vm-disk-mapper.yaml relative to the project directory"""
    return Path(__file__).resolve().parent.parent / "config" / "vm-disk-mapper.yaml"


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_file: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from YAML file merged over the defaults.

    An explicitly requested file must exist; the default location is
    optional and silently falls back to the defaults.

    Raises:
        FileNotFoundError: explicit config file does not exist
        ValueError: file is not valid YAML or has the wrong shape
    """
    explicit = config_file is not None
    path = Path(config_file) if explicit else default_config_path()

    if not path.exists():
        if explicit:
            raise FileNotFoundError(f"Configuration file not found: {path}")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML config {path}: {e}")

    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")

    for section in REQUIRED_SECTIONS:
        if section in loaded and not isinstance(loaded[section], dict):
            raise ValueError(f"'{section}' section in {path} must be a mapping")

    config = _merge(DEFAULT_CONFIG, loaded)

    names = config["vm_filter"]["names"]
    if isinstance(names, str):
        config["vm_filter"]["names"] = [names]

    return config
