"""CAIRN Configuration — project-level .cairnrc support.

Loads configuration from .cairnrc.json (or .cairnrc.yml, .cairnrc.yaml)
found by walking up from the verified file's directory.

Example .cairnrc.yml:
    timeout_ms: 20000      # per-function solver budget
    workers: 4             # parallel verification processes
    word_bits: 64          # model felts as 64-bit wrapping words
    format: json           # "text" or "json"
    log_level: INFO
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, replace
from typing import Optional, Dict, Any

import yaml


@dataclass
class CairnConfig:
    """Verifier configuration; CLI flags override file values."""
    # Solver
    timeout_ms: int = 10000
    word_bits: Optional[int] = None   # None = unbounded integers
    # Scheduling
    workers: int = 1
    # Output
    format: str = "text"  # "text", "json"
    log_level: str = "WARNING"

    def merged(self, **overrides: Any) -> CairnConfig:
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


# ---------------------------------------------------------------------------
# Config file names (in priority order)
# ---------------------------------------------------------------------------

_CONFIG_FILES = [
    ".cairnrc.json",
    ".cairnrc.yml",
    ".cairnrc.yaml",
]


def find_config(start_dir: str = ".") -> Optional[str]:
    """Find the nearest config file by walking up from start_dir."""
    current = os.path.abspath(start_dir)
    while True:
        for name in _CONFIG_FILES:
            path = os.path.join(current, name)
            if os.path.isfile(path):
                return path
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return None


def load_config(path: Optional[str] = None, start_dir: str = ".") -> CairnConfig:
    """Load configuration from a file.

    If no path is given, searches for a config file starting from start_dir.
    If no config file is found, returns defaults.
    """
    if path is None:
        path = find_config(start_dir)

    if path is None:
        return CairnConfig()

    try:
        with open(path, "r") as f:
            content = f.read()
    except (IOError, OSError):
        return CairnConfig()

    # Parse based on extension
    if path.endswith(".json"):
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            return CairnConfig()
    else:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError:
            return CairnConfig()

    if not isinstance(data, dict):
        return CairnConfig()
    return _dict_to_config(data)


def _dict_to_config(data: Dict[str, Any]) -> CairnConfig:
    """Convert a parsed dict to CairnConfig."""
    config = CairnConfig()

    if "timeout_ms" in data:
        config.timeout_ms = int(data["timeout_ms"])
    if "workers" in data:
        config.workers = max(1, int(data["workers"]))
    if "word_bits" in data:
        config.word_bits = int(data["word_bits"]) if data["word_bits"] else None
    if "format" in data:
        config.format = str(data["format"])
    if "log_level" in data:
        config.log_level = str(data["log_level"]).upper()

    return config
