"""
Configuration for the term buffer.

Configuration is a plain dataclass that round-trips through a dict, and
can be loaded from a JSON or YAML file.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from termbuffer.storage.recovery import DEFAULT_RECOVERY_PATH

logger = logging.getLogger(__name__)


@dataclass
class BufferConfig:
    """
    Buffer configuration.

    Attributes:
        capacity_bytes: Size estimate that triggers a flush; 0 disables buffering
        recovery_path: Where undelivered entries are saved at shutdown
        push_timeout_seconds: Upper bound on a single sink push (None = unbounded)
        spool_dir: Directory for a DirectorySink, if one is used
        state_path: Parquet file for the crawl state table, if one is used
    """
    capacity_bytes: int = 0
    recovery_path: str = DEFAULT_RECOVERY_PATH
    push_timeout_seconds: Optional[float] = None
    spool_dir: Optional[str] = None
    state_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capacity_bytes": self.capacity_bytes,
            "recovery_path": self.recovery_path,
            "push_timeout_seconds": self.push_timeout_seconds,
            "spool_dir": self.spool_dir,
            "state_path": self.state_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BufferConfig":
        timeout = data.get("push_timeout_seconds")
        return cls(
            capacity_bytes=int(data.get("capacity_bytes", 0)),
            recovery_path=str(data.get("recovery_path", DEFAULT_RECOVERY_PATH)),
            push_timeout_seconds=float(timeout) if timeout is not None else None,
            spool_dir=data.get("spool_dir"),
            state_path=data.get("state_path"),
        )

    def validate(self) -> List[str]:
        """Return a list of problems; empty if the configuration is usable."""
        errors = []
        if self.capacity_bytes < 0:
            errors.append("capacity_bytes must be >= 0")
        if not self.recovery_path:
            errors.append("recovery_path must not be empty")
        if self.push_timeout_seconds is not None and self.push_timeout_seconds <= 0:
            errors.append("push_timeout_seconds must be positive")
        return errors


def load_config(path: Path | str) -> BufferConfig:
    """
    Load a BufferConfig from a .json, .yaml or .yml file.

    Raises:
        ValueError: If the format is unsupported or the config is invalid
    """
    path = Path(path)
    suffix = path.suffix.lower()
    with open(path, encoding="utf-8") as f:
        if suffix == ".json":
            data = json.load(f)
        elif suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f) or {}
        else:
            raise ValueError(f"Unsupported config format: {suffix}")

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    config = BufferConfig.from_dict(data)
    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid config {path}: {'; '.join(errors)}")
    logger.debug(f"Loaded buffer config from {path}")
    return config
