from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

import yaml

from .constants import (
    DEFAULT_PORT,
    DEFAULT_RECONNECT_INTERVAL,
    DEFAULT_TIMEOUT,
    DEFAULT_UNIT_ID,
    MAX_UNIT_ID,
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Invalid boolean value '{value}'")


@dataclass(slots=True)
class ClientConfig:
    """Connection settings for one Modbus/TCP client.

    ``timeout``, ``reconnect_interval`` and ``connect_timeout`` are in seconds.
    """

    host: str = "localhost"
    port: int = DEFAULT_PORT
    unit_id: int = DEFAULT_UNIT_ID
    timeout: float = DEFAULT_TIMEOUT
    reconnect: bool = True
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL
    connect_timeout: Optional[float] = None

    def validate(self) -> None:
        if not self.host:
            raise ValueError("host must not be empty")
        if not 0 < int(self.port) <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")
        if not 0 <= int(self.unit_id) <= MAX_UNIT_ID:
            raise ValueError(f"unit_id out of range: {self.unit_id}")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.reconnect_interval < 0:
            raise ValueError("reconnect_interval must be >= 0")
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be > 0")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ClientConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        cfg = cls()
        if "host" in raw:
            cfg.host = str(raw["host"])
        if "port" in raw:
            cfg.port = int(raw["port"])
        if "unit_id" in raw:
            cfg.unit_id = int(raw["unit_id"])
        if "timeout" in raw:
            cfg.timeout = float(raw["timeout"])
        if "reconnect" in raw:
            cfg.reconnect = _parse_bool(raw["reconnect"])
        if "reconnect_interval" in raw:
            cfg.reconnect_interval = float(raw["reconnect_interval"])
        if raw.get("connect_timeout") is not None:
            cfg.connect_timeout = float(raw["connect_timeout"])
        cfg.validate()
        return cfg

    @classmethod
    def from_uri(cls, uri: str) -> "ClientConfig":
        """Parse ``tcp://host[:port][?unit=1&timeout=2.5&reconnect=false&reconnect_interval=3]``."""
        parsed = urlparse(uri)
        if parsed.scheme != "tcp":
            raise ValueError("Unsupported URI scheme")
        raw: Dict[str, Any] = {"host": parsed.hostname or parsed.path}
        if parsed.port:
            raw["port"] = parsed.port
        query = {k: v[-1] for k, v in parse_qs(parsed.query).items()}
        if "unit" in query:
            raw["unit_id"] = query.pop("unit")
        raw.update(query)
        return cls.from_dict(raw)


def load_config(path: str | Path) -> ClientConfig:
    """Parse a YAML/JSON config file into a ``ClientConfig``."""

    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(file_path)

    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() in {".yaml", ".yml"}:
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)

    if not isinstance(raw, dict):
        raise ValueError("Configuration must be an object/dict")
    return ClientConfig.from_dict(raw)
