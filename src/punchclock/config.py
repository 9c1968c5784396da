from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional

import structlog

from .db import resolve_db_path
from .errors import ConfigurationError

logger = structlog.get_logger()

OUTPUT_FORMATS = ("table", "json")
LOG_LEVELS = ("debug", "info", "warning", "error")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class PCConfig:
    current_project: Optional[str] = None
    output_format: str = "table"
    single_focus: bool = True
    log_level: str = "warning"

    def set_value(self, key: str, value: str) -> None:
        """Set a key from its command-line string form."""
        if key == "current_project":
            self.current_project = value.strip() or None
        elif key == "output_format":
            if value not in OUTPUT_FORMATS:
                raise ConfigurationError(f"output_format must be one of: {', '.join(OUTPUT_FORMATS)}")
            self.output_format = value
        elif key == "single_focus":
            low = value.strip().lower()
            if low in _TRUE:
                self.single_focus = True
            elif low in _FALSE:
                self.single_focus = False
            else:
                raise ConfigurationError("single_focus must be true or false")
        elif key == "log_level":
            if value.lower() not in LOG_LEVELS:
                raise ConfigurationError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
            self.log_level = value.lower()
        else:
            known = ", ".join(f.name for f in fields(self))
            raise ConfigurationError(f"Unknown config key {key!r} (known: {known})")


def config_path(explicit_db_path: Optional[str] = None) -> Path:
    paths = resolve_db_path(explicit_db_path)
    return paths.data_dir / "config.json"


def load_config(explicit_db_path: Optional[str] = None) -> PCConfig:
    p = config_path(explicit_db_path)
    if not p.exists():
        return PCConfig()
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("config unreadable, using defaults", path=str(p), error=str(e))
        return PCConfig()

    cfg = PCConfig()
    if isinstance(data, dict):
        if isinstance(data.get("current_project"), str):
            cfg.current_project = data["current_project"]
        if data.get("output_format") in OUTPUT_FORMATS:
            cfg.output_format = data["output_format"]
        if isinstance(data.get("single_focus"), bool):
            cfg.single_focus = data["single_focus"]
        if isinstance(data.get("log_level"), str) and data["log_level"].lower() in LOG_LEVELS:
            cfg.log_level = data["log_level"].lower()
    return cfg


def save_config(cfg: PCConfig, explicit_db_path: Optional[str] = None) -> Path:
    p = config_path(explicit_db_path)
    p.write_text(json.dumps(asdict(cfg), indent=2), encoding="utf-8")
    return p
