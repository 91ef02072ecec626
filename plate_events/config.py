"""
Engine configuration
====================
Optional YAML file controlling replay defaults and the API server:

    depletion:
      defaults: {plate: true, reservoir: false, tube_rack: false}
      unknown_kind: true
    logging:
      level: INFO
    api:
      host: 127.0.0.1
      port: 5050
      debug: false

Path comes from the PLATE_EVENTS_CONFIG environment variable; without it the
built-in defaults apply.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging
import os

import yaml

from plate_events.replay import DEFAULT_DEPLETION, UNKNOWN_KIND_DEPLETES, ReplayOptions

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "PLATE_EVENTS_CONFIG"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class EngineConfig:
    default_depletion: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_DEPLETION))
    unknown_kind_depletes: bool = UNKNOWN_KIND_DEPLETES
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 5050
    api_debug: bool = False

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> "EngineConfig":
        d = d or {}
        if not isinstance(d, Mapping):
            raise ValueError("Configuration root must be a mapping")
        depletion = _section(d, "depletion")
        log = _section(d, "logging")
        api = _section(d, "api")

        defaults = dict(DEFAULT_DEPLETION)
        overrides = depletion.get("defaults") or {}
        if not isinstance(overrides, Mapping):
            raise ValueError("depletion.defaults must map labware kind -> bool")
        for kind, depletes in overrides.items():
            if not isinstance(depletes, bool):
                raise ValueError(f"depletion.defaults.{kind} must be true or false, got {depletes!r}")
            defaults[str(kind).lower()] = depletes

        level = str(log.get("level", "INFO")).upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {LOG_LEVELS}, got {level!r}")

        try:
            port = int(api.get("port", 5050))
        except (TypeError, ValueError):
            raise ValueError(f"api.port must be an integer, got {api.get('port')!r}")

        return cls(
            default_depletion=defaults,
            unknown_kind_depletes=bool(depletion.get("unknown_kind", UNKNOWN_KIND_DEPLETES)),
            log_level=level,
            api_host=str(api.get("host", "127.0.0.1")),
            api_port=port,
            api_debug=bool(api.get("debug", False)),
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "EngineConfig":
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f)
        logger.info("Loaded engine configuration from %s", path)
        return cls.from_dict(data)

    def replay_options(self, focus_labware_id: Optional[str] = None,
                       depletion_by_labware_id: Optional[Mapping[str, Any]] = None) -> ReplayOptions:
        overrides = depletion_by_labware_id or {}
        return ReplayOptions(
            focus_labware_id=focus_labware_id or None,
            depletion_by_labware_id={str(k): bool(v) for k, v in overrides.items()},
            default_depletion=dict(self.default_depletion),
            unknown_kind_depletes=self.unknown_kind_depletes,
        )

    def to_dict(self) -> dict:
        return {
            "depletion": {
                "defaults": dict(self.default_depletion),
                "unknown_kind": self.unknown_kind_depletes,
            },
            "logging": {"level": self.log_level},
            "api": {"host": self.api_host, "port": self.api_port, "debug": self.api_debug},
        }


def load_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    env = os.environ if env is None else env
    path = env.get(CONFIG_ENV_VAR)
    if not path:
        return EngineConfig()
    return EngineConfig.from_yaml(path)


def _section(d: Mapping, key: str) -> Mapping:
    value = d.get(key) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Configuration section '{key}' must be a mapping")
    return value
