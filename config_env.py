"""Load chaosrun.yaml and apply whitelisted env overrides."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from env_utils import (
    CHAOSRUN_CONFIG_PATH,
    CHAOSRUN_DB_PATH,
    env_bool,
    env_float,
    env_int,
    env_present,
    env_str,
)
from logging_utils import get_logger


PathKey = Tuple[str, ...]

# Env overrides cover operational plumbing and the run defaults operators tune
# per deployment; everything else is YAML-only.
ALLOWED_ENV_OVERRIDES = {
    "CHAOSRUN_DB_PATH",
    "CHAOSRUN_LOBBY_DURATION_SECONDS",
    "CHAOSRUN_VOTING_INTERVAL_SECONDS",
    "CHAOSRUN_TOTAL_ROUNDS",
    "CHAOSRUN_MIN_DEPOSIT",
    "CHAOSRUN_MAX_DEPOSIT",
    "CHAOSRUN_MAX_PARTICIPANTS",
    "CHAOSRUN_TICK_INTERVAL_SECONDS",
    "CHAOSRUN_MARKET_SYMBOL",
    "CHAOSRUN_VENUE_MODE",
    "CHAOSRUN_VENUE_BASE_URL",
    "CHAOSRUN_VENUE_API_KEY",
    "CHAOSRUN_LEDGER_MODE",
    "CHAOSRUN_LEDGER_BASE_URL",
    "CHAOSRUN_LEDGER_API_KEY",
    "CHAOSRUN_AUTO_CREATE_ENABLED",
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "config": {
        "db_path": CHAOSRUN_DB_PATH,
        "market_symbol": "SOL-PERP",
        "run": {
            "lobby_duration_seconds": 600,
            "voting_interval_seconds": 300,
            "total_rounds": 24,
            "min_deposit": 5.0,
            "max_deposit": 100.0,
            "max_participants": 100,
        },
        "scheduler": {
            "tick_interval_seconds": 5.0,
            "run_timeout_seconds": 60.0,
            "external_timeout_seconds": 15.0,
        },
        "venue": {"mode": "paper", "base_url": "", "api_key": "", "start_price": 150.0},
        "ledger": {"mode": "paper", "base_url": "", "api_key": ""},
        "settlement": {"balance_tolerance": 0.01, "sum_epsilon": 0.000001},
        "broadcast": {"journal_path": "", "queue_size": 256},
        "chaos": {"seed": None},
        "auto_create": {"enabled": False, "interval_seconds": 60.0},
    }
}

_log = get_logger("config_env")


def _get_path(cfg: Dict[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _set_path(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    cur: Any = cfg
    for key in path[:-1]:
        if key not in cur or not isinstance(cur[key], dict):
            cur[key] = {}
        cur = cur[key]
    cur[path[-1]] = value


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)
    for key, value in (overlay or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = deepcopy(value)
    return out


def get_nested(config: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Get nested config value with fallback."""
    return _get_path(config, tuple(keys), default)


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}

    def override(path: PathKey, env_name: str, kind: str = "str") -> None:
        if not env_present(env_name) or env_name not in ALLOWED_ENV_OVERRIDES:
            return
        default = _get_path(cfg, path)
        if kind == "int":
            value = env_int(env_name, default if isinstance(default, int) else 0)
        elif kind == "float":
            value = env_float(env_name, float(default) if default is not None else 0.0)
        elif kind == "bool":
            value = env_bool(env_name, bool(default) if default is not None else False)
        else:
            value = env_str(env_name, default if default is not None else "")
        _set_path(cfg, path, value)

    override(("config", "db_path"), "CHAOSRUN_DB_PATH")
    override(("config", "market_symbol"), "CHAOSRUN_MARKET_SYMBOL")

    override(("config", "run", "lobby_duration_seconds"), "CHAOSRUN_LOBBY_DURATION_SECONDS", kind="int")
    override(("config", "run", "voting_interval_seconds"), "CHAOSRUN_VOTING_INTERVAL_SECONDS", kind="int")
    override(("config", "run", "total_rounds"), "CHAOSRUN_TOTAL_ROUNDS", kind="int")
    override(("config", "run", "min_deposit"), "CHAOSRUN_MIN_DEPOSIT", kind="float")
    override(("config", "run", "max_deposit"), "CHAOSRUN_MAX_DEPOSIT", kind="float")
    override(("config", "run", "max_participants"), "CHAOSRUN_MAX_PARTICIPANTS", kind="int")

    override(("config", "scheduler", "tick_interval_seconds"), "CHAOSRUN_TICK_INTERVAL_SECONDS", kind="float")

    override(("config", "venue", "mode"), "CHAOSRUN_VENUE_MODE")
    override(("config", "venue", "base_url"), "CHAOSRUN_VENUE_BASE_URL")
    override(("config", "venue", "api_key"), "CHAOSRUN_VENUE_API_KEY")
    override(("config", "ledger", "mode"), "CHAOSRUN_LEDGER_MODE")
    override(("config", "ledger", "base_url"), "CHAOSRUN_LEDGER_BASE_URL")
    override(("config", "ledger", "api_key"), "CHAOSRUN_LEDGER_API_KEY")

    override(("config", "auto_create", "enabled"), "CHAOSRUN_AUTO_CREATE_ENABLED", kind="bool")
    return cfg


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load YAML config (merged over defaults) and apply env overrides.

    A missing file is not an error: the built-in defaults apply.
    """
    cfg_path = Path(path) if path else Path(CHAOSRUN_CONFIG_PATH)
    loaded: Dict[str, Any] = {}
    if cfg_path.exists():
        with open(cfg_path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config must be a YAML mapping; got {type(loaded).__name__}")
        _log.info(f"Loaded config from {cfg_path}")
    else:
        _log.info(f"Config not found at {cfg_path}; using defaults")
    return apply_env_overrides(_deep_merge(DEFAULT_CONFIG, loaded))


@dataclass(frozen=True)
class RunDefaults:
    """Run parameters applied to newly created runs."""
    lobby_duration: int = 600
    voting_interval: int = 300
    total_rounds: int = 24
    min_deposit: float = 5.0
    max_deposit: float = 100.0
    max_participants: int = 100
    market_symbol: str = "SOL-PERP"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RunDefaults":
        run_cfg = get_nested(config, "config", "run", default={}) or {}
        return cls(
            lobby_duration=int(run_cfg.get("lobby_duration_seconds", cls.lobby_duration)),
            voting_interval=int(run_cfg.get("voting_interval_seconds", cls.voting_interval)),
            total_rounds=int(run_cfg.get("total_rounds", cls.total_rounds)),
            min_deposit=float(run_cfg.get("min_deposit", cls.min_deposit)),
            max_deposit=float(run_cfg.get("max_deposit", cls.max_deposit)),
            max_participants=int(run_cfg.get("max_participants", cls.max_participants)),
            market_symbol=str(get_nested(config, "config", "market_symbol", default=cls.market_symbol)),
        )

    def validate(self) -> None:
        if self.lobby_duration < 0:
            raise ValueError("lobby_duration must be >= 0")
        if self.voting_interval <= 0:
            raise ValueError("voting_interval must be > 0")
        if self.total_rounds <= 0:
            raise ValueError("total_rounds must be > 0")
        if self.min_deposit <= 0 or self.max_deposit < self.min_deposit:
            raise ValueError("deposit bounds must satisfy 0 < min_deposit <= max_deposit")
        if self.max_participants <= 0:
            raise ValueError("max_participants must be > 0")
