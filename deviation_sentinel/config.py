"""Configuration loading for the deviation sentinel."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

from .models import MAX_DEVIATION_PERCENT, TokenMonitorConfig, normalize_address

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


@dataclass
class SentinelConfig:
    """Deployment settings: monitored tokens, keepers, markets, and paths."""

    token_configs: Dict[str, TokenMonitorConfig] = field(default_factory=dict)
    trusted_keepers: List[str] = field(default_factory=list)
    markets: List[str] = field(default_factory=list)
    multi_pool_engine: Optional[str] = None
    keeper_address: Optional[str] = None
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    state_path: Optional[Path] = None
    event_log_path: Optional[Path] = None
    dry_run: bool = False
    debug: int = 1

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, base_dir: Optional[Path] = None) -> "SentinelConfig":
        base_dir = base_dir or Path.cwd()
        tokens_raw = payload.get("tokens") or {}
        if not isinstance(tokens_raw, Mapping):
            raise TypeError("'tokens' must be an object mapping token addresses to settings.")
        token_configs: Dict[str, TokenMonitorConfig] = {}
        for token, settings in tokens_raw.items():
            token_configs[normalize_address(token)] = _parse_token_config(token, settings)

        keepers = _parse_address_list(payload.get("trusted_keepers"), description="trusted_keepers")
        markets = _parse_address_list(payload.get("markets"), description="markets")

        interval = payload.get("interval_seconds", DEFAULT_INTERVAL_SECONDS)
        try:
            interval_seconds = float(interval)
        except (TypeError, ValueError) as exc:
            raise ValueError("'interval_seconds' must be a number.") from exc
        if interval_seconds <= 0:
            raise ValueError("'interval_seconds' must be positive.")

        state_path = payload.get("state_path")
        event_log_path = payload.get("event_log_path")
        return cls(
            token_configs=token_configs,
            trusted_keepers=keepers,
            markets=markets,
            multi_pool_engine=_optional_str(payload.get("multi_pool_engine")),
            keeper_address=_optional_str(payload.get("keeper_address")),
            interval_seconds=interval_seconds,
            state_path=_resolve_path_relative_to(base_dir, state_path) if state_path else None,
            event_log_path=_resolve_path_relative_to(base_dir, event_log_path) if event_log_path else None,
            dry_run=_coerce_bool(payload.get("dry_run"), False),
            debug=_coerce_debug(payload.get("debug"), 1),
        )


def load_sentinel_config(path: Path) -> SentinelConfig:
    """Load a :class:`SentinelConfig` from a JSON file.

    Relative paths inside the file are resolved against the file's directory.
    """

    path = Path(path).expanduser().resolve()
    payload = _ensure_mapping(_load_json(path), description="Sentinel configuration")
    config = SentinelConfig.from_mapping(payload, base_dir=path.parent)
    logger.info(
        "Loaded sentinel configuration",
        extra={"path": str(path), "tokens": len(config.token_configs), "markets": len(config.markets)},
    )
    return config


class Settings:
    """Environment overrides layered on top of a file or default configuration."""

    @staticmethod
    def from_environment(
        config: Optional[SentinelConfig] = None, *, env: Optional[Mapping[str, str]] = None
    ) -> SentinelConfig:
        env = os.environ if env is None else env
        if config is None:
            config_path = env.get("SENTINEL_CONFIG")
            config = load_sentinel_config(Path(config_path)) if config_path else SentinelConfig()
        overrides: Dict[str, Any] = {}

        dry_run = _env_bool(env.get("SENTINEL_DRY_RUN"))
        if dry_run is not None:
            overrides["dry_run"] = dry_run
        interval = _env_float(env.get("SENTINEL_INTERVAL_SECONDS"))
        if interval is not None and interval > 0:
            overrides["interval_seconds"] = interval
        state_path = env.get("SENTINEL_STATE_PATH")
        if state_path:
            overrides["state_path"] = Path(state_path).expanduser()
        event_log = env.get("SENTINEL_EVENT_LOG")
        if event_log:
            overrides["event_log_path"] = Path(event_log).expanduser()
        debug = _env_int(env.get("SENTINEL_LOG_LEVEL"))
        if debug is not None:
            overrides["debug"] = debug
        keeper = env.get("SENTINEL_KEEPER_ADDRESS")
        if keeper:
            overrides["keeper_address"] = keeper.strip()
        return replace(config, **overrides) if overrides else config


def _parse_token_config(token: str, settings: Any) -> TokenMonitorConfig:
    if isinstance(settings, (int, float)) and not isinstance(settings, bool):
        settings = {"deviation": settings}
    if not isinstance(settings, Mapping):
        raise TypeError(f"Settings for token {token} must be an object or a deviation number.")
    try:
        deviation = int(settings.get("deviation", 0))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Token {token} 'deviation' must be an integer.") from exc
    if not 1 <= deviation <= MAX_DEVIATION_PERCENT:
        raise ValueError(f"Token {token} 'deviation' must be within [1, {MAX_DEVIATION_PERCENT}], got {deviation}.")
    return TokenMonitorConfig(deviation=deviation, enabled=_coerce_bool(settings.get("enabled"), True))


def _parse_address_list(value: Any, *, description: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise TypeError(f"'{description}' must be an array of addresses.")
    addresses: List[str] = []
    for item in value:
        text = str(item).strip()
        if text:
            addresses.append(text)
    return addresses


def _optional_str(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return str(value).strip() or None


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in configuration file {path}: {exc}") from exc


def _ensure_mapping(payload: Any, *, description: str) -> MutableMapping[str, Any]:
    if isinstance(payload, MutableMapping):
        return payload
    if isinstance(payload, Mapping):
        return dict(payload)
    raise TypeError(f"{description} must be a JSON object, not {type(payload).__name__}.")


def _resolve_path_relative_to(base: Path, candidate: Any) -> Path:
    path = Path(str(candidate)).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _coerce_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"", "default", "auto"}:
            return default
        if lowered in {"1", "true", "yes", "on", "enabled", "enable"}:
            return True
        if lowered in {"0", "false", "no", "off", "disabled", "disable"}:
            return False
    return bool(value)


def _coerce_debug(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        return 2 if value else default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _env_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _env_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
