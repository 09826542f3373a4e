import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

ENV_PREFIX = "PODMIGRATE_"

DEFAULT_HTTP_TIMEOUT = 10.0
DEFAULT_FETCH_WORKERS = 4
DEFAULT_IMPORT_BUDGET = 120.0
DEFAULT_USER_AGENT = "podmigrate/0.1"


def get_config_path() -> Path:
    """Get the path to the user-level config file."""
    config_dir = Path.home() / ".config" / "podmigrate"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir / "config.json"


def load_config() -> Dict[str, Any]:
    """Load configuration from the user-level config file."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError):
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def get_setting(key: str) -> Optional[str]:
    """Environment (``PODMIGRATE_<KEY>``, ``.env`` included) wins over the config file."""
    load_dotenv()
    env_value = os.getenv(ENV_PREFIX + key.upper())
    if env_value is not None and env_value.strip():
        return env_value.strip()
    value = load_config().get(key.lower())
    if value is None:
        return None
    return str(value)


def _float_setting(key: str, default: float) -> float:
    raw = get_setting(key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {raw!r}")
    return value


def _int_setting(key: str, default: int) -> int:
    raw = get_setting(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: {raw!r}") from exc
    if value < 1:
        raise ValueError(f"{key} must be at least 1, got {raw!r}")
    return value


def _bool_setting(key: str, default: bool) -> bool:
    raw = get_setting(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class FederationSettings:
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    fetch_workers: int = DEFAULT_FETCH_WORKERS
    import_budget: float = DEFAULT_IMPORT_BUDGET
    allow_http_fallback: bool = False
    user_agent: str = DEFAULT_USER_AGENT


def get_federation_settings() -> FederationSettings:
    return FederationSettings(
        http_timeout=_float_setting("http_timeout", DEFAULT_HTTP_TIMEOUT),
        fetch_workers=_int_setting("fetch_workers", DEFAULT_FETCH_WORKERS),
        import_budget=_float_setting("import_budget", DEFAULT_IMPORT_BUDGET),
        allow_http_fallback=_bool_setting("allow_http_fallback", False),
        user_agent=get_setting("user_agent") or DEFAULT_USER_AGENT,
    )


def get_db_url() -> Optional[str]:
    return get_setting("db_url")
