"""Load Event Bus settings from config/settings.yaml."""

import os
from pathlib import Path
from typing import Any

import yaml

_DEFAULTS: dict[str, Any] = {
    "event_bus": {
        "db_path": "data/event_bus.db",
        "busy_timeout": 5000,
        "workers": 8,
        "max_attempts": 8,
        "base_delay": 1.0,
        "max_delay": 300.0,  # 5 min
        "jitter": 0.1,
        "callback_timeout": 30.0,
        "recovery_interval": 30.0,
        "stale_timeout": 300.0,
        "chain_defer_delay": 0.5,
        "shutdown_timeout": 30.0,
        "subscription_refresh_interval": 5.0,
        "strict_event_types": False,
    },
    "broker": {
        # outbox | memory | amqp
        "type": "outbox",
        "outbox": {
            "db_path": "data/event_outbox.db",
            "poll_interval": 1.0,
            "lease_timeout": 900.0,
        },
        "amqp": {
            "url": "amqp://localhost",
            "queue": "event_bus.dispatch",
            "prefetch_count": 16,
            "connection_timeout": 10.0,
        },
    },
    "api": {
        "host": "0.0.0.0",
        "port": 5007,
    },
    "logging": {
        "file": "logs/event_bus.log",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

# Environment variable -> dot path it overrides.
_ENV_OVERRIDES: dict[str, str] = {
    "RABBITMQ_URL": "broker.amqp.url",
    "PORT": "api.port",
}

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    """Return a deep copy of default settings."""
    return _deep_copy_nested(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'broker.amqp.url')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _set_path(settings: dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    current = settings
    for part in parents:
        current = current.setdefault(part, {})
    current[leaf] = value


def apply_env_overrides(settings: dict[str, Any], environ: dict[str, str] | None = None) -> None:
    """Apply RABBITMQ_URL / PORT from the environment. Mutates settings."""
    environ = os.environ if environ is None else environ
    for var, path in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        if path == "api.port":
            try:
                _set_path(settings, path, int(value))
            except ValueError:
                continue
        else:
            _set_path(settings, path, value)


def reload_settings() -> None:
    """Clear the settings cache. Call after config files or the environment change."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Load settings from config/settings.yaml. Returns merged defaults + file values + env."""
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result: dict[str, Any] = {}
    for k, v in _DEFAULTS.items():
        result[k] = _deep_copy_nested(v)

    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                _deep_merge(result, data)
        except (yaml.YAMLError, OSError):
            pass

    apply_env_overrides(result)
    _cached = result
    return result


def _deep_copy_nested(obj: Any) -> Any:
    """Return a deep copy of nested dicts/lists for defaults."""
    if isinstance(obj, dict):
        return {k: _deep_copy_nested(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_deep_copy_nested(x) for x in obj]
    return obj
