"""
Shared configuration loader for the LED visualizer bridge.

Loads a single JSON config file per deployment.  Search order:
  1. $VISUALIZER_CONFIG                 (explicit path)
  2. /etc/led-visualizer/config.json    (deployed)
  3. config.json                        (CWD, for local dev)

Secrets and deployment values (client secret, broker credentials, session
secret, ...) come from environment variables, which always win over the file.

Usage:
    from visualizer.lib.config import cfg

    client_id = cfg("spotify", "client_id")
    interval  = cfg_float("poll", "interval", default=3)
    topic     = cfg("mqtt", "topic", default="spotify/visualizer/data")
"""

import json
import logging
import os

from ..errors import ConfigError

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/led-visualizer/config.json",
    "config.json",
]

# (section, key) -> environment variable
ENV_OVERRIDES = {
    ("spotify", "client_id"): "SPOTIFY_CLIENT_ID",
    ("spotify", "client_secret"): "SPOTIFY_CLIENT_SECRET",
    ("spotify", "redirect_uri"): "SPOTIFY_REDIRECT_URI",
    ("spotify", "scopes"): "SPOTIFY_SCOPES",
    ("spotify", "user_id"): "SPOTIFY_USER_ID",
    ("spotify", "refresh_skew"): "TOKEN_REFRESH_SKEW",
    ("spotify", "audio_features"): "SPOTIFY_AUDIO_FEATURES",
    ("mqtt", "broker_url"): "MQTT_BROKER_URL",
    ("mqtt", "port"): "MQTT_PORT",
    ("mqtt", "username"): "MQTT_USERNAME",
    ("mqtt", "password"): "MQTT_PASSWORD",
    ("mqtt", "topic"): "MQTT_TOPIC",
    ("mqtt", "qos"): "MQTT_QOS",
    ("mqtt", "mode"): "MQTT_MODE",
    ("mqtt", "timeout"): "MQTT_TIMEOUT",
    ("database", "path"): "DATABASE_PATH",
    ("session", "secret"): "SESSION_SECRET",
    ("poll", "interval"): "POLL_INTERVAL",
    ("poll", "enabled"): "POLL_ENABLED",
    ("palette", "enabled"): "PALETTE_ENABLED",
    ("palette", "colors"): "PALETTE_COLORS",
    ("http", "host"): "HOST",
    ("http", "port"): "PORT",
    ("http", "home_url"): "HOME_URL",
}

REQUIRED = [
    ("spotify", "client_id"),
    ("spotify", "redirect_uri"),
    ("mqtt", "broker_url"),
    ("session", "secret"),
]

_TRUE = ("1", "true", "yes", "on")


def _search_paths() -> list:
    explicit = os.getenv("VISUALIZER_CONFIG")
    return ([explicit] if explicit else []) + _SEARCH_PATHS


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.info("No config.json found, using environment only")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("mqtt")                      → config["mqtt"]
    cfg("mqtt", "topic")             → $MQTT_TOPIC or config["mqtt"]["topic"]
    cfg("poll", "interval", default=3)
    """
    if key is not None:
        env_name = ENV_OVERRIDES.get((section, key))
        if env_name:
            env_val = os.getenv(env_name)
            if env_val not in (None, ""):
                return env_val

    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        found = val.get(key)
        return found if found is not None else default
    return default


def cfg_int(section: str, key: str, *, default: int | None = None) -> int | None:
    val = cfg(section, key, default=default)
    return int(val) if val is not None else None


def cfg_float(section: str, key: str, *, default: float | None = None) -> float | None:
    val = cfg(section, key, default=default)
    return float(val) if val is not None else None


def cfg_bool(section: str, key: str, *, default: bool = False) -> bool:
    val = cfg(section, key, default=default)
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in _TRUE


def validate() -> list:
    """Return the dotted names of required settings that are missing."""
    missing = []
    for section, key in REQUIRED:
        if not cfg(section, key):
            env_name = ENV_OVERRIDES.get((section, key))
            missing.append(f"{section}.{key} ({env_name})")
    return missing


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()


def require():
    """Raise ConfigError if any required setting is missing."""
    missing = validate()
    if missing:
        raise ConfigError("Missing required settings: " + ", ".join(missing))
