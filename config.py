"""Config management for vin-mcp-server.

Values come from built-in defaults, then an optional JSON file, then the
environment (``.env`` is loaded by the caller before ``load_config()``).
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CONFIG_FILE = Path(os.getenv("VIN_MCP_CONFIG", str(Path.home() / ".vin-mcp" / "config.json")))

DEFAULTS = {
    "base_url": "https://mcp.vin",
    "host": "0.0.0.0",
    "port": 3200,
    "environment": "development",
    "max_clients": 500,
    "max_sessions": 200,
    "session_ttl": 30 * 60,
    "code_ttl": 10 * 60,
    "csrf_ttl": 10 * 60,
    "access_token_ttl": 60 * 60,
    "refresh_token_ttl": 30 * 24 * 60 * 60,
    "oauth_sweep_interval": 5 * 60,
    "session_sweep_interval": 60,
    "json_response": False,
    "admin_key": None,
    "allowed_origins": ["https://claude.ai", "https://mcp.vin"],
    "log_level": "INFO",
    "log_format": "plain",
    "report_cache_size": 1000,
    "report_cache_ttl": 60 * 60,
    "nhtsa_base_url": "https://vpic.nhtsa.dot.gov/api/vehicles",
}

# env var -> (config key, type)
ENV_VARS = {
    "BASE_URL": ("base_url", str),
    "MCP_HOST": ("host", str),
    "MCP_PORT": ("port", int),
    "NODE_ENV": ("environment", str),
    "MAX_OAUTH_CLIENTS": ("max_clients", int),
    "MAX_MCP_SESSIONS": ("max_sessions", int),
    "MCP_SESSION_TTL": ("session_ttl", int),
    "OAUTH_CODE_TTL": ("code_ttl", int),
    "OAUTH_CSRF_TTL": ("csrf_ttl", int),
    "OAUTH_ACCESS_TOKEN_TTL": ("access_token_ttl", int),
    "OAUTH_REFRESH_TOKEN_TTL": ("refresh_token_ttl", int),
    "OAUTH_SWEEP_INTERVAL": ("oauth_sweep_interval", int),
    "SESSION_SWEEP_INTERVAL": ("session_sweep_interval", int),
    "MCP_JSON_RESPONSE": ("json_response", bool),
    "ADMIN_KEY": ("admin_key", str),
    "CORS_ORIGINS": ("allowed_origins", list),
    "LOG_LEVEL": ("log_level", str),
    "LOG_FORMAT": ("log_format", str),
    "REPORT_CACHE_SIZE": ("report_cache_size", int),
    "REPORT_CACHE_TTL": ("report_cache_ttl", int),
    "NHTSA_BASE_URL": ("nhtsa_base_url", str),
}


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = {**DEFAULTS, **(data or {})}

    @property
    def base_url(self) -> str:
        return str(self.data["base_url"]).rstrip("/")

    @property
    def host(self) -> str:
        return self.data["host"]

    @property
    def port(self) -> int:
        return self.data["port"]

    @property
    def is_production(self) -> bool:
        return self.data["environment"] == "production"

    @property
    def max_clients(self) -> int:
        return self.data["max_clients"]

    @property
    def max_sessions(self) -> int:
        return self.data["max_sessions"]

    @property
    def session_ttl(self) -> int:
        return self.data["session_ttl"]

    @property
    def code_ttl(self) -> int:
        return self.data["code_ttl"]

    @property
    def csrf_ttl(self) -> int:
        return self.data["csrf_ttl"]

    @property
    def access_token_ttl(self) -> int:
        return self.data["access_token_ttl"]

    @property
    def refresh_token_ttl(self) -> int:
        return self.data["refresh_token_ttl"]

    @property
    def oauth_sweep_interval(self) -> int:
        return self.data["oauth_sweep_interval"]

    @property
    def session_sweep_interval(self) -> int:
        return self.data["session_sweep_interval"]

    @property
    def json_response(self) -> bool:
        return bool(self.data["json_response"])

    @property
    def admin_key(self) -> Optional[str]:
        return self.data["admin_key"] or None

    @property
    def allowed_origins(self) -> list[str]:
        return list(self.data["allowed_origins"])

    @property
    def log_level(self) -> str:
        return str(self.data["log_level"]).upper()

    @property
    def log_format(self) -> str:
        return self.data["log_format"]

    @property
    def report_cache_size(self) -> int:
        return self.data["report_cache_size"]

    @property
    def report_cache_ttl(self) -> int:
        return self.data["report_cache_ttl"]

    @property
    def nhtsa_base_url(self) -> str:
        return str(self.data["nhtsa_base_url"]).rstrip("/")


def _coerce(raw: str, kind: type):
    if kind is int:
        return int(raw)
    if kind is bool:
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if kind is list:
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _load_file() -> dict:
    if not CONFIG_FILE.exists():
        return {}

    try:
        with open(CONFIG_FILE, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning(f"[CONFIG] Ignoring unreadable config file {CONFIG_FILE}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"[CONFIG] Ignoring config file {CONFIG_FILE}: not a JSON object")
        return {}
    return {k: v for k, v in data.items() if k in DEFAULTS}


def load_config(environ: dict = None) -> Config:
    """Load config from defaults, the JSON config file and the environment."""
    environ = os.environ if environ is None else environ
    data = _load_file()

    for var, (key, kind) in ENV_VARS.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            data[key] = _coerce(raw, kind)
        except ValueError:
            logger.warning(f"[CONFIG] Invalid value for {var}: {raw!r}, using default {DEFAULTS[key]!r}")

    return Config(data)
