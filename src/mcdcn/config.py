"""Token and endpoint lookup from the environment or a .env file."""

import logging
import os
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger('mcdcn')

TOKEN_ENV_KEY = "MCDCN_MCP_TOKEN"
SERVER_URL_ENV_KEY = "MCDCN_MCP_URL"
LOG_LEVEL_ENV_KEY = "MCDCN_LOG_LEVEL"

DEFAULT_SERVER_URL = "https://mcp.mcd.cn/mcp-servers/mcd-mcp"
DEFAULT_LOG_LEVEL = logging.WARNING


class ConfigError(Exception):
    """Raised when required configuration is missing or unreadable."""
    pass


def dotenv_path():
    return Path.cwd() / ".env"


def read_dotenv(path=None):
    """Return the .env entries as a dict, or None if the file doesn't exist.

    The process environment is left untouched.
    """
    path = path or dotenv_path()
    if not path.exists():
        return None
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"read .env: {e}") from e
    return {k: v for k, v in values.items() if v is not None}


def _lookup(key, path=None):
    if value := os.getenv(key, "").strip():
        return value
    values = read_dotenv(path) or {}
    return (values.get(key) or "").strip()


def load_token(path=None):
    if value := os.getenv(TOKEN_ENV_KEY, "").strip():
        return value

    values = read_dotenv(path)
    if values is None:
        raise ConfigError(f"{TOKEN_ENV_KEY} not set and .env not found")

    if value := (values.get(TOKEN_ENV_KEY) or "").strip():
        logger.debug(f"Loaded {TOKEN_ENV_KEY} from .env")
        return value

    raise ConfigError(f"{TOKEN_ENV_KEY} not set in environment or .env")


def resolve_server_url(path=None):
    return _lookup(SERVER_URL_ENV_KEY, path) or DEFAULT_SERVER_URL


def resolve_log_level(path=None):
    name = _lookup(LOG_LEVEL_ENV_KEY, path).upper()
    level = logging.getLevelName(name) if name else DEFAULT_LOG_LEVEL
    return level if isinstance(level, int) else DEFAULT_LOG_LEVEL
