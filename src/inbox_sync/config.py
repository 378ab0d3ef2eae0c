"""Configuration management for the inbox sync client.

Loads configuration from environment variables and a .env file.
Environment variables take precedence over .env values.
"""

import os
from pathlib import Path
from typing import Any, Optional


# Values used when neither the environment nor .env provides a key
DEFAULTS: dict[str, str] = {
    "API_URL": "http://localhost:5000/api",
    "SOCKET_NAMESPACE": "/messaging",
    "REDIS_HOST": "localhost",
    "REDIS_PORT": "6379",
    "REDIS_DB": "0",
    "LOG_LEVEL": "INFO",
    "LOG_DIR": "logs",
    "HTTP_TIMEOUT": "30",
}


def find_env_file() -> Optional[Path]:
    """Find the .env file by searching up the directory tree.

    Starts at this file's directory and stops at the first directory that
    looks like a project root (has pyproject.toml or .git).

    Returns:
        Path to .env file if found, None otherwise
    """
    current_dir = Path(__file__).parent.resolve()

    for parent in [current_dir] + list(current_dir.parents):
        env_path = parent / ".env"
        if env_path.is_file():
            return env_path
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            break

    return None


class Config:
    """Configuration manager that loads from .env file and environment variables.

    Attribute access is case-insensitive: ``config.api_url`` and
    ``config.API_URL`` return the same value.
    """

    def __init__(self, env_file: Optional[str] = None):
        """Initialize configuration.

        Args:
            env_file: Optional path to .env file. If not provided, will search
                      for .env file in parent directories.
        """
        self._attributes: dict[str, str] = {}

        for key, value in DEFAULTS.items():
            self._set(key, value)

        env_path = Path(env_file) if env_file else find_env_file()
        if env_path and env_path.is_file():
            self._load_env_file(env_path)

        self._load_from_environ()

    def _set(self, key: str, value: str) -> None:
        self._attributes[key] = value
        self._attributes[key.lower()] = value

    def _load_env_file(self, path: Path) -> None:
        """Load configuration from a .env file without touching os.environ."""
        with open(path, "r", encoding="utf-8") as file:
            for line in file:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue

                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                self._set(key, value)

    def _load_from_environ(self) -> None:
        """Overlay known keys from the process environment."""
        for key in list(DEFAULTS) + ["SOCKET_URL"]:
            value = os.environ.get(key)
            if value:
                self._set(key, value)

    def __getattr__(self, name: str) -> str:
        """Get configuration value by attribute name.

        Raises:
            AttributeError: If configuration key is not found
        """
        if name.startswith("_"):
            raise AttributeError(f"'Config' object has no attribute '{name}'")

        if name in self._attributes:
            return self._attributes[name]
        if name.lower() in self._attributes:
            return self._attributes[name.lower()]

        env_value = os.environ.get(name) or os.environ.get(name.upper())
        if env_value:
            return env_value

        raise AttributeError(f"'Config' object has no attribute '{name}'")

    def get(self, name: str, default: Any = None) -> Any:
        """Get configuration value with optional default."""
        try:
            return getattr(self, name)
        except AttributeError:
            return default

    @property
    def socket_url(self) -> str:
        """Socket.IO server URL: SOCKET_URL, or API_URL without its /api suffix."""
        explicit = self._attributes.get("socket_url")
        if explicit:
            return explicit.rstrip("/")
        api_url = self.api_url.rstrip("/")
        if api_url.endswith("/api"):
            api_url = api_url[: -len("/api")]
        return api_url


# Create singleton config instance
config = Config()
