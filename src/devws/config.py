"""
Unified configuration for devws.

This module centralizes:
- Built-in defaults for workspace creation (image, shell, user, uid)
- Loading overrides from environment variables
- Optional .env file hydration (best-effort, only for allowed keys)
- Derived values such as the remote socket path

Usage:
    from devws.config import get_settings

    settings = get_settings()
    print(settings.image)

Notes:
- Environment variables always take precedence over .env entries.
- These values sit below spec-document fields and CLI overrides in the
  resolution order; see devws.resolver.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


# ----------------------------
# Built-in defaults
# ----------------------------

DEFAULT_IMAGE = "docker.io/bitnami/git:latest"
DEFAULT_HELPER_IMAGE = "docker.io/bitnami/git:latest"
DEFAULT_SHELL = "sh"
DEFAULT_USER = "devws_user"
DEFAULT_UID = "1000"
DEFAULT_REMOTE_SOCKET = "~/.devws/remote.sock"


# ----------------------------
# Helpers: env, parsing
# ----------------------------

_ALLOWED_DOTENV_KEYS = {
    # Workspace defaults
    "DEVWS_IMAGE",
    "DEVWS_SHELL",
    "DEVWS_USER",
    "DEVWS_UID",
    "DEVWS_CACHES",
    "DEVWS_HELPER_IMAGE",
    # Secrets
    "DEVWS_AGE_IDENTITY",
    # Remote host
    "DEVWS_REMOTE",
    "DEVWS_REMOTE_SOCKET",
    # Docker settings
    "DOCKER_CLIENT_TIMEOUT",
    # Logging
    "DEVWS_DEBUG",
    "DEVWS_LOG_LEVEL",
    "DEVWS_LOG_FILE",
    "DEVWS_LOG_DIR",
}


def _str2bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    s = val.strip().lower()
    return s in ("1", "true", "yes", "y", "on")


def _split_csv(s: str | None) -> List[str]:
    if not s:
        return []
    return [part.strip() for part in s.split(",") if part.strip()]


def _load_dotenv_into_env(dotenv_path: Optional[Path] = None, allowed_keys: Optional[set[str]] = None) -> None:
    """
    Best-effort .env loader:
    - Loads ./.env from the current directory by default
    - Only sets variables from allowed_keys if not already present in os.environ
    - Strips surrounding quotes on values
    - Ignores malformed lines
    """
    path = Path(dotenv_path) if dotenv_path else Path.cwd() / ".env"
    try:
        if not path.is_file():
            return
        text = path.read_text(encoding="utf-8")
    except OSError:
        # Unreadable .env never blocks a command
        return
    allow = set(allowed_keys or _ALLOWED_DOTENV_KEYS)
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip()
        if (val.startswith('"') and val.endswith('"')) or (val.startswith("'") and val.endswith("'")):
            val = val[1:-1]
        if key and key in allow and key not in os.environ:
            os.environ[key] = val


# ----------------------------
# Unified configuration object
# ----------------------------

@dataclass(frozen=True)
class Settings:
    """
    Environment-level configuration for devws.

    All fields are immutable once created. Use from_env() to construct an instance.
    """

    # Workspace defaults (environment tier of the resolution order)
    image: str
    shell: Optional[str]
    user: str
    uid: str
    caches: List[str]

    # Image used for one-shot helper containers (git clone, key generation)
    helper_image: str

    # Encryption identity file override; None means the age-key volume
    age_identity_file: Optional[str]

    # Remote engine
    remote: Optional[str]
    remote_socket: str

    # Docker client
    docker_client_timeout: int

    # Logging
    debug: bool

    @staticmethod
    def from_env(dotenv: bool = True, dotenv_path: Optional[str | Path] = None) -> "Settings":
        """
        Construct Settings with values pulled from the current environment,
        optionally hydrated by a .env file if dotenv=True.
        """
        if dotenv:
            _load_dotenv_into_env(Path(dotenv_path) if dotenv_path else None, _ALLOWED_DOTENV_KEYS)

        try:
            docker_timeout = int(os.getenv("DOCKER_CLIENT_TIMEOUT", "180"))
        except ValueError:
            docker_timeout = 180

        return Settings(
            image=os.getenv("DEVWS_IMAGE") or DEFAULT_IMAGE,
            shell=os.getenv("DEVWS_SHELL") or None,
            user=os.getenv("DEVWS_USER") or DEFAULT_USER,
            uid=os.getenv("DEVWS_UID") or DEFAULT_UID,
            caches=_split_csv(os.getenv("DEVWS_CACHES")),
            helper_image=os.getenv("DEVWS_HELPER_IMAGE") or DEFAULT_HELPER_IMAGE,
            age_identity_file=os.getenv("DEVWS_AGE_IDENTITY") or None,
            remote=os.getenv("DEVWS_REMOTE") or None,
            remote_socket=os.getenv("DEVWS_REMOTE_SOCKET") or DEFAULT_REMOTE_SOCKET,
            docker_client_timeout=max(1, docker_timeout),
            debug=_str2bool(os.getenv("DEVWS_DEBUG")),
        )

    # ----------------------------
    # Derived helpers
    # ----------------------------

    def remote_socket_path(self) -> Path:
        """
        Absolute path of the local unix socket forwarded to the remote engine.
        """
        return Path(self.remote_socket).expanduser()


# ----------------------------
# Cached accessor
# ----------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Cached settings accessor. Safe to import and call across the package.
    """
    return Settings.from_env(dotenv=True)


__all__ = [
    "DEFAULT_IMAGE",
    "DEFAULT_HELPER_IMAGE",
    "DEFAULT_SHELL",
    "DEFAULT_USER",
    "DEFAULT_UID",
    "Settings",
    "get_settings",
]
