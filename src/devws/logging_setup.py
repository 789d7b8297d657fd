"""
Centralized rotating file logging for devws.

Every invocation writes DEBUG and above to a rotating log file so a failed
provisioning run can be diagnosed afterwards. The console only shows warnings
unless DEVWS_DEBUG is set, which keeps interactive shells quiet.

Usage (call once, before any engine call):

    from devws.logging_setup import initialize_from_env

    log_path = initialize_from_env(debug=settings.debug)

Environment variables (optional):
- DEVWS_LOG_FILE: Absolute path to the desired log file.
- DEVWS_LOG_DIR:  Directory where the log file should be created.
- DEVWS_LOG_MAX_BYTES: Max file size before rotate (default: 5242880 = 5MB).
- DEVWS_LOG_BACKUP_COUNT: Number of rotated files to keep (default: 5).
- DEVWS_LOG_LEVEL: Console level when not debugging (default: WARNING).
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Union

__all__ = [
    "initialize_from_env",
    "setup_logging",
    "configure_third_party_loggers",
]

_DEFAULT_MAX_BYTES = 5 * 1024 * 1024  # 5MB
_DEFAULT_BACKUP_COUNT = 5
_DEFAULT_FORMAT_FILE = "%(asctime)s %(levelname)s [devws] %(name)s pid=%(process)d %(filename)s:%(lineno)d - %(message)s"
_DEFAULT_FORMAT_CONSOLE = "%(levelname)s %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_ATTACHED_LOG_PATHS: set[str] = set()


def _coerce_level(level: Optional[Union[int, str]], default: int = logging.WARNING) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        upper = level.strip().upper()
        return getattr(logging, upper, default)
    return default


def _candidate_paths(service_name: str, log_dir: Optional[Union[str, Path]]) -> List[Path]:
    """
    Compute a prioritized list of candidate paths to use for the log file.
    """
    candidates: List[Path] = []

    env_file = os.getenv("DEVWS_LOG_FILE")
    if env_file:
        candidates.append(Path(env_file).expanduser())

    file_name = f"{service_name}.log"
    if log_dir:
        candidates.append(Path(log_dir).expanduser() / file_name)
    env_dir = os.getenv("DEVWS_LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir).expanduser() / file_name)

    candidates.append(Path.home() / ".devws" / "logs" / file_name)
    candidates.append(Path(tempfile.gettempdir()) / "devws" / "logs" / file_name)
    return candidates


def _writable(path: Path) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
    except OSError:
        return False
    return os.access(path, os.W_OK)


def _pick_log_path(service_name: str, log_dir: Optional[Union[str, Path]]) -> Optional[Path]:
    """
    Choose the first writable path from the candidates, or None if none is writable.
    """
    for candidate in _candidate_paths(service_name, log_dir):
        if _writable(candidate):
            return candidate
    return None


def configure_third_party_loggers(base_level: int) -> None:
    """
    Tame noisy third-party libraries while allowing escalation via DEBUG when needed.
    """
    lib_level = logging.INFO if base_level <= logging.DEBUG else logging.WARNING
    for name in ("docker", "urllib3"):
        logging.getLogger(name).setLevel(lib_level)

    for name in ("urllib3.connectionpool", "concurrent.futures"):
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(
    service_name: str = "devws",
    *,
    console_level: Optional[Union[int, str]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    add_console: bool = True,
) -> Optional[Path]:
    """
    Configure root logging with a rotating file handler plus a stderr console handler.

    - File handler captures DEBUG and above.
    - Console handler emits at console_level (WARNING unless told otherwise).
    - A read-only home directory degrades to console-only logging.

    Returns:
        Path to the active log file, or None when no writable path exists.
    """
    base_level = _coerce_level(
        console_level if console_level is not None else os.getenv("DEVWS_LOG_LEVEL") or "WARNING"
    )
    bytes_limit = int(os.getenv("DEVWS_LOG_MAX_BYTES", str(max_bytes if max_bytes is not None else _DEFAULT_MAX_BYTES)))
    keep_files = int(os.getenv("DEVWS_LOG_BACKUP_COUNT", str(backup_count if backup_count is not None else _DEFAULT_BACKUP_COUNT)))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    log_path = _pick_log_path(service_name, log_dir)
    if log_path is not None:
        target_key = str(log_path.resolve())
        if target_key not in _ATTACHED_LOG_PATHS:
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_path,
                maxBytes=max(1, bytes_limit),
                backupCount=max(1, keep_files),
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT_FILE, datefmt=_DEFAULT_DATEFMT))
            root.addHandler(file_handler)
            _ATTACHED_LOG_PATHS.add(target_key)

    if add_console:
        has_console = any(
            isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) in (sys.stdout, sys.stderr)
            for h in root.handlers
        )
        if not has_console:
            ch = logging.StreamHandler(stream=sys.stderr)
            ch.setLevel(base_level)
            ch.setFormatter(logging.Formatter(_DEFAULT_FORMAT_CONSOLE, datefmt=_DEFAULT_DATEFMT))
            root.addHandler(ch)

    logging.getLogger("devws").setLevel(logging.DEBUG)
    configure_third_party_loggers(base_level)

    logging.getLogger("devws").debug(
        "Logging initialized: file=%s console=%s backup=%s",
        str(log_path) if log_path else "<none>",
        logging.getLevelName(base_level),
        keep_files,
    )
    return log_path


def initialize_from_env(debug: bool = False, service_name: str = "devws") -> Optional[Path]:
    """
    Convenience initializer for CLI startup.

    debug=True (DEVWS_DEBUG) lowers the console handler to DEBUG.
    """
    return setup_logging(service_name=service_name, console_level=logging.DEBUG if debug else None)
