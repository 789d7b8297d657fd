"""
Error taxonomy for devws.

Every terminal failure raised by the engine derives from WorkspaceError so the
CLI can report it once and map it to an exit code. Messages name the offending
field or resource.
"""

from __future__ import annotations


class WorkspaceError(Exception):
    """Base class for all devws errors."""

    exit_code: int = 1


class ConfigError(WorkspaceError):
    """Spec document could not be parsed, merged or validated."""

    exit_code = 3


class TemplateError(WorkspaceError):
    """A placeholder could not be resolved."""

    exit_code = 4


class DecryptionError(TemplateError):
    """A secret could not be decrypted with the stored identity."""


class EngineError(WorkspaceError):
    """The container engine rejected a call or could not be reached."""

    exit_code = 5


class NotFoundError(WorkspaceError):
    """A referenced workspace or container does not exist."""

    exit_code = 6


class ConflictError(WorkspaceError):
    """A resource exists in a state that prevents the operation."""

    exit_code = 7


class TunnelError(WorkspaceError):
    """The SSH tunnel to the remote engine failed."""

    exit_code = 8


__all__ = [
    "WorkspaceError",
    "ConfigError",
    "TemplateError",
    "DecryptionError",
    "EngineError",
    "NotFoundError",
    "ConflictError",
    "TunnelError",
]
