"""
Shared dependencies for devws commands.

Contents:
- docker_client(): Docker client factory honouring the remote tunnel socket.

Project policy notes:
- No lazy imports.
- No try/except guards around imports; failures should be explicit.
"""

from __future__ import annotations

from typing import Optional

import docker
from docker import DockerClient
from docker.errors import DockerException

from devws.config import Settings, get_settings
from devws.errors import EngineError


# --------------------------
# Docker client dependency
# --------------------------

def docker_client(settings: Optional[Settings] = None) -> DockerClient:
    """
    Provide a DockerClient configured via environment.

    When a remote endpoint is configured the client talks to the local end of
    the tunnel socket (see devws.remote); otherwise DOCKER_HOST and friends
    apply as usual.

    Note:
    - Caller is responsible for closing the client.
    """
    cfg = settings or get_settings()
    try:
        if cfg.remote:
            return DockerClient(
                base_url=f"unix://{cfg.remote_socket_path()}",
                timeout=cfg.docker_client_timeout,
            )
        return docker.from_env(timeout=cfg.docker_client_timeout)
    except DockerException as e:
        raise EngineError(f"Cannot connect to the container engine: {e}") from e


__all__ = [
    "docker_client",
]
