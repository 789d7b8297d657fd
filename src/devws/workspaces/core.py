from __future__ import annotations

"""
Core helpers for workspaces: labels, deterministic resource naming and the
ResourceSet of one workspace.

Nothing here touches the container engine. Every engine resource devws owns
is found again later by recomputing its name from the workspace spec, so the
functions in this module must stay pure: no randomness, no timestamps, no
process state.

Contents:
- Labels used to mark managed resources, and label filters
- ResourceKind and resource_name()
- ResourceSet computed from a WorkspaceSpec
"""

import enum
import hashlib
import posixpath
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from devws.errors import ConfigError
from devws.models import NAME_RE, WORK_CONTAINER, WorkspaceSpec

# --------------------------
# Labels (public constants)
# --------------------------

LABEL_MANAGED = "devws.managed"
LABEL_WORKSPACE = "devws.workspace"
LABEL_ROLE = "devws.role"
LABEL_CONTAINER = "devws.container"
LABEL_CACHE_PATH = "devws.cache_path"
LABEL_SHELL = "devws.shell"
LABEL_USER = "devws.user"
LABEL_UID = "devws.uid"
LABEL_WORK_DIR = "devws.work_dir"
LABEL_ORIGIN = "devws.origin"
LABEL_CONFIG_BODY = "devws.config.body"
LABEL_OVERRIDES = "devws.config.overrides"
LABEL_RUNTIME = "devws.config.runtime"

ROLE_WORK = "work"
ROLE_SIDECAR = "sidecar"
ROLE_HELPER = "helper"
ROLE_NETWORK = "network"
ROLE_HOME = "home"
ROLE_WORK_VOLUME = "work-volume"
ROLE_DATA = "data"
ROLE_CACHE = "cache"
ROLE_SSH_KEY = "ssh-key"
ROLE_AGE_KEY = "age-key"

# Volumes that `remove` may delete; everything else is shared
WORKSPACE_VOLUME_ROLES = frozenset({ROLE_HOME, ROLE_WORK_VOLUME, ROLE_DATA})
IDENTITY_VOLUME_ROLES = frozenset({ROLE_SSH_KEY, ROLE_AGE_KEY})


def managed_labels(
    workspace: Optional[str] = None,
    role: Optional[str] = None,
    container: Optional[str] = None,
) -> Dict[str, str]:
    """
    Build the labels dict attached to every resource devws creates.
    """
    labels: Dict[str, str] = {LABEL_MANAGED: "true"}
    if workspace:
        labels[LABEL_WORKSPACE] = workspace
    if role:
        labels[LABEL_ROLE] = role
    if container:
        labels[LABEL_CONTAINER] = container
    return labels


def label_filters(workspace: Optional[str] = None, role: Optional[str] = None) -> Dict[str, List[str]]:
    """
    Build Docker SDK filters for listing managed resources.
    Usage:
        client.containers.list(all=True, filters=label_filters(workspace="demo"))
    """
    labels = [f"{LABEL_MANAGED}=true"]
    if workspace:
        labels.append(f"{LABEL_WORKSPACE}={workspace}")
    if role:
        labels.append(f"{LABEL_ROLE}={role}")
    return {"label": labels}


# --------------------------
# Naming
# --------------------------

NAME_PREFIX = "devws"

_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_.-]")
_DASHES_RE = re.compile(r"-{2,}")


class ResourceKind(str, enum.Enum):
    network = "network"
    home = "home"
    work = "work"
    cache = "cache"
    sidecar_data = "sidecar-data"
    container = "container"
    ssh_key = "ssh-key"
    age_key = "age-key"


def to_safe_id(value: str) -> str:
    """
    Map arbitrary text to characters allowed in engine resource names.
    """
    safe = _UNSAFE_RE.sub("-", value).lower()
    return _DASHES_RE.sub("-", safe).strip("-")


def normalize_path(path: str) -> str:
    """
    Normalize a container path used as a volume discriminant.

    '~/.nuget', '~/.nuget/' and '~//.nuget' are the same path.
    """
    p = (path or "").strip()
    if not p:
        raise ConfigError("empty path")
    norm = posixpath.normpath(p)
    # posixpath keeps a leading '//' by POSIX rules; a path is a path here
    if norm.startswith("//"):
        norm = "/" + norm.lstrip("/")
    return norm


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _path_slug(path: str) -> str:
    norm = normalize_path(path)
    return f"{to_safe_id(norm) or 'root'}-{_digest(norm)}"


def resource_name(workspace: Optional[str], kind: ResourceKind, discriminant: Optional[str] = None) -> str:
    """
    Compute the engine name of a resource.

    Args:
        workspace: Workspace name. Ignored for global resources (cache, ssh-key, age-key).
        kind: Which resource.
        discriminant: Cache path for `cache`; container name for `container`;
            "<sidecar>:<path>" for `sidecar-data`.
    """
    kind = ResourceKind(kind)
    if kind is ResourceKind.ssh_key:
        return f"{NAME_PREFIX}-ssh-key"
    if kind is ResourceKind.age_key:
        return f"{NAME_PREFIX}-age-key"
    if kind is ResourceKind.cache:
        if not discriminant:
            raise ConfigError("cache volume requires a path")
        return f"{NAME_PREFIX}-cache-{_path_slug(discriminant)}"

    if not workspace or not NAME_RE.match(workspace):
        raise ConfigError(f"invalid workspace name {workspace!r}")
    if kind is ResourceKind.network:
        return f"{NAME_PREFIX}-{workspace}"
    if kind is ResourceKind.home:
        return f"{NAME_PREFIX}-{workspace}-home"
    if kind is ResourceKind.work:
        return f"{NAME_PREFIX}-{workspace}-work"
    if kind is ResourceKind.container:
        container = discriminant or WORK_CONTAINER
        if not NAME_RE.match(container):
            raise ConfigError(f"invalid container name {container!r}")
        return f"{NAME_PREFIX}-{workspace}-{container}"
    # sidecar data volume
    sidecar, sep, path = (discriminant or "").partition(":")
    if not sep or not sidecar or not path:
        raise ConfigError("sidecar volume requires '<sidecar>:<path>'")
    return f"{NAME_PREFIX}-{workspace}-{sidecar}-{_path_slug(path)}"


# --------------------------
# ResourceSet
# --------------------------

@dataclass(frozen=True)
class ResourceSet:
    """
    Every engine resource name a workspace uses. Recomputed, never stored.
    """

    workspace: str
    network: str
    home_volume: str
    work_volume: str
    ssh_key_volume: str
    age_key_volume: str
    work_container: str
    # normalized cache path -> volume name
    cache_volumes: Dict[str, str] = field(default_factory=dict)
    # sidecar -> container name
    sidecar_containers: Dict[str, str] = field(default_factory=dict)
    # sidecar -> [(mount path, volume name)]
    sidecar_volumes: Dict[str, List[Tuple[str, str]]] = field(default_factory=dict)

    @staticmethod
    def from_spec(spec: WorkspaceSpec) -> "ResourceSet":
        ws = spec.name
        caches: Dict[str, str] = {}
        for path in spec.caches:
            norm = normalize_path(path)
            caches.setdefault(norm, resource_name(None, ResourceKind.cache, norm))

        sidecar_containers: Dict[str, str] = {}
        sidecar_volumes: Dict[str, List[Tuple[str, str]]] = {}
        for name, sc in spec.sidecars.items():
            sidecar_containers[name] = resource_name(ws, ResourceKind.container, name)
            sidecar_volumes[name] = [
                (m.mount, resource_name(ws, ResourceKind.sidecar_data, f"{name}:{normalize_path(m.mount)}"))
                for m in sc.volume_mounts()
            ]

        return ResourceSet(
            workspace=ws,
            network=resource_name(ws, ResourceKind.network),
            home_volume=resource_name(ws, ResourceKind.home),
            work_volume=resource_name(ws, ResourceKind.work),
            ssh_key_volume=resource_name(None, ResourceKind.ssh_key),
            age_key_volume=resource_name(None, ResourceKind.age_key),
            work_container=resource_name(ws, ResourceKind.container, WORK_CONTAINER),
            cache_volumes=caches,
            sidecar_containers=sidecar_containers,
            sidecar_volumes=sidecar_volumes,
        )

    def workspace_volumes(self) -> List[Tuple[str, str]]:
        """
        (volume name, role) of every volume owned by this workspace alone.
        """
        vols = [(self.home_volume, ROLE_HOME), (self.work_volume, ROLE_WORK_VOLUME)]
        for mounts in self.sidecar_volumes.values():
            vols.extend((vol, ROLE_DATA) for _path, vol in mounts)
        return vols


__all__ = [
    "LABEL_MANAGED",
    "LABEL_WORKSPACE",
    "LABEL_ROLE",
    "LABEL_CONTAINER",
    "LABEL_CACHE_PATH",
    "LABEL_SHELL",
    "LABEL_USER",
    "LABEL_UID",
    "LABEL_WORK_DIR",
    "LABEL_ORIGIN",
    "LABEL_CONFIG_BODY",
    "LABEL_OVERRIDES",
    "LABEL_RUNTIME",
    "ROLE_WORK",
    "ROLE_SIDECAR",
    "ROLE_HELPER",
    "ROLE_NETWORK",
    "ROLE_HOME",
    "ROLE_WORK_VOLUME",
    "ROLE_DATA",
    "ROLE_CACHE",
    "ROLE_SSH_KEY",
    "ROLE_AGE_KEY",
    "WORKSPACE_VOLUME_ROLES",
    "IDENTITY_VOLUME_ROLES",
    "managed_labels",
    "label_filters",
    "ResourceKind",
    "to_safe_id",
    "normalize_path",
    "resource_name",
    "ResourceSet",
]
