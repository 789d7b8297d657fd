from __future__ import annotations

"""
Pydantic models for devws workspace specs.

These models define:
- The spec document shape (SpecDocument) shared by the YAML and TOML decoders
- The canonical, fully merged WorkspaceSpec consumed by the orchestrator
- Sidecar definitions, including the tagged mount variant
- Port mappings and workspace state

Notes:
- Unknown fields are rejected at parse time.
- vars are kept as an ordered list of (key, value) pairs; placeholder
  resolution depends on declaration order.
"""

import enum
import re
import shlex
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")

# Container discriminant reserved for the main container of a workspace
WORK_CONTAINER = "work"


# -----------------------
# Enums and simple types
# -----------------------

class WorkspaceState(str, enum.Enum):
    absent = "absent"
    provisioning = "provisioning"
    running = "running"
    stopped = "stopped"
    removed = "removed"


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return str(value)
    raise ValueError(f"expected a scalar value, got {type(value).__name__}")


def _string_mapping(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("expected a mapping")
    return {str(k): _stringify(v) for k, v in value.items()}


def _argv(value: Any) -> Optional[List[str]]:
    """Accept a command line as a string (shell-split) or a sequence of tokens."""
    if value is None:
        return None
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, (list, tuple)):
        return [_stringify(v) for v in value]
    raise ValueError("expected a string or a list of strings")


class PortMapping(BaseModel):
    """
    A published port. host=None publishes to a random host port.
    Bindings are always made on the loopback interface.
    """
    model_config = ConfigDict(frozen=True)

    host: Optional[int] = Field(default=None, ge=1, le=65535)
    container: int = Field(ge=1, le=65535)

    @classmethod
    def from_value(cls, value: Any) -> "PortMapping":
        if isinstance(value, PortMapping):
            return value
        if isinstance(value, dict):
            return cls.model_validate(value)
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(container=value)
        if not isinstance(value, str):
            raise ValueError(f"invalid port mapping {value!r}")
        parts = value.strip().split(":")
        try:
            numbers = [int(p) for p in parts]
        except ValueError:
            numbers = []
        if len(numbers) == 1:
            return cls(container=numbers[0])
        if len(numbers) == 2:
            return cls(host=numbers[0], container=numbers[1])
        raise ValueError(f"invalid port mapping {value!r}, expected 'host:container' or 'container'")

    def docker_key(self) -> str:
        return f"{self.container}/tcp"

    def docker_binding(self) -> tuple:
        if self.host is None:
            return ("127.0.0.1",)
        return ("127.0.0.1", self.host)

    def __str__(self) -> str:
        return f"{self.host}:{self.container}" if self.host is not None else str(self.container)


def _ports(value: Any) -> List[PortMapping]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError("ports must be a list")
    return [PortMapping.from_value(v) for v in value]


# -----------------------
# Sidecar mounts
# -----------------------

class VolumeMount(BaseModel):
    """An auto-named volume mounted at `mount`."""
    model_config = ConfigDict(extra="forbid")

    kind: Literal["volume"] = "volume"
    mount: str


class ContentMount(BaseModel):
    """A file at `mount` holding literal `content`, written when the container is created."""
    model_config = ConfigDict(extra="forbid")

    kind: Literal["content"] = "content"
    mount: str
    content: str


SidecarMount = Annotated[Union[VolumeMount, ContentMount], Field(discriminator="kind")]


def _coerce_mount(item: Any) -> Union[VolumeMount, ContentMount]:
    if isinstance(item, (VolumeMount, ContentMount)):
        return item
    if isinstance(item, str):
        return VolumeMount(mount=item)
    if isinstance(item, dict):
        keys = set(item)
        if keys == {"mount", "content"} and isinstance(item["mount"], str) and isinstance(item["content"], str):
            return ContentMount(mount=item["mount"], content=item["content"])
        if keys == {"kind", "mount"} and item.get("kind") == "volume":
            return VolumeMount(mount=item["mount"])
        if keys == {"kind", "mount", "content"} and item.get("kind") == "content":
            return ContentMount(mount=item["mount"], content=item["content"])
    raise ValueError(f"invalid mount {item!r}: expected a path string or {{mount, content}}")


# -----------------------
# Sidecars
# -----------------------

class SidecarSpec(BaseModel):
    """
    An auxiliary container on the workspace network, reachable under its name.
    """
    model_config = ConfigDict(extra="forbid")

    name: str = ""
    image: str
    command: Optional[List[str]] = None
    args: Optional[List[str]] = None
    env: Dict[str, str] = Field(default_factory=dict)
    mounts: List[SidecarMount] = Field(default_factory=list)
    ports: List[PortMapping] = Field(default_factory=list)
    work_dir: Optional[str] = None
    user: Optional[str] = None
    mount_work: bool = False
    privileged: bool = False
    init: bool = True

    @field_validator("command", "args", mode="before")
    @classmethod
    def _v_command(cls, v: Any) -> Optional[List[str]]:
        return _argv(v)

    @field_validator("env", mode="before")
    @classmethod
    def _v_env(cls, v: Any) -> Dict[str, str]:
        return _string_mapping(v)

    @field_validator("mounts", mode="before")
    @classmethod
    def _v_mounts(cls, v: Any) -> List[Union[VolumeMount, ContentMount]]:
        if v is None:
            return []
        if not isinstance(v, (list, tuple)):
            raise ValueError("mounts must be a list")
        return [_coerce_mount(item) for item in v]

    @field_validator("ports", mode="before")
    @classmethod
    def _v_ports(cls, v: Any) -> List[PortMapping]:
        return _ports(v)

    def volume_mounts(self) -> List[VolumeMount]:
        return [m for m in self.mounts if isinstance(m, VolumeMount)]

    def content_mounts(self) -> List[ContentMount]:
        return [m for m in self.mounts if isinstance(m, ContentMount)]

    def docker_command(self) -> Optional[List[str]]:
        """`args` follow `command`; on their own they replace the image CMD."""
        argv = list(self.command or []) + list(self.args or [])
        return argv or None


def _sidecars(value: Any) -> Dict[str, SidecarSpec]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("sidecars must be a mapping of name -> sidecar")
    out: Dict[str, SidecarSpec] = {}
    for key, raw in value.items():
        name = str(key)
        if not NAME_RE.match(name) or name == WORK_CONTAINER:
            raise ValueError(f"invalid sidecar name {name!r}")
        if isinstance(raw, SidecarSpec):
            sc = raw
        elif isinstance(raw, dict):
            sc = SidecarSpec.model_validate(raw)
        else:
            raise ValueError(f"sidecar {name!r} must be a mapping")
        if sc.name and sc.name != name:
            raise ValueError(f"sidecar {name!r} declares a different name {sc.name!r}")
        out[name] = sc.model_copy(update={"name": name})
    return out


def _vars(value: Any) -> List[Tuple[str, str]]:
    if value is None:
        return []
    if isinstance(value, dict):
        items = list(value.items())
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ValueError("vars must be an ordered mapping")
    out: List[Tuple[str, str]] = []
    seen: set[str] = set()
    for item in items:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            raise ValueError(f"invalid var entry {item!r}")
        key, val = str(item[0]), _stringify(item[1])
        if key in seen:
            raise ValueError(f"var {key!r} declared twice")
        seen.add(key)
        out.append((key, val))
    return out


def check_cache_path(path: str) -> str:
    """
    Cache paths are absolute or home-relative. Templated paths are checked
    again once rendered.
    """
    if "{{" in path or path == "~" or path.startswith(("/", "~/")):
        return path
    raise ValueError(f"cache path {path!r} must be absolute or start with '~/'")


def _caches(value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError("caches must be a list of paths")
    out: List[str] = []
    for item in value:
        path = check_cache_path(str(item))
        if path not in out:
            out.append(path)
    return out


def _repos(value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValueError("extra_repos must be a list of git urls")
    out: List[str] = []
    for item in value:
        url = str(item).strip()
        if not url:
            raise ValueError("extra_repos entries must not be empty")
        if url not in out:
            out.append(url)
    return out


# -----------------------
# Documents and specs
# -----------------------

class SpecDocument(BaseModel):
    """
    The on-disk spec document. Every field is optional; absent fields fall
    through to environment settings and built-in defaults.
    """
    model_config = ConfigDict(extra="forbid")

    image: Optional[str] = None
    shell: Optional[List[str]] = None
    user: Optional[str] = None
    work_dir: Optional[str] = None
    mount_work: Optional[bool] = None
    git_url: Optional[str] = None
    extra_repos: List[str] = Field(default_factory=list)
    home_from_image: Optional[str] = None
    caches: List[str] = Field(default_factory=list)
    ports: List[PortMapping] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    vars: List[Tuple[str, str]] = Field(default_factory=list)
    secrets: Dict[str, str] = Field(default_factory=dict)
    sidecars: Dict[str, SidecarSpec] = Field(default_factory=dict)

    @field_validator("shell", mode="before")
    @classmethod
    def _v_shell(cls, v: Any) -> Optional[List[str]]:
        return _argv(v)

    @field_validator("env", "secrets", mode="before")
    @classmethod
    def _v_mapping(cls, v: Any) -> Dict[str, str]:
        return _string_mapping(v)

    @field_validator("vars", mode="before")
    @classmethod
    def _v_vars(cls, v: Any) -> List[Tuple[str, str]]:
        return _vars(v)

    @field_validator("extra_repos", mode="before")
    @classmethod
    def _v_extra_repos(cls, v: Any) -> List[str]:
        return _repos(v)

    @field_validator("caches", mode="before")
    @classmethod
    def _v_caches(cls, v: Any) -> List[str]:
        return _caches(v)

    @field_validator("ports", mode="before")
    @classmethod
    def _v_ports(cls, v: Any) -> List[PortMapping]:
        return _ports(v)

    @field_validator("sidecars", mode="before")
    @classmethod
    def _v_sidecars(cls, v: Any) -> Dict[str, SidecarSpec]:
        return _sidecars(v)


class GitSource(BaseModel):
    url: str


class WorkspaceSpec(BaseModel):
    """
    Canonical, fully merged description of one workspace.

    Built fresh from sources on every invocation; only the source document is
    stored by the user.
    """
    model_config = ConfigDict(extra="forbid")

    name: str
    image: str
    shell: List[str] = Field(default_factory=lambda: ["sh"])
    user: str
    uid: str = "1000"
    work_dir: Optional[str] = None
    mount_work: bool = True
    env: Dict[str, str] = Field(default_factory=dict)
    vars: List[Tuple[str, str]] = Field(default_factory=list)
    secrets: Dict[str, str] = Field(default_factory=dict)
    caches: List[str] = Field(default_factory=list)
    ports: List[PortMapping] = Field(default_factory=list)
    sidecars: Dict[str, SidecarSpec] = Field(default_factory=dict)
    git: Optional[GitSource] = None
    extra_repos: List[str] = Field(default_factory=list)
    home_from_image: Optional[str] = None
    origin: Optional[str] = None
    # document text as read (secrets still encrypted) and the CLI overrides,
    # recorded on the work container so `update` can re-resolve
    config_body: Optional[str] = None
    overrides: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _v_name(cls, v: str) -> str:
        if not NAME_RE.match(v or ""):
            raise ValueError(f"invalid workspace name {v!r}: use lowercase letters, digits, '_', '.' or '-'")
        return v

    @field_validator("shell", mode="before")
    @classmethod
    def _v_shell(cls, v: Any) -> List[str]:
        argv = _argv(v)
        if not argv:
            raise ValueError("shell must not be empty")
        return argv

    @field_validator("env", "secrets", mode="before")
    @classmethod
    def _v_mapping(cls, v: Any) -> Dict[str, str]:
        return _string_mapping(v)

    @field_validator("vars", mode="before")
    @classmethod
    def _v_vars(cls, v: Any) -> List[Tuple[str, str]]:
        return _vars(v)

    @field_validator("extra_repos", mode="before")
    @classmethod
    def _v_extra_repos(cls, v: Any) -> List[str]:
        return _repos(v)

    @field_validator("caches", mode="before")
    @classmethod
    def _v_caches(cls, v: Any) -> List[str]:
        return _caches(v)

    @field_validator("ports", mode="before")
    @classmethod
    def _v_ports(cls, v: Any) -> List[PortMapping]:
        return _ports(v)

    @field_validator("sidecars", mode="before")
    @classmethod
    def _v_sidecars(cls, v: Any) -> Dict[str, SidecarSpec]:
        return _sidecars(v)

    @model_validator(mode="after")
    def _v_image(self) -> "WorkspaceSpec":
        if not self.image.strip():
            raise ValueError("no image resolved for the work container")
        return self

    @property
    def home(self) -> str:
        return f"/home/{self.user}"


__all__ = [
    "NAME_RE",
    "check_cache_path",
    "WORK_CONTAINER",
    "WorkspaceState",
    "PortMapping",
    "VolumeMount",
    "ContentMount",
    "SidecarMount",
    "SidecarSpec",
    "SpecDocument",
    "GitSource",
    "WorkspaceSpec",
]
