"""
Config resolution: CLI overrides, a spec document and environment settings
merged into one WorkspaceSpec.

Precedence, highest first:

    CLI override > spec document > environment (Settings) > built-in default

with two exceptions: caches are the union of the document's and the
environment's lists, and ports only ever come from the document.

The document is optional. It may be a local file, or a path inside a git
repository written as ``<git-url>//<path>``. When only ``--git`` is given,
the repository root is searched for a repository-declared config.
"""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from pydantic import ValidationError

from devws.config import DEFAULT_SHELL, DEFAULT_UID, Settings
from devws.documents import format_for, load_document, read_source
from devws.errors import ConfigError
from devws.models import GitSource, SpecDocument, WorkspaceSpec
from devws.workspaces.git import WORK_ROOT, repo_dir_name

logger = logging.getLogger("devws")

REPO_CONFIG_NAMES = (".devws.yaml", ".devws.yml", ".devws.toml")

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


class DocumentFetcher(Protocol):
    def read_file(self, url: str, candidates: Sequence[str]) -> Optional[Tuple[str, str]]: ...


@dataclass(frozen=True)
class ConfigPath:
    """
    Where a spec document comes from: a local file, or a file in a git repository.
    """

    path: str
    git_url: Optional[str] = None

    @property
    def is_git(self) -> bool:
        return self.git_url is not None

    @staticmethod
    def parse(value: str) -> "ConfigPath":
        """
        'spec.yaml' -> local file; 'git@host:org/repo.git//dev/spec.yaml' or
        'https://host/org/repo.git//spec.toml' -> file inside a repository.
        """
        value = value.strip()
        if not value:
            raise ConfigError("empty config path")
        m = _SCHEME_RE.match(value)
        scheme, rest = (m.group(0), value[m.end():]) if m else ("", value)
        repo, sep, path = rest.partition("//")
        # scp-like urls (git@host:org/repo) have no scheme but always a colon
        if sep and (scheme or ":" in repo):
            if not repo or not path:
                raise ConfigError(f"invalid config reference {value!r}, expected '<git-url>//<path>'")
            return ConfigPath(path=path, git_url=scheme + repo)
        if scheme:
            raise ConfigError(f"config reference {value!r} names a repository but no file; use '<git-url>//<path>'")
        return ConfigPath(path=value)

    def __str__(self) -> str:
        return f"{self.git_url}//{self.path}" if self.git_url else self.path


@dataclass(frozen=True)
class CliOverrides:
    image: Optional[str] = None
    shell: Optional[str] = None
    user: Optional[str] = None
    git_url: Optional[str] = None
    config: Optional[str] = None

    def recorded(self) -> Dict[str, str]:
        """Overrides worth replaying on update; the document is recorded separately."""
        return {k: v for k, v in asdict(self).items() if v and k != "config"}


@dataclass(frozen=True)
class LoadedDocument:
    document: SpecDocument
    origin: str
    body: str


def _first(*values: Optional[str]) -> Optional[str]:
    for v in values:
        if v:
            return v
    return None


def _union(*lists: List[str]) -> List[str]:
    out: List[str] = []
    for items in lists:
        for item in items:
            if item not in out:
                out.append(item)
    return out


class ConfigResolver:
    """
    Builds the raw (still templated) WorkspaceSpec for one invocation.
    """

    def __init__(self, settings: Settings, fetcher: Optional[DocumentFetcher] = None) -> None:
        self.settings = settings
        self.fetcher = fetcher

    def _require_fetcher(self) -> DocumentFetcher:
        if self.fetcher is None:
            raise ConfigError("git references need a container engine to clone with")
        return self.fetcher

    def load_document(self, overrides: CliOverrides) -> Optional[LoadedDocument]:
        """
        Return the document that applies to this invocation, or None.
        """
        if overrides.config:
            ref = ConfigPath.parse(overrides.config)
            if not ref.is_git:
                body = read_source(ref.path)
                return LoadedDocument(load_document(body, format_for(ref.path), str(ref)), str(ref), body)
            fmt = format_for(ref.path)
            found = self._require_fetcher().read_file(ref.git_url, [ref.path])
            if found is None:
                raise ConfigError(f"{ref}: file not found in repository")
            _path, body = found
            return LoadedDocument(load_document(body, fmt, str(ref)), str(ref), body)

        if overrides.git_url:
            found = self._require_fetcher().read_file(overrides.git_url, list(REPO_CONFIG_NAMES))
            if found is None:
                logger.info("No repository config in %s; using defaults", overrides.git_url)
                return None
            path, body = found
            origin = str(ConfigPath(path=path, git_url=overrides.git_url))
            return LoadedDocument(load_document(body, format_for(path), origin), origin, body)

        return None

    def merge(self, name: str, overrides: CliOverrides, loaded: Optional[LoadedDocument] = None) -> WorkspaceSpec:
        """
        Apply precedence rules. Pure; does no I/O.
        """
        doc = loaded.document if loaded else SpecDocument()
        s = self.settings

        shell = shlex.split(overrides.shell) if overrides.shell else None
        if not shell:
            shell = doc.shell or (shlex.split(s.shell) if s.shell else None) or [DEFAULT_SHELL]

        git_url = _first(overrides.git_url, doc.git_url)
        work_dir = doc.work_dir
        if work_dir is None:
            work_dir = f"{WORK_ROOT}/{repo_dir_name(git_url)}" if git_url else WORK_ROOT

        try:
            return WorkspaceSpec(
                name=name,
                image=_first(overrides.image, doc.image, s.image) or "",
                shell=shell,
                user=_first(overrides.user, doc.user, s.user),
                uid=s.uid or DEFAULT_UID,
                work_dir=work_dir,
                mount_work=True if doc.mount_work is None else doc.mount_work,
                env=doc.env,
                vars=doc.vars,
                secrets=doc.secrets,
                caches=_union(doc.caches, s.caches),
                ports=doc.ports,
                sidecars=doc.sidecars,
                git=GitSource(url=git_url) if git_url else None,
                extra_repos=doc.extra_repos,
                home_from_image=doc.home_from_image,
                origin=loaded.origin if loaded else None,
                config_body=loaded.body if loaded else None,
                overrides=overrides.recorded(),
            )
        except ValidationError as e:
            raise ConfigError(f"workspace '{name}': {e}") from e

    def resolve(self, name: str, overrides: Optional[CliOverrides] = None) -> WorkspaceSpec:
        overrides = overrides or CliOverrides()
        loaded = self.load_document(overrides)
        spec = self.merge(name, overrides, loaded)
        logger.debug("Resolved config for %s from %s: image=%s", name, spec.origin or "defaults", spec.image)
        return spec

    def reapply(
        self,
        name: str,
        origin: Optional[str],
        body: Optional[str],
        overrides: Mapping[str, str],
        config: Optional[str] = None,
    ) -> WorkspaceSpec:
        """
        Re-resolve a workspace from what its work container recorded.

        The document is read again from its origin (a new `config` replaces
        it). A local document that no longer exists falls back to the copy
        recorded at creation.
        """
        try:
            base = CliOverrides(**overrides)
        except TypeError as e:
            raise ConfigError(f"workspace '{name}': unreadable recorded overrides: {e}") from e
        if config:
            return self.resolve(name, replace(base, config=config))
        if not origin:
            return self.resolve(name, base)
        ref = ConfigPath.parse(origin)
        if ref.is_git or Path(ref.path).expanduser().is_file():
            return self.resolve(name, replace(base, config=origin))
        if body is None:
            raise ConfigError(f"{ref}: document is gone and no copy was recorded")
        logger.warning("%s no longer exists; re-applying the copy recorded at creation", ref)
        loaded = LoadedDocument(load_document(body, format_for(ref.path), str(ref)), str(ref), body)
        return self.merge(name, base, loaded)

    def template(self) -> Dict[str, Any]:
        """
        A starter document filled with the effective environment defaults.
        """
        s = self.settings
        return {
            "image": s.image,
            "shell": s.shell or DEFAULT_SHELL,
            "user": s.user,
            "caches": list(s.caches),
            "ports": [],
            "env": {},
            "vars": {},
            "secrets": {},
            "sidecars": {},
        }


__all__ = [
    "REPO_CONFIG_NAMES",
    "DocumentFetcher",
    "ConfigPath",
    "CliOverrides",
    "LoadedDocument",
    "ConfigResolver",
]
