from __future__ import annotations

"""
Git operations, always run inside a short-lived helper container.

The host never needs git or the SSH key: the helper image mounts the global
ssh-key volume and does the clone itself.
"""

import logging
import re
import shlex
from typing import List, Optional, Sequence, Tuple

from docker import DockerClient

from devws.config import Settings
from devws.errors import ConfigError, EngineError
from devws.workspaces.core import ROLE_HELPER, managed_labels, to_safe_id
from devws.workspaces.docker_utils import run_one_shot, volume_mount
from devws.workspaces.identity import IdentityProvider

logger = logging.getLogger("devws")

WORK_ROOT = "/work"
_NOT_FOUND_EXIT = 3


def repo_dir_name(url: str) -> str:
    """
    Directory a clone of `url` lands in: the last path segment without '.git'.
    """
    last = re.split(r"[/:]", url.rstrip("/"))[-1]
    if last.endswith(".git"):
        last = last[: -len(".git")]
    if not last:
        raise ConfigError(f"cannot derive a directory name from git url {url!r}")
    return last


class GitHelper:
    """
    Clones repositories with the helper image.

    Used by ConfigResolver to read spec documents out of a repository and by
    the orchestrator to seed a workspace's work volume.
    """

    def __init__(self, client: DockerClient, settings: Settings, identities: IdentityProvider) -> None:
        self.client = client
        self.settings = settings
        self.identities = identities

    def _run(self, script: str, name: str, mounts: Optional[List] = None):
        self.identities.ensure_volumes()
        return run_one_shot(
            self.client,
            self.settings.helper_image,
            script,
            name=name,
            mounts=[self.identities.ssh_mount()] + list(mounts or []),
            labels=managed_labels(role=ROLE_HELPER),
            environment={"GIT_SSH_COMMAND": self.identities.git_ssh_command()},
        )

    def read_file(self, url: str, candidates: Sequence[str]) -> Optional[Tuple[str, str]]:
        """
        Shallow-clone `url` and return (path, text) of the first candidate
        path that exists, or None if none does.
        """
        lines = [
            "set -e",
            "rm -rf /tmp/repo",
            f"git clone --depth 1 --quiet {shlex.quote(url)} /tmp/repo >&2",
            "cd /tmp/repo",
        ]
        for path in candidates:
            q = shlex.quote(path)
            lines.append(f"if [ -f {q} ]; then echo {q}; cat {q}; exit 0; fi")
        lines.append(f"exit {_NOT_FOUND_EXIT}")
        out = self._run("\n".join(lines), name=f"devws-git-fetch-{to_safe_id(url)[:40]}")
        if out.exit_code == _NOT_FOUND_EXIT:
            return None
        if not out.ok:
            raise ConfigError(f"cannot fetch {url}: {out.stderr.strip() or 'git clone failed'}")
        found, _, text = out.stdout.partition("\n")
        return found, text

    def clone_into_volume(self, url: str, work_volume: str, uid: str) -> bool:
        """
        Clone `url` into /work/<repo> of the work volume when the volume is
        empty. Returns True if a clone happened.
        """
        target = f"{WORK_ROOT}/{repo_dir_name(url)}"
        q_uid = shlex.quote(uid)
        script = "\n".join([
            "set -e",
            f"if [ -n \"$(ls -A {WORK_ROOT} 2>/dev/null)\" ]; then echo __skipped__; exit 0; fi",
            f"git clone --quiet {shlex.quote(url)} {shlex.quote(target)} >&2",
            f"chown -R {q_uid}:{q_uid} {WORK_ROOT}",
        ])
        out = self._run(
            script,
            name=f"{work_volume}-clone",
            mounts=[volume_mount(WORK_ROOT, work_volume)],
        )
        if not out.ok:
            raise EngineError(f"git clone of {url} into {work_volume} failed: {out.stderr.strip()}")
        cloned = "__skipped__" not in out.stdout
        logger.info("Work volume %s: %s", work_volume, f"cloned {url}" if cloned else "not empty, clone skipped")
        return cloned

    def clone_extra_repos(self, urls: Sequence[str], work_volume: str, uid: str) -> List[str]:
        """
        Clone each of `urls` into /work/<repo> unless that directory already
        holds a repository. Returns the urls cloned by this call.
        """
        if not urls:
            return []
        q_uid = shlex.quote(uid)
        lines = ["set -e"]
        for url in urls:
            target = shlex.quote(f"{WORK_ROOT}/{repo_dir_name(url)}")
            lines.append(
                f"if [ -d {target}/.git ]; then :; else "
                f"git clone --quiet {shlex.quote(url)} {target} >&2 && chown -R {q_uid}:{q_uid} {target} "
                f"&& echo {shlex.quote(url)}; fi"
            )
        out = self._run(
            "\n".join(lines),
            name=f"{work_volume}-clone-extra",
            mounts=[volume_mount(WORK_ROOT, work_volume)],
        )
        if not out.ok:
            raise EngineError(f"cloning extra repositories into {work_volume} failed: {out.stderr.strip()}")
        cloned = [line for line in out.stdout.splitlines() if line]
        logger.info("Work volume %s: cloned %d of %d extra repositories", work_volume, len(cloned), len(urls))
        return cloned


__all__ = [
    "WORK_ROOT",
    "repo_dir_name",
    "GitHelper",
]
