from __future__ import annotations

"""
Global identity volumes: the SSH keypair used for git and the age identity
used for secrets.

Both live in singleton volumes shared by every workspace. IdentityProvider
is the handle the orchestrator receives; it looks the volumes up (creating
them on first use) and generates key material on `system init`.

Writes happen only on the explicit init/force path; nothing here locks.
"""

import logging
import shlex
from dataclasses import dataclass
from typing import Optional

from docker import DockerClient
from docker.errors import DockerException

from devws.config import Settings
from devws.errors import EngineError, NotFoundError
from devws.vault import FileIdentityStore, IdentityStore, SecretVault
from devws.workspaces.core import (
    ROLE_AGE_KEY,
    ROLE_HELPER,
    ROLE_SSH_KEY,
    ResourceKind,
    managed_labels,
    resource_name,
)
from devws.workspaces.docker_utils import (
    ensure_image,
    ensure_volume,
    find_container,
    read_file_from_container,
    run_one_shot,
    tar_from_bytes,
    translate_docker_errors,
    volume_mount,
)

logger = logging.getLogger("devws")

SSH_KEY_DIR = "/tmp/.ssh"
SSH_KEY_FILE = "id_ed25519"
AGE_KEY_DIR = "/tmp/.age"
AGE_KEY_FILE = "age.key"


# --------------------------
# Volume-backed age identity
# --------------------------

class VolumeIdentityStore(IdentityStore):
    """
    Age identity kept in the global age-key volume.

    Reads and writes go through a helper container that is created but never
    started; get_archive/put_archive work on stopped containers.
    """

    def __init__(self, client: DockerClient, volume: str, helper_image: str) -> None:
        self.client = client
        self.volume = volume
        self.helper_image = helper_image

    @property
    def location(self) -> str:
        return f"volume {self.volume}"

    def _with_helper(self, fn):
        ensure_volume(self.client, self.volume, managed_labels(role=ROLE_AGE_KEY))
        ensure_image(self.client, self.helper_image)
        name = f"{self.volume}-access"
        with translate_docker_errors(f"helper container '{name}'"):
            stale = find_container(self.client, name)
            if stale is not None:
                stale.remove(force=True)
            c = self.client.containers.create(
                self.helper_image,
                command=["true"],
                name=name,
                mounts=[volume_mount(AGE_KEY_DIR, self.volume)],
                labels=managed_labels(role=ROLE_HELPER),
            )
        try:
            return fn(c)
        finally:
            try:
                c.remove(force=True)
            except DockerException as e:
                logger.warning("Failed to remove helper container %s: %s", name, e)

    def exists(self) -> bool:
        try:
            self.read()
            return True
        except NotFoundError:
            return False

    def read(self) -> str:
        def _read(c) -> str:
            try:
                return read_file_from_container(c, f"{AGE_KEY_DIR}/{AGE_KEY_FILE}").decode("utf-8")
            except NotFoundError as e:
                raise NotFoundError(f"No encryption identity in {self.location}; run `devws system init`") from e

        return self._with_helper(_read)

    def write(self, text: str) -> None:
        def _write(c) -> None:
            with translate_docker_errors(f"{self.location}"):
                c.put_archive(AGE_KEY_DIR, tar_from_bytes(AGE_KEY_FILE, text.encode("utf-8"), mode=0o600))

        self._with_helper(_write)


# --------------------------
# Provider
# --------------------------

@dataclass(frozen=True)
class InitResult:
    ssh_public_key: str
    age_public_key: str
    ssh_created: bool
    age_created: bool


class IdentityProvider:
    """
    Scoped access to the ssh-key and age-key volumes.
    """

    def __init__(self, client: DockerClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings
        self.ssh_key_volume = resource_name(None, ResourceKind.ssh_key)
        self.age_key_volume = resource_name(None, ResourceKind.age_key)
        self._vault: Optional[SecretVault] = None

    def ensure_volumes(self) -> None:
        """
        Lookup-or-create both identity volumes. Called at the start of any
        operation that mounts them.
        """
        ensure_volume(self.client, self.ssh_key_volume, managed_labels(role=ROLE_SSH_KEY))
        ensure_volume(self.client, self.age_key_volume, managed_labels(role=ROLE_AGE_KEY))

    def identity_store(self) -> IdentityStore:
        if self.settings.age_identity_file:
            return FileIdentityStore(self.settings.age_identity_file)
        return VolumeIdentityStore(self.client, self.age_key_volume, self.settings.helper_image)

    def vault(self) -> SecretVault:
        if self._vault is None:
            self._vault = SecretVault(self.identity_store())
        return self._vault

    def ssh_mount(self, target: str = SSH_KEY_DIR, read_only: bool = False):
        return volume_mount(target, self.ssh_key_volume, read_only=read_only)

    def git_ssh_command(self, key_dir: str = SSH_KEY_DIR) -> str:
        return (
            f"ssh -i {key_dir}/{SSH_KEY_FILE} "
            f"-o UserKnownHostsFile={key_dir}/known_hosts "
            "-o StrictHostKeyChecking=accept-new"
        )

    # --------------------------
    # system init
    # --------------------------

    def _init_ssh(self, force: bool) -> tuple[str, bool]:
        key = f"{SSH_KEY_DIR}/{SSH_KEY_FILE}"
        uid = shlex.quote(self.settings.uid)
        script = "\n".join([
            "set -e",
            f"if [ -f {key} ] && [ \"$FORCE\" != 1 ]; then cat {key}.pub; exit 0; fi",
            f"rm -f {key} {key}.pub",
            f"ssh-keygen -q -t ed25519 -N '' -f {key} -C devws@workspace >&2",
            f"chmod 400 {key}",
            f"chown -R {uid}:{uid} {SSH_KEY_DIR}",
            "echo __created__ >&2",
            f"cat {key}.pub",
        ])
        out = run_one_shot(
            self.client,
            self.settings.helper_image,
            script,
            name=f"{self.ssh_key_volume}-init",
            mounts=[self.ssh_mount()],
            labels=managed_labels(role=ROLE_HELPER),
            environment={"FORCE": "1" if force else "0"},
        )
        if not out.ok:
            raise EngineError(f"SSH key generation failed in {self.ssh_key_volume}: {out.stderr.strip()}")
        return out.stdout.strip(), "__created__" in out.stderr

    def init(self, force: bool = False, identity: Optional[str] = None) -> InitResult:
        """
        Generate the SSH keypair and the age identity, skipping whichever
        already exists unless force is set. `identity` imports an existing
        age identity instead of generating one.
        """
        self.ensure_volumes()
        ssh_pub, ssh_created = self._init_ssh(force)

        vault = self.vault()
        if vault.has_identity() and not force and identity is None:
            age_pub, age_created = vault.public_key, False
        else:
            age_pub, age_created = vault.init(force=force, identity=identity), True
        logger.info("Identities ready: ssh created=%s, age created=%s", ssh_created, age_created)
        return InitResult(
            ssh_public_key=ssh_pub,
            age_public_key=age_pub,
            ssh_created=ssh_created,
            age_created=age_created,
        )


__all__ = [
    "SSH_KEY_DIR",
    "AGE_KEY_DIR",
    "VolumeIdentityStore",
    "InitResult",
    "IdentityProvider",
]
