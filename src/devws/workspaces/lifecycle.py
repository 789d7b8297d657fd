from __future__ import annotations

"""
Workspace lifecycle: reconcile a resolved WorkspaceSpec against the engine.

There is no state store. Every operation recomputes the ResourceSet from the
spec (or finds resources by label) and inspects what the engine already has:

- create(): lookup-or-create of identities, network, volumes, sidecars and
  the work container, in that order; safe to re-run after a failure
- enter(): attach an interactive shell to an existing container
- stop() / stop_all()
- list() / status()
- remove() / remove_all(): one workspace's containers, network and its own
  volumes; shared cache and identity volumes are never touched
- prune(): every managed resource, identity volumes optionally included
- update(): replace the containers (apply) or the whole workspace (purge)
  with a freshly resolved spec
- recorded_config(): the document origin, body and overrides a work
  container was created from

A failing step aborts create() and leaves what was already created in place.
"""

import json
import logging
import os
import shlex
import shutil
import subprocess
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from docker import DockerClient
from docker.models.containers import Container

from devws.config import Settings
from devws.errors import ConfigError, ConflictError, EngineError, NotFoundError
from devws.models import WORK_CONTAINER, SidecarSpec, WorkspaceSpec, WorkspaceState
from devws.workspaces.core import (
    IDENTITY_VOLUME_ROLES,
    LABEL_CACHE_PATH,
    LABEL_CONFIG_BODY,
    LABEL_CONTAINER,
    LABEL_ORIGIN,
    LABEL_OVERRIDES,
    LABEL_ROLE,
    LABEL_RUNTIME,
    LABEL_SHELL,
    LABEL_UID,
    LABEL_WORK_DIR,
    LABEL_WORKSPACE,
    LABEL_USER,
    ROLE_CACHE,
    ROLE_DATA,
    ROLE_HELPER,
    ROLE_HOME,
    ROLE_NETWORK,
    ROLE_SIDECAR,
    ROLE_WORK,
    ROLE_WORK_VOLUME,
    WORKSPACE_VOLUME_ROLES,
    ResourceSet,
    label_filters,
    managed_labels,
)
from devws.workspaces.docker_utils import (
    ensure_image,
    ensure_network,
    ensure_running,
    ensure_volume,
    exec_script,
    find_container,
    get_workspace_container,
    run_one_shot,
    tar_from_files,
    translate_docker_errors,
    volume_mount,
)
from devws.workspaces.git import WORK_ROOT, GitHelper
from devws.workspaces.identity import SSH_KEY_DIR, IdentityProvider

logger = logging.getLogger("devws")

__all__ = [
    "AttachRequest",
    "WorkspaceStatus",
    "WorkspaceSummary",
    "PruneReport",
    "RecordedConfig",
    "WorkspaceOrchestrator",
    "tmp_workspace_name",
]


# --------------------------
# Results
# --------------------------

@dataclass(frozen=True)
class AttachRequest:
    """
    Everything needed to open an interactive shell in a container.
    """
    container: str
    argv: List[str]
    user: Optional[str] = None
    work_dir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class WorkspaceStatus:
    name: str
    state: WorkspaceState
    resources: ResourceSet
    created: List[str] = field(default_factory=list)


@dataclass
class WorkspaceSummary:
    name: str
    state: WorkspaceState
    # container label -> engine status
    containers: Dict[str, str] = field(default_factory=dict)


@dataclass
class PruneReport:
    containers: List[str] = field(default_factory=list)
    networks: List[str] = field(default_factory=list)
    volumes: List[str] = field(default_factory=list)


@dataclass
class RecordedConfig:
    name: str
    origin: Optional[str] = None
    body: Optional[str] = None
    overrides: Dict[str, str] = field(default_factory=dict)
    runtime: Dict[str, object] = field(default_factory=dict)


def _runtime_summary(spec: WorkspaceSpec) -> Dict[str, object]:
    # no env, vars or mount content: those may carry decrypted secrets
    return {
        "image": spec.image,
        "shell": spec.shell,
        "user": spec.user,
        "uid": spec.uid,
        "work_dir": spec.work_dir or WORK_ROOT,
        "mount_work": spec.mount_work,
        "git": spec.git.url if spec.git else None,
        "extra_repos": list(spec.extra_repos),
        "home_from_image": spec.home_from_image,
        "caches": list(spec.caches),
        "ports": [str(p) for p in spec.ports],
        "sidecars": {name: sc.image for name, sc in spec.sidecars.items()},
    }


def tmp_workspace_name() -> str:
    return f"tmp-{uuid.uuid4().hex[:7]}"


def _expand_home(path: str, home: str) -> str:
    if path == "~":
        return home
    if path.startswith("~/"):
        return f"{home}/{path[2:]}"
    if not path.startswith("/"):
        raise ConfigError(f"cache path {path!r} must be absolute or start with '~/'")
    return path


def _ensure_user_script(user: str, uid: str, home: str) -> str:
    u, i, h = shlex.quote(user), shlex.quote(uid), shlex.quote(home)
    return "\n".join([
        f"grep -q \"^{user}:x:{uid}:\" /etc/passwd && exit 0",
        f"sed -i \"/^[^:]*:x:{uid}:/d\" /etc/passwd",
        f"echo {u}:x:{i}:{i}:{u}:{h}:/bin/sh >> /etc/passwd",
    ])


def _attach_with_docker_cli(req: AttachRequest) -> int:
    """
    Hand the terminal to `docker exec -it`. The docker CLI speaks the same
    DOCKER_HOST the SDK client was built from.
    """
    docker_bin = shutil.which("docker")
    if docker_bin is None:
        raise EngineError("the docker CLI is required to attach to a workspace")
    argv = [docker_bin, "exec", "-it"]
    if req.user:
        argv += ["-u", req.user]
    if req.work_dir:
        argv += ["-w", req.work_dir]
    argv.append(req.container)
    argv.extend(req.argv)
    env = dict(os.environ)
    env.update(req.env)
    logger.debug("Attaching: %s", " ".join(shlex.quote(a) for a in argv))
    return subprocess.call(argv, env=env)


# --------------------------
# Orchestrator
# --------------------------

class WorkspaceOrchestrator:
    """
    Reconciles workspaces against a Docker engine.

    Args:
        client: Docker SDK client (local or through the remote tunnel).
        settings: Environment settings.
        identities: Handle to the global ssh-key/age-key volumes.
        git: Helper used to seed work volumes; built from the client by default.
        attach: Callable opening the interactive session; returns an exit code.
        poll_delay: Seconds between state polls while starting containers.
    """

    def __init__(
        self,
        client: DockerClient,
        settings: Settings,
        identities: IdentityProvider,
        git: Optional[GitHelper] = None,
        attach: Optional[Callable[[AttachRequest], int]] = None,
        poll_delay: float = 0.5,
        max_workers: int = 4,
    ) -> None:
        self.client = client
        self.settings = settings
        self.identities = identities
        self.git = git or GitHelper(client, settings, identities)
        self._attach = attach or _attach_with_docker_cli
        self.poll_delay = poll_delay
        self.max_workers = max(1, max_workers)

    # --------------------------
    # create
    # --------------------------

    def _ensure_volumes(self, spec: WorkspaceSpec, res: ResourceSet) -> bool:
        """Returns True if the home volume was created by this call."""
        ws = spec.name
        _, home_created = ensure_volume(self.client, res.home_volume, managed_labels(ws, ROLE_HOME))
        ensure_volume(self.client, res.work_volume, managed_labels(ws, ROLE_WORK_VOLUME))
        for path, vol in res.cache_volumes.items():
            # no workspace label: caches outlive any single workspace
            labels = managed_labels(role=ROLE_CACHE)
            labels[LABEL_CACHE_PATH] = path
            ensure_volume(self.client, vol, labels)
        for sidecar, mounts in res.sidecar_volumes.items():
            for _path, vol in mounts:
                ensure_volume(self.client, vol, managed_labels(ws, ROLE_DATA, sidecar))
        return home_created

    def _populate_home(self, spec: WorkspaceSpec, res: ResourceSet) -> None:
        """
        Mount the fresh home volume into a throwaway container of
        `home_from_image`; the engine copies the image's home into it.
        """
        logger.info("Seeding %s from %s", res.home_volume, spec.home_from_image)
        out = run_one_shot(
            self.client,
            spec.home_from_image,
            "exit 0",
            name=f"{res.home_volume}-populate",
            mounts=[volume_mount(spec.home, res.home_volume)],
            labels=managed_labels(role=ROLE_HELPER),
        )
        if not out.ok:
            raise EngineError(f"seeding {res.home_volume} from {spec.home_from_image} failed: {out.stderr.strip()}")

    def _seed_work_volume(self, spec: WorkspaceSpec, res: ResourceSet) -> None:
        if not spec.mount_work:
            if spec.git is not None or spec.extra_repos:
                logger.warning("Workspace %s does not mount /work; repositories are not cloned", spec.name)
            return
        if spec.git is not None:
            self.git.clone_into_volume(spec.git.url, res.work_volume, spec.uid)
        if spec.extra_repos:
            self.git.clone_extra_repos(spec.extra_repos, res.work_volume, spec.uid)

    def _connect(self, network, c: Container, alias: str) -> None:
        attached = ((c.attrs or {}).get("NetworkSettings") or {}).get("Networks") or {}
        if network.name in attached:
            return
        with translate_docker_errors(f"network '{network.name}'"):
            network.connect(c, aliases=[alias])

    def _create_sidecar(self, spec: WorkspaceSpec, res: ResourceSet, sc: SidecarSpec) -> Container:
        name = res.sidecar_containers[sc.name]
        mounts = [volume_mount(path, vol) for path, vol in res.sidecar_volumes[sc.name]]
        if sc.mount_work:
            mounts.append(volume_mount(WORK_ROOT, res.work_volume))
        ensure_image(self.client, sc.image)
        logger.info("Creating sidecar %s (%s)", name, sc.image)
        with translate_docker_errors(f"sidecar '{sc.name}'"):
            c = self.client.containers.create(
                sc.image,
                command=sc.docker_command(),
                name=name,
                hostname=sc.name,
                environment=dict(sc.env),
                labels=managed_labels(spec.name, ROLE_SIDECAR, sc.name),
                mounts=mounts,
                ports={p.docker_key(): p.docker_binding() for p in sc.ports},
                working_dir=sc.work_dir,
                user=sc.user,
                privileged=sc.privileged,
                init=sc.init,
            )
            files = {m.mount: m.content.encode("utf-8") for m in sc.content_mounts()}
            if files:
                c.put_archive("/", tar_from_files(files))
        return c

    def _ensure_sidecars(self, spec: WorkspaceSpec, res: ResourceSet, network) -> List[str]:
        """
        Create missing sidecars, then start all of them concurrently. Returns
        the names of containers created by this call.
        """
        created: List[str] = []
        containers: List[Container] = []
        for name, sc in spec.sidecars.items():
            c = find_container(self.client, res.sidecar_containers[name])
            if c is None:
                c = self._create_sidecar(spec, res, sc)
                created.append(c.name)
            self._connect(network, c, sc.name)
            containers.append(c)

        if containers:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(containers))) as pool:
                futures = [pool.submit(ensure_running, c, 5, self.poll_delay) for c in containers]
                for fut in as_completed(futures):
                    fut.result()
        return created

    def _work_env(self, spec: WorkspaceSpec) -> Dict[str, str]:
        env = dict(spec.env)
        env.update({
            "HOME": spec.home,
            "USER": spec.user,
            "GIT_SSH_COMMAND": self.identities.git_ssh_command(),
            "DEVWS_META_IMAGE": spec.image,
            "DEVWS_META_UID": spec.uid,
            "DEVWS_META_USER": spec.user,
            "DEVWS_META_HOME": spec.home,
            "DEVWS_META_WORKSPACE": spec.name,
            "DEVWS_META_CONTAINER": WORK_CONTAINER,
        })
        return env

    def _create_work(self, spec: WorkspaceSpec, res: ResourceSet) -> Container:
        home = spec.home
        mounts = [volume_mount(home, res.home_volume)]
        if spec.mount_work:
            mounts.append(volume_mount(WORK_ROOT, res.work_volume))
        for path, vol in res.cache_volumes.items():
            mounts.append(volume_mount(_expand_home(path, home), vol))
        mounts.append(self.identities.ssh_mount(SSH_KEY_DIR))

        labels = managed_labels(spec.name, ROLE_WORK, WORK_CONTAINER)
        labels.update({
            LABEL_SHELL: json.dumps(spec.shell),
            LABEL_USER: spec.user,
            LABEL_UID: spec.uid,
            LABEL_WORK_DIR: spec.work_dir or WORK_ROOT,
        })
        labels[LABEL_RUNTIME] = json.dumps(_runtime_summary(spec))
        if spec.overrides:
            labels[LABEL_OVERRIDES] = json.dumps(spec.overrides, sort_keys=True)
        if spec.origin:
            labels[LABEL_ORIGIN] = spec.origin
        if spec.config_body is not None:
            labels[LABEL_CONFIG_BODY] = spec.config_body

        ensure_image(self.client, spec.image)
        logger.info("Creating work container %s (%s)", res.work_container, spec.image)
        with translate_docker_errors(f"work container '{res.work_container}'"):
            return self.client.containers.create(
                spec.image,
                entrypoint=["cat"],
                tty=True,
                stdin_open=True,
                name=res.work_container,
                hostname=spec.name,
                user=spec.uid,
                working_dir=spec.work_dir or WORK_ROOT,
                environment=self._work_env(spec),
                labels=labels,
                mounts=mounts,
                ports={p.docker_key(): p.docker_binding() for p in spec.ports},
                init=True,
            )

    def _ensure_user(self, c: Container, spec: WorkspaceSpec, res: ResourceSet) -> None:
        """
        Give the numeric runtime uid a passwd entry and own its mounts.
        Images without the account are expected; a failure here only warns.
        """
        out = exec_script(c, _ensure_user_script(spec.user, spec.uid, spec.home))
        if not out.ok:
            logger.warning("Could not add user %s (uid %s) in %s: %s", spec.user, spec.uid, c.name, out.stderr.strip())
        targets = [spec.home] + [_expand_home(p, spec.home) for p in res.cache_volumes]
        if spec.mount_work:
            targets.append(WORK_ROOT)
        uid = shlex.quote(spec.uid)
        out = exec_script(c, f"chown {uid}:{uid} " + " ".join(shlex.quote(t) for t in targets))
        if not out.ok:
            logger.warning("Could not chown mounts in %s: %s", c.name, out.stderr.strip())

    def create(self, spec: WorkspaceSpec) -> WorkspaceStatus:
        """
        Idempotently provision a workspace and leave it running.

        If the work container already exists it is (re)started rather than
        recreated. Sidecars always start before the work container.
        """
        res = ResourceSet.from_spec(spec)
        # every mount target must be valid before the engine is touched
        for path in res.cache_volumes:
            _expand_home(path, spec.home)
        logger.info("Provisioning workspace %s", spec.name)

        self.identities.ensure_volumes()
        network, _ = ensure_network(self.client, res.network, managed_labels(spec.name, ROLE_NETWORK))
        home_created = self._ensure_volumes(spec, res)
        if home_created and spec.home_from_image:
            self._populate_home(spec, res)

        work = find_container(self.client, res.work_container)
        if work is None:
            self._seed_work_volume(spec, res)

        created = self._ensure_sidecars(spec, res, network)

        if work is None:
            work = self._create_work(spec, res)
            created.append(work.name)
            self._connect(network, work, WORK_CONTAINER)
            ensure_running(work, 5, self.poll_delay)
            self._ensure_user(work, spec, res)
        else:
            logger.info("Work container %s exists; starting it", res.work_container)
            self._connect(network, work, WORK_CONTAINER)
            ensure_running(work, 5, self.poll_delay)

        return WorkspaceStatus(name=spec.name, state=WorkspaceState.running, resources=res, created=created)

    # --------------------------
    # enter
    # --------------------------

    def enter(self, name: str, container: str = WORK_CONTAINER, shell: Optional[str] = None) -> int:
        """
        Attach an interactive shell. Never creates anything; a stopped
        container is started first.
        """
        c = get_workspace_container(self.client, name, container)
        ensure_running(c, 5, self.poll_delay)
        labels = c.labels or {}
        if shell:
            argv = shlex.split(shell)
        elif labels.get(LABEL_SHELL):
            argv = json.loads(labels[LABEL_SHELL])
        else:
            argv = ["sh"]
        env: Dict[str, str] = {}
        if self.settings.remote:
            env["DOCKER_HOST"] = f"unix://{self.settings.remote_socket_path()}"
        req = AttachRequest(
            container=c.name,
            argv=argv,
            user=labels.get(LABEL_UID),
            work_dir=labels.get(LABEL_WORK_DIR),
            env=env,
        )
        return self._attach(req)

    # --------------------------
    # inspection
    # --------------------------

    def _containers(self, name: Optional[str] = None) -> List[Container]:
        with translate_docker_errors("container list"):
            return self.client.containers.list(all=True, filters=label_filters(workspace=name))

    def list(self) -> List[WorkspaceSummary]:
        summaries: Dict[str, WorkspaceSummary] = {}
        for c in self._containers():
            labels = c.labels or {}
            ws = labels.get(LABEL_WORKSPACE)
            if not ws:
                continue
            summary = summaries.setdefault(ws, WorkspaceSummary(name=ws, state=WorkspaceState.stopped))
            role_name = labels.get(LABEL_CONTAINER) or c.name
            summary.containers[role_name] = c.status
            if labels.get(LABEL_ROLE) == ROLE_WORK and c.status == "running":
                summary.state = WorkspaceState.running
        return sorted(summaries.values(), key=lambda s: s.name)

    def status(self, name: str) -> WorkspaceState:
        for summary in self.list():
            if summary.name == name:
                return summary.state
        return WorkspaceState.absent

    def recorded_config(self, name: str) -> RecordedConfig:
        labels = get_workspace_container(self.client, name, WORK_CONTAINER).labels or {}
        try:
            overrides = json.loads(labels.get(LABEL_OVERRIDES) or "{}")
            runtime = json.loads(labels.get(LABEL_RUNTIME) or "{}")
        except ValueError as e:
            raise EngineError(f"workspace '{name}' has unreadable config labels: {e}") from e
        return RecordedConfig(
            name=name,
            origin=labels.get(LABEL_ORIGIN),
            body=labels.get(LABEL_CONFIG_BODY),
            overrides=overrides,
            runtime=runtime,
        )

    # --------------------------
    # update
    # --------------------------

    def update(self, spec: WorkspaceSpec, purge: bool = False) -> WorkspaceStatus:
        """
        Re-create an existing workspace from a freshly resolved spec.

        Apply replaces the containers and keeps network and volumes, so home,
        work and sidecar data survive. Purge removes the workspace first, as
        `rm --force` would, and starts from empty volumes.
        """
        get_workspace_container(self.client, spec.name, WORK_CONTAINER)
        if purge:
            logger.info("Purging workspace %s before re-creating it", spec.name)
            self.remove(spec.name, force=True)
        else:
            self.remove_containers(spec.name, force=True)
        return self.create(spec)

    # --------------------------
    # stop
    # --------------------------

    def _stop_containers(self, containers: List[Container]) -> None:
        # work container first; sidecars may be what it is talking to
        ordered = sorted(containers, key=lambda c: (c.labels or {}).get(LABEL_ROLE) != ROLE_WORK)
        for c in ordered:
            if c.status == "running":
                logger.info("Stopping %s", c.name)
                with translate_docker_errors(f"container '{c.name}'"):
                    c.stop()

    def stop(self, name: str) -> None:
        containers = self._containers(name)
        if not containers:
            raise NotFoundError(f"Workspace '{name}' not found")
        self._stop_containers(containers)

    def stop_all(self) -> None:
        self._stop_containers([c for c in self._containers() if (c.labels or {}).get(LABEL_WORKSPACE)])

    # --------------------------
    # remove / prune
    # --------------------------

    def _check_not_running(self, containers: List[Container], force: bool) -> None:
        if force:
            return
        running = [c.name for c in containers if c.status == "running"]
        if running:
            raise ConflictError(f"Containers still running: {', '.join(running)}; stop them or use --force")

    def remove(self, name: str, force: bool = False) -> None:
        """
        Remove one workspace: containers, then its network, then the volumes
        it owns alone (home, work, sidecar data). Cache and identity volumes
        stay.
        """
        containers = self._containers(name)
        with translate_docker_errors(f"workspace '{name}'"):
            networks = self.client.networks.list(filters=label_filters(workspace=name))
            volumes = [
                v for v in self.client.volumes.list(filters=label_filters(workspace=name))
                if ((v.attrs or {}).get("Labels") or {}).get(LABEL_ROLE) in WORKSPACE_VOLUME_ROLES
            ]
        if not containers and not networks and not volumes:
            raise NotFoundError(f"Workspace '{name}' not found")
        self._check_not_running(containers, force)

        for c in containers:
            logger.info("Removing container %s", c.name)
            with translate_docker_errors(f"container '{c.name}'"):
                c.remove(force=force)
        for n in networks:
            logger.info("Removing network %s", n.name)
            with translate_docker_errors(f"network '{n.name}'"):
                n.remove()
        for v in volumes:
            logger.info("Removing volume %s", v.name)
            with translate_docker_errors(f"volume '{v.name}'"):
                v.remove(force=force)

    def remove_containers(self, name: str, force: bool = False) -> List[str]:
        """
        Remove one workspace's containers only. Network and volumes stay, so
        the next create() reuses home, work and sidecar data.
        """
        containers = self._containers(name)
        if not containers:
            raise NotFoundError(f"Workspace '{name}' not found")
        self._check_not_running(containers, force)
        for c in containers:
            logger.info("Removing container %s", c.name)
            with translate_docker_errors(f"container '{c.name}'"):
                c.remove(force=force)
        return [c.name for c in containers]

    def _workspace_names(self) -> List[str]:
        names = set()
        with translate_docker_errors("workspace list"):
            for c in self.client.containers.list(all=True, filters=label_filters()):
                names.add((c.labels or {}).get(LABEL_WORKSPACE))
            for n in self.client.networks.list(filters=label_filters()):
                names.add((n.attrs.get("Labels") or {}).get(LABEL_WORKSPACE))
            for v in self.client.volumes.list(filters=label_filters()):
                names.add(((v.attrs or {}).get("Labels") or {}).get(LABEL_WORKSPACE))
        names.discard(None)
        return sorted(names)

    def remove_all(self, force: bool = False) -> List[str]:
        names = self._workspace_names()
        if not force:
            self._check_not_running([c for c in self._containers() if (c.labels or {}).get(LABEL_WORKSPACE)], force)
        for name in names:
            self.remove(name, force=force)
        return names

    def prune(self, include_identities: bool = False, force: bool = False) -> PruneReport:
        """
        Remove every managed container, network and volume, shared caches
        included. Identity volumes go too when include_identities is set;
        secrets encrypted under the old identity are then lost for good.
        """
        report = PruneReport()
        containers = self._containers()
        self._check_not_running(containers, force)
        for c in containers:
            with translate_docker_errors(f"container '{c.name}'"):
                c.remove(force=force)
            report.containers.append(c.name)
        with translate_docker_errors("network list"):
            networks = self.client.networks.list(filters=label_filters())
        for n in networks:
            with translate_docker_errors(f"network '{n.name}'"):
                n.remove()
            report.networks.append(n.name)
        with translate_docker_errors("volume list"):
            volumes = self.client.volumes.list(filters=label_filters())
        for v in volumes:
            role = ((v.attrs or {}).get("Labels") or {}).get(LABEL_ROLE)
            if role in IDENTITY_VOLUME_ROLES and not include_identities:
                continue
            with translate_docker_errors(f"volume '{v.name}'"):
                v.remove(force=force)
            report.volumes.append(v.name)
        logger.info(
            "Pruned %d containers, %d networks, %d volumes",
            len(report.containers), len(report.networks), len(report.volumes),
        )
        return report

    # --------------------------
    # tmp
    # --------------------------

    def tmp(self, spec: WorkspaceSpec) -> int:
        """
        Create, enter and always tear down an ephemeral workspace.
        """
        try:
            self.create(spec)
            return self.enter(spec.name)
        finally:
            try:
                self.remove(spec.name, force=True)
            except NotFoundError:
                logger.debug("Nothing to clean up for %s", spec.name)
