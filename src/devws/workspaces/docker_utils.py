from __future__ import annotations

"""
Docker/container utility helpers for devws.

This module provides:
- Translation of Docker SDK errors into the devws error taxonomy
- Lookup-or-create helpers for images, volumes and networks
- Container resolution by workspace with label verification
- Runtime state enforcement (ensure container is running)
- Tar stream creation from in-memory bytes, and reading files back out
- One-shot helper containers and root exec inside running containers

All helpers are import-only and do not perform lazy imports.
"""

import contextlib
import io
import logging
import posixpath
import tarfile
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional

from docker import DockerClient
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.types import Mount

from devws.errors import ConflictError, EngineError, NotFoundError
from devws.workspaces.core import LABEL_WORKSPACE, LABEL_CONTAINER, label_filters, resource_name, ResourceKind

logger = logging.getLogger("devws")

__all__ = [
    "translate_docker_errors",
    "find_container",
    "get_workspace_container",
    "ensure_running",
    "ensure_image",
    "ensure_volume",
    "ensure_network",
    "volume_mount",
    "tar_from_bytes",
    "tar_from_files",
    "collect_stream",
    "read_file_from_container",
    "ExecOutput",
    "exec_script",
    "run_one_shot",
]


# --------------------------
# Error translation
# --------------------------

@contextlib.contextmanager
def translate_docker_errors(what: str) -> Iterator[None]:
    """
    Re-raise Docker SDK errors as devws errors naming the resource involved.
    """
    try:
        yield
    except NotFound as e:
        raise NotFoundError(f"{what}: not found ({e.explanation or e})") from e
    except APIError as e:
        if e.status_code == 409:
            raise ConflictError(f"{what}: conflict ({e.explanation or e})") from e
        raise EngineError(f"{what}: {e.explanation or e}") from e
    except DockerException as e:
        raise EngineError(f"{what}: {e}") from e


# --------------------------
# Lookups and lookup-or-create
# --------------------------

def find_container(client: DockerClient, name: str) -> Optional[Container]:
    """
    Return the container with this exact name, or None.
    """
    try:
        return client.containers.get(name)
    except NotFound:
        return None


def get_workspace_container(client: DockerClient, workspace: str, container: str = "work") -> Container:
    """
    Resolve a container of a workspace.

    Strategy:
    1) Try the deterministic name from resource_name()
    2) Fallback to label-based lookup (workspace + container labels)

    Raises:
        NotFoundError if neither finds a managed container.
    """
    name = resource_name(workspace, ResourceKind.container, container)
    with translate_docker_errors(f"container '{name}'"):
        c = find_container(client, name)
        if c is not None and (getattr(c, "labels", None) or {}).get(LABEL_WORKSPACE) == workspace:
            return c
        filters = label_filters(workspace=workspace)
        filters["label"].append(f"{LABEL_CONTAINER}={container}")
        candidates = client.containers.list(all=True, filters=filters)
    if not candidates:
        raise NotFoundError(f"Workspace '{workspace}' has no container '{container}'")
    return candidates[0]


def ensure_running(c: Container, retries: int = 5, delay: float = 0.5) -> None:
    """
    Ensure a container is in 'running' state.

    Attempts to recover from common stopped states by starting or unpausing the
    container before giving up.

    Raises:
        EngineError on reload/start errors.
        ConflictError if the container cannot reach running state.
    """
    attempts = max(1, int(retries or 1))
    with translate_docker_errors(f"container '{c.name}'"):
        c.reload()
        for attempt in range(attempts + 1):
            status = getattr(c, "status", "")
            if status == "running":
                return
            if attempt == attempts:
                break
            if status in {"created", "exited", "dead", "stopped"}:
                c.start()
            elif status == "paused":
                c.unpause()
            time.sleep(max(0.0, float(delay)))
            c.reload()
    raise ConflictError(f"Container '{c.name}' is not running (status={c.status})")


def ensure_image(client: DockerClient, image: str) -> None:
    """
    Pull an image unless it is already present locally.
    """
    with translate_docker_errors(f"image '{image}'"):
        try:
            client.images.get(image)
            return
        except ImageNotFound:
            pass
        logger.info("Pulling image %s", image)
        client.images.pull(image)


def ensure_volume(client: DockerClient, name: str, labels: Dict[str, str]):
    """
    Lookup-or-create a named volume. Returns (volume, created).
    """
    with translate_docker_errors(f"volume '{name}'"):
        try:
            return client.volumes.get(name), False
        except NotFound:
            pass
        logger.debug("Creating volume %s", name)
        return client.volumes.create(name=name, labels=labels), True


def ensure_network(client: DockerClient, name: str, labels: Dict[str, str]):
    """
    Lookup-or-create a bridge network. A concurrent creator winning the race is not an error.
    """
    with translate_docker_errors(f"network '{name}'"):
        try:
            return client.networks.get(name), False
        except NotFound:
            pass
        try:
            logger.debug("Creating network %s", name)
            return client.networks.create(name, driver="bridge", labels=labels), True
        except APIError as e:
            if e.status_code != 409:
                raise
            return client.networks.get(name), False


def volume_mount(target: str, volume: str, read_only: bool = False) -> Mount:
    return Mount(target=target, source=volume, type="volume", read_only=read_only)


# --------------------------
# Tar helpers
# --------------------------

def tar_from_bytes(name: str, data: bytes, mode: int = 0o644) -> io.BytesIO:
    """
    Create a tar archive (in-memory) containing a single file.

    Args:
        name: The filename inside the tar archive.
        data: Raw file contents.
        mode: File mode (permissions) for the entry.

    Returns:
        BytesIO positioned at start, ready for Docker put_archive.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        ti = tarfile.TarInfo(name=name)
        ti.size = len(data)
        ti.mode = mode
        tar.addfile(ti, io.BytesIO(data))
    buf.seek(0)
    return buf


def tar_from_files(files: Dict[str, bytes], mode: int = 0o644) -> io.BytesIO:
    """
    Create a tar archive rooted at '/' holding files at absolute container paths.

    Parent directories get their own entries so put_archive(path="/") can
    materialize files in directories the image does not have.
    """
    buf = io.BytesIO()
    dirs_added: set[str] = set()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for path, data in files.items():
            rel = posixpath.normpath(path).lstrip("/")
            parent = posixpath.dirname(rel)
            chain: List[str] = []
            while parent and parent not in dirs_added:
                chain.append(parent)
                parent = posixpath.dirname(parent)
            for d in reversed(chain):
                di = tarfile.TarInfo(name=d)
                di.type = tarfile.DIRTYPE
                di.mode = 0o755
                tar.addfile(di)
                dirs_added.add(d)
            ti = tarfile.TarInfo(name=rel)
            ti.size = len(data)
            ti.mode = mode
            tar.addfile(ti, io.BytesIO(data))
    buf.seek(0)
    return buf


def collect_stream(stream: Iterable[bytes]) -> bytes:
    """
    Aggregate a byte-stream iterable (e.g., from Docker API) into a single bytes object.
    """
    chunks: List[bytes] = []
    for chunk in stream:
        if isinstance(chunk, (bytes, bytearray)):
            chunks.append(bytes(chunk))
    return b"".join(chunks)


def read_file_from_container(c: Container, path: str) -> bytes:
    """
    Read one regular file out of a container (running or not) via get_archive.

    Raises:
        NotFoundError if the path does not exist or is not a regular file.
    """
    with translate_docker_errors(f"file '{path}' in container '{c.name}'"):
        stream, _stat = c.get_archive(path)
        raw = collect_stream(stream)
    with tarfile.open(fileobj=io.BytesIO(raw), mode="r") as tar:
        for member in tar.getmembers():
            if member.isfile():
                fh = tar.extractfile(member)
                if fh is not None:
                    return fh.read()
    raise NotFoundError(f"'{path}' in container '{c.name}' is not a regular file")


# --------------------------
# Running commands
# --------------------------

@dataclass(frozen=True)
class ExecOutput:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def exec_script(c: Container, script: str, user: str = "root", environment: Optional[Dict[str, str]] = None) -> ExecOutput:
    """
    Run a shell script inside a running container and collect its output.
    """
    with translate_docker_errors(f"exec in container '{c.name}'"):
        res = c.exec_run(["sh", "-c", script], user=user, environment=environment, demux=True)
    out, err = res.output if isinstance(res.output, tuple) else (res.output, None)
    return ExecOutput(exit_code=int(res.exit_code or 0), stdout=_decode(out), stderr=_decode(err))


def run_one_shot(
    client: DockerClient,
    image: str,
    script: str,
    *,
    name: str,
    mounts: Optional[List[Mount]] = None,
    labels: Optional[Dict[str, str]] = None,
    environment: Optional[Dict[str, str]] = None,
    user: str = "root",
) -> ExecOutput:
    """
    Run `script` in a short-lived helper container and remove it afterwards.

    The helper gets a deterministic name; a stale helper left behind by an
    interrupted run is removed first.
    """
    ensure_image(client, image)
    with translate_docker_errors(f"helper container '{name}'"):
        stale = find_container(client, name)
        if stale is not None:
            stale.remove(force=True)
        c = client.containers.create(
            image,
            command=["-c", script],
            entrypoint=["sh"],
            name=name,
            user=user,
            mounts=mounts or [],
            labels=labels or {},
            environment=environment or {},
        )
    try:
        with translate_docker_errors(f"helper container '{name}'"):
            c.start()
            result = c.wait()
            stdout = c.logs(stdout=True, stderr=False)
            stderr = c.logs(stdout=False, stderr=True)
    finally:
        try:
            c.remove(force=True)
        except DockerException as e:
            logger.warning("Failed to remove helper container %s: %s", name, e)
    exit_code = int((result or {}).get("StatusCode", 1))
    return ExecOutput(exit_code=exit_code, stdout=_decode(stdout), stderr=_decode(stderr))
