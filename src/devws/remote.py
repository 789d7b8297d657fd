"""
SSH tunnel to a remote container engine.

One OpenSSH ControlMaster session carries everything:

- the remote engine socket, forwarded to a local unix socket the Docker
  client connects to (see devws.deps.docker_client)
- every port published by managed containers on the remote host, forwarded
  to the same 127.0.0.1 port locally and re-synced on an interval

A dropped master is reported as TunnelError; reconnecting is left to the
user re-running `devws remote`.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Set

from docker import DockerClient

from devws.errors import TunnelError
from devws.workspaces.core import label_filters
from devws.workspaces.docker_utils import translate_docker_errors

logger = logging.getLogger("devws")

DEFAULT_REMOTE_ENGINE_SOCKET = "/var/run/docker.sock"
SSH_TIMEOUT = 30

Runner = Callable[[List[str]], "subprocess.CompletedProcess[str]"]

_ENDPOINT_RE = re.compile(r"^(?:ssh://)?(?:(?P<user>[^@/:]+)@)?(?P<host>[^@/:]+)(?::(?P<port>\d+))?/?$")


@dataclass(frozen=True)
class SshEndpoint:
    host: str
    user: Optional[str] = None
    port: Optional[int] = None

    @staticmethod
    def parse(value: str) -> "SshEndpoint":
        """
        Accepts 'ssh://user@host:port', 'ssh://host' or 'user@host'.
        """
        m = _ENDPOINT_RE.match(value.strip())
        if not m:
            raise TunnelError(f"invalid remote endpoint {value!r}; expected ssh://user@host[:port]")
        port = int(m.group("port")) if m.group("port") else None
        return SshEndpoint(host=m.group("host"), user=m.group("user"), port=port)

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def ssh_args(self) -> List[str]:
        return ["-p", str(self.port)] if self.port else []


def _run(argv: List[str]) -> "subprocess.CompletedProcess[str]":
    try:
        return subprocess.run(argv, capture_output=True, text=True, timeout=SSH_TIMEOUT)
    except FileNotFoundError as e:
        raise TunnelError("ssh is not installed") from e
    except subprocess.TimeoutExpired as e:
        raise TunnelError(f"ssh timed out after {SSH_TIMEOUT}s: {' '.join(argv)}") from e


def published_ports(client: DockerClient) -> Set[int]:
    """
    Host ports published by managed containers on the engine `client` talks to.
    """
    with translate_docker_errors("container list"):
        containers = client.containers.list(filters=label_filters())
    ports: Set[int] = set()
    for c in containers:
        for bindings in (c.ports or {}).values():
            for b in bindings or []:
                if b.get("HostPort"):
                    ports.add(int(b["HostPort"]))
    return ports


class RemoteTunnel:
    """
    Owns the ControlMaster session for one remote endpoint.

    Usage:
        with RemoteTunnel(settings.remote, settings.remote_socket_path()) as t:
            t.run(interval=5, stop_event=stop)
    """

    def __init__(self, endpoint: str, local_socket: Path, runner: Optional[Runner] = None) -> None:
        self.endpoint = SshEndpoint.parse(endpoint)
        self.local_socket = Path(local_socket).expanduser()
        self.control_path = self.local_socket.with_name(self.local_socket.name + ".ctl")
        self.remote_socket: Optional[str] = None
        self.forwarded: Set[int] = set()
        self._run = runner or _run

    def _ssh(self, *args: str) -> List[str]:
        ssh = shutil.which("ssh") or "ssh"
        return [ssh, *self.endpoint.ssh_args(), "-S", str(self.control_path), *args, self.endpoint.destination]

    def _control(self, op: str, *args: str) -> "subprocess.CompletedProcess[str]":
        return self._run(self._ssh("-O", op, *args))

    def _remote_engine_socket(self) -> str:
        out = self._run(self._ssh() + ["printf %s \"$DOCKER_HOST\""])
        if out.returncode != 0:
            raise TunnelError(f"cannot query DOCKER_HOST on {self.endpoint.destination}: {out.stderr.strip()}")
        host = out.stdout.strip()
        if not host:
            return DEFAULT_REMOTE_ENGINE_SOCKET
        if host.startswith("unix://"):
            return host[len("unix://"):]
        raise TunnelError(f"remote DOCKER_HOST {host!r} is not a unix socket")

    def open(self) -> None:
        self.local_socket.parent.mkdir(parents=True, exist_ok=True)
        master = self._run(self._ssh(
            "-M", "-fN",
            "-o", "ServerAliveInterval=5",
            "-o", "ConnectTimeout=5",
            "-o", "ExitOnForwardFailure=yes",
        ))
        if master.returncode != 0:
            raise TunnelError(f"cannot connect to {self.endpoint.destination}: {master.stderr.strip()}")

        self.remote_socket = self._remote_engine_socket()
        if self.local_socket.exists():
            self.local_socket.unlink()
        fwd = self._control("forward", "-L", f"{self.local_socket}:{self.remote_socket}")
        if fwd.returncode != 0:
            raise TunnelError(f"cannot forward {self.remote_socket}: {fwd.stderr.strip()}")
        logger.info("Tunnel up: %s -> %s:%s", self.local_socket, self.endpoint.destination, self.remote_socket)

    def check(self) -> None:
        out = self._control("check")
        if out.returncode != 0:
            raise TunnelError(f"tunnel to {self.endpoint.destination} dropped: {out.stderr.strip()}")

    def sync_ports(self, client: DockerClient) -> None:
        """
        Forward newly published ports and cancel forwards whose containers
        are gone.
        """
        wanted = published_ports(client)
        for port in sorted(wanted - self.forwarded):
            spec = f"127.0.0.1:{port}:127.0.0.1:{port}"
            out = self._control("forward", "-L", spec)
            if out.returncode != 0:
                logger.warning("Cannot forward port %d: %s", port, out.stderr.strip())
                continue
            logger.info("Forwarding port %d", port)
            self.forwarded.add(port)
        for port in sorted(self.forwarded - wanted):
            self._control("cancel", "-L", f"127.0.0.1:{port}:127.0.0.1:{port}")
            logger.info("Cancelled forward for port %d", port)
            self.forwarded.discard(port)

    def run(self, client: DockerClient, interval: float = 5.0, stop_event: Optional[threading.Event] = None) -> None:
        """
        Keep port forwards in sync until stop_event is set. Raises TunnelError
        as soon as the master goes away.
        """
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            self.check()
            self.sync_ports(client)
            stop_event.wait(interval)

    def close(self) -> None:
        out = self._control("exit")
        if out.returncode != 0:
            logger.warning("Tunnel master did not exit cleanly: %s", out.stderr.strip())
        self.forwarded.clear()
        try:
            self.local_socket.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "RemoteTunnel":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()


__all__ = [
    "DEFAULT_REMOTE_ENGINE_SOCKET",
    "SshEndpoint",
    "published_ports",
    "RemoteTunnel",
]
