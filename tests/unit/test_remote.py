import subprocess
import threading
from typing import Dict, List

import pytest

from devws.errors import TunnelError
from devws.remote import RemoteTunnel, SshEndpoint, published_ports
from devws.workspaces.core import managed_labels


class _DummyRunner:
    """
    Records ssh invocations; answers by the first matching marker in argv.
    """

    def __init__(self, docker_host: str = "", fail: Dict[str, str] = None) -> None:
        self.calls: List[List[str]] = []
        self.docker_host = docker_host
        self.fail = fail or {}

    def __call__(self, argv: List[str]):
        self.calls.append(argv)
        for marker, err in self.fail.items():
            if marker in argv:
                return subprocess.CompletedProcess(argv, 255, "", err)
        if any("DOCKER_HOST" in a for a in argv):
            return subprocess.CompletedProcess(argv, 0, self.docker_host, "")
        return subprocess.CompletedProcess(argv, 0, "", "")

    def ops(self, op: str) -> List[List[str]]:
        return [c for c in self.calls if "-O" in c and c[c.index("-O") + 1] == op]


def _tunnel(tmp_path, runner, endpoint="ssh://dev@build.example.com:2222") -> RemoteTunnel:
    return RemoteTunnel(endpoint, tmp_path / "remote.sock", runner=runner)


def test_endpoint_parse():
    assert SshEndpoint.parse("ssh://dev@host:2222") == SshEndpoint(host="host", user="dev", port=2222)
    assert SshEndpoint.parse("dev@host").destination == "dev@host"
    assert SshEndpoint.parse("ssh://host").ssh_args() == []
    with pytest.raises(TunnelError):
        SshEndpoint.parse("http://host/path")


def test_open_starts_master_and_forwards_engine_socket(tmp_path):
    runner = _DummyRunner()
    tunnel = _tunnel(tmp_path, runner)
    tunnel.open()
    master = runner.calls[0]
    assert "-M" in master and "-fN" in master
    assert "ServerAliveInterval=5" in master and "ConnectTimeout=5" in master
    assert master[-1] == "dev@build.example.com"
    assert master[1:3] == ["-p", "2222"]
    (fwd,) = runner.ops("forward")
    assert f"{tmp_path / 'remote.sock'}:/var/run/docker.sock" in fwd
    assert tunnel.remote_socket == "/var/run/docker.sock"


def test_open_uses_remote_docker_host(tmp_path):
    runner = _DummyRunner(docker_host="unix:///run/user/1000/docker.sock")
    tunnel = _tunnel(tmp_path, runner)
    tunnel.open()
    assert tunnel.remote_socket == "/run/user/1000/docker.sock"


def test_open_rejects_tcp_docker_host(tmp_path):
    with pytest.raises(TunnelError):
        _tunnel(tmp_path, _DummyRunner(docker_host="tcp://10.0.0.1:2375")).open()


def test_open_failure_is_tunnel_error(tmp_path):
    runner = _DummyRunner(fail={"-M": "Connection refused"})
    with pytest.raises(TunnelError, match="Connection refused"):
        _tunnel(tmp_path, runner).open()


def test_check_reports_dropped_master(tmp_path):
    runner = _DummyRunner(fail={"check": "Control socket connect: No such file"})
    with pytest.raises(TunnelError, match="dropped"):
        _tunnel(tmp_path, runner).check()


def test_sync_ports_forwards_and_cancels(tmp_path, fake_client):
    runner = _DummyRunner()
    tunnel = _tunnel(tmp_path, runner)

    c = fake_client.containers.create("postgres:16", name="devws-demo-db", labels=managed_labels("demo", "sidecar", "db"),
                                      ports={"5432/tcp": ("127.0.0.1", 5432)})
    c.start()
    tunnel.sync_ports(fake_client)
    assert published_ports(fake_client) == {5432}
    assert tunnel.forwarded == {5432}
    assert "127.0.0.1:5432:127.0.0.1:5432" in runner.ops("forward")[-1]

    # already forwarded: no new call
    tunnel.sync_ports(fake_client)
    assert len(runner.ops("forward")) == 1

    c.stop()
    tunnel.sync_ports(fake_client)
    assert tunnel.forwarded == set()
    assert "127.0.0.1:5432:127.0.0.1:5432" in runner.ops("cancel")[-1]


def test_run_stops_on_event_and_raises_on_drop(tmp_path, fake_client):
    runner = _DummyRunner()
    tunnel = _tunnel(tmp_path, runner)
    stop = threading.Event()
    stop.set()
    tunnel.run(fake_client, interval=0, stop_event=stop)
    assert runner.ops("check") == []

    runner.fail = {"check": "gone"}
    with pytest.raises(TunnelError):
        tunnel.run(fake_client, interval=0, stop_event=threading.Event())


def test_close_exits_master_and_removes_socket(tmp_path):
    runner = _DummyRunner()
    tunnel = _tunnel(tmp_path, runner)
    with tunnel:
        (tmp_path / "remote.sock").write_text("", encoding="utf-8")
    assert runner.ops("exit")
    assert not (tmp_path / "remote.sock").exists()
