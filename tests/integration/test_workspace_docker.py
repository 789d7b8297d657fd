import os
import uuid

import pytest

from devws.config import Settings
from devws.deps import docker_client
from devws.errors import NotFoundError
from devws.models import WorkspaceSpec, WorkspaceState
from devws.workspaces.docker_utils import exec_script
from devws.workspaces.identity import IdentityProvider
from devws.workspaces.lifecycle import WorkspaceOrchestrator

IMAGE = os.environ.get("DEVWS_TEST_IMAGE", "alpine:3.20")


@pytest.fixture
def engine():
    settings = Settings.from_env(dotenv=False)
    client = docker_client(settings)
    identities = IdentityProvider(client, settings)
    orch = WorkspaceOrchestrator(client, settings, identities, attach=lambda req: 0)
    yield client, orch
    client.close()


@pytest.fixture
def name(engine):
    ws = f"it-{uuid.uuid4().hex[:8]}"
    yield ws
    _client, orch = engine
    try:
        orch.remove(ws, force=True)
    except NotFoundError:
        pass


@pytest.mark.integration
@pytest.mark.docker
def test_sidecar_reachable_by_name_and_idempotent_create(engine, name):
    client, orch = engine
    spec = WorkspaceSpec(
        name=name,
        image=IMAGE,
        user="dev",
        mount_work=True,
        sidecars={
            "echo": {
                "image": IMAGE,
                "command": ["sh", "-c", "while true; do echo pong | nc -l -p 7000; done"],
                "mounts": [{"mount": "/etc/echo/greeting", "content": "hello"}],
            }
        },
    )
    first = orch.create(spec)
    assert first.state is WorkspaceState.running
    assert orch.create(spec).created == []

    work = client.containers.get(f"devws-{name}-work")
    out = exec_script(work, "getent hosts echo && id -un", user=spec.uid)
    assert out.ok, out.stderr
    assert "dev" in out.stdout

    sidecar = client.containers.get(f"devws-{name}-echo")
    greeting = exec_script(sidecar, "cat /etc/echo/greeting")
    assert greeting.stdout == "hello"


@pytest.mark.integration
@pytest.mark.docker
def test_remove_leaves_no_workspace_resources(engine, name):
    client, orch = engine
    spec = WorkspaceSpec(name=name, image=IMAGE, user="dev", caches=["/var/cache/it"])
    status = orch.create(spec)
    orch.remove(name, force=True)
    assert orch.status(name) is WorkspaceState.absent
    names = {v.name for v in client.volumes.list()}
    assert status.resources.home_volume not in names
    assert status.resources.cache_volumes["/var/cache/it"] in names
    client.volumes.get(status.resources.cache_volumes["/var/cache/it"]).remove()
