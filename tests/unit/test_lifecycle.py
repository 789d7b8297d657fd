import json
import logging
from typing import List

import pytest

from devws.errors import ConfigError, ConflictError, EngineError, NotFoundError
from devws.models import WorkspaceSpec, WorkspaceState
from devws.workspaces.core import LABEL_CACHE_PATH, LABEL_ROLE, LABEL_SHELL, LABEL_UID, LABEL_WORKSPACE
from devws.workspaces.identity import IdentityProvider
from devws.workspaces.lifecycle import AttachRequest, WorkspaceOrchestrator


class _RecordingAttach:
    def __init__(self, code: int = 0) -> None:
        self.code = code
        self.requests: List[AttachRequest] = []

    def __call__(self, req: AttachRequest) -> int:
        self.requests.append(req)
        return self.code


def _spec(**kwargs) -> WorkspaceSpec:
    base = {"name": "demo", "image": "alpine:3", "user": "dev", "shell": ["bash", "-l"]}
    base.update(kwargs)
    return WorkspaceSpec(**base)


def _with_sidecars(**kwargs) -> WorkspaceSpec:
    return _spec(
        sidecars={
            "db": {
                "image": "postgres:16",
                "env": {"POSTGRES_PASSWORD": "pw"},
                "ports": ["5432:5432"],
                "mounts": [
                    "/var/lib/postgresql/data",
                    {"mount": "/docker-entrypoint-initdb.d/init.sql", "content": "select 1;"},
                ],
            },
            "cache": {"image": "redis:7"},
        },
        **kwargs,
    )


@pytest.fixture
def attach():
    return _RecordingAttach()


@pytest.fixture
def orch(fake_client, settings, attach):
    identities = IdentityProvider(fake_client, settings)
    return WorkspaceOrchestrator(fake_client, settings, identities, attach=attach, poll_delay=0)


def test_create_provisions_every_named_resource(orch, fake_client):
    status = orch.create(_spec(caches=["~/.nuget"], ports=["8080:80"], env={"A": "1"}))
    assert status.state is WorkspaceState.running
    assert status.created == ["devws-demo-work"]

    assert "devws-demo" in fake_client.networks.items
    for vol in ("devws-demo-home", "devws-demo-work", "devws-ssh-key", "devws-age-key"):
        assert vol in fake_client.volumes.items

    cache = fake_client.volumes.items[status.resources.cache_volumes["~/.nuget"]]
    assert LABEL_WORKSPACE not in cache.attrs["Labels"]
    assert cache.attrs["Labels"][LABEL_CACHE_PATH] == "~/.nuget"

    work = fake_client.containers.get("devws-demo-work")
    assert work.status == "running"
    assert work.kwargs["entrypoint"] == ["cat"]
    assert work.kwargs["user"] == "1000"
    assert work.kwargs["ports"] == {"80/tcp": ("127.0.0.1", 8080)}
    assert json.loads(work.labels[LABEL_SHELL]) == ["bash", "-l"]
    env = work.kwargs["environment"]
    assert env["A"] == "1"
    assert env["DEVWS_META_WORKSPACE"] == "demo"
    assert env["HOME"] == "/home/dev"
    assert "id_ed25519" in env["GIT_SSH_COMMAND"]
    targets = {m["Target"]: m["Source"] for m in work.kwargs["mounts"]}
    assert targets["/home/dev"] == "devws-demo-home"
    assert targets["/work"] == "devws-demo-work"
    assert targets["/home/dev/.nuget"] == status.resources.cache_volumes["~/.nuget"]
    assert targets["/tmp/.ssh"] == "devws-ssh-key"
    # runtime user provisioned as root
    assert work.execs and all(user == "root" for _cmd, user in work.execs)
    assert "/etc/passwd" in work.execs[0][0][-1]


def test_create_is_idempotent(orch, fake_client):
    spec = _with_sidecars(caches=["~/.nuget"])
    orch.create(spec)
    volumes = set(fake_client.volumes.items)
    containers = set(fake_client.containers.items)

    status = orch.create(spec)
    assert status.created == []
    assert set(fake_client.volumes.items) == volumes
    assert set(fake_client.containers.items) == containers


def test_create_restarts_stopped_workspace(orch, fake_client):
    spec = _with_sidecars()
    orch.create(spec)
    orch.stop("demo")
    assert fake_client.containers.get("devws-demo-work").status == "exited"

    orch.create(spec)
    assert all(c.status == "running" for c in fake_client.containers.items.values())


def test_sidecars_start_before_work_container(orch, fake_client):
    orch.create(_with_sidecars())
    starts = [e[1] for e in fake_client.events if e[0] == "start"]
    assert starts.index("devws-demo-work") > starts.index("devws-demo-db")
    assert starts.index("devws-demo-work") > starts.index("devws-demo-cache")


def test_sidecar_network_alias_volumes_and_content(orch, fake_client):
    status = orch.create(_with_sidecars())
    db = fake_client.containers.get("devws-demo-db")
    assert fake_client.networks.items["devws-demo"].aliases["devws-demo-db"] == ["db"]
    assert fake_client.networks.items["devws-demo"].aliases["devws-demo-work"] == ["work"]
    assert db.files["/docker-entrypoint-initdb.d/init.sql"] == b"select 1;"
    (path, vol), = status.resources.sidecar_volumes["db"]
    assert path == "/var/lib/postgresql/data"
    assert fake_client.volumes.items[vol].attrs["Labels"][LABEL_ROLE] == "data"
    assert db.kwargs["ports"] == {"5432/tcp": ("127.0.0.1", 5432)}
    assert db.kwargs["environment"] == {"POSTGRES_PASSWORD": "pw"}


def test_retry_after_failure_reuses_created_resources(orch, fake_client, monkeypatch):
    spec = _with_sidecars()
    original = WorkspaceOrchestrator._create_work

    def _boom(self, spec, res):
        raise EngineError("engine went away")

    monkeypatch.setattr(WorkspaceOrchestrator, "_create_work", _boom)
    with pytest.raises(EngineError):
        orch.create(spec)
    assert "devws-demo-db" in fake_client.containers.items
    assert "devws-demo-work" not in fake_client.containers.items

    monkeypatch.setattr(WorkspaceOrchestrator, "_create_work", original)
    status = orch.create(spec)
    assert status.created == ["devws-demo-work"]
    assert [c.name for c in fake_client.containers.created].count("devws-demo-db") == 1


def test_git_clone_seeds_work_volume_once(orch, fake_client):
    spec = _spec(git={"url": "git@github.com:org/app.git"})
    orch.create(spec)
    clones = [c for c in fake_client.containers.created if c.name == "devws-demo-work-clone"]
    assert len(clones) == 1
    assert "git clone" in clones[0].script
    assert "/work/app" in clones[0].script
    assert "devws-demo-work-clone" not in fake_client.containers.items

    orch.create(spec)
    assert len([c for c in fake_client.containers.created if c.name == "devws-demo-work-clone"]) == 1


def test_failed_clone_aborts_create(orch, fake_client):
    fake_client.run_handler = lambda c: (128, "", "fatal: repository not found")
    with pytest.raises(EngineError, match="repository not found"):
        orch.create(_spec(git={"url": "git@github.com:org/missing.git"}))
    assert "devws-demo-work" not in fake_client.containers.items


def test_enter_uses_labels_and_starts_stopped_container(orch, fake_client, attach):
    orch.create(_spec(work_dir="/work/app"))
    orch.stop("demo")
    assert orch.enter("demo") == 0
    assert fake_client.containers.get("devws-demo-work").status == "running"
    req = attach.requests[-1]
    assert req.container == "devws-demo-work"
    assert req.argv == ["bash", "-l"]
    assert req.user == "1000"
    assert req.work_dir == "/work/app"


def test_enter_shell_override_and_sidecar(orch, attach):
    orch.create(_with_sidecars())
    orch.enter("demo", container="db", shell="psql -U postgres")
    req = attach.requests[-1]
    assert req.container == "devws-demo-db"
    assert req.argv == ["psql", "-U", "postgres"]
    assert req.user is None


def test_enter_missing_workspace_creates_nothing(orch, fake_client):
    with pytest.raises(NotFoundError):
        orch.enter("ghost")
    assert fake_client.containers.created == []
    assert fake_client.volumes.items == {}


def test_list_and_status(orch):
    assert orch.status("demo") is WorkspaceState.absent
    orch.create(_with_sidecars())
    orch.create(_spec(name="other"))
    orch.stop("other")
    summaries = {s.name: s for s in orch.list()}
    assert summaries["demo"].state is WorkspaceState.running
    assert summaries["demo"].containers == {"work": "running", "db": "running", "cache": "running"}
    assert orch.status("other") is WorkspaceState.stopped


def test_stop_unknown_workspace(orch):
    with pytest.raises(NotFoundError):
        orch.stop("ghost")


def test_remove_refuses_running_without_force(orch, fake_client):
    orch.create(_spec())
    with pytest.raises(ConflictError):
        orch.remove("demo")
    assert "devws-demo-work" in fake_client.containers.items


def test_remove_keeps_shared_volumes(orch, fake_client):
    spec = _with_sidecars(caches=["~/.nuget"])
    status = orch.create(spec)
    orch.create(_spec(name="other"))
    orch.remove("demo", force=True)

    assert not [n for n in fake_client.containers.items if n.startswith("devws-demo-")]
    assert "devws-demo" not in fake_client.networks.items
    for vol, _role in status.resources.workspace_volumes():
        assert vol not in fake_client.volumes.items
    assert status.resources.cache_volumes["~/.nuget"] in fake_client.volumes.items
    assert "devws-ssh-key" in fake_client.volumes.items
    assert "devws-age-key" in fake_client.volumes.items
    # the other workspace is untouched
    assert "devws-other-work" in fake_client.containers.items
    assert "devws-other-home" in fake_client.volumes.items


def test_remove_stopped_workspace_without_force(orch, fake_client):
    orch.create(_spec())
    orch.stop("demo")
    orch.remove("demo")
    assert "devws-demo-work" not in fake_client.containers.items


def test_remove_unknown_workspace(orch):
    with pytest.raises(NotFoundError):
        orch.remove("ghost")


def test_remove_all(orch, fake_client):
    orch.create(_spec())
    orch.create(_spec(name="other"))
    assert orch.remove_all(force=True) == ["demo", "other"]
    assert orch.list() == []


def test_prune_keeps_identities_unless_asked(orch, fake_client):
    orch.create(_spec(caches=["~/.npm"]))
    report = orch.prune(force=True)
    assert "devws-demo-work" in report.containers
    assert set(fake_client.volumes.items) == {"devws-ssh-key", "devws-age-key"}
    assert fake_client.networks.items == {}

    orch.prune(include_identities=True, force=True)
    assert fake_client.volumes.items == {}


def test_prune_refuses_running_without_force(orch):
    orch.create(_spec())
    with pytest.raises(ConflictError):
        orch.prune()


def test_tmp_tears_down_after_shell_exits(orch, fake_client, attach):
    attach.code = 3
    spec = _spec(name="tmp-abc1234")
    assert orch.tmp(spec) == 3
    assert attach.requests[-1].container == "devws-tmp-abc1234-work"
    assert not [n for n in fake_client.containers.items if n.startswith("devws-tmp-")]
    assert "devws-tmp-abc1234-home" not in fake_client.volumes.items


def test_tmp_tears_down_when_enter_fails(orch, fake_client, monkeypatch):
    def _fail(self, name, container="work", shell=None):
        raise EngineError("attach failed")

    monkeypatch.setattr(WorkspaceOrchestrator, "enter", _fail)
    with pytest.raises(EngineError):
        orch.tmp(_spec(name="tmp-zzz"))
    assert "devws-tmp-zzz-work" not in fake_client.containers.items


def test_work_container_labels_record_runtime_user(orch, fake_client):
    orch.create(_spec(uid="1234"))
    work = fake_client.containers.get("devws-demo-work")
    assert work.labels[LABEL_UID] == "1234"
    assert work.labels[LABEL_ROLE] == "work"


def test_resolved_secrets_and_vars_reach_work_environment(orch, fake_client, tmp_path):
    from devws.templating import TemplateEngine
    from devws.vault import FileIdentityStore, SecretVault

    vault = SecretVault(FileIdentityStore(tmp_path / "age.key"))
    vault.init()
    spec = _spec(
        vars={"u": "admin"},
        secrets={"p": vault.encrypt("secret")},
        env={"CONN": "user={{u}};pwd={{p}}"},
    )
    orch.create(TemplateEngine(vault).resolve(spec))
    env = fake_client.containers.get("devws-demo-work").kwargs["environment"]
    assert env["CONN"] == "user=admin;pwd=secret"


def test_relative_cache_path_provisions_nothing(orch, fake_client):
    spec = _with_sidecars().model_copy(update={"caches": [".cache"]})
    with pytest.raises(ConfigError, match="cache path"):
        orch.create(spec)
    assert fake_client.networks.items == {}
    assert fake_client.volumes.items == {}
    assert fake_client.containers.items == {}


def test_git_without_work_mount_warns_and_skips_clone(orch, fake_client, caplog):
    spec = _spec(mount_work=False, git={"url": "git@github.com:org/app.git"}, extra_repos=["git@github.com:org/lib.git"])
    with caplog.at_level(logging.WARNING, logger="devws"):
        orch.create(spec)
    assert not [c for c in fake_client.containers.created if "clone" in c.name]
    assert "does not mount /work" in caplog.text


def test_extra_repos_are_cloned_after_the_root_repo(orch, fake_client):
    fake_client.run_handler = lambda c: (0, "git@github.com:org/lib.git\n" if c.name.endswith("-clone-extra") else "", "")
    orch.create(_spec(
        git={"url": "git@github.com:org/app.git"},
        extra_repos=["git@github.com:org/lib.git", "https://example.com/org/docs.git"],
    ))
    names = [c.name for c in fake_client.containers.created]
    assert names.index("devws-demo-work-clone") < names.index("devws-demo-work-clone-extra") < names.index("devws-demo-work")
    script = fake_client.containers.created[names.index("devws-demo-work-clone-extra")].script
    assert "/work/lib/.git" in script
    assert "git clone --quiet https://example.com/org/docs.git /work/docs" in script


def test_home_from_image_seeds_only_a_new_home_volume(orch, fake_client):
    spec = _spec(home_from_image="registry/home:1")
    orch.create(spec)
    names = [c.name for c in fake_client.containers.created]
    assert names.count("devws-demo-home-populate") == 1
    assert names.index("devws-demo-home-populate") < names.index("devws-demo-work")
    seed = fake_client.containers.created[names.index("devws-demo-home-populate")]
    assert seed.image == "registry/home:1"
    assert [m["Target"] for m in seed.kwargs["mounts"]] == ["/home/dev"]
    assert "devws-demo-home-populate" not in fake_client.containers.items

    orch.update(spec)
    assert [c.name for c in fake_client.containers.created].count("devws-demo-home-populate") == 1


def test_sidecar_args_become_the_container_command(orch, fake_client):
    orch.create(_spec(sidecars={
        "db": {"image": "postgres:16", "args": ["-c", "fsync=off"]},
        "web": {"image": "nginx", "command": "nginx", "args": "-g 'daemon off;'"},
    }))
    assert fake_client.containers.get("devws-demo-db").kwargs["command"] == ["-c", "fsync=off"]
    assert fake_client.containers.get("devws-demo-web").kwargs["command"] == ["nginx", "-g", "daemon off;"]


def test_work_container_records_its_config(orch):
    orch.create(_spec(
        origin="git@github.com:org/app.git//.devws.yaml",
        config_body="image: alpine:3\nenv:\n  A: '1'\n",
        overrides={"user": "dev"},
        env={"A": "1"},
        ports=["8080:80"],
    ))
    rec = orch.recorded_config("demo")
    assert rec.origin == "git@github.com:org/app.git//.devws.yaml"
    assert rec.body == "image: alpine:3\nenv:\n  A: '1'\n"
    assert rec.overrides == {"user": "dev"}
    assert rec.runtime["image"] == "alpine:3"
    assert rec.runtime["ports"] == ["8080:80"]
    assert "env" not in rec.runtime

    with pytest.raises(NotFoundError):
        orch.recorded_config("ghost")


def test_update_apply_replaces_containers_and_keeps_volumes(orch, fake_client):
    orch.create(_with_sidecars())
    fake_client.volumes.items["devws-demo-home"].files["notes.txt"] = b"keep"

    status = orch.update(_spec(image="alpine:4"))
    assert status.state is WorkspaceState.running
    assert "devws-demo-work" in status.created
    assert fake_client.containers.get("devws-demo-work").image == "alpine:4"
    assert "devws-demo-db" not in fake_client.containers.items
    assert fake_client.volumes.items["devws-demo-home"].files == {"notes.txt": b"keep"}
    assert "devws-demo" in fake_client.networks.items


def test_update_purge_starts_from_empty_volumes(orch, fake_client):
    orch.create(_spec())
    fake_client.volumes.items["devws-demo-home"].files["notes.txt"] = b"gone"
    orch.update(_spec(), purge=True)
    assert fake_client.volumes.items["devws-demo-home"].files == {}
    assert fake_client.containers.get("devws-demo-work").status == "running"


def test_update_unknown_workspace_creates_nothing(orch, fake_client):
    with pytest.raises(NotFoundError):
        orch.update(_spec(name="ghost"))
    assert fake_client.containers.created == []
