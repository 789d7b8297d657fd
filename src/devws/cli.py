"""
devws command line.

Every command builds its collaborators from Settings, runs one engine
operation, and maps WorkspaceError to `error: <message>` on stderr with the
error's exit code.
"""

import dataclasses
import enum
import functools
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import typer
from docker import DockerClient

from devws import __version__
from devws.config import Settings, get_settings
from devws.deps import docker_client
from devws.documents import DocumentFormat, convert, dump_raw, format_for
from devws.errors import ConfigError, WorkspaceError
from devws.logging_setup import initialize_from_env
from devws.remote import RemoteTunnel
from devws.resolver import CliOverrides, ConfigPath, ConfigResolver
from devws.templating import TemplateEngine, edit_document
from devws.vault import FileIdentityStore, SecretVault
from devws.workspaces.git import GitHelper
from devws.workspaces.identity import IdentityProvider
from devws.workspaces.lifecycle import WorkspaceOrchestrator, tmp_workspace_name

logger = logging.getLogger("devws")

app = typer.Typer(no_args_is_help=True, help="Reproducible developer workspaces on a container engine.")
system_app = typer.Typer(no_args_is_help=True, help="Identities and engine-wide cleanup.")
config_app = typer.Typer(no_args_is_help=True, help="Spec document tools.")
app.add_typer(system_app, name="system")
app.add_typer(config_app, name="config")


@dataclass
class Services:
    settings: Settings
    client: DockerClient
    identities: IdentityProvider
    git: GitHelper
    orchestrator: WorkspaceOrchestrator

    @classmethod
    def build(cls, settings: Settings) -> "Services":
        client = docker_client(settings)
        identities = IdentityProvider(client, settings)
        git = GitHelper(client, settings, identities)
        return cls(
            settings=settings,
            client=client,
            identities=identities,
            git=git,
            orchestrator=WorkspaceOrchestrator(client, settings, identities, git=git),
        )


def _services() -> Services:
    return Services.build(get_settings())


def _reported(fn):
    """
    Turn WorkspaceError into a one-line message and the error's exit code.
    """
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except WorkspaceError as e:
            logger.debug("Command failed", exc_info=True)
            typer.echo(f"error: {e}", err=True)
            raise typer.Exit(code=e.exit_code)

    return wrapper


def _resolve(svc: Services, name: str, overrides: CliOverrides):
    spec = ConfigResolver(svc.settings, fetcher=svc.git).resolve(name, overrides)
    return TemplateEngine(svc.identities.vault()).resolve(spec)


@app.callback()
def _root(
    debug: Annotated[bool, typer.Option("--debug", help="Log debug output to the console.")] = False,
):
    initialize_from_env(debug or get_settings().debug)


@app.command()
def version():
    """Print the devws version."""
    typer.echo(__version__)


# --------------------------
# system
# --------------------------

@system_app.command("init")
@_reported
def system_init(
    force: Annotated[bool, typer.Option("--force", help="Regenerate identities that already exist.")] = False,
    identity: Annotated[
        Optional[Path], typer.Option("--identity", help="Import this age identity file instead of generating one.")
    ] = None,
):
    """
    Generate the SSH keypair and the age identity shared by all workspaces.
    """
    svc = _services()
    identity_text = None
    if identity is not None:
        try:
            identity_text = identity.expanduser().read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"{identity}: cannot read identity: {e}") from e
    result = svc.identities.init(force=force, identity=identity_text)
    typer.echo(f"ssh public key{'' if result.ssh_created else ' (existing)'}:")
    typer.echo(result.ssh_public_key)
    typer.echo(f"age recipient{'' if result.age_created else ' (existing)'}:")
    typer.echo(result.age_public_key)


@system_app.command("prune")
@_reported
def system_prune(
    all_: Annotated[bool, typer.Option("--all", help="Also delete the SSH and age identity volumes.")] = False,
    force: Annotated[bool, typer.Option("--force", help="Remove running containers too.")] = False,
):
    """
    Remove every devws container, network and volume, shared caches included.
    """
    report = _services().orchestrator.prune(include_identities=all_, force=force)
    typer.echo(
        f"removed {len(report.containers)} containers, {len(report.networks)} networks, "
        f"{len(report.volumes)} volumes"
    )


# --------------------------
# workspaces
# --------------------------

@app.command()
@_reported
def new(
    name: Annotated[str, typer.Argument(help="Workspace name.")],
    git: Annotated[Optional[str], typer.Option("--git", help="Repository cloned into the work volume.")] = None,
    config: Annotated[
        Optional[str], typer.Option("--config", help="Spec document: a local path or '<git-url>//<path>'.")
    ] = None,
    image: Annotated[Optional[str], typer.Option("--image", help="Work container image.")] = None,
    shell: Annotated[Optional[str], typer.Option("--shell", help="Shell command used by enter.")] = None,
    user: Annotated[Optional[str], typer.Option("--user", help="User name inside the work container.")] = None,
):
    """
    Create (or restart) a workspace.
    """
    svc = _services()
    overrides = CliOverrides(image=image, shell=shell, user=user, git_url=git, config=config)
    status = svc.orchestrator.create(_resolve(svc, name, overrides))
    typer.echo(f"{status.name}: {status.state.value}")
    for created in status.created:
        typer.echo(f"  created {created}")


@app.command()
@_reported
def update(
    name: Annotated[str, typer.Argument(help="Workspace name.")],
    purge: Annotated[
        bool, typer.Option("--purge", help="Also drop home, work and sidecar volumes before re-creating.")
    ] = False,
    config: Annotated[
        Optional[str], typer.Option("--config", help="Switch to this spec document instead of the recorded one.")
    ] = None,
):
    """
    Re-apply the workspace's spec document, read again from where it came from.
    """
    svc = _services()
    recorded = svc.orchestrator.recorded_config(name)
    spec = ConfigResolver(svc.settings, fetcher=svc.git).reapply(
        name, recorded.origin, recorded.body, recorded.overrides, config=config
    )
    status = svc.orchestrator.update(TemplateEngine(svc.identities.vault()).resolve(spec), purge=purge)
    typer.echo(f"{status.name}: {status.state.value}")
    for created in status.created:
        typer.echo(f"  created {created}")


@app.command()
@_reported
def enter(
    name: Annotated[str, typer.Argument(help="Workspace name.")],
    container: Annotated[str, typer.Option("--container", help="Sidecar name, or 'work'.")] = "work",
    shell: Annotated[Optional[str], typer.Option("--shell", help="Override the shell command.")] = None,
):
    """
    Open an interactive shell in a workspace container.
    """
    code = _services().orchestrator.enter(name, container=container, shell=shell)
    raise typer.Exit(code=code)


@app.command()
@_reported
def tmp(
    image: Annotated[Optional[str], typer.Option("--image", help="Work container image.")] = None,
    shell: Annotated[Optional[str], typer.Option("--shell", help="Shell command.")] = None,
):
    """
    Throwaway workspace, removed when the shell exits.
    """
    svc = _services()
    spec = _resolve(svc, tmp_workspace_name(), CliOverrides(image=image, shell=shell))
    raise typer.Exit(code=svc.orchestrator.tmp(spec))


@app.command("rm")
@_reported
def remove(
    name: Annotated[Optional[str], typer.Argument(help="Workspace name.")] = None,
    all_: Annotated[bool, typer.Option("--all", help="Remove every workspace.")] = False,
    force: Annotated[bool, typer.Option("--force", help="Remove running containers too.")] = False,
):
    """
    Remove a workspace with its network and own volumes. Caches and
    identities are kept.
    """
    orchestrator = _services().orchestrator
    if all_:
        for removed in orchestrator.remove_all(force=force):
            typer.echo(f"removed {removed}")
        return
    if not name:
        raise ConfigError("give a workspace name or --all")
    orchestrator.remove(name, force=force)
    typer.echo(f"removed {name}")


@app.command()
@_reported
def stop(
    name: Annotated[Optional[str], typer.Argument(help="Workspace name.")] = None,
    all_: Annotated[bool, typer.Option("--all", help="Stop every workspace.")] = False,
):
    """Stop a workspace's containers."""
    orchestrator = _services().orchestrator
    if all_:
        orchestrator.stop_all()
        return
    if not name:
        raise ConfigError("give a workspace name or --all")
    orchestrator.stop(name)


@app.command("ls")
@_reported
def list_workspaces():
    """List workspaces and their containers."""
    summaries = _services().orchestrator.list()
    if not summaries:
        typer.echo("no workspaces")
        return
    width = max(len(s.name) for s in summaries)
    for s in summaries:
        containers = ", ".join(f"{k}={v}" for k, v in sorted(s.containers.items()))
        typer.echo(f"{s.name:<{width}}  {s.state.value:<8}  {containers}")


# --------------------------
# config
# --------------------------

@config_app.command("edit")
@_reported
def config_edit(
    path: Annotated[Path, typer.Argument(help="Spec document to encrypt secrets in.")],
):
    """
    Encrypt plaintext values under `secrets` in place.
    """
    settings = get_settings()
    if settings.age_identity_file:
        # a file identity needs no engine
        vault = SecretVault(FileIdentityStore(settings.age_identity_file))
    else:
        vault = _services().identities.vault()
    changed = edit_document(path, vault)
    typer.echo(f"{path}: {'secrets encrypted' if changed else 'unchanged'}")


class ConfigPart(str, enum.Enum):
    body = "body"
    origin = "origin"
    runtime = "runtime"


def _echo_document(text: str) -> None:
    typer.echo(text, nl=not text.endswith("\n"))


@config_app.command("show")
@_reported
def config_show(
    name: Annotated[str, typer.Argument(help="Workspace name.")],
    part: Annotated[ConfigPart, typer.Option("--part", help="What to print.")] = ConfigPart.body,
    output: Annotated[
        Optional[DocumentFormat], typer.Option("--format", help="Re-encode the document in this format.")
    ] = None,
):
    """
    Print the spec document a workspace was created from, where it came from,
    or the effective settings.
    """
    recorded = _services().orchestrator.recorded_config(name)
    if part is ConfigPart.origin:
        typer.echo(recorded.origin or "")
    elif part is ConfigPart.runtime:
        _echo_document(dump_raw(recorded.runtime, output or DocumentFormat.yaml))
    elif recorded.body is None:
        typer.echo(f"# {name} was created without a spec document")
    else:
        src = format_for(ConfigPath.parse(recorded.origin).path) if recorded.origin else DocumentFormat.yaml
        _echo_document(convert(recorded.body, src, output or src, recorded.origin or name))


@config_app.command("template")
@_reported
def config_template(
    output: Annotated[DocumentFormat, typer.Option("--format", help="Document format.")] = DocumentFormat.yaml,
):
    """
    Print a starter spec document with the current defaults filled in.
    """
    _echo_document(dump_raw(ConfigResolver(get_settings()).template(), output))


# --------------------------
# remote
# --------------------------

@app.command()
@_reported
def remote(
    ssh_url: Annotated[Optional[str], typer.Option("--ssh-url", help="ssh://user@host[:port]")] = None,
    socket: Annotated[Optional[Path], typer.Option("--socket", help="Local socket for the remote engine.")] = None,
    interval: Annotated[float, typer.Option("--interval", help="Seconds between port syncs.")] = 5.0,
):
    """
    Hold an SSH tunnel to a remote engine open until interrupted. Other
    commands reach it with DEVWS_REMOTE set.
    """
    settings = get_settings()
    endpoint = ssh_url or settings.remote
    if not endpoint:
        raise ConfigError("no remote endpoint; pass --ssh-url or set DEVWS_REMOTE")
    if socket is not None:
        settings = dataclasses.replace(settings, remote_socket=str(socket))
    settings = dataclasses.replace(settings, remote=endpoint)

    stop_event = threading.Event()
    with RemoteTunnel(endpoint, settings.remote_socket_path()) as tunnel:
        typer.echo(f"export DEVWS_REMOTE={endpoint} DEVWS_REMOTE_SOCKET={tunnel.local_socket}")
        client = docker_client(settings)
        try:
            tunnel.run(client, interval=interval, stop_event=stop_event)
        except KeyboardInterrupt:
            logger.info("Closing tunnel to %s", endpoint)
        finally:
            client.close()


def main() -> None:
    app(prog_name="devws")


__all__ = [
    "app",
    "main",
    "Services",
]
