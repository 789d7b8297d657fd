import pytest

from devws.errors import ConfigError, DecryptionError, TemplateError
from devws.models import ContentMount, WorkspaceSpec
from devws.templating import TemplateEngine, edit_document, render
from devws.vault import FileIdentityStore, SecretVault, is_encrypted


@pytest.fixture
def vault(tmp_path):
    v = SecretVault(FileIdentityStore(tmp_path / "age.key"))
    v.init()
    return v


def _spec(**kwargs) -> WorkspaceSpec:
    base = {"name": "demo", "image": "alpine:3", "user": "dev"}
    base.update(kwargs)
    return WorkspaceSpec(**base)


def test_render_allows_inner_whitespace():
    assert render("a {{ x }} b {{x}}", {"x": "1"}, "f") == "a 1 b 1"


def test_render_names_field_on_unresolved_reference():
    with pytest.raises(TemplateError, match=r"env\.URL: unresolved reference '\{\{missing\}\}'"):
        render("{{missing}}", {}, "env.URL")


def test_vars_see_only_predecessors():
    engine = TemplateEngine()
    assert engine.resolve_vars([("a", "1"), ("b", "{{a}}-2")], {}) == [("a", "1"), ("b", "1-2")]
    with pytest.raises(TemplateError, match="vars.a"):
        engine.resolve_vars([("a", "{{b}}"), ("b", "2")], {})


def test_vars_cannot_shadow_secrets():
    with pytest.raises(ConfigError):
        TemplateEngine().resolve_vars([("pw", "x")], {"pw": "secret"})


def test_full_resolution_renders_every_field(vault):
    spec = _spec(
        image="registry/{{tag}}",
        env={"DB": "{{url}}"},
        vars={"tag": "img:1", "host": "db", "url": "postgres://app:{{dbPassword}}@{{host}}"},
        secrets={"dbPassword": vault.encrypt("pa ss")},
        caches=["~/{{host}}-cache"],
        sidecars={
            "db": {
                "image": "postgres:16",
                "command": "postgres -c max_connections={{host}}",
                "env": {"POSTGRES_PASSWORD": "{{dbPassword}}"},
                "mounts": [{"mount": "/etc/{{host}}.conf", "content": "pw={{dbPassword}}"}],
            },
        },
        git={"url": "git@example.com:org/{{host}}.git"},
    )
    out = TemplateEngine(vault).resolve(spec)
    assert out.image == "registry/img:1"
    assert out.env == {"DB": "postgres://app:pa ss@db"}
    assert out.caches == ["~/db-cache"]
    db = out.sidecars["db"]
    assert db.command == ["postgres", "-c", "max_connections=db"]
    assert db.env == {"POSTGRES_PASSWORD": "pa ss"}
    assert db.mounts == [ContentMount(mount="/etc/db.conf", content="pw=pa ss")]
    assert out.git.url == "git@example.com:org/db.git"
    # ciphertext stays in the resolved spec
    assert is_encrypted(out.secrets["dbPassword"])


def test_unresolved_reference_in_sidecar_names_path():
    spec = _spec(sidecars={"db": {"image": "postgres:16", "env": {"X": "{{nope}}"}}})
    with pytest.raises(TemplateError, match=r"sidecars\.db\.env\.X"):
        TemplateEngine().resolve(spec)


def test_plaintext_secret_is_rejected(vault):
    with pytest.raises(DecryptionError, match="config edit"):
        TemplateEngine(vault).resolve(_spec(secrets={"pw": "plain"}))


def test_secrets_without_vault_is_config_error():
    with pytest.raises(ConfigError):
        TemplateEngine().resolve_secrets({"pw": "-----BEGIN AGE ENCRYPTED FILE-----|x|"})


def test_spec_without_secrets_needs_no_identity(tmp_path):
    missing = SecretVault(FileIdentityStore(tmp_path / "absent.key"))
    out = TemplateEngine(missing).resolve(_spec(vars={"a": "1"}, env={"A": "{{a}}"}))
    assert out.env == {"A": "1"}


def test_edit_document_encrypts_once_and_is_idempotent(vault, tmp_path):
    doc = tmp_path / "spec.yaml"
    doc.write_text("image: alpine\nsecrets:\n  pw: hunter2\n  token: 123\n", encoding="utf-8")
    assert edit_document(doc, vault) is True
    first = doc.read_text(encoding="utf-8")
    assert "hunter2" not in first
    assert edit_document(doc, vault) is False
    assert doc.read_text(encoding="utf-8") == first

    from devws.documents import read_document

    secrets = read_document(doc).secrets
    assert vault.decrypt(secrets["pw"]) == "hunter2"
    assert vault.decrypt(secrets["token"]) == "123"


def test_edit_document_toml(vault, tmp_path):
    doc = tmp_path / "spec.toml"
    doc.write_text('image = "alpine"\n\n[secrets]\npw = "hunter2"\n', encoding="utf-8")
    assert edit_document(doc, vault) is True
    from devws.documents import read_document

    assert vault.decrypt(read_document(doc).secrets["pw"]) == "hunter2"


def test_edit_document_without_secrets_leaves_file(vault, tmp_path):
    doc = tmp_path / "spec.yaml"
    doc.write_text("image: alpine  # keep me\n", encoding="utf-8")
    assert edit_document(doc, vault) is False
    assert doc.read_text(encoding="utf-8") == "image: alpine  # keep me\n"


def test_edit_document_rejects_invalid_spec(vault, tmp_path):
    doc = tmp_path / "spec.yaml"
    doc.write_text("image: alpine\nunknown: 1\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        edit_document(doc, vault)


def test_edit_document_encrypts_plaintext_that_looks_like_armor(vault, tmp_path):
    doc = tmp_path / "spec.yaml"
    doc.write_text("secrets:\n  pw: '-----BEGIN AGE ENCRYPTED FILE----- not really'\n", encoding="utf-8")
    assert edit_document(doc, vault) is True

    from devws.documents import read_document

    ct = read_document(doc).secrets["pw"]
    assert vault.decrypt(ct) == "-----BEGIN AGE ENCRYPTED FILE----- not really"
    out = TemplateEngine(vault).resolve(_spec(secrets={"pw": ct}, env={"PW": "{{pw}}"}))
    assert out.env == {"PW": "-----BEGIN AGE ENCRYPTED FILE----- not really"}


def test_rendered_cache_path_must_be_absolute_or_home_relative():
    engine = TemplateEngine()
    with pytest.raises(ConfigError, match=r"caches\[0\]"):
        engine.resolve(_spec(vars={"dir": "relative/cache"}, caches=["{{dir}}"]))
    out = engine.resolve(_spec(vars={"dir": "/var/cache/x"}, caches=["{{dir}}"]))
    assert out.caches == ["/var/cache/x"]


def test_extra_repos_home_image_and_sidecar_args_are_rendered():
    spec = _spec(
        vars={"org": "acme", "tag": "1.2"},
        extra_repos=["git@example.com:{{org}}/tools.git"],
        home_from_image="registry/{{org}}/home:{{tag}}",
        sidecars={"db": {"image": "postgres:16", "args": ["-c", "app={{org}}"]}},
    )
    out = TemplateEngine().resolve(spec)
    assert out.extra_repos == ["git@example.com:acme/tools.git"]
    assert out.home_from_image == "registry/acme/home:1.2"
    assert out.sidecars["db"].args == ["-c", "app=acme"]
    assert out.sidecars["db"].docker_command() == ["-c", "app=acme"]
