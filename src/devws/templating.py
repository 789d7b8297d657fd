"""
Placeholder expansion for workspace specs.

Placeholders look like ``{{name}}`` (inner whitespace allowed) and resolve
against a table of decrypted secrets and vars. Resolution runs in three
phases:

1. every entry of ``secrets`` is decrypted; the first failure aborts;
2. ``vars`` are walked in declaration order, each one rendered against the
   secrets plus the vars declared before it (a later var is never visible);
3. every string field of the work container and the sidecars is rendered
   against the complete table.

An unresolved placeholder is always a TemplateError naming the field path;
text is never left half-rendered.

edit_document() is the other entry point: it encrypts the plaintext values
under ``secrets`` of a document file in place.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from devws.documents import dump_raw, format_for, parse_raw, validate_document
from devws.errors import ConfigError, DecryptionError, TemplateError
from devws.models import ContentMount, SidecarSpec, VolumeMount, WorkspaceSpec, check_cache_path
from devws.vault import SecretVault, is_encrypted

logger = logging.getLogger("devws")

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")


def render(text: str, table: Mapping[str, str], field: str) -> str:
    """
    Substitute every placeholder in text. Raises TemplateError naming `field`
    on the first reference missing from table.
    """
    def _sub(m: "re.Match[str]") -> str:
        key = m.group(1)
        if key not in table:
            raise TemplateError(f"{field}: unresolved reference '{{{{{key}}}}}'")
        return table[key]

    return PLACEHOLDER_RE.sub(_sub, text)


class TemplateEngine:
    """
    Expands placeholders across a WorkspaceSpec.

    The vault is only consulted when the spec declares secrets, so specs
    without secrets resolve on hosts that never ran `system init`.
    """

    def __init__(self, vault: Optional[SecretVault] = None) -> None:
        self.vault = vault

    # --------------------------
    # Phase 1: secrets
    # --------------------------

    def resolve_secrets(self, secrets: Mapping[str, str]) -> Dict[str, str]:
        if secrets and self.vault is None:
            raise ConfigError("spec declares secrets but no encryption identity is available")
        resolved: Dict[str, str] = {}
        for name, value in secrets.items():
            if not is_encrypted(value):
                raise DecryptionError(f"secrets.{name}: value is not encrypted; run `devws config edit` on the document")
            try:
                resolved[name] = self.vault.decrypt(value)
            except DecryptionError as e:
                raise DecryptionError(f"secrets.{name}: {e}") from e
        return resolved

    # --------------------------
    # Phase 2: vars
    # --------------------------

    def resolve_vars(self, vars: List[Tuple[str, str]], secrets: Mapping[str, str]) -> List[Tuple[str, str]]:
        """
        Render vars in order. The table grows one entry per step, so a var can
        only ever see secrets and its predecessors.
        """
        table: Dict[str, str] = dict(secrets)
        resolved: List[Tuple[str, str]] = []
        for key, value in vars:
            if key in secrets:
                raise ConfigError(f"vars.{key}: name is also declared under secrets")
            rendered = render(value, table, f"vars.{key}")
            table[key] = rendered
            resolved.append((key, rendered))
        return resolved

    # --------------------------
    # Phase 3: the rest of the spec
    # --------------------------

    def _render_mapping(self, values: Mapping[str, str], table: Mapping[str, str], path: str) -> Dict[str, str]:
        return {k: render(v, table, f"{path}.{k}") for k, v in values.items()}

    def _render_argv(self, argv: Optional[List[str]], table: Mapping[str, str], path: str) -> Optional[List[str]]:
        if argv is None:
            return None
        return [render(tok, table, f"{path}[{i}]") for i, tok in enumerate(argv)]

    def _render_optional(self, value: Optional[str], table: Mapping[str, str], path: str) -> Optional[str]:
        return None if value is None else render(value, table, path)

    def _render_cache(self, path: str, table: Mapping[str, str], field: str) -> str:
        try:
            return check_cache_path(render(path, table, field))
        except ValueError as e:
            raise ConfigError(f"{field}: {e}") from e

    def render_sidecar(self, sc: SidecarSpec, table: Mapping[str, str]) -> SidecarSpec:
        p = f"sidecars.{sc.name}"
        mounts = []
        for i, m in enumerate(sc.mounts):
            mp = f"{p}.mounts[{i}]"
            if isinstance(m, ContentMount):
                mounts.append(ContentMount(
                    mount=render(m.mount, table, f"{mp}.mount"),
                    content=render(m.content, table, f"{mp}.content"),
                ))
            else:
                mounts.append(VolumeMount(mount=render(m.mount, table, f"{mp}.mount")))
        return sc.model_copy(update={
            "image": render(sc.image, table, f"{p}.image"),
            "command": self._render_argv(sc.command, table, f"{p}.command"),
            "args": self._render_argv(sc.args, table, f"{p}.args"),
            "env": self._render_mapping(sc.env, table, f"{p}.env"),
            "mounts": mounts,
            "work_dir": self._render_optional(sc.work_dir, table, f"{p}.work_dir"),
            "user": self._render_optional(sc.user, table, f"{p}.user"),
        })

    def render_spec(self, spec: WorkspaceSpec, table: Mapping[str, str]) -> WorkspaceSpec:
        git = spec.git
        if git is not None:
            git = git.model_copy(update={"url": render(git.url, table, "git.url")})
        return spec.model_copy(update={
            "image": render(spec.image, table, "image"),
            "shell": self._render_argv(spec.shell, table, "shell"),
            "user": render(spec.user, table, "user"),
            "work_dir": self._render_optional(spec.work_dir, table, "work_dir"),
            "env": self._render_mapping(spec.env, table, "env"),
            "caches": [self._render_cache(c, table, f"caches[{i}]") for i, c in enumerate(spec.caches)],
            "extra_repos": [render(u, table, f"extra_repos[{i}]") for i, u in enumerate(spec.extra_repos)],
            "home_from_image": self._render_optional(spec.home_from_image, table, "home_from_image"),
            "sidecars": {name: self.render_sidecar(sc, table) for name, sc in spec.sidecars.items()},
            "git": git,
        })

    def resolve(self, spec: WorkspaceSpec) -> WorkspaceSpec:
        """
        Run all three phases. The returned spec has no placeholders left;
        its `secrets` still hold ciphertext.
        """
        secrets = self.resolve_secrets(spec.secrets)
        resolved_vars = self.resolve_vars(spec.vars, secrets)
        table: Dict[str, str] = dict(secrets)
        table.update(resolved_vars)
        rendered = self.render_spec(spec, table)
        logger.debug("Resolved spec for %s: %d secrets, %d vars", spec.name, len(secrets), len(resolved_vars))
        return rendered.model_copy(update={"vars": resolved_vars})


# --------------------------
# Encrypting edit
# --------------------------

def encrypt_secrets(data: Dict[str, object], vault: SecretVault) -> int:
    """
    Encrypt plaintext values under data['secrets'] in place. Returns how many changed.
    """
    secrets = data.get("secrets")
    if secrets is None:
        return 0
    if not isinstance(secrets, dict):
        raise ConfigError("secrets must be a mapping")
    changed = 0
    for key, value in secrets.items():
        text = value if isinstance(value, str) else str(value)
        if is_encrypted(text):
            continue
        secrets[key] = vault.encrypt(text)
        changed += 1
    return changed


def edit_document(path: str | Path, vault: SecretVault) -> bool:
    """
    Encrypt the plaintext secrets of a spec document file in place.

    Already-encrypted values are left as they are and the file is only
    rewritten when something was encrypted, so running this again on its own
    output leaves the file byte-identical. Returns True if the file changed.
    """
    p = Path(path).expanduser()
    fmt = format_for(p.name)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{p}: cannot read spec: {e}") from e
    data = parse_raw(text, fmt, str(p))
    validate_document(data, str(p))

    changed = encrypt_secrets(data, vault)
    if not changed:
        logger.info("%s: no plaintext secrets", p)
        return False
    p.write_text(dump_raw(data, fmt), encoding="utf-8")
    logger.info("%s: encrypted %d secret(s)", p, changed)
    return True


__all__ = [
    "PLACEHOLDER_RE",
    "render",
    "TemplateEngine",
    "encrypt_secrets",
    "edit_document",
]
