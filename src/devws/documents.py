"""
Spec document decoding and encoding.

Two interchangeable formats, YAML and TOML, decode to the same SpecDocument.
The rest of devws never looks at the format again.
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Dict

import toml
import yaml
from pydantic import ValidationError

from devws.errors import ConfigError
from devws.models import SpecDocument


# Only null is resolved implicitly; `8022:22`, `on` and `0755` stay strings.
_TEXT_TAGS = frozenset({
    "tag:yaml.org,2002:bool",
    "tag:yaml.org,2002:int",
    "tag:yaml.org,2002:float",
    "tag:yaml.org,2002:timestamp",
})


class SpecLoader(yaml.SafeLoader):
    """SafeLoader that leaves unquoted scalars as strings."""


SpecLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag not in _TEXT_TAGS]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


class DocumentFormat(str, enum.Enum):
    yaml = "yaml"
    toml = "toml"


_SUFFIXES = {
    ".yaml": DocumentFormat.yaml,
    ".yml": DocumentFormat.yaml,
    ".toml": DocumentFormat.toml,
}


def format_for(path: str) -> DocumentFormat:
    """
    Pick the document format from a file name.
    """
    suffix = Path(path).suffix.lower()
    try:
        return _SUFFIXES[suffix]
    except KeyError:
        raise ConfigError(f"{path}: unsupported spec format '{suffix}' (use .yaml, .yml or .toml)") from None


def parse_raw(text: str, fmt: DocumentFormat, source: str = "<document>") -> Dict[str, Any]:
    """
    Parse document text into plain data, without validating the spec shape.
    """
    try:
        if fmt is DocumentFormat.toml:
            data = toml.loads(text)
        else:
            data = yaml.load(text, Loader=SpecLoader)
    except (yaml.YAMLError, toml.TomlDecodeError) as e:
        raise ConfigError(f"{source}: cannot parse {fmt.value}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: top level must be a mapping")
    return data


def dump_raw(data: Dict[str, Any], fmt: DocumentFormat) -> str:
    if fmt is DocumentFormat.toml:
        return toml.dumps(data)
    # ciphertext must stay on one line
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False, width=float("inf"))


def validate_document(data: Dict[str, Any], source: str = "<document>") -> SpecDocument:
    try:
        return SpecDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"{source}: invalid spec: {e}") from e


def load_document(text: str, fmt: DocumentFormat, source: str = "<document>") -> SpecDocument:
    return validate_document(parse_raw(text, fmt, source), source)


def read_source(path: str | Path) -> str:
    p = Path(path).expanduser()
    try:
        return p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{p}: cannot read spec: {e}") from e


def read_document(path: str | Path) -> SpecDocument:
    """
    Read and validate a local spec document.
    """
    p = Path(path).expanduser()
    return load_document(read_source(p), format_for(p.name), str(p))


def convert(text: str, src: DocumentFormat, dst: DocumentFormat, source: str = "<document>") -> str:
    """
    Re-encode a document in another format. Same-format input comes back as is.
    """
    if src is dst:
        return text
    return dump_raw(parse_raw(text, src, source), dst)


__all__ = [
    "SpecLoader",
    "DocumentFormat",
    "format_for",
    "parse_raw",
    "dump_raw",
    "validate_document",
    "load_document",
    "read_source",
    "read_document",
    "convert",
]
