"""
devws: reproducible developer workspaces on a container engine.

A workspace is a work container plus optional sidecars on a private network,
with persistent home and work volumes, shared cache volumes and global
SSH/age identities. Every resource is found again from its deterministic
name; nothing is stored outside the engine.

Entry points:
- devws.cli: the `devws` command
- devws.workspaces.lifecycle.WorkspaceOrchestrator: the engine API
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
