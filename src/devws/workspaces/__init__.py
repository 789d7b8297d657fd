"""
Workspace resources on the container engine: naming, engine helpers,
identities, git helpers and the lifecycle orchestrator.
"""
