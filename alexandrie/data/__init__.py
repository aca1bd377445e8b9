"""
Persistent state of the registry.

This package is responsible for:
* The git working copy of the registry index that Cargo clients clone.
* The relational database holding crates, versions, owners and tags.
* Alembic schema revisions applied at startup.
"""
