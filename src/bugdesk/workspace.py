"""Workspace-level configuration and scaffolding."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG = {
    "db_path": "bugdesk.db",
    "db_timeout_seconds": 5.0,
    "bug_id_prefix": "SCB",
    "preview_rows": 5,
    "max_import_rows": 10_000,
    "max_upload_bytes": 50 * 1024 * 1024,  # 50 MB
    "sequence_allocator": "atomic",
    "sequence_retry_limit": 3,
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}

_ALLOCATORS = ("atomic", "read_max")

DEFAULT_WORKSPACE_CONFIG = """\
# bugdesk workspace configuration
db_path: bugdesk.db
bug_id_prefix: SCB
preview_rows: 5
max_import_rows: 10000
# atomic: per-project counter claimed in one transaction
# read_max: max(bug_number) + 1, single-user deployments only
sequence_allocator: atomic
sequence_retry_limit: 3
"""


def _flatten_import_block(user_config: dict[str, Any]) -> dict[str, Any]:
    """Flatten a nested ``import:`` block into flat config keys.

    Supports::

        import:
          max_rows: 5000
          preview_rows: 10
          allocator: read_max
          retry_limit: 5

    Maps to ``max_import_rows``, ``preview_rows``, ``sequence_allocator``
    and ``sequence_retry_limit``.
    """
    block = user_config.pop("import", None)
    if not isinstance(block, dict):
        return user_config

    mapping = {
        "max_rows": "max_import_rows",
        "preview_rows": "preview_rows",
        "allocator": "sequence_allocator",
        "retry_limit": "sequence_retry_limit",
    }
    for short_key, flat_key in mapping.items():
        if short_key in block:
            user_config[flat_key] = block[short_key]
    return user_config


def load_workspace_config(workspace_dir: Path) -> dict[str, Any]:
    """Load workspace configuration from ``bugdesk.yaml``, with defaults.

    Supports both flat keys and a nested ``import:`` block.  The nested
    block is flattened before merging.

    Args:
        workspace_dir: Root of the bugdesk workspace.

    Returns:
        Merged configuration dict.

    Raises:
        ValueError: If ``sequence_allocator`` names an unknown strategy.
    """
    config = dict(DEFAULT_CONFIG)
    config_path = workspace_dir / "bugdesk.yaml"
    if config_path.exists():
        user_config = yaml.safe_load(config_path.read_text()) or {}
        user_config = _flatten_import_block(user_config)
        config.update(user_config)

    allocator = str(config.get("sequence_allocator", "atomic")).lower()
    if allocator not in _ALLOCATORS:
        raise ValueError(
            f"Unknown sequence_allocator {allocator!r}; expected one of {list(_ALLOCATORS)}"
        )
    config["sequence_allocator"] = allocator
    return config


def resolve_db_path(workspace_dir: Path, config: dict[str, Any] | None = None) -> Path:
    """Return the absolute SQLite path for a workspace."""
    if config is None:
        config = load_workspace_config(workspace_dir)
    db_path = Path(config["db_path"])
    if not db_path.is_absolute():
        db_path = workspace_dir / db_path
    return db_path


def scaffold_workspace(target_dir: Path) -> Path:
    """Create a new bugdesk workspace at the target directory.

    Args:
        target_dir: Directory to create (must not already contain bugdesk.yaml).

    Returns:
        Path to the created workspace directory.
    """
    target_dir = target_dir.resolve()
    target_dir.mkdir(parents=True, exist_ok=True)

    if (target_dir / "bugdesk.yaml").exists():
        raise FileExistsError(f"bugdesk.yaml already exists in {target_dir}")

    (target_dir / "bugdesk.yaml").write_text(DEFAULT_WORKSPACE_CONFIG)
    (target_dir / "logs").mkdir(exist_ok=True)
    (target_dir / "exports").mkdir(exist_ok=True)

    # Create the schema up front so the first import does not pay for it
    from bugdesk.store import SqliteStore

    store = SqliteStore(resolve_db_path(target_dir))
    store.close()

    return target_dir
