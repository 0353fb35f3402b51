"""Tests for workspace configuration and scaffolding."""

from __future__ import annotations

from pathlib import Path

import pytest


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        from bugdesk.workspace import DEFAULT_CONFIG, load_workspace_config

        assert load_workspace_config(tmp_path) == DEFAULT_CONFIG

    def test_flat_keys_override(self, tmp_path: Path) -> None:
        from bugdesk.workspace import load_workspace_config

        (tmp_path / "bugdesk.yaml").write_text("bug_id_prefix: QA\nmax_import_rows: 50\n")
        cfg = load_workspace_config(tmp_path)
        assert cfg["bug_id_prefix"] == "QA"
        assert cfg["max_import_rows"] == 50
        assert cfg["preview_rows"] == 5

    def test_nested_import_block(self, tmp_path: Path) -> None:
        from bugdesk.workspace import load_workspace_config

        (tmp_path / "bugdesk.yaml").write_text(
            "import:\n  max_rows: 20\n  preview_rows: 3\n  allocator: READ_MAX\n  retry_limit: 7\n"
        )
        cfg = load_workspace_config(tmp_path)
        assert cfg["max_import_rows"] == 20
        assert cfg["preview_rows"] == 3
        assert cfg["sequence_allocator"] == "read_max"
        assert cfg["sequence_retry_limit"] == 7
        assert "import" not in cfg

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        from bugdesk.workspace import DEFAULT_CONFIG, load_workspace_config

        (tmp_path / "bugdesk.yaml").write_text("")
        assert load_workspace_config(tmp_path) == DEFAULT_CONFIG

    def test_unknown_allocator(self, tmp_path: Path) -> None:
        from bugdesk.workspace import load_workspace_config

        (tmp_path / "bugdesk.yaml").write_text("sequence_allocator: lottery\n")
        with pytest.raises(ValueError, match="sequence_allocator"):
            load_workspace_config(tmp_path)


class TestResolveDbPath:
    def test_relative_path_joins_workspace(self, tmp_path: Path) -> None:
        from bugdesk.workspace import resolve_db_path

        assert resolve_db_path(tmp_path, {"db_path": "data/x.db"}) == tmp_path / "data" / "x.db"

    def test_absolute_path_kept(self, tmp_path: Path) -> None:
        from bugdesk.workspace import resolve_db_path

        target = tmp_path / "elsewhere.db"
        assert resolve_db_path(Path("/unused"), {"db_path": str(target)}) == target


class TestScaffold:
    def test_creates_layout_and_schema(self, tmp_path: Path) -> None:
        from bugdesk.store import SqliteStore
        from bugdesk.workspace import scaffold_workspace

        ws = scaffold_workspace(tmp_path / "ws")
        assert (ws / "bugdesk.yaml").exists()
        assert (ws / "logs").is_dir()
        assert (ws / "exports").is_dir()
        assert (ws / "bugdesk.db").exists()
        store = SqliteStore(ws / "bugdesk.db")
        try:
            assert store.list_projects() == []
        finally:
            store.close()

    def test_scaffolded_config_loads(self, tmp_path: Path) -> None:
        from bugdesk.workspace import load_workspace_config, scaffold_workspace

        cfg = load_workspace_config(scaffold_workspace(tmp_path / "ws"))
        assert cfg["sequence_allocator"] == "atomic"
        assert cfg["bug_id_prefix"] == "SCB"

    def test_refuses_existing_workspace(self, tmp_path: Path) -> None:
        from bugdesk.workspace import scaffold_workspace

        scaffold_workspace(tmp_path)
        with pytest.raises(FileExistsError):
            scaffold_workspace(tmp_path)
