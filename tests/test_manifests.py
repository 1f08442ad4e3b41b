"""Tests for manifest loading, validation and syncing."""

from pathlib import Path
from typing import Any

import pytest
import yaml
from tfc_mock import make_config, manifest

from tfc_operator.manifests import (
    ManifestLoadError,
    ManifestSync,
    dump_record,
    load_manifest,
    manifest_files,
    validate_manifests,
)
from tfc_operator.models import DeletionPolicy, RecordKey, RunType, Workspace
from tfc_operator.store import InMemoryIntentStore

KEY = RecordKey("default", "demo")


def _write(path: Path, *documents: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump_all(documents))
    return path


def _workspace(name: str = "demo", **spec: Any) -> dict[str, Any]:
    return manifest("Workspace", name, {"name": name, **spec})


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_multiple_documents(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path / "records.yaml",
            _workspace(),
            manifest("Project", "platform", {"name": "platform"}),
        )

        records = load_manifest(path)

        assert [record.kind for record in records] == ["Workspace", "Project"]
        assert isinstance(records[0], Workspace)
        assert records[0].spec.organization == "acme"

    def test_empty_documents_are_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "records.yaml"
        path.write_text("---\n---\n" + yaml.safe_dump(_workspace()))

        assert len(load_manifest(path)) == 1

    def test_unknown_kind(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "records.yaml", {"kind": "Stack", "metadata": {"name": "x"}})

        with pytest.raises(ManifestLoadError, match="unknown kind 'Stack'"):
            load_manifest(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "records.yaml"
        path.write_text("kind: [unclosed\n")

        with pytest.raises(ManifestLoadError, match="Invalid YAML"):
            load_manifest(path)

    def test_document_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "records.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ManifestLoadError, match="must be a YAML mapping"):
            load_manifest(path)

    def test_schema_errors_are_listed(self, tmp_path: Path) -> None:
        document = _workspace()
        del document["spec"]["name"]
        path = _write(tmp_path / "records.yaml", document)

        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest(path)

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "spec.name" in message

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="Failed to stat"):
            load_manifest(tmp_path / "absent.yaml")


class TestManifestFiles:
    """Tests for manifest discovery."""

    def test_recursive_and_sorted(self, tmp_path: Path) -> None:
        _write(tmp_path / "b.yaml", _workspace())
        _write(tmp_path / "nested" / "a.yml", _workspace("other"))
        (tmp_path / "README.md").write_text("not a manifest")

        files = manifest_files(tmp_path)

        assert files == [tmp_path / "b.yaml", tmp_path / "nested" / "a.yml"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(ManifestLoadError, match="not found"):
            manifest_files(tmp_path / "absent")


class TestValidateManifests:
    """Tests for validate_manifests."""

    def test_collects_every_problem(self, tmp_path: Path) -> None:
        _write(tmp_path / "a.yaml", _workspace(), _workspace("pool-user"))
        _write(tmp_path / "b.yaml", _workspace())
        _write(
            tmp_path / "c.yaml",
            manifest("AgentPool", "pool", {"name": "pool", "deletionPolicy": "force"}),
        )
        (tmp_path / "d.yaml").write_text("kind: [\n")

        records, problems = validate_manifests(tmp_path)

        assert [str(record.key) for record in records] == ["default/demo", "default/pool-user"]
        assert len(problems) == 3
        assert any("declared in" in problem for problem in problems)
        assert any("deletionPolicy 'force'" in problem for problem in problems)
        assert any("Invalid YAML" in problem for problem in problems)

    def test_unsupported_default_policy_falls_back(self, tmp_path: Path) -> None:
        """Test that an operator default a kind cannot honor becomes retain."""
        _write(tmp_path / "pool.yaml", manifest("AgentPool", "pool", {"name": "pool"}))

        records, problems = validate_manifests(tmp_path, DeletionPolicy.FORCE)

        assert problems == []
        assert records[0].deletion_policy(DeletionPolicy.FORCE) == DeletionPolicy.RETAIN

    def test_dump_record(self, tmp_path: Path) -> None:
        _write(tmp_path / "a.yaml", _workspace())
        records, _ = validate_manifests(tmp_path)

        dumped = dump_record(records[0])

        assert dumped["kind"] == "Workspace"
        assert dumped["metadata"]["name"] == "demo"
        assert dumped["spec"]["executionMode"] == "remote"


class TestManifestSync:
    """Tests for ManifestSync."""

    @pytest.fixture
    def store(self) -> InMemoryIntentStore:
        return InMemoryIntentStore()

    @pytest.mark.asyncio
    async def test_create_update_delete(self, tmp_path: Path, store: InMemoryIntentStore) -> None:
        sync = ManifestSync(store, make_config(specs_dir=tmp_path))
        path = _write(tmp_path / "demo.yaml", _workspace())

        report = await sync.sync()
        assert report.created == ["Workspace default/demo"]
        assert report.errors == []

        report = await sync.sync()
        assert report.created == report.updated == report.deleted == []

        _write(path, _workspace(description="billing"))
        report = await sync.sync()
        assert report.updated == ["Workspace default/demo"]
        record = await store.get("Workspace", KEY)
        assert record is not None
        assert record.metadata.generation == 2

        path.unlink()
        report = await sync.sync()
        assert report.deleted == ["Workspace default/demo"]
        assert await store.get("Workspace", KEY) is None

    @pytest.mark.asyncio
    async def test_broken_file_keeps_its_records(
        self, tmp_path: Path, store: InMemoryIntentStore
    ) -> None:
        sync = ManifestSync(store, make_config(specs_dir=tmp_path))
        path = _write(tmp_path / "demo.yaml", _workspace())
        await sync.sync()

        path.write_text("kind: [\n")
        report = await sync.sync()

        assert len(report.errors) == 1
        assert report.deleted == []
        assert await store.get("Workspace", KEY) is not None

    @pytest.mark.asyncio
    async def test_duplicate_declaration_keeps_first(
        self, tmp_path: Path, store: InMemoryIntentStore
    ) -> None:
        sync = ManifestSync(store, make_config(specs_dir=tmp_path))
        _write(tmp_path / "a.yaml", _workspace(description="first"))
        _write(tmp_path / "b.yaml", _workspace(description="second"))

        report = await sync.sync()

        assert report.errors == ["Workspace default/demo declared twice, kept first"]
        record = await store.get("Workspace", KEY)
        assert isinstance(record, Workspace)
        assert record.spec.description == "first"

    @pytest.mark.asyncio
    async def test_run_request_submitted_once_per_value(
        self, tmp_path: Path, store: InMemoryIntentStore
    ) -> None:
        sync = ManifestSync(store, make_config(specs_dir=tmp_path))
        path = _write(tmp_path / "demo.yaml", {**_workspace(), "runRequest": {"type": "apply"}})

        await sync.sync()
        record = await store.get("Workspace", KEY)
        assert record is not None
        assert record.run_request is not None
        assert record.run_request.type == RunType.APPLY

        await store.clear_run_request(record)
        await sync.sync()
        record = await store.get("Workspace", KEY)
        assert record is not None
        assert record.run_request is None

        _write(path, {**_workspace(), "runRequest": {"type": "plan"}})
        await sync.sync()
        record = await store.get("Workspace", KEY)
        assert record is not None
        assert record.run_request is not None
        assert record.run_request.type == RunType.PLAN

    @pytest.mark.asyncio
    async def test_paused_flag_follows_manifest(
        self, tmp_path: Path, store: InMemoryIntentStore
    ) -> None:
        sync = ManifestSync(store, make_config(specs_dir=tmp_path))
        path = _write(tmp_path / "demo.yaml", _workspace())
        await sync.sync()

        document = _workspace()
        document["metadata"]["paused"] = True
        _write(path, document)
        await sync.sync()

        record = await store.get("Workspace", KEY)
        assert record is not None
        assert record.metadata.paused

    @pytest.mark.asyncio
    async def test_unwatched_namespace_is_skipped(
        self, tmp_path: Path, store: InMemoryIntentStore
    ) -> None:
        config = make_config(specs_dir=tmp_path, watch_namespaces=frozenset({"platform"}))
        _write(tmp_path / "demo.yaml", _workspace())

        report = await ManifestSync(store, config).sync()

        assert report.created == []
        assert await store.list("Workspace") == []

    @pytest.mark.asyncio
    async def test_missing_directory_is_reported(self, store: InMemoryIntentStore) -> None:
        report = await ManifestSync(store, make_config()).sync()

        assert len(report.errors) == 1
        assert "not found" in report.errors[0]
