"""Record manifest loading and syncing.

Manifests are YAML documents in the Kubernetes shape:

    apiVersion: app.terraform.io/v1alpha2
    kind: Workspace
    metadata: {name: demo, namespace: default}
    spec: {...}

A file may hold several documents. The directory is the source of intent:
every sync creates new records, pushes changed specs, and requests deletion
of records whose manifest disappeared.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, OperatorConfig
from .models import (
    RECORD_TYPES,
    DeletionPolicy,
    ManagedRecord,
    RecordKey,
    RunRequest,
    SpecValidationError,
    parse_record,
    validate_spec,
)
from .store import ConflictError, IntentStore

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

RecordSlot = tuple[str, RecordKey]


class ManifestLoadError(Exception):
    """Raised when a manifest file cannot be loaded or fails validation."""

    pass


def _format_validation_error(path: Path, index: int, error: ValidationError) -> str:
    errors = []
    for detail in error.errors():
        loc = ".".join(str(x) for x in detail["loc"])
        errors.append(f"  - {loc}: {detail['msg']}")
    error_list = "\n".join(errors)
    return f"Validation failed for {path} (document {index}):\n{error_list}"


def load_manifest(path: Path) -> list[ManagedRecord]:
    """Load every record declared in one manifest file.

    Raises:
        ManifestLoadError: If the file cannot be read or any document is invalid.
    """
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest {path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    records: list[ManagedRecord] = []
    for index, document in enumerate(documents):
        if not isinstance(document, dict):
            raise ManifestLoadError(f"Document {index} in {path} must be a YAML mapping")
        kind = document.get("kind")
        if kind not in RECORD_TYPES:
            valid = sorted(RECORD_TYPES)
            raise ManifestLoadError(
                f"Document {index} in {path} has unknown kind {kind!r}, expected one of {valid}"
            )
        try:
            records.append(parse_record(document))
        except ValidationError as e:
            raise ManifestLoadError(_format_validation_error(path, index, e)) from e

    return records


def manifest_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        raise ManifestLoadError(f"Manifest directory not found: {directory}")
    return sorted(
        path for path in directory.rglob("*") if path.is_file() and path.suffix in MANIFEST_SUFFIXES
    )


def validate_manifests(
    directory: Path, default_policy: DeletionPolicy = DeletionPolicy.RETAIN
) -> tuple[list[ManagedRecord], list[str]]:
    """Load and semantically check every manifest of a directory.

    Returns:
        The valid records and one message per problem found.
    """
    records: list[ManagedRecord] = []
    problems: list[str] = []
    seen: dict[RecordSlot, Path] = {}

    for path in manifest_files(directory):
        try:
            loaded = load_manifest(path)
        except ManifestLoadError as e:
            problems.append(str(e))
            continue
        for record in loaded:
            slot = (record.kind, record.key)
            if slot in seen:
                problems.append(f"{record.kind} {record.key} declared in {seen[slot]} and {path}")
                continue
            seen[slot] = path
            try:
                validate_spec(record, default_policy)
            except SpecValidationError as e:
                problems.append(f"{path}: {record.kind} {record.key}: {e}")
                continue
            records.append(record)

    return records, problems


@dataclass
class SyncReport:
    """What one manifest sync changed."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class ManifestSync:
    """Mirrors a manifest directory into an intent store."""

    def __init__(self, store: IntentStore, config: OperatorConfig) -> None:
        self._store = store
        self._config = config
        # Where each record was last declared
        self._sources: dict[RecordSlot, Path] = {}
        self._run_requests: dict[RecordSlot, RunRequest] = {}

    async def sync(self) -> SyncReport:
        report = SyncReport()
        declared: dict[RecordSlot, ManagedRecord] = {}
        failed_files: set[Path] = set()

        try:
            files = manifest_files(self._config.specs_dir)
        except ManifestLoadError as e:
            report.errors.append(str(e))
            logger.error("Manifest sync skipped", extra={"error": str(e)})
            return report

        for path in files:
            try:
                records = load_manifest(path)
            except ManifestLoadError as e:
                failed_files.add(path)
                report.errors.append(str(e))
                logger.error("Failed to load manifest", extra={"path": str(path), "error": str(e)})
                continue
            for record in records:
                if not self._config.watches(record.metadata.namespace):
                    continue
                slot = (record.kind, record.key)
                if slot in declared:
                    report.errors.append(f"{record.kind} {record.key} declared twice, kept first")
                    continue
                declared[slot] = record
                self._sources[slot] = path

        for slot, record in declared.items():
            await self._apply(slot, record, report)

        for slot, path in list(self._sources.items()):
            if slot in declared or path in failed_files:
                continue
            kind, key = slot
            await self._store.request_deletion(kind, key)
            del self._sources[slot]
            self._run_requests.pop(slot, None)
            report.deleted.append(f"{kind} {key}")
            logger.info(
                "Manifest removed, deletion requested", extra={"kind": kind, "record": str(key)}
            )

        return report

    async def _apply(self, slot: RecordSlot, record: ManagedRecord, report: SyncReport) -> None:
        kind, key = slot
        stored = await self._store.get(kind, key)
        try:
            if stored is None:
                await self._store.create(record)
                report.created.append(f"{kind} {key}")
            else:
                updated = await self._store.update_spec(kind, key, record.spec)
                if updated.metadata.generation != stored.metadata.generation:
                    report.updated.append(f"{kind} {key}")
                if stored.metadata.paused != record.metadata.paused:
                    await self._store.set_paused(kind, key, record.metadata.paused)
        except ConflictError as e:
            # The record is being deleted; a re-declared manifest waits for it to go
            logger.info(
                "Manifest not applied",
                extra={"kind": kind, "record": str(key), "reason": str(e)},
            )
            return

        # A run request is submitted once per distinct value seen in the manifest
        request = record.run_request
        if request is None:
            self._run_requests.pop(slot, None)
        elif self._run_requests.get(slot) != request:
            if stored is not None:
                await self._store.submit_run_request(kind, key, request)
            self._run_requests[slot] = request


def dump_record(record: ManagedRecord) -> dict[str, Any]:
    """Render a record the way the CLI prints it."""
    return {"kind": record.kind, **record.model_dump(mode="json", by_alias=True, exclude_none=True)}
