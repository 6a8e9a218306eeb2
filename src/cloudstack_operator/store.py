"""YAML file object store.

Declared objects are read from SPECS_DIR (any *.yaml or *.yml file, one or
more documents each). What the operator learns about an object is written
to one record per object in STATUS_DIR:

    <kind>_<namespace>_<name>.yaml

Names and namespaces cannot contain an underscore (see models.py), so
every object maps to its own record.

A record holds the whole object as last reconciled: metadata (uid,
finalizers, deletion timestamp), the spec, and the status. On load the
declared document wins for the spec, except for the control plane endpoint
host that reconciliation may assign once.

DELETION:
An object is marked for deletion when its document sets
metadata.deletionTimestamp or when its document disappears while its record
still carries finalizers. The record is removed once the last finalizer is
gone.

SECURITY: All file reads enforce the size limit in config.py.
"""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import KIND_MODELS, ClusterTopology, Machine

logger = logging.getLogger(__name__)

StoredObject = ClusterTopology | Machine

YAML_SUFFIXES = (".yaml", ".yml")


class StoreError(Exception):
    """Raised when an object document cannot be read or parsed."""

    pass


def object_key(kind: str, namespace: str, name: str) -> str:
    return f"{kind}/{namespace}/{name}"


def _read_yaml_documents(path: Path) -> list[dict[str, Any]]:
    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise StoreError(f"Failed to stat {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise StoreError(f"File exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreError(f"Failed to read {path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise StoreError(f"Invalid YAML in {path}: {e}") from e

    for doc in documents:
        if not isinstance(doc, dict):
            raise StoreError(f"Each document must be a YAML mapping: {path}")
    return documents


def parse_object(data: dict[str, Any], *, source: Path | str = "<document>") -> StoredObject:
    """Validate one document into its model.

    Raises:
        StoreError: On an unknown kind or a validation failure.
    """
    kind = data.get("kind")
    model = KIND_MODELS.get(kind) if isinstance(kind, str) else None
    if model is None:
        raise StoreError(f"Unknown kind {kind!r} in {source}. Valid kinds: {list(KIND_MODELS)}")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise StoreError(f"Validation failed for {kind} in {source}:\n" + "\n".join(errors)) from e


def load_file(path: Path) -> list[StoredObject]:
    """Parse every document of one file."""
    return [parse_object(doc, source=path) for doc in _read_yaml_documents(path)]


class ObjectStore:
    """Declared objects merged with their persisted records."""

    def __init__(self, specs_dir: Path, status_dir: Path) -> None:
        self._specs_dir = specs_dir
        self._status_dir = status_dir

    def _record_path(self, kind: str, namespace: str, name: str) -> Path:
        return self._status_dir / f"{kind}_{namespace}_{name}.yaml"

    def _declared(self) -> Iterator[StoredObject]:
        paths = sorted(
            p for p in self._specs_dir.rglob("*") if p.is_file() and p.suffix in YAML_SUFFIXES
        )
        for path in paths:
            try:
                objects = load_file(path)
            except StoreError as e:
                # One broken document must not stop the others from converging
                logger.error("Skipping invalid object file", extra={"path": str(path), "error": str(e)})
                continue
            yield from objects

    def _records(self) -> dict[str, StoredObject]:
        records: dict[str, StoredObject] = {}
        if not self._status_dir.is_dir():
            return records
        for path in sorted(self._status_dir.glob("*.yaml")):
            try:
                documents = _read_yaml_documents(path)
                for doc in documents:
                    obj = parse_object(doc, source=path)
                    records[obj.key] = obj
            except StoreError as e:
                logger.error("Skipping unreadable status record", extra={"path": str(path), "error": str(e)})
        return records

    def list_objects(self) -> list[StoredObject]:
        """All live objects plus deleted ones still holding finalizers."""
        records = self._records()
        objects: dict[str, StoredObject] = {}

        for declared in self._declared():
            if declared.key in objects:
                logger.warning("Duplicate object declaration ignored", extra={"object": declared.key})
                continue
            objects[declared.key] = self._merge(declared, records.get(declared.key))

        for key, record in records.items():
            if key in objects:
                continue
            if record.metadata.finalizers:
                if record.metadata.deletion_timestamp is None:
                    record.metadata.deletion_timestamp = datetime.now(UTC)
                objects[key] = record
            else:
                self._remove_record(record)

        return list(objects.values())

    def get(self, key: str) -> StoredObject | None:
        for obj in self.list_objects():
            if obj.key == key:
                return obj
        return None

    def get_topology(self, namespace: str, name: str) -> ClusterTopology | None:
        obj = self.get(object_key("ClusterTopology", namespace, name))
        return obj if isinstance(obj, ClusterTopology) else None

    def load_record(self, kind: str, namespace: str, name: str) -> StoredObject | None:
        """The persisted record alone, without merging declarations."""
        path = self._record_path(kind, namespace, name)
        if not path.exists():
            return None
        documents = _read_yaml_documents(path)
        return parse_object(documents[0], source=path) if documents else None

    def _merge(self, declared: StoredObject, record: StoredObject | None) -> StoredObject:
        if record is None:
            if not declared.metadata.uid:
                declared.metadata.uid = str(uuid.uuid4())
            return declared

        meta = declared.metadata
        meta.uid = meta.uid or record.metadata.uid
        meta.finalizers = list(record.metadata.finalizers)
        if meta.deletion_timestamp is None:
            meta.deletion_timestamp = record.metadata.deletion_timestamp

        if isinstance(declared, ClusterTopology) and isinstance(record, ClusterTopology):
            declared.status = record.status
            endpoint = declared.spec.control_plane_endpoint
            if not endpoint.host:
                endpoint.host = record.spec.control_plane_endpoint.host
        elif isinstance(declared, Machine) and isinstance(record, Machine):
            declared.status = record.status
        return declared

    def save(self, obj: StoredObject) -> None:
        """Persist an object's record, or drop it once deletion finished."""
        if obj.is_deleting and not obj.metadata.finalizers:
            self._remove_record(obj)
            return

        self._status_dir.mkdir(parents=True, exist_ok=True)
        path = self._record_path(obj.kind, obj.metadata.namespace, obj.metadata.name)
        content = yaml.safe_dump(
            obj.model_dump(mode="json", by_alias=True, exclude_none=True), sort_keys=False
        )

        # Write then rename so readers never see a half written record
        fd, tmp_name = tempfile.mkstemp(dir=self._status_dir, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _remove_record(self, obj: StoredObject) -> None:
        path = self._record_path(obj.kind, obj.metadata.namespace, obj.metadata.name)
        if path.exists():
            path.unlink()
            logger.info("Removed status record", extra={"object": obj.key})
