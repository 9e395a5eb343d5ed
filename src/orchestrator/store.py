"""Durable records for operations, deployments and drift results.

The orchestrator only needs insert, update-by-id and select-by-field; any
backend providing the Store protocol can be injected. JsonFileStore keeps
one JSON document per record:

    {state_dir}/operations/{id}.json
    {state_dir}/deployments/{name}.json
    {state_dir}/drift_results/{id}.json

Writes go to a temporary file first and are renamed into place, so a
crash never leaves a half-written record.
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

OPERATIONS = 'operations'
DEPLOYMENTS = 'deployments'
DRIFT_RESULTS = 'drift_results'
COLLECTIONS = (OPERATIONS, DEPLOYMENTS, DRIFT_RESULTS)

# Key field per collection
KEYS = {
    OPERATIONS: 'id',
    DEPLOYMENTS: 'name',
    DRIFT_RESULTS: 'id',
}

_SAFE_ID = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')


class StoreError(Exception):
    """Persistence failure."""


class Store(Protocol):
    """Persistence layer used by the orchestrator."""

    def insert(self, collection: str, record: dict) -> None:
        """Insert a new record; raises StoreError if the key exists."""

    def update(self, collection: str, record_id: str, changes: dict) -> dict:
        """Merge changes into an existing record and return it."""

    def upsert(self, collection: str, record: dict) -> None:
        """Insert or replace a record by its key."""

    def get(self, collection: str, record_id: str) -> Optional[dict]:
        """Return one record, or None if there is no record with that id."""

    def select(self, collection: str, **match) -> list[dict]:
        """Return records whose fields equal every given value."""


class JsonFileStore:
    """Store backed by one JSON file per record."""

    def __init__(self, root: Path):
        """Initialize store.

        Args:
            root: State directory; collection subdirectories are created lazily
        """
        self.root = Path(root)

    def _path(self, collection: str, record_id: str) -> Path:
        if collection not in COLLECTIONS:
            raise StoreError(f"Unknown collection: {collection}")
        if not record_id or not _SAFE_ID.match(record_id):
            raise StoreError(f"Invalid record id: {record_id!r}")
        return self.root / collection / f"{record_id}.json"

    def _write(self, path: Path, record: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.stem}.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(record, f, indent=2)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _read(self, path: Path) -> Optional[dict]:
        try:
            with open(path, encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupt record {path}: {e}") from e

    def insert(self, collection: str, record: dict) -> None:
        record_id = str(record.get(KEYS.get(collection, 'id'), ''))
        path = self._path(collection, record_id)
        if path.exists():
            raise StoreError(f"{collection}/{record_id} already exists")
        self._write(path, record)
        logger.debug(f"Inserted {collection}/{record_id}")

    def update(self, collection: str, record_id: str, changes: dict) -> dict:
        path = self._path(collection, record_id)
        record = self._read(path)
        if record is None:
            raise StoreError(f"{collection}/{record_id} not found")
        record.update(changes)
        self._write(path, record)
        logger.debug(f"Updated {collection}/{record_id}: {', '.join(sorted(changes))}")
        return record

    def upsert(self, collection: str, record: dict) -> None:
        record_id = str(record.get(KEYS.get(collection, 'id'), ''))
        self._write(self._path(collection, record_id), record)

    def get(self, collection: str, record_id: str) -> Optional[dict]:
        # An id that could never have been stored is simply absent
        if not record_id or not _SAFE_ID.match(record_id):
            return None
        return self._read(self._path(collection, record_id))

    def select(self, collection: str, **match) -> list[dict]:
        if collection not in COLLECTIONS:
            raise StoreError(f"Unknown collection: {collection}")
        directory = self.root / collection
        if not directory.is_dir():
            return []
        records = []
        for path in sorted(directory.glob('*.json')):
            record = self._read(path)
            if record is None:
                continue
            if all(record.get(k) == v for k, v in match.items()):
                records.append(record)
        return records
