"""
Identity Store for the Reconciliation Engine.

Holds the internal users, groups and other any-type records that pull passes
write to and push passes read from. Provides in-memory storage with optional
JSON file persistence.
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import TypeAdapter

from ..models import AnyRecord, UserRecord, utcnow
from ..search.cond import SearchCond
from ..search.matcher import filter_matching

logger = logging.getLogger(__name__)

_record_adapter = TypeAdapter(AnyRecord)


class IdentityStore:
    """
    Persistence collaborator for internal records.

    Every method works on copies: callers mutate the records they get back
    and commit with save(), so each save is a single per-record transaction.
    """

    def __init__(self, storage_path: Optional[Union[str, Path]] = None):
        """
        Initialize the identity store.

        Args:
            storage_path: Path to store records as JSON.
                         If None, records are kept in memory only.
        """
        self.storage_path = Path(storage_path) if storage_path else None
        self.records: Dict[str, AnyRecord] = {}
        self._lock = threading.RLock()

        if self.storage_path:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

        logger.info(
            f"Initialized IdentityStore with {'persistent' if self.storage_path else 'in-memory'} storage"
        )

    @staticmethod
    def _sort_key(record: AnyRecord):
        return (record.created_at or utcnow(), record.key or "")

    def find(self, any_type: str, cond: SearchCond) -> List[AnyRecord]:
        """
        Find records of an any type matching a condition.

        Args:
            any_type: Any type key (USER, GROUP, ...)
            cond: Valid condition tree

        Returns:
            Matching records ordered by creation time, then key
        """
        with self._lock:
            candidates = [r for r in self.records.values() if r.type == any_type]
            found = filter_matching(cond, candidates)
            return [r.model_copy(deep=True) for r in sorted(found, key=self._sort_key)]

    def get(self, key: str) -> Optional[AnyRecord]:
        with self._lock:
            record = self.records.get(key)
            return record.model_copy(deep=True) if record else None

    def all(self, any_type: Optional[str] = None) -> List[AnyRecord]:
        with self._lock:
            records = [r for r in self.records.values() if any_type is None or r.type == any_type]
            return [r.model_copy(deep=True) for r in sorted(records, key=self._sort_key)]

    def save(self, record: AnyRecord) -> AnyRecord:
        """
        Create or update a record.

        New records get a UUID key and a creation timestamp; every save sets
        updated_at.

        Returns:
            A copy of the stored record
        """
        now = utcnow()
        with self._lock:
            stored = record.model_copy(deep=True)
            if not stored.key:
                stored.key = str(uuid.uuid4())
            if stored.created_at is None:
                existing = self.records.get(stored.key)
                stored.created_at = existing.created_at if existing else now
            stored.updated_at = now
            self.records[stored.key] = stored
            self._save_state()

        logger.debug(f"Saved {stored.type} {stored.get_name()} ({stored.key})")
        return stored.model_copy(deep=True)

    def delete(self, key: str) -> bool:
        """
        Delete a record.

        Returns:
            True if it existed, False otherwise
        """
        with self._lock:
            removed = self.records.pop(key, None)
            if removed is not None:
                self._save_state()

        if removed is None:
            logger.warning(f"Cannot delete record {key}: not found")
            return False
        logger.debug(f"Deleted {removed.type} {removed.get_name()} ({key})")
        return True

    def count(self, any_type: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for r in self.records.values() if any_type is None or r.type == any_type)

    def clear(self) -> None:
        with self._lock:
            self.records.clear()
            self._save_state()

    def _save_state(self):
        """Save current state to persistent storage."""
        if not self.storage_path:
            return

        records = {}
        for key, record in self.records.items():
            data = record.model_dump(mode="json")
            if isinstance(record, UserRecord) and record.password is not None:
                data["password"] = record.password.get_secret_value()
            records[key] = data

        state_data = {
            "records": records,
            "last_updated": utcnow().isoformat(),
        }
        with open(self.storage_path, "w", encoding="utf-8") as f:
            json.dump(state_data, f, indent=2)

    def _load_state(self):
        """Load state from persistent storage."""
        if not self.storage_path or not self.storage_path.exists():
            return

        with open(self.storage_path, encoding="utf-8") as f:
            state_data = json.load(f)

        for key, data in state_data.get("records", {}).items():
            self.records[key] = _record_adapter.validate_python(data)

        logger.info(f"Loaded {len(self.records)} records from {self.storage_path}")
