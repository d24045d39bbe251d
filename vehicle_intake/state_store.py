from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, List, Optional

from pydantic import BaseModel, ValidationError

from vehicle_intake.attachments import project_record
from vehicle_intake.schemas import (
    ArchiveEntry,
    FinalCheckForm,
    InspectionForm,
    Record,
    RecordPatch,
    SessionSnapshot,
    SummaryForm,
    WorkOrderForm,
)

logger = logging.getLogger(__name__)

STORAGE_KEY = "arsiv-asistani-storage"

FORM_TYPES = (InspectionForm, WorkOrderForm, FinalCheckForm, SummaryForm)


def write_json(path: str, payload: Any) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def session_state_path(state_dir: str, session_id: str) -> str:
    """
    Layout:
      <state_dir>/<session_id>/
        arsiv-asistani-storage.json   (branch + record projection + archive)
    """
    return os.path.join(state_dir, session_id, f"{STORAGE_KEY}.json")


def merge_record(record: Record, patch: RecordPatch) -> Record:
    """
    Apply the fields explicitly set on `patch` to `record`.
    Step forms merge field by field so disjoint updates never clobber each other.
    """
    changes = {}
    for name in patch.model_fields_set:
        value = getattr(patch, name)
        current = getattr(record, name, None)
        if isinstance(value, FORM_TYPES) and isinstance(current, BaseModel):
            value = current.model_copy(update={k: getattr(value, k) for k in value.model_fields_set})
        changes[name] = value
    return record.model_copy(update=changes)


def empty_record(archive: Optional[List[ArchiveEntry]] = None) -> Record:
    return Record(archive=list(archive or []))


class RecordStateStore:
    """
    Owner of one session's in-progress record, branch and local archive.

    Every mutation rewrites the serializable projection to `path` (when set);
    the in-memory record keeps live uploads until the process forgets them.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._branch: Optional[str] = None
        self._editing_key: Optional[str] = None
        self._record: Record = empty_record()
        if path and os.path.exists(path):
            self._load()

    # --------------------
    # reads
    # --------------------

    @property
    def branch(self) -> Optional[str]:
        return self._branch

    @property
    def editing_key(self) -> Optional[str]:
        return self._editing_key

    def get_record(self) -> Record:
        with self._lock:
            return self._record.model_copy()

    def get_archive(self) -> List[ArchiveEntry]:
        with self._lock:
            return list(self._record.archive)

    def snapshot(self) -> SessionSnapshot:
        """Serializable projection: branch, editing key, record without live uploads."""
        with self._lock:
            return SessionSnapshot(
                branch=self._branch,
                editing_key=self._editing_key,
                record=project_record(self._record),
            )

    # --------------------
    # mutations
    # --------------------

    def update_record(self, patch: Optional[RecordPatch] = None, reset: bool = False) -> Record:
        with self._lock:
            if reset:
                self._record = empty_record(self._record.archive)
                self._editing_key = None
            elif patch is not None:
                self._record = merge_record(self._record, patch)
            self._persist()
            return self._record.model_copy()

    def reset_record(self) -> Record:
        return self.update_record(reset=True)

    def set_branch(self, branch: Optional[str]) -> None:
        with self._lock:
            self._branch = branch
            self._persist()
        logger.info("Branch set to %s", branch)

    def set_editing_key(self, key: Optional[str]) -> None:
        with self._lock:
            self._editing_key = key
            self._persist()

    def load_entry(self, entry: ArchiveEntry) -> Record:
        """Replace the working record with an archived entry for editing."""
        with self._lock:
            fields = entry.model_dump(exclude={"file_name", "archived_at", "branch"})
            record = Record.model_validate({**fields, "archive": []})
            self._record = record.model_copy(update={"archive": list(self._record.archive)})
            self._editing_key = entry.file_name
            self._persist()
            return self._record.model_copy()

    def commit_to_archive(self, entry: ArchiveEntry, editing_key: Optional[str] = None) -> List[ArchiveEntry]:
        with self._lock:
            archive = list(self._record.archive)
            index = None
            if editing_key is not None:
                index = next((i for i, e in enumerate(archive) if e.file_name == editing_key), None)
            if index is None:
                archive.append(entry)
            else:
                archive[index] = entry
            self._record = self._record.model_copy(update={"archive": archive})
            self._persist()
            return list(archive)

    # --------------------
    # persistence
    # --------------------

    def _persist(self) -> None:
        if not self.path:
            return
        snapshot = self.snapshot()
        write_json(self.path, snapshot.model_dump(mode="json"))

    def _load(self) -> None:
        try:
            snapshot = SessionSnapshot.model_validate(read_json(self.path))
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable session state at %s: %s", self.path, exc)
            return
        self._branch = snapshot.branch
        self._editing_key = snapshot.editing_key
        self._record = snapshot.record
