"""
Durable archive of committed records.

Entries are keyed by "<branch>/<chassis>"; when a key is already taken a
numeric suffix ("-2", "-3", ...) keeps new commits distinct.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vehicle_intake import models
from vehicle_intake.attachments import project_fields
from vehicle_intake.errors import ArchiveCommitError
from vehicle_intake.schemas import ArchiveEntry, Record

logger = logging.getLogger(__name__)

NO_CHASSIS = "NO-CHASSIS"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def base_archive_key(branch: Optional[str], chassis_number: Optional[str]) -> str:
    chassis = (chassis_number or "").strip() or NO_CHASSIS
    return f"{branch or 'NO-BRANCH'}/{chassis}"


def build_archive_entry(record: Record, branch: Optional[str], key: str, archived_at: Optional[str] = None) -> ArchiveEntry:
    """Finalize a record: drop the archive list, keep descriptors only."""
    fields = record.model_copy(update=project_fields(record)).model_dump(exclude={"archive"})
    return ArchiveEntry.model_validate(
        {**fields, "file_name": key, "archived_at": archived_at or utc_now_iso(), "branch": branch}
    )


class ArchiveRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _row(self, key: str) -> Optional[models.ArchiveEntryRow]:
        return self.db.execute(
            select(models.ArchiveEntryRow).where(models.ArchiveEntryRow.key == key)
        ).scalar_one_or_none()

    def list(self) -> List[ArchiveEntry]:
        rows = self.db.execute(
            select(models.ArchiveEntryRow).order_by(models.ArchiveEntryRow.id)
        ).scalars()
        return [ArchiveEntry.model_validate(row.payload) for row in rows]

    def get(self, key: str) -> Optional[ArchiveEntry]:
        row = self._row(key)
        return ArchiveEntry.model_validate(row.payload) if row else None

    def exists(self, key: str) -> bool:
        return self._row(key) is not None

    def search(self, term: Optional[str]) -> List[ArchiveEntry]:
        """Case-insensitive substring match over key, vehicle fields, customer and plate."""
        entries = self.list()
        needle = (term or "").strip().casefold()
        if not needle:
            return entries
        matched = []
        for entry in entries:
            haystack = [
                entry.file_name,
                entry.branch,
                entry.chassis_number,
                entry.brand,
                entry.owner,
                entry.trade_name,
                entry.plate_number,
                entry.inspection.customer_name,
                entry.work_order.offer_company_name,
                entry.work_order.plate,
            ]
            if any(needle in (value or "").casefold() for value in haystack):
                matched.append(entry)
        return matched

    def next_key(self, branch: Optional[str], chassis_number: Optional[str]) -> str:
        base = base_archive_key(branch, chassis_number)
        if not self.exists(base):
            return base
        suffix = 2
        while self.exists(f"{base}-{suffix}"):
            suffix += 1
        return f"{base}-{suffix}"

    def upsert(self, key: str, entry: ArchiveEntry) -> ArchiveEntry:
        if entry.file_name != key:
            entry = entry.model_copy(update={"file_name": key})
        payload = entry.model_dump(mode="json")
        try:
            row = self._row(key)
            if row is None:
                row = models.ArchiveEntryRow(key=key)
                self.db.add(row)
            row.branch = entry.branch
            row.chassis_number = entry.chassis_number
            row.archived_at = entry.archived_at
            row.payload = payload
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Archive commit failed for %s", key)
            raise ArchiveCommitError(f"Archive commit failed for {key}: {exc}") from exc
        logger.info("Archived %s", key)
        return entry
