import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String

from vehicle_intake.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArchiveEntryRow(Base):
    __tablename__ = "archive_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, nullable=False, unique=True, index=True)
    branch = Column(String, nullable=True)
    chassis_number = Column(String, nullable=True, index=True)
    archived_at = Column(String, nullable=False)  # ISO-8601, as stored in the payload
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class TypeApprovalRow(Base):
    __tablename__ = "type_approval_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    branch_name = Column(String, nullable=False, default="")
    project_name = Column(String, nullable=False, default="")
    approval_type = Column(String, nullable=False, default="")
    approval_level = Column(String, nullable=False, default="")
    variant = Column(String, nullable=False, default="")
    version = Column(String, nullable=False, default="")
    approval_number = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
