from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vehicle_intake import models
from vehicle_intake.errors import IntakeError
from vehicle_intake.extraction import clean_approval_number
from vehicle_intake.schemas import ConformityResult, TypeApprovalPatch, TypeApprovalRecord, VehicleFields

logger = logging.getLogger(__name__)

LOOKUP_FIELDS = ("branch_name", "project_name", "approval_type", "approval_level", "variant", "version")


def _to_schema(row: models.TypeApprovalRow) -> TypeApprovalRecord:
    return TypeApprovalRecord(
        id=row.id,
        branch_name=row.branch_name,
        project_name=row.project_name,
        approval_type=row.approval_type,
        approval_level=row.approval_level,
        variant=row.variant,
        version=row.version,
        approval_number=row.approval_number,
    )


class TypeApprovalRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def list(self) -> List[TypeApprovalRecord]:
        rows = self.db.execute(
            select(models.TypeApprovalRow).order_by(
                models.TypeApprovalRow.branch_name, models.TypeApprovalRow.approval_number
            )
        ).scalars()
        return [_to_schema(row) for row in rows]

    def insert_many(self, records: Iterable[TypeApprovalRecord]) -> int:
        """
        Insert all records in one transaction; nothing is written on failure.
        Approval numbers are stored without markings so lookups compare like with like.
        """
        rows = []
        for record in records:
            values = record.model_dump(exclude={"id"})
            values["approval_number"] = clean_approval_number(values["approval_number"]) or values["approval_number"]
            rows.append(models.TypeApprovalRow(**values))
        if not rows:
            return 0
        try:
            self.db.add_all(rows)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Bulk insert of %s type approval records failed", len(rows))
            raise IntakeError(f"Type approval records could not be stored: {exc}") from exc
        logger.info("Inserted %s type approval records", len(rows))
        return len(rows)

    def update(self, record_id: str, patch: TypeApprovalPatch) -> Optional[TypeApprovalRecord]:
        """Write the fields set on `patch`; returns None when the record is unknown."""
        row = self.db.get(models.TypeApprovalRow, record_id)
        if row is None:
            return None
        values = {name: getattr(patch, name) for name in patch.model_fields_set}
        if "approval_number" in values:
            cleaned = clean_approval_number(values["approval_number"])
            if not cleaned:
                raise ValueError("approval_number cannot be empty")
            values["approval_number"] = cleaned
        for name, value in values.items():
            setattr(row, name, value or "")
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Update of type approval record %s failed", record_id)
            raise IntakeError(f"Type approval record could not be updated: {exc}") from exc
        self.db.refresh(row)
        return _to_schema(row)

    def delete(self, record_id: str) -> bool:
        row = self.db.get(models.TypeApprovalRow, record_id)
        if row is None:
            return False
        try:
            self.db.delete(row)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Delete of type approval record %s failed", record_id)
            raise IntakeError(f"Type approval record could not be deleted: {exc}") from exc
        logger.info("Deleted type approval record %s", record_id)
        return True

    def lookup(self, approval_number_prefix: str, **equals: Optional[str]) -> List[TypeApprovalRecord]:
        """
        Exact-match lookup: case-insensitive equality on each given field plus
        a mandatory prefix constraint on approval_number.
        """
        prefix = clean_approval_number(approval_number_prefix)
        if not prefix:
            raise ValueError("approval_number_prefix is required")
        unknown = set(equals) - set(LOOKUP_FIELDS)
        if unknown:
            raise ValueError(f"Unknown lookup fields: {', '.join(sorted(unknown))}")

        query = select(models.TypeApprovalRow).where(
            models.TypeApprovalRow.approval_number.istartswith(prefix, autoescape=True)
        )
        for field, value in equals.items():
            if value is None:
                continue
            column = getattr(models.TypeApprovalRow, field)
            query = query.where(func.lower(column) == value.strip().lower())
        query = query.order_by(models.TypeApprovalRow.branch_name, models.TypeApprovalRow.approval_number)
        return [_to_schema(row) for row in self.db.execute(query).scalars()]


def check_conformity(repository: TypeApprovalRepository, fields: VehicleFields) -> ConformityResult:
    """
    Compare scanned vehicle data against the reference table.
    Needs approval number, variant and version; anything less is incomplete.
    """
    required: Dict[str, Optional[str]] = {
        "type_approval_number": fields.type_approval_number,
        "type_and_variant": fields.type_and_variant,
        "version": fields.version,
    }
    if not any((v or "").strip() for v in fields.model_dump().values()):
        return ConformityResult(status="pending")
    if not all((v or "").strip() for v in required.values()):
        return ConformityResult(status="incomplete")

    matches = repository.lookup(
        fields.type_approval_number,
        variant=fields.type_and_variant,
        version=fields.version,
    )
    if not matches:
        return ConformityResult(status="no_match")
    return ConformityResult(status="match", match=matches[0])
