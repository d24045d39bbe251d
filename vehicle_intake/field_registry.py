from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from vehicle_intake.schemas import DocumentKind


@dataclass(frozen=True)
class FieldDef:
    field_key: str
    label: str
    step: str  # workflow step that owns the field
    value_type: str  # "string" | "bool" | "date" | "attachment" | "json"
    overridable: bool = False
    canonical_source: Optional[DocumentKind] = None
    description: str = ""
    examples: Optional[List[str]] = None


def canonical_fields() -> List[FieldDef]:
    """
    Record fields for the vehicle intake workflow (v1).
    This is a contract: stable keys, stable meaning.
    """
    fields: List[FieldDef] = [
        # --------------------
        # Identity
        # --------------------
        FieldDef(
            "chassis_number",
            "Chassis number",
            "registration",
            "string",
            overridable=True,
            canonical_source=DocumentKind.REGISTRATION,
            description="Business key of the record once known; the registration scan is authoritative",
            examples=["WF0XXXTTGXKY12345"],
        ),

        # --------------------
        # Vehicle fields (OCR overridable)
        # --------------------
        FieldDef("brand", "Brand", "registration", "string", overridable=True),
        FieldDef("type", "Type", "registration", "string", overridable=True),
        FieldDef("trade_name", "Trade name", "registration", "string", overridable=True),
        FieldDef("owner", "Owner (name and surname)", "registration", "string", overridable=True),
        FieldDef("plate_number", "Plate number", "registration", "string", overridable=True),
        FieldDef(
            "type_approval_number",
            "Type approval number",
            "label",
            "string",
            overridable=True,
            description="Letters and digits only, markings removed",
            examples=["e1200746000100"],
        ),
        FieldDef("type_and_variant", "Variant", "label", "string", overridable=True),
        FieldDef("version", "Version", "label", "string", overridable=True),
        FieldDef("engine_number", "Engine number", "registration", "string", description="Entered by hand; not read by scans"),

        # --------------------
        # Attachments
        # --------------------
        FieldDef("registration_document", "Registration document", "registration", "attachment"),
        FieldDef("label_document", "Label image", "label", "attachment"),
        FieldDef("type_approval_document", "Type approval document", "media", "attachment"),
        FieldDef("additional_photos", "Additional photos", "media", "attachment"),
        FieldDef("additional_videos", "Additional videos", "media", "attachment"),

        # --------------------
        # Step forms
        # --------------------
        FieldDef("inspection", "Serial modification conformity form", "inspection", "json"),
        FieldDef("work_order", "Work order and offer form", "work-order", "json"),
        FieldDef("final_check", "Interim and final inspection checklist", "final-check", "json"),
        FieldDef("summary", "Type approval summary", "summary", "json"),
    ]
    return fields


def field_index() -> Dict[str, FieldDef]:
    return {f.field_key: f for f in canonical_fields()}


def overridable_field_keys() -> Tuple[str, ...]:
    return tuple(f.field_key for f in canonical_fields() if f.overridable)


def scan_field_keys(kind: DocumentKind) -> Tuple[str, ...]:
    """
    Fields reconciled for a scan of the given document.

    A label scan reconciles the full vehicle field set, not only the fields the
    label owns; identity precedence still protects the chassis number.
    """
    if kind not in (DocumentKind.REGISTRATION, DocumentKind.LABEL):
        return ()
    return overridable_field_keys()
