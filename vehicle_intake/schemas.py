from __future__ import annotations

import uuid
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, model_validator


class DocumentKind(str, Enum):
    REGISTRATION = "registration"
    LABEL = "label"
    TYPE_APPROVAL = "type-approval"


class MediaKind(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"


# --------------------
# Attachments
# --------------------

class Descriptor(BaseModel):
    """Serializable stand-in for an upload once its bytes are gone."""

    kind: Literal["descriptor"] = "descriptor"
    name: str
    type: Optional[str] = None
    size: Optional[int] = None


class LiveHandle(BaseModel):
    """Uploaded bytes held for the lifetime of the process session only."""

    kind: Literal["live"] = "live"
    name: str
    type: Optional[str] = None
    data: bytes = Field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    def describe(self) -> Descriptor:
        return Descriptor(name=self.name, type=self.type, size=self.size)


Attachment = Annotated[Union[LiveHandle, Descriptor], Field(discriminator="kind")]


# --------------------
# Vehicle fields and the extraction / decision contracts
# --------------------

class VehicleFields(BaseModel):
    chassis_number: Optional[str] = None
    brand: Optional[str] = None
    type: Optional[str] = None
    trade_name: Optional[str] = None
    owner: Optional[str] = None
    plate_number: Optional[str] = None
    type_approval_number: Optional[str] = None
    type_and_variant: Optional[str] = None
    version: Optional[str] = None


VEHICLE_FIELD_KEYS = tuple(VehicleFields.model_fields.keys())


class OverrideDecision(BaseModel):
    chassis_number: bool = False
    brand: bool = False
    type: bool = False
    trade_name: bool = False
    owner: bool = False
    plate_number: bool = False
    type_approval_number: bool = False
    type_and_variant: bool = False
    version: bool = False


# --------------------
# Step forms (namespaced supplementary data)
# --------------------

Verdict = Literal["positive", "negative"]

# Prefilled on every empty record.
DEFAULT_OFFER_COMPANY = "ÖZ ÇAĞRI DİZAYN OTO MÜHENDİSLİK"
DEFAULT_OFFER_TAX_OFFICE = "TEPECİK / 662 081 45 97"
DEFAULT_OFFER_ITEM_ID = "item-1"


class InspectionForm(BaseModel):
    customer_name: Optional[str] = None
    form_date: Optional[str] = None
    sequence_no: Optional[str] = "3"
    q1_suitable: Verdict = "positive"
    q2_type_approval_match: Verdict = "positive"
    q3_scope_expansion: Verdict = "positive"
    q4_unaffected_parts_defect: Verdict = "positive"
    notes: Optional[str] = None
    controller_name: Optional[str] = None
    authority_name: Optional[str] = None


class OfferItem(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    item_name: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    total_price: Optional[float] = None

    @model_validator(mode="after")
    def _fill_total(self) -> "OfferItem":
        if self.total_price is None and self.quantity is not None and self.unit_price is not None:
            self.total_price = round(self.quantity * self.unit_price, 2)
        return self


class WorkOrderForm(BaseModel):
    project_name: Optional[str] = None
    project_no: Optional[str] = None
    plate: Optional[str] = None
    work_order_number: Optional[str] = "3"
    work_order_date: Optional[str] = None
    completion_date: Optional[str] = None
    details_of_work: Optional[str] = None
    spare_parts_used: Optional[str] = None
    pricing: Optional[str] = None
    vehicle_acceptance_signature: Optional[str] = None
    customer_signature: Optional[str] = None

    offer_authorized_name: Optional[str] = None
    offer_company_name: Optional[str] = DEFAULT_OFFER_COMPANY
    offer_company_address: Optional[str] = None
    offer_tax_office_and_number: Optional[str] = DEFAULT_OFFER_TAX_OFFICE
    offer_phone_number: Optional[str] = None
    offer_email_address: Optional[str] = None
    offer_date: Optional[str] = None
    offer_items: List[OfferItem] = Field(default_factory=lambda: [OfferItem(id=DEFAULT_OFFER_ITEM_ID)])
    offer_acceptance: Literal["accepted", "rejected"] = "accepted"


class FinalCheckForm(BaseModel):
    final_check_date: Optional[str] = None
    check1_exposed_parts_interim: bool = True
    check1_exposed_parts_final: bool = True
    check2_isofix_seat_interim: bool = True
    check2_isofix_seat_final: bool = True
    check3_seat_belts_interim: bool = True
    check3_seat_belts_final: bool = True
    check4_window_approvals_interim: bool = True
    check4_window_approvals_final: bool = True
    final_controller_name: Optional[str] = None


class SummaryForm(BaseModel):
    type_approval_type: Optional[str] = None
    type_approval_level: Optional[str] = None
    type_approval_version: Optional[str] = None


# --------------------
# Record, archive entry, partial update
# --------------------

class RecordFields(VehicleFields):
    engine_number: Optional[str] = None

    inspection: InspectionForm = Field(default_factory=InspectionForm)
    work_order: WorkOrderForm = Field(default_factory=WorkOrderForm)
    final_check: FinalCheckForm = Field(default_factory=FinalCheckForm)
    summary: SummaryForm = Field(default_factory=SummaryForm)

    registration_document: Optional[Attachment] = None
    label_document: Optional[Attachment] = None
    type_approval_document: Optional[Attachment] = None
    additional_photos: List[Attachment] = Field(default_factory=list)
    additional_videos: List[Attachment] = Field(default_factory=list)

    def vehicle_fields(self) -> VehicleFields:
        return VehicleFields(**{k: getattr(self, k) for k in VEHICLE_FIELD_KEYS})


class ArchiveEntry(RecordFields):
    file_name: str
    archived_at: str
    branch: Optional[str] = None

    @model_validator(mode="after")
    def _descriptors_only(self) -> "ArchiveEntry":
        attachments = [self.registration_document, self.label_document, self.type_approval_document]
        attachments += list(self.additional_photos) + list(self.additional_videos)
        if any(isinstance(a, LiveHandle) for a in attachments):
            raise ValueError("archive entries must hold attachment descriptors, not live uploads")
        return self


class Record(RecordFields):
    archive: List[ArchiveEntry] = Field(default_factory=list)


class RecordPatch(VehicleFields):
    """Partial update: only fields explicitly set are applied."""

    engine_number: Optional[str] = None
    inspection: Optional[InspectionForm] = None
    work_order: Optional[WorkOrderForm] = None
    final_check: Optional[FinalCheckForm] = None
    summary: Optional[SummaryForm] = None

    registration_document: Optional[Attachment] = None
    label_document: Optional[Attachment] = None
    type_approval_document: Optional[Attachment] = None
    additional_photos: Optional[List[Attachment]] = None
    additional_videos: Optional[List[Attachment]] = None


class SessionSnapshot(BaseModel):
    branch: Optional[str] = None
    editing_key: Optional[str] = None
    record: Record = Field(default_factory=Record)


# --------------------
# Reconciliation results
# --------------------

class FieldOutcome(BaseModel):
    field_key: str
    candidate: Optional[str] = None
    current: Optional[str] = None
    approved: bool = False
    applied: bool = False
    reason: str  # applied | declined | empty_candidate | identity_conflict | identity_locked


class ReconcileResult(BaseModel):
    source: DocumentKind
    updates: Dict[str, str] = Field(default_factory=dict)
    outcomes: List[FieldOutcome] = Field(default_factory=list)

    @computed_field
    @property
    def conflicts(self) -> List[str]:
        return [o.field_key for o in self.outcomes if o.reason == "identity_conflict"]


# --------------------
# Reference table
# --------------------

class TypeApprovalRecord(BaseModel):
    id: Optional[str] = None
    branch_name: str = ""
    project_name: str = ""
    approval_type: str = ""
    approval_level: str = ""
    variant: str = ""
    version: str = ""
    approval_number: str


class TypeApprovalPatch(BaseModel):
    """Single-record edit: only fields explicitly set are written."""

    branch_name: Optional[str] = None
    project_name: Optional[str] = None
    approval_type: Optional[str] = None
    approval_level: Optional[str] = None
    variant: Optional[str] = None
    version: Optional[str] = None
    approval_number: Optional[str] = None


class ConformityResult(BaseModel):
    status: Literal["pending", "incomplete", "match", "no_match"]
    match: Optional[TypeApprovalRecord] = None
