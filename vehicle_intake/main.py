from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Literal, Optional

from fastapi import Body, Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from vehicle_intake.archive import ArchiveRepository
from vehicle_intake.attachments import live_handle_from_upload, project_record
from vehicle_intake.db import get_db, init_db
from vehicle_intake.errors import (
    ArchiveCommitError,
    BranchLockedError,
    ExtractionError,
    FileHandlingError,
    IntakeError,
    PolicyError,
    ScanInProgressError,
    ServiceUnavailableError,
)
from vehicle_intake.extraction import Extractor, build_extractor
from vehicle_intake.field_registry import canonical_fields
from vehicle_intake.policy import DecisionPolicy, build_policy
from vehicle_intake.schemas import (
    DocumentKind,
    MediaKind,
    RecordPatch,
    TypeApprovalPatch,
    TypeApprovalRecord,
    VehicleFields,
)
from vehicle_intake.sequencer import Step, StepSequencer
from vehicle_intake.session import DEFAULT_SESSION_ID, sessions
from vehicle_intake.settings import settings
from vehicle_intake.spreadsheet import build_template, parse_type_approval_workbook
from vehicle_intake.type_approvals import TypeApprovalRepository, check_conformity

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Most specific first.
ERROR_STATUS = (
    (ServiceUnavailableError, 503),
    (PolicyError, 502),
    (ExtractionError, 502),
    (FileHandlingError, 400),
    (ScanInProgressError, 409),
    (BranchLockedError, 409),
    (ArchiveCommitError, 500),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    logging.basicConfig(level=settings.log_level.upper())
    init_db()
    yield
    sessions.clear()


app = FastAPI(title="Vehicle Intake Service", lifespan=lifespan)


def http_error(exc: IntakeError) -> HTTPException:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# --------------------
# dependencies
# --------------------

def get_sequencer(x_session_id: str = Header(DEFAULT_SESSION_ID)) -> StepSequencer:
    try:
        return sessions.get(x_session_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def get_extractor() -> Extractor:
    return build_extractor()


def get_policy() -> DecisionPolicy:
    return build_policy()


def session_view(sequencer: StepSequencer) -> Dict:
    store = sequencer.store
    record = project_record(store.get_record())
    return {
        "step": sequencer.current.value,
        "branch": store.branch,
        "editing_key": store.editing_key,
        "scanning": sequencer.scanning,
        "record": record.model_dump(mode="json", exclude={"archive"}),
        "archive_count": len(record.archive),
        "previews": sequencer.previews.tokens(),
    }


class BranchRequest(BaseModel):
    branch: str


class RecordChoice(BaseModel):
    choice: Literal["new", "archived"]
    key: Optional[str] = None


# --------------------
# meta
# --------------------

@app.get("/", include_in_schema=False)
def root():
    return RedirectResponse(url="/docs")


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/schema/fields")
def schema_fields():
    fields = []
    for f in canonical_fields():
        fields.append(
            {
                "field_key": f.field_key,
                "label": f.label,
                "step": f.step,
                "value_type": f.value_type,
                "overridable": f.overridable,
                "canonical_source": f.canonical_source.value if f.canonical_source else None,
                "description": f.description,
                "examples": f.examples or [],
            }
        )
    return {"fields": fields}


# --------------------
# session and steps
# --------------------

@app.get("/session")
def get_session(sequencer: StepSequencer = Depends(get_sequencer)):
    return session_view(sequencer)


@app.put("/session/branch")
def select_branch(request: BranchRequest, sequencer: StepSequencer = Depends(get_sequencer)):
    branch = request.branch.strip()
    if not branch:
        raise HTTPException(status_code=400, detail="Branch name is required")
    try:
        sequencer.select_branch(branch)
    except IntakeError as exc:
        raise http_error(exc) from exc
    return session_view(sequencer)


@app.post("/session/record-choice")
def record_choice(
    request: RecordChoice,
    sequencer: StepSequencer = Depends(get_sequencer),
    db: Session = Depends(get_db),
):
    try:
        if request.choice == "new":
            sequencer.choose_new_record()
        else:
            if not request.key:
                raise HTTPException(status_code=400, detail="Archive key is required to edit a record")
            entry = ArchiveRepository(db).get(request.key)
            if entry is None:
                raise HTTPException(status_code=404, detail=f"Archive entry not found: {request.key}")
            sequencer.choose_archived_record(entry)
    except IntakeError as exc:
        raise http_error(exc) from exc
    return session_view(sequencer)


@app.patch("/session/record")
def patch_record(patch: RecordPatch, sequencer: StepSequencer = Depends(get_sequencer)):
    try:
        sequencer.update(patch)
    except IntakeError as exc:
        raise http_error(exc) from exc
    return session_view(sequencer)


@app.post("/session/reset")
def reset_record(sequencer: StepSequencer = Depends(get_sequencer)):
    try:
        sequencer.choose_new_record()
    except IntakeError as exc:
        raise http_error(exc) from exc
    return session_view(sequencer)


@app.get("/session/steps/{step}")
def open_step(
    step: Step,
    sequencer: StepSequencer = Depends(get_sequencer),
    db: Session = Depends(get_db),
):
    """Navigate to a step; an unmet precondition answers with the redirected step."""
    resolved = sequencer.go_to(step)
    conformity = None
    if resolved == Step.SUMMARY:
        conformity = check_conformity(
            TypeApprovalRepository(db), sequencer.store.get_record().vehicle_fields()
        )
        try:
            sequencer.prefill_summary(conformity)
        except IntakeError as exc:
            raise http_error(exc) from exc
    view = session_view(sequencer)
    view["requested"] = step.value
    if conformity is not None:
        view["conformity"] = conformity.model_dump(mode="json")
    return view


@app.post("/session/steps/{step}")
def submit_step(
    step: Step,
    patch: Optional[RecordPatch] = Body(None),
    sequencer: StepSequencer = Depends(get_sequencer),
):
    try:
        sequencer.submit(step, patch)
    except IntakeError as exc:
        raise http_error(exc) from exc
    view = session_view(sequencer)
    view["requested"] = step.value
    return view


@app.post("/session/back")
def step_back(sequencer: StepSequencer = Depends(get_sequencer)):
    sequencer.back()
    return session_view(sequencer)


# --------------------
# attachments and scans
# --------------------

@app.post("/session/documents/{kind}")
async def upload_document(
    kind: DocumentKind,
    file: UploadFile = File(...),
    sequencer: StepSequencer = Depends(get_sequencer),
):
    data = await file.read()
    try:
        handle = live_handle_from_upload(file.filename, file.content_type, data)
        token = sequencer.attach_document(kind, handle)
    except IntakeError as exc:
        raise http_error(exc) from exc
    view = session_view(sequencer)
    view["token"] = token
    view["attachment"] = handle.describe().model_dump()
    return view


@app.delete("/session/documents/{kind}")
def remove_document(kind: DocumentKind, sequencer: StepSequencer = Depends(get_sequencer)):
    try:
        sequencer.detach_document(kind)
    except IntakeError as exc:
        raise http_error(exc) from exc
    return session_view(sequencer)


@app.post("/session/media/{kind}")
async def upload_media(
    kind: MediaKind,
    files: List[UploadFile] = File(...),
    sequencer: StepSequencer = Depends(get_sequencer),
):
    try:
        handles = [
            live_handle_from_upload(f.filename, f.content_type, await f.read())
            for f in files
        ]
        tokens = sequencer.add_media(kind, handles)
    except IntakeError as exc:
        raise http_error(exc) from exc
    view = session_view(sequencer)
    view["tokens"] = tokens
    return view


@app.post("/session/scan/{kind}")
def scan_document(
    kind: DocumentKind,
    form_values: Optional[VehicleFields] = Body(None),
    sequencer: StepSequencer = Depends(get_sequencer),
    extractor: Extractor = Depends(get_extractor),
    policy: DecisionPolicy = Depends(get_policy),
):
    """
    Extract fields from the attached document and merge the approved ones.
    `form_values` carries unsaved form input, preferred over the stored record.
    """
    try:
        result = sequencer.scan(kind, extractor, policy, form_values=form_values)
    except IntakeError as exc:
        raise http_error(exc) from exc
    view = session_view(sequencer)
    view["result"] = result.model_dump(mode="json") if result is not None else None
    return view


@app.get("/session/previews/{token}")
def get_preview(token: str, sequencer: StepSequencer = Depends(get_sequencer)):
    handle = sequencer.previews.get(token)
    if handle is None:
        raise HTTPException(status_code=404, detail="Preview not found")
    return Response(content=handle.data, media_type=handle.type or "application/octet-stream")


@app.delete("/session/previews/{token}")
def release_preview(token: str, sequencer: StepSequencer = Depends(get_sequencer)):
    if not sequencer.previews.release(token):
        raise HTTPException(status_code=404, detail="Preview not found")
    return {"token": token, "released": True}


@app.delete("/session/previews")
def release_previews(sequencer: StepSequencer = Depends(get_sequencer)):
    return {"released": sequencer.previews.release_all()}


# --------------------
# conformity and commit
# --------------------

@app.get("/session/conformity")
def session_conformity(sequencer: StepSequencer = Depends(get_sequencer), db: Session = Depends(get_db)):
    fields = sequencer.store.get_record().vehicle_fields()
    return check_conformity(TypeApprovalRepository(db), fields).model_dump(mode="json")


@app.post("/session/commit")
def commit_record(sequencer: StepSequencer = Depends(get_sequencer), db: Session = Depends(get_db)):
    try:
        entry = sequencer.commit(ArchiveRepository(db))
    except IntakeError as exc:
        raise http_error(exc) from exc
    view = session_view(sequencer)
    view["committed"] = entry.model_dump(mode="json") if entry is not None else None
    return view


# --------------------
# archive
# --------------------

@app.get("/archive")
def list_archive(q: Optional[str] = Query(None), db: Session = Depends(get_db)):
    entries = ArchiveRepository(db).search(q)
    return {"count": len(entries), "entries": [e.model_dump(mode="json") for e in entries]}


@app.get("/archive/{key:path}")
def get_archive_entry(key: str, db: Session = Depends(get_db)):
    entry = ArchiveRepository(db).get(key)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Archive entry not found: {key}")
    return entry.model_dump(mode="json")


# --------------------
# type approval reference table
# --------------------

@app.get("/type-approvals")
def list_type_approvals(db: Session = Depends(get_db)):
    records = TypeApprovalRepository(db).list()
    return {"count": len(records), "records": [r.model_dump() for r in records]}


@app.post("/type-approvals")
def add_type_approvals(records: List[TypeApprovalRecord], db: Session = Depends(get_db)):
    if not records:
        raise HTTPException(status_code=400, detail="No records given")
    try:
        inserted = TypeApprovalRepository(db).insert_many(records)
    except IntakeError as exc:
        raise http_error(exc) from exc
    return {"inserted": inserted}


@app.post("/type-approvals/upload")
async def upload_type_approvals(file: UploadFile = File(...), db: Session = Depends(get_db)):
    data = await file.read()
    try:
        parsed = parse_type_approval_workbook(data)
        inserted = TypeApprovalRepository(db).insert_many(parsed.records)
    except IntakeError as exc:
        raise http_error(exc) from exc
    logger.info("Loaded %s type approval rows from %s", inserted, file.filename)
    return {"inserted": inserted, "skipped_rows": parsed.skipped_rows}


@app.get("/type-approvals/template")
def type_approval_template():
    return Response(
        content=build_template(),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="tip-onay-sablonu.xlsx"'},
    )


@app.get("/type-approvals/lookup")
def lookup_type_approvals(
    approval_number: str = Query(...),
    branch_name: Optional[str] = None,
    project_name: Optional[str] = None,
    approval_type: Optional[str] = None,
    approval_level: Optional[str] = None,
    variant: Optional[str] = None,
    version: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        records = TypeApprovalRepository(db).lookup(
            approval_number,
            branch_name=branch_name,
            project_name=project_name,
            approval_type=approval_type,
            approval_level=approval_level,
            variant=variant,
            version=version,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"count": len(records), "records": [r.model_dump() for r in records]}


@app.put("/type-approvals/{record_id}")
def update_type_approval(record_id: str, patch: TypeApprovalPatch, db: Session = Depends(get_db)):
    try:
        record = TypeApprovalRepository(db).update(record_id, patch)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except IntakeError as exc:
        raise http_error(exc) from exc
    if record is None:
        raise HTTPException(status_code=404, detail="Type approval record not found")
    return record.model_dump()


@app.delete("/type-approvals/{record_id}")
def delete_type_approval(record_id: str, db: Session = Depends(get_db)):
    try:
        deleted = TypeApprovalRepository(db).delete(record_id)
    except IntakeError as exc:
        raise http_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Type approval record not found")
    return {"id": record_id, "deleted": True}
