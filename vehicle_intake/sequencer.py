"""
Step sequencing for one intake session.

Steps run in a fixed order. Navigation never fails: a step whose
preconditions are not met resolves to the earliest unmet gate instead.
Scans, submissions, uploads and commits are mutually exclusive; an overlapping
request is rejected, never queued.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple

from vehicle_intake.archive import ArchiveRepository, build_archive_entry
from vehicle_intake.attachments import PreviewRegistry
from vehicle_intake.errors import ArchiveCommitError, BranchLockedError, FileHandlingError, ScanInProgressError
from vehicle_intake.extraction import Extractor
from vehicle_intake.policy import DecisionPolicy
from vehicle_intake.reconcile import is_empty, run_reconciliation
from vehicle_intake.schemas import (
    VEHICLE_FIELD_KEYS,
    ArchiveEntry,
    ConformityResult,
    DocumentKind,
    LiveHandle,
    MediaKind,
    ReconcileResult,
    Record,
    RecordPatch,
    SummaryForm,
    VehicleFields,
)
from vehicle_intake.state_store import RecordStateStore

logger = logging.getLogger(__name__)


class Step(str, Enum):
    BRANCH_SELECT = "select-branch"
    RECORD_CHOICE = "record-choice"
    REGISTRATION = "registration"
    LABEL = "label"
    MEDIA = "media"
    INSPECTION = "inspection"
    WORK_ORDER = "work-order"
    FINAL_CHECK = "final-check"
    SUMMARY = "summary"
    COMMITTED = "committed"


STEP_ORDER: Tuple[Step, ...] = (
    Step.BRANCH_SELECT,
    Step.RECORD_CHOICE,
    Step.REGISTRATION,
    Step.LABEL,
    Step.MEDIA,
    Step.INSPECTION,
    Step.WORK_ORDER,
    Step.FINAL_CHECK,
    Step.SUMMARY,
)

STEP_FIELDS: Dict[Step, FrozenSet[str]] = {
    Step.REGISTRATION: frozenset(VEHICLE_FIELD_KEYS) | {"engine_number", "registration_document"},
    Step.LABEL: frozenset(VEHICLE_FIELD_KEYS) | {"label_document"},
    Step.MEDIA: frozenset({"type_approval_document", "additional_photos", "additional_videos"}),
    Step.INSPECTION: frozenset({"inspection"}),
    Step.WORK_ORDER: frozenset({"work_order"}),
    Step.FINAL_CHECK: frozenset({"final_check"}),
    Step.SUMMARY: frozenset({"summary"}),
}

DOCUMENT_SLOTS: Dict[DocumentKind, str] = {
    DocumentKind.REGISTRATION: "registration_document",
    DocumentKind.LABEL: "label_document",
    DocumentKind.TYPE_APPROVAL: "type_approval_document",
}

DOCUMENT_STEPS: Dict[DocumentKind, Step] = {
    DocumentKind.REGISTRATION: Step.REGISTRATION,
    DocumentKind.LABEL: Step.LABEL,
    DocumentKind.TYPE_APPROVAL: Step.MEDIA,
}

MEDIA_SLOTS: Dict[MediaKind, str] = {
    MediaKind.PHOTO: "additional_photos",
    MediaKind.VIDEO: "additional_videos",
}

SCANNABLE = (DocumentKind.REGISTRATION, DocumentKind.LABEL)


def step_index(step: Step) -> int:
    if step == Step.COMMITTED:
        return len(STEP_ORDER)
    return STEP_ORDER.index(step)


def record_in_progress(record: Record) -> bool:
    if any(not is_empty(getattr(record, key)) for key in VEHICLE_FIELD_KEYS):
        return True
    if any(getattr(record, slot) is not None for slot in DOCUMENT_SLOTS.values()):
        return True
    return bool(record.additional_photos or record.additional_videos)


def restrict_patch(patch: RecordPatch, step: Step) -> RecordPatch:
    """Keep only the fields the step owns."""
    allowed = STEP_FIELDS.get(step, frozenset())
    dropped = sorted(patch.model_fields_set - allowed)
    if dropped:
        logger.warning("Ignoring fields not owned by step %s: %s", step.value, dropped)
    return RecordPatch(**{name: getattr(patch, name) for name in patch.model_fields_set & allowed})


class StepSequencer:
    def __init__(self, store: RecordStateStore, previews: Optional[PreviewRegistry] = None) -> None:
        self.store = store
        self.previews = previews or PreviewRegistry()
        self._busy = threading.Lock()
        self.last_committed: Optional[ArchiveEntry] = None
        self._pending_key: Optional[str] = None
        self.current: Step = Step.BRANCH_SELECT
        self.current = self.resolve(Step.RECORD_CHOICE)

    # --------------------
    # navigation
    # --------------------

    @property
    def scanning(self) -> bool:
        return self._busy.locked()

    def _gates(self) -> List[Tuple[Step, bool]]:
        record = self.store.get_record()
        return [
            (Step.BRANCH_SELECT, bool(self.store.branch)),
            (Step.REGISTRATION, not is_empty(record.chassis_number)),
        ]

    def resolve(self, target: Step) -> Step:
        """Earliest gate before `target` whose precondition fails, else `target`."""
        if target == Step.COMMITTED:
            target = Step.SUMMARY
        position = step_index(target)
        for gate, satisfied in self._gates():
            if not satisfied and position > step_index(gate):
                return gate
        return target

    def go_to(self, target: Step) -> Step:
        resolved = self.resolve(target)
        if resolved != target:
            logger.info("Redirected from %s to %s", target.value, resolved.value)
        self.current = resolved
        return resolved

    def advance(self) -> Step:
        position = step_index(self.current)
        if position + 1 >= len(STEP_ORDER):
            return self.current
        return self.go_to(STEP_ORDER[position + 1])

    def back(self) -> Step:
        position = step_index(self.current)
        if position == 0:
            return self.current
        return self.go_to(STEP_ORDER[min(position, len(STEP_ORDER)) - 1])

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._busy.acquire(blocking=False):
            raise ScanInProgressError("A scan is in progress for this session")
        try:
            yield
        finally:
            self._busy.release()

    # --------------------
    # branch and record choice
    # --------------------

    def select_branch(self, branch: str) -> Step:
        with self._exclusive():
            current = self.store.branch
            if current and branch != current and record_in_progress(self.store.get_record()):
                raise BranchLockedError(
                    f"Branch is fixed to {current} while a record is in progress; reset the record first"
                )
            self.store.set_branch(branch)
        return self.go_to(Step.RECORD_CHOICE)

    def choose_new_record(self) -> Step:
        with self._exclusive():
            self.previews.release_all()
            self._pending_key = None
            self.store.reset_record()
        return self.go_to(Step.REGISTRATION)

    def choose_archived_record(self, entry: ArchiveEntry) -> Step:
        with self._exclusive():
            self.previews.release_all()
            self._pending_key = None
            if entry.branch:
                self.store.set_branch(entry.branch)
            self.store.load_entry(entry)
        logger.info("Editing archived record %s", entry.file_name)
        return self.go_to(Step.REGISTRATION)

    # --------------------
    # step data
    # --------------------

    def submit(self, step: Step, patch: Optional[RecordPatch] = None) -> Step:
        """Save a step's form data and move forward; unmet preconditions redirect."""
        resolved = self.resolve(step)
        if resolved != step:
            return self.go_to(resolved)
        with self._exclusive():
            if patch is not None:
                restricted = restrict_patch(patch, step)
                if restricted.model_fields_set:
                    self.store.update_record(restricted)
        self.current = step
        return self.advance()

    def update(self, patch: RecordPatch) -> Record:
        """Free-form partial update outside any step (corrections from the record view)."""
        with self._exclusive():
            return self.store.update_record(patch)

    def attach_document(self, kind: DocumentKind, handle: LiveHandle) -> str:
        """Store an upload in its slot; the previous preview for the slot is released."""
        slot = DOCUMENT_SLOTS[kind]
        with self._exclusive():
            self.store.update_record(RecordPatch(**{slot: handle}))
            token = self.previews.create(handle, slot=slot)
        logger.info("Attached %s (%s, %s bytes)", slot, handle.name, handle.size)
        return token

    def detach_document(self, kind: DocumentKind) -> None:
        slot = DOCUMENT_SLOTS[kind]
        with self._exclusive():
            self.store.update_record(RecordPatch(**{slot: None}))
            self.previews.release_slot(slot)

    def add_media(self, kind: MediaKind, handles: List[LiveHandle]) -> List[str]:
        slot = MEDIA_SLOTS[kind]
        with self._exclusive():
            record = self.store.get_record()
            existing = list(getattr(record, slot))
            known = {(a.name, a.size) for a in existing}
            added = [h for h in handles if (h.name, h.size) not in known]
            self.store.update_record(RecordPatch(**{slot: existing + added}))
            tokens = [self.previews.create(h) for h in added]
        return tokens

    # --------------------
    # scanning
    # --------------------

    def scan(
        self,
        kind: DocumentKind,
        extractor: Extractor,
        policy: DecisionPolicy,
        form_values: Optional[VehicleFields] = None,
    ) -> Optional[ReconcileResult]:
        """
        Run one reconciliation pass for the attached document of `kind`.
        Returns None when the document's step is not reachable yet.
        """
        if kind not in SCANNABLE:
            raise FileHandlingError(f"{kind.value} documents are not scanned")
        step = DOCUMENT_STEPS[kind]
        if self.resolve(step) != step:
            self.go_to(step)
            return None

        with self._exclusive():
            record = self.store.get_record()
            document = getattr(record, DOCUMENT_SLOTS[kind])
            if document is None:
                raise FileHandlingError(f"No {kind.value} document attached")
            if not isinstance(document, LiveHandle):
                raise FileHandlingError(
                    f"{document.name} is no longer available in this session; upload it again"
                )
            result = run_reconciliation(
                document,
                kind,
                record.vehicle_fields(),
                extractor,
                policy,
                form_values=form_values,
            )
            if result.updates:
                self.store.update_record(RecordPatch(**result.updates))
        self.current = step
        return result

    # --------------------
    # summary and commit
    # --------------------

    def prefill_summary(self, conformity: ConformityResult) -> Record:
        """Fill empty summary fields from a matched type approval record."""
        with self._exclusive():
            record = self.store.get_record()
            if conformity.status != "match" or conformity.match is None:
                return record
            match = conformity.match
            values = {
                "type_approval_type": match.approval_type,
                "type_approval_level": match.approval_level,
                "type_approval_version": match.version,
            }
            fill = {
                key: value
                for key, value in values.items()
                if value and is_empty(getattr(record.summary, key))
            }
            if not fill:
                return record
            return self.store.update_record(RecordPatch(summary=SummaryForm(**fill)))

    def _commit_key(self, archive: ArchiveRepository, record: Record) -> str:
        # An entry already stored by a half-finished commit is overwritten, not duplicated.
        for candidate in (self._pending_key, self.store.editing_key):
            if candidate and archive.exists(candidate):
                return candidate
        return archive.next_key(self.store.branch, record.chassis_number)

    def commit(self, archive: ArchiveRepository) -> Optional[ArchiveEntry]:
        """
        Archive the record and start over at registration.
        On storage failure the record is left untouched for a retry.
        """
        resolved = self.resolve(Step.SUMMARY)
        if resolved != Step.SUMMARY:
            self.go_to(resolved)
            return None

        with self._exclusive():
            record = self.store.get_record()
            key = self._commit_key(archive, record)
            entry = archive.upsert(key, build_archive_entry(record, self.store.branch, key))
            self._pending_key = key
            try:
                self.store.commit_to_archive(entry, editing_key=key)
                self.previews.release_all()
                self.store.reset_record()
            except OSError as exc:
                logger.exception("Archived %s but the session state could not be saved", key)
                raise ArchiveCommitError(f"Session state could not be saved after archiving {key}: {exc}") from exc
            self._pending_key = None

        self.last_committed = entry
        self.current = Step.COMMITTED
        logger.info("Committed %s; starting a new record", key)
        self.current = self.resolve(Step.REGISTRATION)
        return entry
