"""
Reconciliation of scanned candidate values with the record being assembled.

Identity fields have a canonical source document; a scan of any other
document never writes them, whatever the policy says.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from vehicle_intake.errors import ExtractionError, IntakeError, PolicyError
from vehicle_intake.extraction import Extractor
from vehicle_intake.field_registry import field_index, scan_field_keys
from vehicle_intake.policy import DecisionPolicy
from vehicle_intake.schemas import (
    DocumentKind,
    FieldOutcome,
    LiveHandle,
    OverrideDecision,
    ReconcileResult,
    VehicleFields,
)

logger = logging.getLogger(__name__)


def is_empty(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def canonical_source(field_key: str) -> Optional[DocumentKind]:
    field = field_index().get(field_key)
    return field.canonical_source if field else None


def may_write(field_key: str, source: DocumentKind) -> bool:
    """True unless the field is an identity field owned by another document."""
    owner = canonical_source(field_key)
    return owner is None or owner == source


def build_currents(record_fields: VehicleFields, form_values: Optional[VehicleFields] = None) -> VehicleFields:
    """Current values for the decision: unsaved form input first, then the record."""
    if form_values is None:
        return record_fields
    merged = {}
    for key in VehicleFields.model_fields:
        form_value = getattr(form_values, key)
        merged[key] = form_value if not is_empty(form_value) else getattr(record_fields, key)
    return VehicleFields(**merged)


def reconcile_fields(
    record_fields: VehicleFields,
    candidates: VehicleFields,
    currents: VehicleFields,
    decision: OverrideDecision,
    source: DocumentKind,
    field_keys: Optional[Iterable[str]] = None,
) -> ReconcileResult:
    """
    Pure per-field merge. A field takes its candidate iff the decision
    approves it, the candidate is non-empty and the source may write it.
    """
    keys = tuple(field_keys) if field_keys is not None else scan_field_keys(source)
    result = ReconcileResult(source=source)

    for key in keys:
        candidate = getattr(candidates, key)
        current = getattr(record_fields, key)
        approved = bool(getattr(decision, key))
        outcome = FieldOutcome(
            field_key=key,
            candidate=candidate,
            current=getattr(currents, key),
            approved=approved,
            reason="declined",
        )

        if is_empty(candidate):
            outcome.reason = "empty_candidate"
        elif not may_write(key, source):
            if not is_empty(current) and candidate.strip() != current.strip():
                outcome.reason = "identity_conflict"
                logger.warning(
                    "%s from %s scan (%s) differs from canonical value (%s); keeping canonical",
                    key, source.value, candidate, current,
                )
            else:
                outcome.reason = "identity_locked"
        elif approved:
            outcome.applied = True
            outcome.reason = "applied"
            result.updates[key] = candidate

        result.outcomes.append(outcome)

    return result


def run_reconciliation(
    document: LiveHandle,
    source: DocumentKind,
    record_fields: VehicleFields,
    extractor: Extractor,
    policy: DecisionPolicy,
    form_values: Optional[VehicleFields] = None,
) -> ReconcileResult:
    """
    Extract, decide, merge. Either call failing aborts the whole pass before
    anything is applied; callers apply `result.updates` in one update.
    """
    try:
        candidates = extractor.extract(document, source)
    except IntakeError:
        logger.exception("Extraction failed for %s (%s)", document.name, source.value)
        raise
    except Exception as exc:
        logger.exception("Extractor %s crashed on %s", getattr(extractor, "name", "?"), document.name)
        raise ExtractionError(f"Extraction failed: {exc}") from exc

    currents = build_currents(record_fields, form_values)
    try:
        decision = policy.decide(candidates, currents)
    except IntakeError:
        logger.exception("Override decision failed for %s scan", source.value)
        raise
    except Exception as exc:
        logger.exception("Decision policy %s crashed on %s scan", getattr(policy, "name", "?"), source.value)
        raise PolicyError(f"Override decision failed: {exc}") from exc
    if not isinstance(decision, OverrideDecision):
        raise PolicyError("Decision policy returned an unexpected result")

    result = reconcile_fields(record_fields, candidates, currents, decision, source)
    logger.info(
        "Reconciled %s scan: applied=%s conflicts=%s",
        source.value, sorted(result.updates), result.conflicts,
    )
    return result
