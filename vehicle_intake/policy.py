"""
Override decision backends.

A policy sees the candidate values from a scan and the values currently on the
form and answers, per field, whether the candidate should replace the current
value. Policies are stateless per call.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx
import ollama
from pydantic import ValidationError

from vehicle_intake.errors import PolicyError, ServiceUnavailableError
from vehicle_intake.extraction import is_unavailable_error
from vehicle_intake.schemas import VEHICLE_FIELD_KEYS, OverrideDecision, VehicleFields
from vehicle_intake.settings import settings

logger = logging.getLogger(__name__)


def _compact(value: Optional[str]) -> str:
    return re.sub(r"\s+", "", value or "").casefold()


class DecisionPolicy(ABC):
    name = "base"

    @abstractmethod
    def decide(self, candidates: VehicleFields, currents: VehicleFields) -> OverrideDecision:
        """Return one boolean per field; raise PolicyError on failure."""


class RuleBasedPolicy(DecisionPolicy):
    """
    Deterministic policy:
    - empty candidate: keep current
    - empty current: take candidate
    - same value ignoring case and whitespace: keep current
    - candidate extends current (current is contained in a longer candidate): take candidate
    - otherwise keep what the user already has
    """

    name = "rules"

    def decide_field(self, candidate: Optional[str], current: Optional[str]) -> bool:
        cand = _compact(candidate)
        cur = _compact(current)
        if not cand:
            return False
        if not cur:
            return True
        if cand == cur:
            return False
        return len(cand) > len(cur) and cur in cand

    def decide(self, candidates: VehicleFields, currents: VehicleFields) -> OverrideDecision:
        return OverrideDecision(
            **{
                key: self.decide_field(getattr(candidates, key), getattr(currents, key))
                for key in VEHICLE_FIELD_KEYS
            }
        )


DECISION_PROMPT = """You decide whether newly scanned (OCR) vehicle data should replace the data already on a form.
Rules for every field:
- If the current value is empty and the OCR value is present, override.
- If the OCR value is more complete or clearly more accurate (longer, fewer typos), override.
- If the OCR value is less complete, less accurate or clearly wrong, do not override.
- If both are effectively the same (ignoring case and whitespace), do not override.
Answer with a JSON object {{"override": {{<field>: true|false}}}} containing exactly these fields:
{fields}

OCR data: {ocr}
Current data: {current}
"""


class OllamaPolicy(DecisionPolicy):
    name = "ollama"

    def __init__(self, model: Optional[str] = None, host: Optional[str] = None, client=None) -> None:
        self.model = model or settings.ollama_policy_model
        self.client = client or ollama.Client(host=host or settings.ollama_host)

    def decide(self, candidates: VehicleFields, currents: VehicleFields) -> OverrideDecision:
        prompt = DECISION_PROMPT.format(
            fields=", ".join(VEHICLE_FIELD_KEYS),
            ocr=json.dumps(candidates.model_dump(), ensure_ascii=False),
            current=json.dumps(currents.model_dump(), ensure_ascii=False),
        )
        try:
            response = self.client.chat(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                format="json",
                options={"temperature": 0},
            )
        except ollama.ResponseError as exc:
            if is_unavailable_error(exc):
                raise ServiceUnavailableError(f"Decision model unavailable: {exc}") from exc
            raise PolicyError(f"Decision model error: {exc}") from exc
        except (ConnectionError, httpx.TransportError) as exc:
            raise ServiceUnavailableError(f"Decision service unreachable: {exc}") from exc

        content = response["message"]["content"] or ""
        try:
            payload = json.loads(content)
        except ValueError as exc:
            raise PolicyError("Decision model returned malformed JSON") from exc

        override = payload.get("override") if isinstance(payload, dict) else None
        if not isinstance(override, dict):
            raise PolicyError("Decision model returned no override map")
        missing = [key for key in VEHICLE_FIELD_KEYS if key not in override]
        if missing:
            raise PolicyError(f"Decision missing fields: {', '.join(missing)}")
        try:
            return OverrideDecision.model_validate({key: override[key] for key in VEHICLE_FIELD_KEYS})
        except ValidationError as exc:
            raise PolicyError(f"Decision has non-boolean values: {exc}") from exc


def build_policy(backend: Optional[str] = None) -> DecisionPolicy:
    backend = (backend or settings.policy_backend).lower()
    if backend == "ollama":
        return OllamaPolicy()
    if backend == "rules":
        return RuleBasedPolicy()
    raise ValueError(f"Unknown policy backend: {backend}")
