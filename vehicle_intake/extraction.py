"""
Field extraction backends for registration documents and vehicle labels.

Both backends return VehicleFields with unreadable fields left empty; neither
ever invents a value. Label output goes through the same post-processing:
type approval numbers are reduced to letters and digits, and the combined
type/variant/version code is split into its parts.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import httpx
import ollama
import pytesseract

from vehicle_intake.attachments import encode_png, load_image
from vehicle_intake.errors import ExtractionError, ServiceUnavailableError
from vehicle_intake.schemas import DocumentKind, LiveHandle, VehicleFields
from vehicle_intake.settings import settings

logger = logging.getLogger(__name__)

VIN_PATTERN = re.compile(r"\b([A-HJ-NPR-Z0-9]{17})\b")
APPROVAL_PATTERN = re.compile(
    r"\b(e\s*\d{1,2}\s*\*\s*\d{2,4}\s*/\s*\d{1,4}\s*\*\s*\d{1,5}(?:\s*\*\s*\d{1,3})?)",
    re.IGNORECASE,
)

# Registration certificates carry harmonised EU codes next to the national labels.
REGISTRATION_PATTERNS: Dict[str, List[str]] = {
    "plate_number": [r"\(A\)\s*(?:PLAKA(?:SI)?)?[:\s]+([0-9]{2}\s*[A-ZÇĞİÖŞÜ]{1,3}\s*[0-9]{2,5})", r"PLAKA(?:SI)?[:\s]+([0-9]{2}\s*[A-ZÇĞİÖŞÜ]{1,3}\s*[0-9]{2,5})"],
    "brand": [r"\(D\.?1\)\s*(?:MARKA(?:SI)?)?[:\s]+([^\n(]+)", r"MARKA(?:SI)?[:\s]+([^\n(]+)"],
    "type": [r"\(D\.?2\)\s*(?:T[İI]P[İI])?[:\s]+([^\n(]+)", r"\bT[İI]P[İI][:\s]+([^\n(]+)"],
    "trade_name": [r"\(D\.?3\)\s*(?:T[İI]CAR[İI]\s*ADI)?[:\s]+([^\n(]+)", r"T[İI]CAR[İI]\s*ADI[:\s]+([^\n(]+)"],
    "chassis_number": [r"\(E\)\s*(?:[ŞS]ASE\s*NO)?[:\s]+([A-HJ-NPR-Z0-9]{11,17})", r"[ŞS]ASE\s*NO[:\s]+([A-HJ-NPR-Z0-9]{11,17})"],
    "type_approval_number": [r"\(K\)\s*(?:T[İI]P\s*ONAY\s*NO)?[:\s]+([^\n(]+)", r"T[İI]P\s*ONAY\s*NO[:\s]+([^\n(]+)"],
    "owner_surname": [r"\(C\.?1\.?1\)\s*(?:SOYADI|T[İI]CAR[İI]\s*UNVANI)?[:\s]+([^\n(]+)", r"SOYADI[:\s]+([^\n(]+)"],
    "owner_name": [r"\(C\.?1\.?2\)\s*(?:ADI)?[:\s]+([^\n(]+)", r"(?<!T[İI]CAR[İI] )\bADI[:\s]+([^\n(]+)"],
}


# --------------------
# Post-processing shared by both backends
# --------------------

def clean_value(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = re.sub(r"\s+", " ", str(value)).strip(" :;,-")
    return value or None


def clean_approval_number(value: Optional[str]) -> Optional[str]:
    """Drop every marking (*, /, -, spaces); keep letters and digits only."""
    if not value:
        return None
    cleaned = re.sub(r"[^A-Za-z0-9]+", "", value)
    return cleaned or None


def split_label_code(
    combined: Optional[str],
    approval_number: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str], Optional[str], Optional[str]]:
    """
    Split a label's combined type/variant/version code.

    Returns (approval_number, type, variant, version). Two layouts are known:
      "E1*2001/116*0342*00 / ABCDE / FGHIJ"  approval / variant / version
      "225CXE1A TFB7R"                        3-char type, 5-char variant, rest version
    """
    tip = variant = version = None
    if not combined:
        return approval_number, tip, variant, version

    parts = combined.split(" / ")
    if len(parts) == 3:
        from_combined = clean_approval_number(parts[0].strip())
        if from_combined and len(from_combined) > len(approval_number or ""):
            approval_number = from_combined
        second = parts[1].strip()
        second_split = second.split()
        if len(second_split) > 1 and len(second_split[0]) <= 3:
            tip = second_split[0].upper()[:3]
            variant = "".join(second_split[1:])
        else:
            tip = second.upper()[:3]
            variant = second
        version = parts[2].strip() or None
        return approval_number, tip, variant or None, version

    compact = re.sub(r"\s+", "", combined).upper()
    if len(compact) >= 3:
        tip = compact[:3]
        if len(compact) >= 8:
            variant = compact[3:8]
            if len(compact) > 8:
                version = compact[8:]
        elif len(compact) > 3:
            variant = compact[3:]
    elif compact:
        variant = compact
    return approval_number, tip, variant, version


def normalize_label_fields(
    chassis_number: Optional[str],
    brand: Optional[str],
    approval_number: Optional[str],
    combined_code: Optional[str],
) -> VehicleFields:
    approval, tip, variant, version = split_label_code(
        clean_value(combined_code), clean_approval_number(approval_number)
    )
    return VehicleFields(
        chassis_number=clean_value(chassis_number),
        brand=clean_value(brand),
        type_approval_number=approval,
        type=tip,
        type_and_variant=variant,
        version=version,
    )


def _first_match(patterns: List[str], text: str) -> Optional[str]:
    for pattern in patterns:
        match = re.search(pattern, text, flags=re.IGNORECASE)
        if match:
            value = clean_value(match.group(1))
            if value:
                return value
    return None


def parse_registration_text(text: str) -> VehicleFields:
    """Registration certificate OCR text -> vehicle fields."""
    text = text or ""
    found = {key: _first_match(patterns, text) for key, patterns in REGISTRATION_PATTERNS.items()}

    chassis = found["chassis_number"]
    if not chassis:
        vin = VIN_PATTERN.search(text.upper())
        chassis = vin.group(1) if vin else None

    owner_parts = [p for p in (found["owner_name"], found["owner_surname"]) if p]
    plate = found["plate_number"]
    return VehicleFields(
        chassis_number=chassis.upper() if chassis else None,
        brand=found["brand"],
        type=found["type"],
        trade_name=found["trade_name"],
        owner=" ".join(owner_parts) or None,
        plate_number=re.sub(r"\s+", " ", plate).upper() if plate else None,
        type_approval_number=clean_approval_number(found["type_approval_number"]),
    )


def parse_label_text(text: str) -> VehicleFields:
    """Manufacturer label OCR text -> vehicle fields."""
    text = text or ""
    vin = VIN_PATTERN.search(text.upper())
    approval = APPROVAL_PATTERN.search(text)

    combined = None
    for line in text.splitlines():
        line = line.strip()
        if not line or (vin and vin.group(1) in line.upper()):
            continue
        if " / " in line and line.count(" / ") == 2:
            combined = line
            break
        compact = re.sub(r"\s+", "", line.upper())
        if (
            combined is None
            and re.fullmatch(r"[A-Z0-9]{3,}(?:\s+[A-Z0-9]{2,})?", line.upper())
            and len(compact) >= 8
            and re.search(r"\d", compact)
            and re.search(r"[A-Z]", compact)
        ):
            combined = line

    return normalize_label_fields(
        chassis_number=vin.group(1) if vin else None,
        brand=None,
        approval_number=approval.group(1) if approval else None,
        combined_code=combined,
    )


# --------------------
# Backends
# --------------------

class Extractor(ABC):
    """Turns one document image into candidate vehicle fields."""

    name = "base"

    @abstractmethod
    def extract(self, document: LiveHandle, kind: DocumentKind) -> VehicleFields:
        """Return candidate fields; raise ExtractionError (or a subclass) on failure."""


class TesseractExtractor(Extractor):
    name = "tesseract"

    def __init__(self, lang: Optional[str] = None) -> None:
        self.lang = lang or settings.tesseract_lang

    def extract(self, document: LiveHandle, kind: DocumentKind) -> VehicleFields:
        image = load_image(document)
        try:
            text = pytesseract.image_to_string(image, lang=self.lang, config="--psm 6") or ""
        except pytesseract.TesseractNotFoundError as exc:
            raise ServiceUnavailableError("Tesseract OCR binary not found") from exc
        except (pytesseract.TesseractError, RuntimeError) as exc:
            logger.exception("Tesseract failed on %s", document.name)
            raise ExtractionError(f"OCR extraction failed: {exc}") from exc

        logger.debug("OCR text for %s (%s chars)", document.name, len(text))
        if kind == DocumentKind.LABEL:
            return parse_label_text(text)
        return parse_registration_text(text)


REGISTRATION_PROMPT = """You read Turkish vehicle registration certificates (ruhsat).
Return a JSON object with these keys, using null when a value is not visible:
chassis_number (E / Şase No), brand (D.1 / Markası), type (D.2 / Tipi),
trade_name (D.3 / Ticari Adı), owner (C.1.2 Adı followed by C.1.1 Soyadı),
plate_number (A / Plaka), type_approval_number (K / Tip Onay No).
Never guess a value that is not printed on the document."""

LABEL_PROMPT = """You read vehicle manufacturer labels.
Return a JSON object with these keys, using null when a value is not visible:
chassis_number (VIN), brand, type_approval_number (for example e1*2007/46*0001*00),
combined_code (the type / variant / version text, for example "225CXE1A TFB7R"
or "E1*2001/116*0342*00 / ABCDE / FGHIJ").
Never guess a value that is not printed on the label."""


def is_unavailable_error(exc: Exception) -> bool:
    status = getattr(exc, "status_code", None)
    if status in (500, 502, 503, 504, 529):
        return True
    message = str(exc).lower()
    return any(m in message for m in ("503", "overloaded", "service unavailable", "internal server error"))


class OllamaExtractor(Extractor):
    name = "ollama"

    def __init__(self, model: Optional[str] = None, host: Optional[str] = None, client=None) -> None:
        self.model = model or settings.ollama_vision_model
        self.client = client or ollama.Client(host=host or settings.ollama_host)

    def _chat(self, prompt: str, image_bytes: bytes) -> Dict:
        try:
            response = self.client.chat(
                model=self.model,
                messages=[{"role": "user", "content": prompt, "images": [image_bytes]}],
                format="json",
                options={"temperature": 0},
            )
        except ollama.ResponseError as exc:
            if is_unavailable_error(exc):
                raise ServiceUnavailableError(f"Extraction model unavailable: {exc}") from exc
            raise ExtractionError(f"Extraction model error: {exc}") from exc
        except (ConnectionError, httpx.TransportError) as exc:
            raise ServiceUnavailableError(f"Extraction service unreachable: {exc}") from exc

        content = response["message"]["content"] or ""
        try:
            payload = json.loads(content)
        except ValueError as exc:
            raise ExtractionError("Extraction model returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise ExtractionError("Extraction model returned a non-object response")
        return payload

    def extract(self, document: LiveHandle, kind: DocumentKind) -> VehicleFields:
        image_bytes = encode_png(load_image(document))
        if kind == DocumentKind.LABEL:
            payload = self._chat(LABEL_PROMPT, image_bytes)
            return normalize_label_fields(
                chassis_number=payload.get("chassis_number"),
                brand=payload.get("brand"),
                approval_number=payload.get("type_approval_number"),
                combined_code=payload.get("combined_code"),
            )

        payload = self._chat(REGISTRATION_PROMPT, image_bytes)
        fields = {key: clean_value(payload.get(key)) for key in VehicleFields.model_fields}
        fields["type_approval_number"] = clean_approval_number(fields.get("type_approval_number"))
        return VehicleFields(**fields)


def build_extractor(backend: Optional[str] = None) -> Extractor:
    backend = (backend or settings.extractor_backend).lower()
    if backend == "ollama":
        return OllamaExtractor()
    if backend == "tesseract":
        return TesseractExtractor()
    raise ValueError(f"Unknown extractor backend: {backend}")
