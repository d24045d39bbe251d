"""
Attachment handling: live uploads vs. persisted descriptors, image decoding
for the extractors, and preview tokens for attachments held in memory.
"""
from __future__ import annotations

import logging
import threading
import uuid
from io import BytesIO
from typing import Dict, List, Optional

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from vehicle_intake.errors import FileHandlingError
from vehicle_intake.schemas import LiveHandle, Record, RecordFields
from vehicle_intake.settings import settings

logger = logging.getLogger(__name__)

SINGLE_ATTACHMENT_FIELDS = ("registration_document", "label_document", "type_approval_document")
MULTI_ATTACHMENT_FIELDS = ("additional_photos", "additional_videos")


def to_descriptor(attachment):
    if attachment is None:
        return None
    if isinstance(attachment, LiveHandle):
        return attachment.describe()
    return attachment


def project_fields(fields: RecordFields) -> Dict:
    """Attachment updates that turn every live handle in `fields` into a descriptor."""
    update: Dict = {}
    for name in SINGLE_ATTACHMENT_FIELDS:
        update[name] = to_descriptor(getattr(fields, name))
    for name in MULTI_ATTACHMENT_FIELDS:
        update[name] = [to_descriptor(a) for a in getattr(fields, name)]
    return update


def project_record(record: Record) -> Record:
    """Durable projection of a record: same fields, descriptors instead of bytes."""
    return record.model_copy(update=project_fields(record))


def live_handle_from_upload(filename: Optional[str], content_type: Optional[str], data: bytes) -> LiveHandle:
    if not data:
        raise FileHandlingError(f"Uploaded file '{filename or 'unnamed'}' is empty")
    if len(data) > settings.max_upload_bytes:
        raise FileHandlingError(
            f"Uploaded file '{filename}' exceeds {settings.max_upload_bytes} bytes"
        )
    return LiveHandle(name=filename or "upload", type=content_type, data=data)


def is_pdf(handle: LiveHandle) -> bool:
    return (handle.type or "").lower() == "application/pdf" or handle.data[:5] == b"%PDF-"


def render_pdf_first_page(data: bytes, dpi: Optional[int] = None) -> Image.Image:
    """Rasterize page 1 of a PDF to an RGB image."""
    zoom = float(dpi or settings.render_dpi) / 72.0
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise FileHandlingError(f"PDF could not be opened: {exc}") from exc
    try:
        if len(doc) < 1:
            raise FileHandlingError("PDF has no pages")
        pix = doc.load_page(0).get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
    finally:
        doc.close()


def load_image(handle: LiveHandle) -> Image.Image:
    """
    Decode an uploaded document into a PIL image.
    Raises FileHandlingError so a scan aborts before any service call.
    """
    if not handle.data:
        raise FileHandlingError(f"Document '{handle.name}' is empty")
    if is_pdf(handle):
        return render_pdf_first_page(handle.data)
    try:
        image = Image.open(BytesIO(handle.data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise FileHandlingError(f"Document '{handle.name}' is not a readable image: {exc}") from exc
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    return image


def encode_png(image: Image.Image) -> bytes:
    buffer = BytesIO()
    try:
        image.save(buffer, format="PNG")
    except OSError as exc:
        raise FileHandlingError(f"Image could not be encoded: {exc}") from exc
    return buffer.getvalue()


class PreviewRegistry:
    """
    Preview tokens for live attachments of one session.

    Tokens must be released when the attachment is superseded or the view
    goes away; released tokens stop resolving.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: Dict[str, LiveHandle] = {}
        self._slots: Dict[str, str] = {}

    def create(self, handle: LiveHandle, slot: Optional[str] = None) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            if slot is not None:
                previous = self._slots.pop(slot, None)
                if previous is not None:
                    self._handles.pop(previous, None)
                self._slots[slot] = token
            self._handles[token] = handle
        return token

    def get(self, token: str) -> Optional[LiveHandle]:
        with self._lock:
            return self._handles.get(token)

    def release(self, token: str) -> bool:
        with self._lock:
            found = self._handles.pop(token, None) is not None
            for slot, t in list(self._slots.items()):
                if t == token:
                    del self._slots[slot]
        return found

    def release_slot(self, slot: str) -> bool:
        with self._lock:
            token = self._slots.pop(slot, None)
            if token is None:
                return False
            self._handles.pop(token, None)
        return True

    def release_all(self) -> int:
        with self._lock:
            count = len(self._handles)
            self._handles.clear()
            self._slots.clear()
        if count:
            logger.debug("Released %s preview(s)", count)
        return count

    def tokens(self) -> List[str]:
        with self._lock:
            return list(self._handles.keys())
