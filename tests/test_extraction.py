import json
from io import BytesIO

import httpx
import ollama
import pytest
from PIL import Image

from vehicle_intake.attachments import PreviewRegistry, live_handle_from_upload, load_image
from vehicle_intake.errors import ExtractionError, FileHandlingError, ServiceUnavailableError
from vehicle_intake.extraction import (
    OllamaExtractor,
    clean_approval_number,
    is_unavailable_error,
    parse_label_text,
    parse_registration_text,
    split_label_code,
)
from vehicle_intake.schemas import DocumentKind, LiveHandle

REGISTRATION_TEXT = """TÜRKİYE CUMHURİYETİ ARAÇ TESCİL BELGESİ
(A) PLAKA: 34 ABC 123
(D.1) MARKA: FORD
(D.2) TİPİ: TRANSIT
(D.3) TİCARİ ADI: TRANSIT CUSTOM
(E) ŞASE NO: WF0XXXTTGXKY12345
(K) TİP ONAY NO: e1*2007/46*0001*00
(C.1.1) SOYADI: YILMAZ
(C.1.2) ADI: AHMET
"""

LABEL_TEXT = """FORD OTOSAN
WF0XXXTTGXKY12345
e1*2007/46*0001*00
225CXE1A TFB7R
"""


def png_handle(name="doc.png"):
    buffer = BytesIO()
    Image.new("RGB", (8, 8), "white").save(buffer, format="PNG")
    return LiveHandle(name=name, type="image/png", data=buffer.getvalue())


class FakeOllamaClient:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.requests = []

    def chat(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        return {"message": {"content": self.content}}


# --------------------
# post-processing
# --------------------

def test_clean_approval_number_keeps_letters_and_digits():
    assert clean_approval_number("e1*2007/46*0001*00") == "e1200746000100"
    assert clean_approval_number(" - ") is None
    assert clean_approval_number(None) is None


def test_split_compact_label_code():
    assert split_label_code("225CXE1A TFB7R") == (None, "225", "CXE1A", "TFB7R")


def test_split_short_label_code():
    assert split_label_code("225CX") == (None, "225", "CX", None)


def test_split_slash_separated_label_code():
    approval, tip, variant, version = split_label_code("E1*2001/116*0342*00 / ABCDE / FGHIJ")
    assert approval == "E12001116034200"
    assert tip == "ABC"
    assert variant == "ABCDE"
    assert version == "FGHIJ"


def test_split_keeps_longer_known_approval_number():
    approval, _, _, _ = split_label_code("E1 / ABCDE / FGHIJ", "e1200746000100")
    assert approval == "e1200746000100"


def test_split_slash_code_with_separate_type():
    _, tip, variant, _ = split_label_code("E1*2001/116*0342*00 / 225 CXE1A / TFB7R")
    assert tip == "225"
    assert variant == "CXE1A"


def test_parse_registration_text():
    fields = parse_registration_text(REGISTRATION_TEXT)

    assert fields.plate_number == "34 ABC 123"
    assert fields.brand == "FORD"
    assert fields.type == "TRANSIT"
    assert fields.trade_name == "TRANSIT CUSTOM"
    assert fields.chassis_number == "WF0XXXTTGXKY12345"
    assert fields.type_approval_number == "e1200746000100"
    assert fields.owner == "AHMET YILMAZ"


def test_parse_registration_text_leaves_missing_fields_empty():
    fields = parse_registration_text("nothing useful here")
    assert fields.model_dump() == {key: None for key in fields.model_dump()}


def test_parse_label_text():
    fields = parse_label_text(LABEL_TEXT)

    assert fields.chassis_number == "WF0XXXTTGXKY12345"
    assert fields.type_approval_number == "e1200746000100"
    assert fields.type == "225"
    assert fields.type_and_variant == "CXE1A"
    assert fields.version == "TFB7R"
    assert fields.owner is None


def test_is_unavailable_error():
    assert is_unavailable_error(ollama.ResponseError("busy", status_code=503))
    assert is_unavailable_error(RuntimeError("model is overloaded"))
    assert not is_unavailable_error(ollama.ResponseError("model not found", status_code=404))


# --------------------
# ollama backend
# --------------------

def test_ollama_registration_extraction():
    payload = {
        "chassis_number": "WF0XXXTTGXKY12345",
        "brand": " FORD ",
        "owner": "AHMET YILMAZ",
        "type_approval_number": "e1*2007/46*0001*00",
        "plate_number": None,
    }
    client = FakeOllamaClient(content=json.dumps(payload))

    fields = OllamaExtractor(model="llava", client=client).extract(png_handle(), DocumentKind.REGISTRATION)

    assert fields.brand == "FORD"
    assert fields.type_approval_number == "e1200746000100"
    assert fields.plate_number is None
    request = client.requests[0]
    assert request["format"] == "json"
    assert isinstance(request["messages"][0]["images"][0], bytes)


def test_ollama_label_extraction_splits_combined_code():
    payload = {"chassis_number": "WF0XXXTTGXKY12345", "combined_code": "225CXE1A TFB7R"}
    client = FakeOllamaClient(content=json.dumps(payload))

    fields = OllamaExtractor(model="llava", client=client).extract(png_handle(), DocumentKind.LABEL)

    assert (fields.type, fields.type_and_variant, fields.version) == ("225", "CXE1A", "TFB7R")


def test_ollama_overload_is_service_unavailable():
    client = FakeOllamaClient(error=ollama.ResponseError("overloaded", status_code=503))
    with pytest.raises(ServiceUnavailableError):
        OllamaExtractor(model="llava", client=client).extract(png_handle(), DocumentKind.LABEL)


def test_ollama_timeout_is_service_unavailable():
    client = FakeOllamaClient(error=httpx.ConnectTimeout("timed out"))
    with pytest.raises(ServiceUnavailableError):
        OllamaExtractor(model="llava", client=client).extract(png_handle(), DocumentKind.REGISTRATION)


def test_ollama_other_errors_are_extraction_errors():
    client = FakeOllamaClient(error=ollama.ResponseError("bad request", status_code=400))
    with pytest.raises(ExtractionError) as exc_info:
        OllamaExtractor(model="llava", client=client).extract(png_handle(), DocumentKind.LABEL)
    assert not isinstance(exc_info.value, ServiceUnavailableError)


def test_ollama_malformed_json():
    client = FakeOllamaClient(content="not json")
    with pytest.raises(ExtractionError):
        OllamaExtractor(model="llava", client=client).extract(png_handle(), DocumentKind.REGISTRATION)


def test_unreadable_document_fails_before_service_call():
    client = FakeOllamaClient(content="{}")
    with pytest.raises(FileHandlingError):
        OllamaExtractor(model="llava", client=client).extract(
            LiveHandle(name="x.png", type="image/png", data=b"not an image"), DocumentKind.LABEL
        )
    assert client.requests == []


# --------------------
# attachments
# --------------------

def test_load_image_decodes_png():
    assert load_image(png_handle()).size == (8, 8)


def test_live_handle_from_upload_rejects_empty_files():
    with pytest.raises(FileHandlingError):
        live_handle_from_upload("empty.jpg", "image/jpeg", b"")


def test_preview_registry_release():
    previews = PreviewRegistry()
    token = previews.create(png_handle())

    assert previews.get(token).name == "doc.png"
    assert previews.release(token) is True
    assert previews.get(token) is None
    assert previews.release(token) is False
