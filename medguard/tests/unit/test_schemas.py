from __future__ import annotations

from pydantic import BaseModel

from medguard.apps.api.routes.devices import DeviceRegisterRequest
from medguard.apps.api.schemas import SanitizedModel, sanitize_payload, sanitize_text


class NoteRequest(SanitizedModel):
    title: str
    tags: list[str] = []
    extra: dict[str, str] = {}


def test_sanitize_text_strips_markup_and_handlers() -> None:
    assert sanitize_text("  <b>hello</b> ") == "bhello/b"
    assert sanitize_text("javascript:alert(1)") == "alert(1)"
    assert sanitize_text('img onerror=steal()') == "img steal()"
    assert sanitize_text("Blood pressure 120/80") == "Blood pressure 120/80"


def test_sanitize_payload_walks_nested_values() -> None:
    payload = {"a": ["<x>", {"b": " JavaScript:y "}], "n": 5, "flag": True}
    assert sanitize_payload(payload) == {"a": ["x", {"b": "y"}], "n": 5, "flag": True}


def test_sanitized_model_cleans_every_string_field() -> None:
    note = NoteRequest.model_validate(
        {"title": "<script>Visit</script>", "tags": ["onload=x", "ok"], "extra": {"k": "<v>"}}
    )
    assert note.title == "scriptVisit/script"
    assert note.tags == ["x", "ok"]
    assert note.extra == {"k": "v"}


def test_device_registration_keeps_public_key_intact() -> None:
    pem = "-----BEGIN PUBLIC KEY-----\nMIIBIjANBgkqhkiG9w0BAQEFAAOC+onAB=\n-----END PUBLIC KEY-----\n"
    request = DeviceRegisterRequest.model_validate(
        {"serial_number": "<SN-1>", "name": "Pump", "device_type": "pump", "public_key_pem": pem}
    )
    assert request.serial_number == "SN-1"
    assert request.public_key_pem == pem
    assert not issubclass(DeviceRegisterRequest, SanitizedModel) and issubclass(DeviceRegisterRequest, BaseModel)
