"""Tests for provider webhook parsing and verification helpers."""

from __future__ import annotations

import hashlib
import hmac

from omnigate.channels import evolution, meta, telegram, whatsapp_cloud
from omnigate.channels.base import handle_verification, verify_hub_signature


def _evolution_upsert(**item: object) -> dict:
    data = {
        "key": {"remoteJid": "258843210987@s.whatsapp.net", "fromMe": False, "id": "3EB0A1"},
        "pushName": "Maria",
        "message": {"conversation": "Olá"},
    }
    data.update(item)
    return {"event": "messages.upsert", "instance": "inst-1", "data": data}


class TestEvolutionExtraction:
    def test_text_message(self) -> None:
        [msg] = evolution.extract_messages(_evolution_upsert())
        assert msg.remote_identifier == "258843210987@s.whatsapp.net"
        assert msg.external_id == "3EB0A1"
        assert msg.text == "Olá"
        assert msg.contact_name == "Maria"
        assert msg.phone == "258843210987"

    def test_uppercase_event_name(self) -> None:
        payload = _evolution_upsert()
        payload["event"] = "MESSAGES_UPSERT"
        assert len(evolution.extract_messages(payload)) == 1

    def test_own_messages_skipped(self) -> None:
        payload = _evolution_upsert(key={"remoteJid": "1@s.whatsapp.net", "fromMe": True, "id": "x"})
        assert evolution.extract_messages(payload) == []

    def test_group_messages_skipped(self) -> None:
        payload = _evolution_upsert(key={"remoteJid": "12036@g.us", "fromMe": False, "id": "x"})
        assert evolution.extract_messages(payload) == []

    def test_image_with_caption(self) -> None:
        payload = _evolution_upsert(message={
            "imageMessage": {"url": "https://mmg.whatsapp.net/i.enc", "caption": "olha"},
        })
        [msg] = evolution.extract_messages(payload)
        assert msg.media_type == "image"
        assert msg.media_url == "https://mmg.whatsapp.net/i.enc"
        assert msg.text == "olha"

    def test_extended_text(self) -> None:
        payload = _evolution_upsert(message={"extendedTextMessage": {"text": "link"}})
        assert evolution.extract_messages(payload)[0].text == "link"

    def test_missing_push_name_falls_back_to_phone(self) -> None:
        payload = _evolution_upsert(pushName=None)
        assert evolution.extract_messages(payload)[0].contact_name == "258843210987"

    def test_list_payload(self) -> None:
        first = _evolution_upsert()["data"]
        second = {**first, "key": {**first["key"], "id": "3EB0A2"}}
        payload = {"event": "messages.upsert", "data": [first, second]}
        assert [m.external_id for m in evolution.extract_messages(payload)] == ["3EB0A1", "3EB0A2"]

    def test_other_events_yield_nothing(self) -> None:
        assert evolution.extract_messages({"event": "connection.update", "data": {}}) == []

    def test_event_name(self) -> None:
        assert evolution.event_name({"event": "QRCODE_UPDATED"}) == "qrcode.updated"


class TestCloudExtraction:
    def _payload(self, message: dict) -> dict:
        return {
            "object": "whatsapp_business_account",
            "entry": [{"changes": [{"value": {
                "contacts": [{"wa_id": "258843210987", "profile": {"name": "Maria"}}],
                "messages": [message],
            }}]}],
        }

    def test_text(self) -> None:
        [msg] = whatsapp_cloud.extract_messages(self._payload({
            "from": "258843210987", "id": "wamid.IN", "type": "text", "text": {"body": "Oi"},
        }))
        assert msg.remote_identifier == "258843210987@s.whatsapp.net"
        assert msg.contact_name == "Maria"
        assert msg.external_id == "wamid.IN"
        assert msg.text == "Oi"

    def test_image_caption(self) -> None:
        [msg] = whatsapp_cloud.extract_messages(self._payload({
            "from": "258843210987", "id": "wamid.IMG", "type": "image",
            "image": {"id": "MEDIA1", "caption": "foto"},
        }))
        assert msg.media_type == "image"
        assert msg.text == "foto"

    def test_status_updates_ignored(self) -> None:
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.X"}]}}]}]}
        assert whatsapp_cloud.extract_messages(payload) == []


class TestMetaExtraction:
    def test_text_message(self) -> None:
        payload = {"object": "page", "entry": [{"messaging": [{
            "sender": {"id": "PSID-1"}, "recipient": {"id": "PAGE1"},
            "message": {"mid": "m_in", "text": "Oi"},
        }]}]}
        [msg] = meta.extract_messages(payload)
        assert msg.remote_identifier == "PSID-1"
        assert msg.external_id == "m_in"
        assert msg.text == "Oi"

    def test_echo_skipped(self) -> None:
        payload = {"entry": [{"messaging": [{
            "sender": {"id": "PAGE1"}, "message": {"mid": "m_out", "text": "x", "is_echo": True},
        }]}]}
        assert meta.extract_messages(payload) == []

    def test_file_attachment_is_document(self) -> None:
        payload = {"entry": [{"messaging": [{
            "sender": {"id": "IGSID"},
            "message": {"mid": "m_f", "attachments": [
                {"type": "file", "payload": {"url": "https://cdn/f.pdf"}},
            ]},
        }]}]}
        [msg] = meta.extract_messages(payload)
        assert msg.media_type == "document"
        assert msg.media_url == "https://cdn/f.pdf"

    def test_attachment_type_mapping(self) -> None:
        assert meta.attachment_type("image/png") == "image"
        assert meta.attachment_type("document") == "file"
        assert meta.attachment_type("sticker") == "file"


class TestTelegramExtraction:
    def test_message(self) -> None:
        msg = telegram.extract_message({"update_id": 1, "message": {
            "message_id": 9, "chat": {"id": -100200},
            "from": {"first_name": "Ana", "last_name": "Silva"}, "text": "Oi",
        }})
        assert msg is not None
        assert msg.remote_identifier == "-100200"
        assert msg.external_id == "9"
        assert msg.contact_name == "Ana Silva"

    def test_voice_is_audio(self) -> None:
        msg = telegram.extract_message({"message": {
            "message_id": 10, "chat": {"id": 42}, "from": {"username": "ana"}, "voice": {},
        }})
        assert msg.media_type == "audio"
        assert msg.contact_name == "ana"

    def test_non_message_update(self) -> None:
        assert telegram.extract_message({"update_id": 2, "callback_query": {}}) is None

    def test_secret_verification(self) -> None:
        secret = telegram.webhook_secret("123:ABC")
        assert secret == hashlib.sha256(b"123:ABC").hexdigest()
        assert telegram.verify_webhook("123:ABC", {"x-telegram-bot-api-secret-token": secret})
        assert not telegram.verify_webhook("123:ABC", {"x-telegram-bot-api-secret-token": "x"})
        assert not telegram.verify_webhook("123:ABC", {})


class TestGraphVerification:
    def test_hub_signature(self) -> None:
        body = b'{"object":"page"}'
        digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
        assert verify_hub_signature("app-secret", {"x-hub-signature-256": f"sha256={digest}"}, body)
        assert not verify_hub_signature("app-secret", {"x-hub-signature-256": f"sha256={digest}"}, b"{}")
        assert not verify_hub_signature("app-secret", {}, body)

    def test_subscribe_challenge(self) -> None:
        params = {"hub.mode": "subscribe", "hub.verify_token": "vt", "hub.challenge": "123"}
        assert handle_verification("vt", params) == (200, "123")

    def test_wrong_verify_token(self) -> None:
        params = {"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "123"}
        assert handle_verification("vt", params) == (403, "Invalid verify token")

    def test_unconfigured_verify_token_rejects(self) -> None:
        params = {"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "1"}
        assert handle_verification("", params)[0] == 403

    def test_not_a_subscribe(self) -> None:
        assert handle_verification("vt", {}) is None
