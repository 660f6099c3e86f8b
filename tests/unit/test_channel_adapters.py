"""Tests for the four provider adapters (outbound)."""

from __future__ import annotations

import json

import httpx
import pytest

from omnigate.channels.evolution import EvolutionAdapter
from omnigate.channels.meta import MetaAdapter
from omnigate.channels.telegram import TelegramAdapter
from omnigate.channels.whatsapp_cloud import WhatsAppCloudAdapter, normalize_audio_mime
from omnigate.errors import ChannelConfigError, ExternalApiError
from omnigate.models import MediaUpload
from tests.conftest import recording_transport

EVOLUTION_URL = "https://evo.example.com"


class TestEvolutionAdapter:
    def _ok(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"key": {"id": "EVO-1", "remoteJid": "x"}})

    def test_requires_configured_base_url(self) -> None:
        with pytest.raises(ChannelConfigError):
            EvolutionAdapter(httpx.AsyncClient(), "", "key", "inst")

    @pytest.mark.parametrize(("remote", "target"), [
        ("258843210987@s.whatsapp.net", "258843210987"),
        ("120363025@g.us", "120363025@g.us"),
        ("99887766@lid", "99887766@lid"),
    ])
    def test_target_for(self, remote: str, target: str) -> None:
        adapter = EvolutionAdapter(httpx.AsyncClient(), EVOLUTION_URL, "key", "inst")
        assert adapter.target_for(remote) == target

    @pytest.mark.asyncio
    async def test_send_text(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "secret-key", "inst")
            result = await adapter.send_text("258843210987", "Oi!")
        assert result.external_id == "EVO-1"
        request = transport.requests[0]
        assert request.url.path == "/message/sendText/inst"
        assert request.headers["apikey"] == "secret-key"
        assert transport.json_bodies()[0] == {"number": "258843210987", "text": "Oi!"}

    @pytest.mark.asyncio
    async def test_send_document_includes_filename(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "k", "inst")
            await adapter.send_media(
                "258843210987", "https://cdn.example.com/files/report.pdf", "document",
                caption="Q3",
            )
        body = transport.json_bodies()[0]
        assert transport.paths() == ["/message/sendMedia/inst"]
        assert body["mediatype"] == "document"
        assert body["fileName"] == "report.pdf"
        assert body["caption"] == "Q3"

    @pytest.mark.asyncio
    async def test_audio_falls_back_to_send_media(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if "sendWhatsAppAudio" in request.url.path:
                return httpx.Response(400, json={"message": "ptt unsupported"})
            return self._ok(request)

        transport = recording_transport(respond)
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "k", "inst")
            result = await adapter.send_media("258843210987", "https://cdn/a.ogg", "audio")
        assert transport.paths() == [
            "/message/sendWhatsAppAudio/inst", "/message/sendMedia/inst",
        ]
        assert transport.json_bodies()[1]["mediatype"] == "audio"
        assert result.external_id == "EVO-1"

    @pytest.mark.asyncio
    async def test_audio_mime_goes_out_as_voice_note(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "k", "inst")
            await adapter.send_media("258843210987", "https://cdn/a.ogg", "audio/ogg")
        assert transport.paths() == ["/message/sendWhatsAppAudio/inst"]
        assert transport.json_bodies()[0]["audio"] == "https://cdn/a.ogg"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("media_type", "expected"), [
        ("image/jpeg", "image"),
        ("video/mp4", "video"),
        ("application/pdf", "document"),
        ("image", "image"),
    ])
    async def test_mime_types_map_to_mediatype(self, media_type: str, expected: str) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "k", "inst")
            await adapter.send_media("258843210987", "https://cdn/f", media_type)
        assert transport.paths() == ["/message/sendMedia/inst"]
        assert transport.json_bodies()[0]["mediatype"] == expected

    @pytest.mark.asyncio
    async def test_sticker(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "k", "inst")
            await adapter.send_media("258843210987", "https://cdn/s.webp", "sticker")
        assert transport.paths() == ["/message/sendSticker/inst"]
        assert transport.json_bodies()[0]["sticker"] == "https://cdn/s.webp"

    @pytest.mark.asyncio
    async def test_error_carries_provider_message(self) -> None:
        transport = recording_transport(
            lambda r: httpx.Response(500, json={"message": "instance not connected"}),
        )
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "k", "inst")
            with pytest.raises(ExternalApiError) as exc_info:
                await adapter.send_text("258843210987", "Oi!")
        assert exc_info.value.status == 500
        assert exc_info.value.details == "instance not connected"
        assert exc_info.value.provider == "evolution"

    @pytest.mark.asyncio
    async def test_delete_missing_instance_is_ok(self) -> None:
        transport = recording_transport(lambda r: httpx.Response(404, json={"message": "nope"}))
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "k", "inst")
            result = await adapter.delete_instance()
        assert result["success"] is True
        assert transport.paths() == ["/instance/logout/inst", "/instance/delete/inst"]

    @pytest.mark.asyncio
    async def test_set_webhook(self) -> None:
        transport = recording_transport(lambda r: httpx.Response(200, json={"ok": True}))
        async with transport.client() as client:
            adapter = EvolutionAdapter(client, EVOLUTION_URL, "k", "inst")
            await adapter.set_webhook("https://gw.example.com/webhook/evolution/C1")
        body = transport.json_bodies()[0]
        assert transport.paths() == ["/webhook/set/inst"]
        assert "MESSAGES_UPSERT" in body["events"]


class TestWhatsAppCloudAdapter:
    def _ok(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/media"):
            return httpx.Response(200, json={"id": "MEDIA-9"})
        return httpx.Response(200, json={"messages": [{"id": "wamid.XYZ"}]})

    def test_target_is_digits(self) -> None:
        adapter = WhatsAppCloudAdapter(httpx.AsyncClient(), "PNID", "tok")
        assert adapter.target_for("258843210987@s.whatsapp.net") == "258843210987"

    @pytest.mark.asyncio
    async def test_send_text(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = WhatsAppCloudAdapter(client, "PNID", "tok")
            result = await adapter.send_text("258843210987", "Oi!")
        assert result.external_id == "wamid.XYZ"
        assert transport.requests[0].headers["authorization"] == "Bearer tok"
        assert transport.json_bodies()[0] == {
            "messaging_product": "whatsapp",
            "to": "258843210987",
            "type": "text",
            "text": {"body": "Oi!"},
        }

    @pytest.mark.asyncio
    async def test_image_link_with_caption(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = WhatsAppCloudAdapter(client, "PNID", "tok")
            await adapter.send_media("1", "https://cdn/p.jpg", "image/jpeg", caption="look")
        body = transport.json_bodies()[0]
        assert body["type"] == "image"
        assert body["image"] == {"link": "https://cdn/p.jpg", "caption": "look"}

    @pytest.mark.asyncio
    async def test_audio_drops_caption(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = WhatsAppCloudAdapter(client, "PNID", "tok")
            await adapter.send_media("1", "https://cdn/a.ogg", "audio", caption="ignored")
        assert transport.json_bodies()[0]["audio"] == {"link": "https://cdn/a.ogg"}

    @pytest.mark.asyncio
    async def test_upload_then_send_by_id(self) -> None:
        transport = recording_transport(self._ok)
        upload = MediaUpload(content=b"voice", mime_type="audio/webm", filename="rec.webm")
        async with transport.client() as client:
            adapter = WhatsAppCloudAdapter(client, "PNID", "tok")
            await adapter.send_media("1", "https://cdn/a.webm", "audio", upload=upload)

        upload_request, send_request = transport.requests
        assert upload_request.url.path.endswith("/PNID/media")
        assert b"audio/ogg" in upload_request.content
        assert b'filename="audio.ogg"' in upload_request.content
        assert json.loads(send_request.content)["audio"] == {"id": "MEDIA-9"}
        assert send_request.url.path.endswith("/PNID/messages")

    @pytest.mark.asyncio
    async def test_upload_failure_falls_back_to_link(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/media"):
                return httpx.Response(400, json={"error": {"message": "bad file"}})
            return self._ok(request)

        transport = recording_transport(respond)
        upload = MediaUpload(content=b"img", mime_type="image/png")
        async with transport.client() as client:
            adapter = WhatsAppCloudAdapter(client, "PNID", "tok")
            result = await adapter.send_media("1", "https://cdn/p.png", "image", upload=upload)
        assert result.external_id == "wamid.XYZ"
        assert json.loads(transport.requests[1].content)["image"]["link"] == "https://cdn/p.png"

    @pytest.mark.parametrize(("mime", "expected"), [
        ("audio/webm", "audio/ogg"),
        ("audio/webm;codecs=opus", "audio/ogg"),
        ("audio/mpeg", "audio/mpeg"),
        ("audio/wav", "audio/ogg"),
    ])
    def test_normalize_audio_mime(self, mime: str, expected: str) -> None:
        assert normalize_audio_mime(mime) == expected

    @pytest.mark.asyncio
    async def test_graph_error_detail(self) -> None:
        transport = recording_transport(
            lambda r: httpx.Response(400, json={"error": {"message": "Invalid parameter"}}),
        )
        async with transport.client() as client:
            adapter = WhatsAppCloudAdapter(client, "PNID", "tok")
            with pytest.raises(ExternalApiError) as exc_info:
                await adapter.send_text("1", "x")
        assert exc_info.value.details == "Invalid parameter"


class TestMetaAdapter:
    def _ok(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"recipient_id": "PSID", "message_id": "m_1"})

    @pytest.mark.asyncio
    async def test_text_to_page(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            adapter = MetaAdapter(client, "page-tok", page_id="PAGE1")
            result = await adapter.send_text("PSID", "Oi!")
        request = transport.requests[0]
        assert request.url.path == "/v21.0/PAGE1/messages"
        assert request.url.params["access_token"] == "page-tok"
        assert transport.json_bodies()[0] == {
            "recipient": {"id": "PSID"}, "message": {"text": "Oi!"},
        }
        assert result.external_id == "m_1"

    @pytest.mark.asyncio
    async def test_without_page_id_uses_me(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            await MetaAdapter(client, "tok").send_text("PSID", "x")
        assert transport.paths() == ["/v21.0/me/messages"]

    @pytest.mark.asyncio
    async def test_media_without_caption_is_one_call(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            await MetaAdapter(client, "tok", "PAGE1").send_media("PSID", "https://cdn/v.mp4", "video")
        assert len(transport.requests) == 1
        attachment = transport.json_bodies()[0]["message"]["attachment"]
        assert attachment == {
            "type": "video", "payload": {"url": "https://cdn/v.mp4", "is_reusable": True},
        }

    @pytest.mark.asyncio
    async def test_media_with_caption_is_two_calls(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            await MetaAdapter(client, "tok", "PAGE1").send_media(
                "PSID", "https://cdn/doc.pdf", "document", caption="invoice",
            )
        bodies = transport.json_bodies()
        assert len(bodies) == 2
        assert bodies[0]["message"]["attachment"]["type"] == "file"
        assert bodies[1]["message"] == {"text": "invoice"}

    @pytest.mark.asyncio
    async def test_failed_caption_does_not_fail_send(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if b'"text"' in request.content:
                return httpx.Response(400, json={"error": {"message": "window closed"}})
            return self._ok(request)

        transport = recording_transport(respond)
        async with transport.client() as client:
            result = await MetaAdapter(client, "tok", "PAGE1").send_media(
                "PSID", "https://cdn/p.jpg", "image", caption="hi",
            )
        assert result.external_id == "m_1"


class TestTelegramAdapter:
    def _ok(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 77}})

    @pytest.mark.asyncio
    async def test_send_text(self) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            result = await TelegramAdapter(client, "123:ABC").send_text("-100200", "Oi!")
        assert transport.paths() == ["/bot123:ABC/sendMessage"]
        assert transport.json_bodies()[0] == {"chat_id": "-100200", "text": "Oi!"}
        assert result.external_id == "77"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("media_type", "method", "field"), [
        ("image", "sendPhoto", "photo"),
        ("video/mp4", "sendVideo", "video"),
        ("audio", "sendAudio", "audio"),
        ("document", "sendDocument", "document"),
    ])
    async def test_media_methods(self, media_type: str, method: str, field: str) -> None:
        transport = recording_transport(self._ok)
        async with transport.client() as client:
            await TelegramAdapter(client, "1:T").send_media(
                "42", "https://cdn/x", media_type, caption="c",
            )
        assert transport.paths() == [f"/bot1:T/{method}"]
        assert transport.json_bodies()[0] == {"chat_id": "42", field: "https://cdn/x", "caption": "c"}

    @pytest.mark.asyncio
    async def test_ok_false_raises(self) -> None:
        transport = recording_transport(
            lambda r: httpx.Response(200, json={"ok": False, "description": "chat not found"}),
        )
        async with transport.client() as client:
            with pytest.raises(ExternalApiError) as exc_info:
                await TelegramAdapter(client, "1:T").send_text("42", "x")
        assert exc_info.value.details == "chat not found"

    @pytest.mark.asyncio
    async def test_transport_error_raises(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        transport = recording_transport(respond)
        async with transport.client() as client:
            with pytest.raises(ExternalApiError) as exc_info:
                await TelegramAdapter(client, "1:T").send_text("42", "x")
        assert exc_info.value.status is None
