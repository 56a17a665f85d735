from __future__ import annotations

import base64

import pytest

from orchestrator import mcp_clients
from orchestrator.errors import CollaboratorError
from orchestrator.models import ReferenceImage


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class DummyClient:
    def __init__(self, responses: dict) -> None:
        self.responses = responses
        self.calls: list[tuple[str, dict]] = []

    def call(self, name: str, args: dict) -> dict:
        self.calls.append((name, args))
        return self.responses.get(name, {})


def _patch_client(monkeypatch, dummy, seen=None):
    def factory(url, timeout_sec=None, transport="http"):
        if seen is not None:
            seen.append((url, transport))
        return dummy

    monkeypatch.setattr(mcp_clients, "_make_client", factory)


def test_image_client_uses_remote_client_for_sse(monkeypatch):
    dummy = DummyClient({"image_generate": {"data_b64": _b64(b"png-bytes"), "mime_type": "image/png"}})
    seen = []
    monkeypatch.setenv("MCP_IMAGE_URL", "http://mcp-image:7101/mcp/sse")
    monkeypatch.setenv("MCP_TRANSPORT", "sse")
    _patch_client(monkeypatch, dummy, seen)

    client = mcp_clients.ImageClient()
    refs = [ReferenceImage(b"jpeg", "image/jpeg"), ReferenceImage(error="download failed")]
    data, mime = client.generate_image("a bridge at dawn", refs)

    assert (data, mime) == (b"png-bytes", "image/png")
    assert seen == [("http://mcp-image:7101/mcp/sse", "sse")]
    name, args = dummy.calls[0]
    assert name == "image_generate"
    assert args["prompt"] == "a bridge at dawn"
    assert args["reference_images"] == [{"data_b64": _b64(b"jpeg"), "mime_type": "image/jpeg"}]


def test_image_client_disabled_without_url(monkeypatch):
    monkeypatch.delenv("MCP_IMAGE_URL", raising=False)
    client = mcp_clients.ImageClient()
    assert not client.enabled
    with pytest.raises(CollaboratorError):
        client.generate_image("x")


def test_image_client_rejects_missing_data(monkeypatch):
    _patch_client(monkeypatch, DummyClient({"image_generate": {"mime_type": "image/png"}}))
    with pytest.raises(CollaboratorError):
        mcp_clients.ImageClient(url="http://mcp-image/mcp").generate_image("x")


def test_speech_client_yields_chunks(monkeypatch):
    chunks = [
        {"data_b64": _b64(b"\x01\x02" * 100), "mime_type": "audio/L16;rate=24000"},
        {"data_b64": _b64(b"\x03\x04" * 100), "mime_type": "audio/L16;rate=24000"},
    ]
    dummy = DummyClient({"tts_synthesize": {"chunks": chunks}})
    monkeypatch.delenv("TTS_TRANSPORT", raising=False)
    monkeypatch.delenv("MCP_TRANSPORT", raising=False)
    seen = []
    _patch_client(monkeypatch, dummy, seen)

    client = mcp_clients.SpeechClient(url="http://mcp-tts:7102/mcp")
    out = list(client.synthesize("Once upon a time.", "narrator"))

    assert client.enabled and client.mode == "http"
    assert seen == [("http://mcp-tts:7102/mcp", "http")]
    assert [c.data for c in out] == [b"\x01\x02" * 100, b"\x03\x04" * 100]
    assert dummy.calls == [("tts_synthesize", {"text": "Once upon a time.", "voice_id": "narrator"})]


def test_speech_client_accepts_single_chunk_reply(monkeypatch):
    dummy = DummyClient({"tts_synthesize": {"data_b64": _b64(b"RIFF...."), "mime_type": "audio/wav"}})
    _patch_client(monkeypatch, dummy)
    out = list(mcp_clients.SpeechClient(url="http://tts/mcp", mode="http").synthesize("hi"))
    assert [(c.data, c.mime_type) for c in out] == [(b"RIFF....", "audio/wav")]


def test_speech_client_disabled(monkeypatch):
    monkeypatch.delenv("MCP_TTS_URL", raising=False)
    monkeypatch.delenv("TTS_TRANSPORT", raising=False)
    assert not mcp_clients.SpeechClient().enabled
    assert not mcp_clients.SpeechClient(url="http://tts/mcp", mode="disabled").enabled
    with pytest.raises(CollaboratorError):
        list(mcp_clients.SpeechClient().synthesize("hi"))


def test_speech_client_local_wraps_engine_errors(monkeypatch):
    def broken_run(cmd, input=None, check=False, timeout=None):
        raise FileNotFoundError("piper")

    monkeypatch.setattr("subprocess.run", broken_run)
    client = mcp_clients.SpeechClient(mode="local")
    client.service.engine = "piper"
    with pytest.raises(CollaboratorError, match="local TTS failed: FileNotFoundError"):
        list(client.synthesize("hello"))


def test_unwrap_structured_result():
    assert mcp_clients._unwrap({"result": {"a": 1}}) == {"a": 1}
    assert mcp_clients._unwrap({"a": 1}) == {"a": 1}
    with pytest.raises(CollaboratorError):
        mcp_clients._unwrap(["nope"])
