"""MCP clients for the image and speech collaborators."""
from __future__ import annotations

import base64
import binascii
import json
import os
import subprocess
import urllib.error
import urllib.request
from datetime import timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import anyio
from mcp.client.session import ClientSession
from mcp.client.sse import sse_client

from .errors import CollaboratorError
from .models import ReferenceImage, SpeechChunk


def _env_url(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


class MCPHttpClient:
    def __init__(self, url: str, timeout_sec: Optional[float] = None) -> None:
        self.url = url
        self.timeout_sec = float(timeout_sec or os.getenv("MCP_HTTP_TIMEOUT_SEC", "120"))

    def call(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "tools/call",
            "params": {"name": name, "arguments": args},
        }
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(self.url, data=data, headers={"Content-Type": "application/json"})
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            raise CollaboratorError(f"MCP HTTP {exc.code} {exc.reason}: {body}") from exc
        except (urllib.error.URLError, TimeoutError) as exc:
            raise CollaboratorError(f"MCP HTTP connection failed: {exc}") from exc
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise CollaboratorError(f"MCP HTTP returned invalid JSON: {exc}") from exc
        if "error" in parsed:
            raise CollaboratorError(str(parsed["error"]))
        return _unwrap(parsed.get("result", {}))


class MCPSSEClient:
    def __init__(self, url: str, timeout_sec: Optional[float] = None) -> None:
        self.url = url
        self.timeout_sec = float(timeout_sec or os.getenv("MCP_HTTP_TIMEOUT_SEC", "120"))
        self.read_timeout_sec = float(os.getenv("MCP_SSE_READ_TIMEOUT_SEC", "300"))

    def call(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return anyio.run(self._call_async, name, args)
        except CollaboratorError:
            raise
        except Exception as exc:
            raise CollaboratorError(f"MCP SSE call {name} failed: {type(exc).__name__}: {exc}") from exc

    async def _call_async(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        async with sse_client(
            self.url,
            timeout=self.timeout_sec,
            sse_read_timeout=self.read_timeout_sec,
        ) as (read_stream, write_stream):
            async with ClientSession(
                read_stream,
                write_stream,
                read_timeout_seconds=timedelta(seconds=self.read_timeout_sec),
            ) as session:
                await session.initialize()
                result = await session.call_tool(name, arguments=args)
                if result.isError:
                    raise CollaboratorError(f"MCP tool {name} reported an error: {result.content}")
                if result.structuredContent is not None:
                    return _unwrap(result.structuredContent)
                for item in result.content:
                    if getattr(item, "type", None) == "text":
                        try:
                            return _unwrap(json.loads(item.text))
                        except ValueError:
                            break
                raise CollaboratorError("MCP SSE response missing structured content")


def _unwrap(payload: Any) -> Dict[str, Any]:
    # FastMCP wraps dict results as {"result": {...}} in structured content.
    if isinstance(payload, dict) and isinstance(payload.get("result"), dict):
        return payload["result"]
    if isinstance(payload, dict):
        return payload
    raise CollaboratorError(f"unexpected MCP result type: {type(payload).__name__}")


def _transport() -> str:
    return (os.getenv("MCP_TRANSPORT") or "http").strip().lower()


def _make_client(url: str, timeout_sec: Optional[float] = None, transport: str = "http") -> MCPHttpClient | MCPSSEClient:
    if transport == "sse":
        return MCPSSEClient(url, timeout_sec=timeout_sec)
    return MCPHttpClient(url, timeout_sec=timeout_sec)


def _decode_b64(value: Any, what: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise CollaboratorError(f"{what} missing data_b64")
    try:
        return base64.b64decode(value)
    except (binascii.Error, ValueError) as exc:
        raise CollaboratorError(f"{what} has invalid base64: {exc}") from exc


class ImageClient:
    """``image_generate`` tool; prompt plus optional reference photos in, one image out."""

    def __init__(self, url: Optional[str] = None, timeout_sec: Optional[float] = None) -> None:
        self.url = url or _env_url("MCP_IMAGE_URL")
        if self.url:
            self.mode = _transport()
            self.client = _make_client(self.url, timeout_sec=timeout_sec, transport=self.mode)
        else:
            self.mode = "disabled"

    @property
    def enabled(self) -> bool:
        return self.mode != "disabled"

    def generate_image(self, prompt: str, reference_images: Sequence[ReferenceImage] = ()) -> Tuple[bytes, str]:
        if not self.enabled:
            raise CollaboratorError("image collaborator not configured (MCP_IMAGE_URL unset)")
        refs = [
            {"data_b64": base64.b64encode(ref.data).decode("ascii"), "mime_type": ref.mime_type}
            for ref in reference_images
            if ref.ok
        ]
        res = self.client.call("image_generate", {"prompt": prompt, "reference_images": refs})
        data = _decode_b64(res.get("data_b64"), "image_generate result")
        return data, str(res.get("mime_type") or "image/png")


class SpeechClient:
    """``tts_synthesize`` over MCP, the in-process ``TTSService``, or disabled.

    ``TTS_TRANSPORT=local`` selects the in-process engine; otherwise a
    configured ``MCP_TTS_URL`` is called over ``MCP_TRANSPORT``.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout_sec: Optional[float] = None,
        mode: Optional[str] = None,
    ) -> None:
        self.url = url or _env_url("MCP_TTS_URL")
        requested = (mode or os.getenv("TTS_TRANSPORT") or "").strip().lower()
        if requested == "local":
            from mcp_servers.tts.server import TTSService

            self.service = TTSService(timeout_sec=timeout_sec)
            self.mode = "local"
        elif requested == "disabled" or not self.url:
            self.mode = "disabled"
        else:
            self.mode = requested if requested in ("http", "sse") else _transport()
            self.client = _make_client(self.url, timeout_sec=timeout_sec, transport=self.mode)

    @property
    def enabled(self) -> bool:
        return self.mode != "disabled"

    def synthesize(self, text: str, voice: str = "") -> Iterator[SpeechChunk]:
        if not self.enabled:
            raise CollaboratorError("speech collaborator disabled")
        if self.mode == "local":
            try:
                for data, mime in self.service.iter_synthesize(text, voice):
                    yield SpeechChunk(data=data, mime_type=mime)
            except (OSError, ValueError, RuntimeError, subprocess.SubprocessError) as exc:
                raise CollaboratorError(f"local TTS failed: {type(exc).__name__}: {exc}") from exc
            return
        res = self.client.call("tts_synthesize", {"text": text, "voice_id": voice})
        for chunk in _speech_chunks(res):
            yield chunk


def _speech_chunks(res: Dict[str, Any]) -> List[SpeechChunk]:
    items = res.get("chunks")
    if not isinstance(items, list):
        items = [res]
    chunks: List[SpeechChunk] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        data = _decode_b64(item.get("data_b64"), "tts_synthesize chunk")
        chunks.append(SpeechChunk(data=data, mime_type=str(item.get("mime_type") or "")))
    if not chunks:
        raise CollaboratorError("tts_synthesize returned no audio chunks")
    return chunks
