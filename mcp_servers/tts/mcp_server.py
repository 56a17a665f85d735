"""MCP server entrypoint for TTS service."""
import os
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from .server import TTSService


mcp = FastMCP(
    "mcp-tts",
    json_response=True,
    host=os.getenv("MCP_HOST", "127.0.0.1"),
    port=int(os.getenv("MCP_PORT", "8000")),
)
service = TTSService()


@mcp.tool()
def tts_list_voices() -> Dict[str, Any]:
    return service.tts_list_voices()


@mcp.tool()
def tts_synthesize(
    text: str,
    voice_id: str = "",
    style: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return service.tts_synthesize(text=text, voice_id=voice_id, style=style)


if __name__ == "__main__":
    mcp.run(transport=os.getenv("MCP_TRANSPORT", "stdio"))
