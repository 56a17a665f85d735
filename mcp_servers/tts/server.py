"""
Minimal TTS wrapper. Expects an external engine (Piper or Coqui).
Long narration is split into paragraphs and synthesized one chunk at a time.
"""
import base64
import json
import os
import re
import subprocess
import tempfile
from typing import Any, Dict, Iterator, List, Optional, Tuple

_PARAGRAPH_RE = re.compile(r"\n\s*\n")


def split_paragraphs(text: str, max_chars: int = 1200) -> List[str]:
    parts: List[str] = []
    for para in _PARAGRAPH_RE.split(text or ""):
        para = " ".join(para.split())
        while len(para) > max_chars:
            cut = para.rfind(". ", 0, max_chars)
            cut = cut + 1 if cut > 0 else max_chars
            parts.append(para[:cut].strip())
            para = para[cut:].strip()
        if para:
            parts.append(para)
    return parts


class TTSService:
    def __init__(self, engine: Optional[str] = None, timeout_sec: Optional[float] = None) -> None:
        self.engine = engine or os.getenv("TTS_ENGINE", "piper")
        self.timeout_sec = float(timeout_sec or os.getenv("TTS_TIMEOUT_SEC", "300"))

    def tts_list_voices(self) -> Dict[str, Any]:
        voices_path = os.getenv("TTS_VOICES_PATH")
        if voices_path and os.path.exists(voices_path):
            with open(voices_path, "r", encoding="utf-8") as f:
                return {"voices": json.load(f)}
        return {"voices": []}

    def tts_synthesize(
        self,
        text: str,
        voice_id: str,
        style: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        chunks = [
            {"data_b64": base64.b64encode(data).decode("ascii"), "mime_type": mime}
            for data, mime in self.iter_synthesize(text, voice_id, style=style)
        ]
        return {"chunks": chunks}

    def iter_synthesize(
        self,
        text: str,
        voice_id: str,
        style: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Tuple[bytes, str]]:
        if self.engine not in ("piper", "coqui"):
            raise ValueError(f"Unsupported TTS_ENGINE: {self.engine}")
        for para in split_paragraphs(text):
            if self.engine == "piper":
                yield self._synthesize_piper(para, voice_id, style), "audio/wav"
            else:
                yield self._synthesize_coqui(para, voice_id), "audio/wav"

    def _resolve_voice_path(self, voice_id: str) -> str:
        if os.path.exists(voice_id):
            return voice_id
        base = os.getenv("PIPER_MODEL_DIR", "")
        return os.path.join(base, voice_id) if base else voice_id

    def _synthesize_piper(self, text: str, voice_id: str, style: Optional[Dict[str, Any]] = None) -> bytes:
        piper_bin = os.getenv("PIPER_BIN", "piper")
        model_path = self._resolve_voice_path(voice_id or os.getenv("PIPER_DEFAULT_VOICE", ""))
        out_path = _temp_wav()
        cmd = [piper_bin, "--model", model_path, "--output_file", out_path]
        if style and "speaker" in style:
            cmd += ["--speaker", str(style["speaker"])]
        try:
            subprocess.run(cmd, input=text.encode("utf-8"), check=True, timeout=self.timeout_sec)
            return _read_audio(out_path)
        finally:
            _remove_quietly(out_path)

    def _synthesize_coqui(self, text: str, voice_id: str) -> bytes:
        tts_bin = os.getenv("COQUI_TTS_BIN", "tts")
        model_name = voice_id or os.getenv("COQUI_DEFAULT_MODEL", "tts_models/en/ljspeech/vits")
        out_path = _temp_wav()
        cmd = [tts_bin, "--model_name", model_name, "--text", text, "--out_path", out_path]
        try:
            subprocess.run(cmd, check=True, timeout=self.timeout_sec)
            return _read_audio(out_path)
        finally:
            _remove_quietly(out_path)


def _temp_wav() -> str:
    with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as tmp:
        return tmp.name


def _read_audio(path: str) -> bytes:
    with open(path, "rb") as f:
        data = f.read()
    if not data:
        raise RuntimeError(f"TTS engine wrote no audio to {path}")
    return data


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
