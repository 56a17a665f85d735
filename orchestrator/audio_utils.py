"""Audio helpers: fragment normalization, dedup, placeholders and final assembly."""
import hashlib
import io
import os
import shutil
import struct
import tempfile
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import soundfile as sf

from .config import PipelineConfig
from .errors import format_exception
from .models import Audio, AudioFragment, SpeechChunk, now_iso

WAV_HEADER_BYTES = 44
PCM_MIME_PREFIXES = ("audio/l8", "audio/l16", "audio/l24", "audio/pcm", "audio/raw", "audio/x-raw")
WORDS_PER_SECOND = 2.5


class MediaEncoderLike(Protocol):
    def encode(self, input_path: str, output_path: str) -> str:
        ...

    def concatenate(self, inputs: Sequence[Tuple[str, float]], output_path: str) -> str:
        ...

    def probe_duration(self, path: str) -> float:
        ...


@dataclass
class PcmFormat:
    channels: int = 1
    sample_rate: int = 24000
    bits_per_sample: int = 16

    @property
    def block_align(self) -> int:
        return self.channels * self.bits_per_sample // 8

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.block_align


def parse_audio_mime(mime_type: str, default_rate: int = 24000) -> PcmFormat:
    """Read channels/rate/depth from e.g. ``audio/L16;codec=pcm;rate=24000``."""
    fmt = PcmFormat(sample_rate=default_rate)
    parts = [p.strip() for p in (mime_type or "").split(";") if p.strip()]
    if not parts:
        return fmt
    subtype = parts[0].lower().split("/")[-1]
    if subtype in ("l8", "l16", "l24"):
        fmt.bits_per_sample = int(subtype[1:])
    for param in parts[1:]:
        key, _, value = param.partition("=")
        key = key.strip().lower()
        value = value.strip().strip('"')
        try:
            if key == "rate":
                fmt.sample_rate = int(value)
            elif key == "channels":
                fmt.channels = int(value)
            elif key in ("bits", "bitdepth", "depth"):
                fmt.bits_per_sample = int(value)
        except ValueError:
            continue
    fmt.channels = max(fmt.channels, 1)
    fmt.sample_rate = max(fmt.sample_rate, 1)
    if fmt.bits_per_sample not in (8, 16, 24, 32):
        fmt.bits_per_sample = 16
    return fmt


def detect_container(data: bytes) -> Optional[str]:
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav"
    if data[:3] == b"ID3" or (len(data) >= 2 and data[0] == 0xFF and (data[1] & 0xE0) == 0xE0):
        return "mp3"
    if data[:4] == b"fLaC":
        return "flac"
    if data[:4] == b"OggS":
        return "ogg"
    return None


def is_headerless(data: bytes, mime_type: str) -> bool:
    if detect_container(data) is not None:
        return False
    mime = (mime_type or "").lower()
    return mime.startswith(PCM_MIME_PREFIXES) or not mime or mime == "application/octet-stream"


def build_wav_header(data_length: int, fmt: PcmFormat) -> bytes:
    """Canonical 44-byte RIFF/WAVE header for integer PCM samples."""
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,
        1,
        fmt.channels,
        fmt.sample_rate,
        fmt.byte_rate,
        fmt.block_align,
        fmt.bits_per_sample,
        b"data",
        data_length,
    )


def normalize_fragment(fragment: AudioFragment, default_rate: int = 24000) -> Tuple[bytes, str]:
    """Return ``(bytes, file_suffix)`` with a container header guaranteed."""
    data = fragment.raw_bytes
    if is_headerless(data, fragment.mime_type):
        fmt = parse_audio_mime(fragment.mime_type, default_rate)
        return build_wav_header(len(data), fmt) + data, ".wav"
    container = detect_container(data) or "bin"
    return data, "." + container


def estimate_duration(
    data: bytes,
    mime_type: str,
    config: PipelineConfig,
) -> float:
    """Duration in seconds, floored at ``config.min_fragment_duration_sec``."""
    seconds = 0.0
    if detect_container(data) is not None:
        try:
            info = sf.info(io.BytesIO(data))
            seconds = float(info.duration)
        except (RuntimeError, TypeError, ValueError):
            seconds = 0.0
    if seconds <= 0:
        if is_headerless(data, mime_type):
            fmt = parse_audio_mime(mime_type, config.default_sample_rate)
            seconds = len(data) / float(fmt.byte_rate)
        elif detect_container(data) == "wav" and len(data) > WAV_HEADER_BYTES:
            # Unreadable header: assume the default PCM layout.
            seconds = (len(data) - WAV_HEADER_BYTES) / float(PcmFormat(sample_rate=config.default_sample_rate).byte_rate)
        else:
            seconds = len(data) / float(max(config.compressed_bytes_per_sec, 1))
    return max(seconds, config.min_fragment_duration_sec)


def collect_fragment(
    scene_index: int,
    chunks: Iterable[SpeechChunk],
    config: PipelineConfig,
) -> AudioFragment:
    """Join streamed speech chunks, dropping repeats and framing slivers."""
    seen: set[str] = set()
    parts: List[bytes] = []
    mime_type = ""
    for chunk in chunks:
        data = chunk.data or b""
        if len(data) < config.min_chunk_bytes:
            continue
        digest = hashlib.md5(data).hexdigest()
        if digest in seen:
            continue
        seen.add(digest)
        parts.append(data)
        if not mime_type and chunk.mime_type:
            mime_type = chunk.mime_type
    raw = b"".join(parts)
    if not raw:
        raise ValueError(f"speech stream for scene {scene_index + 1} produced no usable audio")
    return AudioFragment(
        scene_index=scene_index,
        raw_bytes=raw,
        mime_type=mime_type or f"audio/L16;rate={config.default_sample_rate}",
        estimated_duration_seconds=estimate_duration(raw, mime_type, config),
    )


def estimate_narration_seconds(text: str, low: float = 30.0, high: float = 90.0) -> float:
    words = len((text or "").split())
    return max(low, min(high, words / WORDS_PER_SECOND))


def synthesize_placeholder(
    scene_index: int,
    duration_sec: float,
    sample_rate: int = 24000,
    tone_hz: float = 0.0,
) -> AudioFragment:
    """Silent (or quiet tone) mono WAV standing in for a missing narration."""
    frames = max(int(round(duration_sec * sample_rate)), 1)
    if tone_hz > 0:
        t = np.arange(frames, dtype=np.float32) / float(sample_rate)
        waveform = (0.05 * np.sin(2 * np.pi * tone_hz * t)).astype(np.float32)
    else:
        waveform = np.zeros(frames, dtype=np.float32)
    buf = io.BytesIO()
    sf.write(buf, waveform, sample_rate, format="WAV", subtype="PCM_16")
    return AudioFragment(
        scene_index=scene_index,
        raw_bytes=buf.getvalue(),
        mime_type="audio/wav",
        estimated_duration_seconds=frames / float(sample_rate),
        placeholder=True,
    )


class AudioAssembler:
    """Turn per-scene fragments into one encoded narration track."""

    def __init__(
        self,
        config: PipelineConfig,
        encoder: MediaEncoderLike,
        log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config
        self.encoder = encoder
        self.log = log or (lambda _msg: None)

    def assemble(self, fragments: Sequence[AudioFragment], output_path: str) -> Audio:
        if not fragments:
            return Audio.failed("no audio fragments to assemble")
        ordered = sorted(fragments, key=lambda f: f.scene_index)
        work_dir = ""
        written: List[str] = []
        try:
            os.makedirs(self.config.temp_dir, exist_ok=True)
            work_dir = tempfile.mkdtemp(prefix="fragments_", dir=self.config.temp_dir)
            inputs: List[Tuple[str, float]] = []
            total_duration = 0.0
            for fragment in ordered:
                data, suffix = normalize_fragment(fragment, self.config.default_sample_rate)
                duration = fragment.estimated_duration_seconds
                if duration <= 0:
                    duration = estimate_duration(data, fragment.mime_type, self.config)
                duration = max(duration, self.config.min_fragment_duration_sec)
                path = os.path.join(work_dir, f"scene_{fragment.scene_index:02d}{suffix}")
                with open(path, "wb") as f:
                    f.write(data)
                written.append(path)
                inputs.append((path, duration))
                total_duration += duration

            out_dir = os.path.dirname(output_path)
            if out_dir:
                os.makedirs(out_dir, exist_ok=True)
            if len(inputs) == 1:
                self.encoder.encode(inputs[0][0], output_path)
            else:
                self.encoder.concatenate(inputs, output_path)
            return self._verify(output_path, ordered, total_duration)
        except Exception as err:
            self.log(f"audio_assembly_failed:{format_exception(err)}")
            return Audio.failed(format_exception(err))
        finally:
            self._cleanup(work_dir, written)

    def _verify(self, output_path: str, fragments: Sequence[AudioFragment], total_duration: float) -> Audio:
        if not os.path.isfile(output_path):
            return Audio.failed(f"assembly produced no output file: {output_path}")
        size = os.path.getsize(output_path)
        if size < self.config.audio_size_floor_bytes:
            return Audio.failed(
                f"assembly produced undersized output: {size} bytes < {self.config.audio_size_floor_bytes}"
            )
        with open(output_path, "rb") as f:
            data = f.read()
        probed = self.encoder.probe_duration(output_path)
        placeholders = sum(1 for f in fragments if f.placeholder)
        return Audio(
            binary_data=data,
            mime_type="audio/mpeg",
            duration_seconds=round(probed if probed > 0 else total_duration, 3),
            segment_count=len(fragments),
            size_bytes=len(data),
            audio_path=output_path,
            placeholder=placeholders > 0,
            placeholder_segments=placeholders,
            generated_at=now_iso(),
        )

    def _cleanup(self, work_dir: str, paths: Iterable[str]) -> None:
        if self.config.keep_temp_files:
            return
        for path in paths:
            try:
                os.unlink(path)
            except OSError as exc:
                self.log(f"audio_cleanup_warning:{path}:{exc}")
        if work_dir:
            try:
                shutil.rmtree(work_dir)
            except OSError as exc:
                self.log(f"audio_cleanup_warning:{work_dir}:{exc}")
