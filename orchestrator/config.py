"""Pipeline configuration passed explicitly to every component."""
from __future__ import annotations

import os
from dataclasses import dataclass


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class PipelineConfig:
    data_root: str = "data"
    stories_dir: str = ""
    audio_dir: str = ""
    runs_dir: str = ""
    scene_count: int = 10
    min_scene_content_length: int = 10
    audio_size_floor_bytes: int = 50 * 1024
    min_fragment_duration_sec: float = 5.0
    min_chunk_bytes: int = 64
    default_sample_rate: int = 24000
    output_sample_rate: int = 24000
    output_channels: int = 1
    output_codec: str = "libmp3lame"
    output_bitrate: str = "128k"
    compressed_bytes_per_sec: int = 16000
    max_scene_workers: int = 10
    collaborator_timeout_sec: float = 120.0
    media_timeout_sec: float = 600.0
    watch_debounce_sec: float = 2.0
    watch_poll_interval_sec: float = 1.0
    voice_id: str = ""
    keep_temp_files: bool = False

    def __post_init__(self) -> None:
        if not self.stories_dir:
            self.stories_dir = os.path.join(self.data_root, "stories")
        if not self.audio_dir:
            self.audio_dir = os.path.join(self.data_root, "audio")
        if not self.runs_dir:
            self.runs_dir = os.path.join(self.data_root, "runs")

    @property
    def temp_dir(self) -> str:
        return os.path.join(self.audio_dir, "temp")

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            data_root=os.getenv("DATA_ROOT", "data"),
            stories_dir=os.getenv("STORIES_DIR", ""),
            audio_dir=os.getenv("STORY_AUDIO_DIR", ""),
            runs_dir=os.getenv("STORY_RUNS_DIR", ""),
            scene_count=int(os.getenv("STORY_SCENE_COUNT", "10")),
            min_scene_content_length=int(os.getenv("STORY_MIN_SCENE_CHARS", "10")),
            audio_size_floor_bytes=int(os.getenv("STORY_AUDIO_MIN_BYTES", str(50 * 1024))),
            min_fragment_duration_sec=float(os.getenv("STORY_MIN_FRAGMENT_SEC", "5.0")),
            min_chunk_bytes=int(os.getenv("TTS_MIN_CHUNK_BYTES", "64")),
            default_sample_rate=int(os.getenv("TTS_DEFAULT_SAMPLE_RATE", "24000")),
            output_sample_rate=int(os.getenv("STORY_AUDIO_SAMPLE_RATE", "24000")),
            output_channels=int(os.getenv("STORY_AUDIO_CHANNELS", "1")),
            output_codec=os.getenv("STORY_AUDIO_CODEC", "libmp3lame"),
            output_bitrate=os.getenv("STORY_AUDIO_BITRATE", "128k"),
            max_scene_workers=max(1, int(os.getenv("STORY_MAX_SCENE_WORKERS", "10"))),
            collaborator_timeout_sec=float(os.getenv("COLLABORATOR_TIMEOUT_SEC", "120")),
            media_timeout_sec=float(os.getenv("MEDIA_TIMEOUT_SEC", "600")),
            watch_debounce_sec=float(os.getenv("STORY_WATCH_DEBOUNCE_SEC", "2.0")),
            watch_poll_interval_sec=float(os.getenv("STORY_WATCH_POLL_SEC", "1.0")),
            voice_id=os.getenv("TTS_VOICE_ID", ""),
            keep_temp_files=_env_flag("STORY_KEEP_TEMP_AUDIO"),
        )
