from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from orchestrator.collaborators import GeneratedScenes
from orchestrator.config import PipelineConfig
from orchestrator.errors import CollaboratorError, MediaEncodingError
from orchestrator.models import (
    Audio,
    Character,
    Entity,
    EntityResult,
    ImageResult,
    ReferenceImage,
    Scene,
    SpeechChunk,
    Story,
)
from orchestrator.pipeline import StoryPipeline
from orchestrator.story_store import StoryStore

SCENE_TEXT = "Alice and Bob crossed the silver bridge at dawn, carrying the lantern between them."


class FakeLogger:
    def __init__(self) -> None:
        self.logged: List[str] = []
        self.steps: Dict[str, Dict[str, Any]] = {}
        self.passes = 0

    def log(self, message: str) -> None:
        self.logged.append(message)

    def begin_pass(self) -> None:
        self.passes += 1

    def save_step(self, step: str, payload: Dict[str, Any]) -> None:
        self.steps.setdefault(step, {}).update(payload)


class FakeWriter:
    def __init__(self, error: Optional[Exception] = None, count: Optional[int] = None) -> None:
        self.error = error
        self.count = count
        self.calls: List[Tuple[List[str], str, int]] = []

    def generate_scenes(self, character_names: Sequence[str], outline: str, scene_count: int) -> GeneratedScenes:
        self.calls.append((list(character_names), outline, scene_count))
        if self.error is not None:
            raise self.error
        n = self.count if self.count is not None else scene_count
        scenes = [
            {"sceneNumber": i, "title": f"Chapter {i}", "content": f"{SCENE_TEXT} Part {i}."}
            for i in range(1, n + 1)
        ]
        return GeneratedScenes(scenes=scenes, summary="A journey across the bridge.")


class FakeExtractor:
    def __init__(self, fail_titles: Sequence[str] = ()) -> None:
        self.fail_titles = set(fail_titles)
        self.calls: List[str] = []

    def extract_entities(self, text: str, title: str, known_names: Sequence[str]) -> List[Entity]:
        self.calls.append(title)
        if title in self.fail_titles:
            raise CollaboratorError("timeout")
        # Offsets are deliberately wrong; the stage must recompute them.
        return [
            Entity(text="Bob", category="CHARACTER", start_offset=0, end_offset=3),
            Entity(text="lantern", category="OBJECT", start_offset=999, end_offset=1006),
        ]


class FakeImages:
    def __init__(self, fail_variants: Sequence[str] = ()) -> None:
        self.fail_variants = set(fail_variants)
        self.prompts: List[str] = []
        self.reference_counts: List[int] = []

    def generate_image(self, prompt: str, reference_images: Sequence[ReferenceImage] = ()) -> Tuple[bytes, str]:
        self.prompts.append(prompt)
        self.reference_counts.append(len(reference_images))
        for variant in self.fail_variants:
            if variant in prompt:
                raise CollaboratorError(f"{variant} refused")
        return b"\x89PNG\r\n\x1a\nimage-bytes", "image/png"


class FakeSpeech:
    def __init__(self, enabled: bool = True, fail: bool = False) -> None:
        self.enabled = enabled
        self.fail = fail
        self.texts: List[str] = []

    def synthesize(self, text: str, voice: str = ""):
        self.texts.append(text)
        if self.fail:
            raise CollaboratorError("speech backend down")
        pcm = b"\x01\x02" * 2400
        yield SpeechChunk(pcm, "audio/L16;rate=24000")
        yield SpeechChunk(pcm, "audio/L16;rate=24000")
        yield SpeechChunk(b"\x03\x04" * 1200, "audio/L16;rate=24000")


class FakeEncoder:
    def __init__(self, output_size: int = 60 * 1024, probe: float = 0.0, fail: bool = False) -> None:
        self.output_size = output_size
        self.probe = probe
        self.fail = fail
        self.encoded: List[str] = []
        self.concatenated: List[List[Tuple[str, float]]] = []
        self.seen_inputs: List[bytes] = []

    def _write(self, output_path: str) -> str:
        if self.fail:
            raise MediaEncodingError("ffmpeg exited with 1: boom")
        with open(output_path, "wb") as f:
            f.write(b"\xff\xfb" + b"\x00" * (self.output_size - 2))
        return output_path

    def encode(self, input_path: str, output_path: str) -> str:
        self.encoded.append(input_path)
        with open(input_path, "rb") as f:
            self.seen_inputs.append(f.read())
        return self._write(output_path)

    def concatenate(self, inputs: Sequence[Tuple[str, float]], output_path: str) -> str:
        self.concatenated.append(list(inputs))
        for path, _duration in inputs:
            with open(path, "rb") as f:
                self.seen_inputs.append(f.read())
        return self._write(output_path)

    def probe_duration(self, path: str) -> float:
        return self.probe


def complete_scene(number: int) -> Scene:
    content = f"{SCENE_TEXT} Part {number}."
    return Scene(
        scene_number=number,
        title=f"Chapter {number}",
        content=content,
        entities=EntityResult(
            entities=[Entity("Alice", "CHARACTER", 0, 5, "lead")],
            total_count=1,
            source_length=len(content),
        ),
        images=[
            ImageResult(1, "wide", "p1", b"img-1", "image/png", "2026-01-01T00:00:00Z"),
            ImageResult(2, "character", "p2", b"img-2", "image/png", "2026-01-01T00:00:00Z"),
        ],
    )


def complete_story(story_id: str = "100", scene_count: int = 10) -> Story:
    return Story(
        story_id=story_id,
        created_at="2026-01-01T00:00:00Z",
        characters=[
            Character("Alice", photo=ReferenceImage(b"jpeg-bytes", "image/jpeg")),
            Character("Bob"),
        ],
        outline="Two friends cross a bridge.",
        scenes=[complete_scene(i) for i in range(1, scene_count + 1)],
        summary="Done.",
        audio=Audio(
            binary_data=b"\xff\xfb" + b"\x00" * (60 * 1024),
            duration_seconds=600.0,
            segment_count=scene_count,
            size_bytes=60 * 1024 + 2,
        ),
        generated_at="2026-01-01T00:00:00Z",
    )


def empty_story(story_id: str = "200", scene_count: int = 10) -> Story:
    return Story(
        story_id=story_id,
        created_at="2026-01-01T00:00:00Z",
        characters=[Character("Alice"), Character("Bob")],
        outline="Two friends cross a bridge.",
        scenes=[Scene(i, f"Chapter {i}", "") for i in range(1, scene_count + 1)],
    )


@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    return PipelineConfig(data_root=str(tmp_path / "data"))


@pytest.fixture
def store(config) -> StoryStore:
    return StoryStore(config.stories_dir)


@pytest.fixture
def fakes() -> Dict[str, Any]:
    return {
        "writer": FakeWriter(),
        "extractor": FakeExtractor(),
        "images": FakeImages(),
        "speech": FakeSpeech(),
        "encoder": FakeEncoder(),
        "logger": FakeLogger(),
    }


@pytest.fixture
def pipeline(store, config, fakes) -> StoryPipeline:
    return StoryPipeline(
        store=store,
        config=config,
        writer=fakes["writer"],
        extractor=fakes["extractor"],
        image_client=fakes["images"],
        speech_client=fakes["speech"],
        encoder=fakes["encoder"],
        logger_factory=lambda _story_id: fakes["logger"],
    )
