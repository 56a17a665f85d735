"""Completeness checks for persisted stories."""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import PipelineConfig
from .models import Audio, AudioState, Scene, Story

STAGES = ("scenes", "entities", "images", "audio")


@dataclass
class SceneProblem:
    scene_number: int
    title: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"scene_number": self.scene_number, "title": self.title, "reason": self.reason}


@dataclass
class StageReport:
    stage: str
    valid: bool = False
    valid_count: int = 0
    total: int = 0
    problems: List[SceneProblem] = field(default_factory=list)

    @property
    def flagged_scenes(self) -> List[int]:
        return [p.scene_number for p in self.problems]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "valid_count": self.valid_count,
            "total": self.total,
            "problems": [p.to_dict() for p in self.problems],
        }


@dataclass
class AudioReport(StageReport):
    state: AudioState = AudioState.MISSING
    size_bytes: int = 0


@dataclass
class CompletenessReport:
    story_id: str
    scenes: StageReport
    entities: StageReport
    images: StageReport
    audio: AudioReport

    def stage(self, name: str) -> StageReport:
        if name not in STAGES:
            raise KeyError(name)
        return getattr(self, name)

    @property
    def playable(self) -> bool:
        return all(self.stage(name).valid for name in STAGES)

    @property
    def needs_processing(self) -> bool:
        return not self.playable

    def summary(self) -> Dict[str, Any]:
        return {
            "playable": self.playable,
            "scenes": f"{self.scenes.valid_count}/{self.scenes.total}",
            "entities": self.entities.valid_count,
            "images": self.images.valid_count,
            "audio": self.audio.state.value,
            "empty_scenes": len(self.scenes.problems),
            "entity_errors": len(self.entities.problems),
            "image_errors": len(self.images.problems),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = {name: self.stage(name).to_dict() for name in STAGES}
        data["audio"]["state"] = self.audio.state.value
        data["playable"] = self.playable
        return data


def is_scene_content_empty(scene: Scene, min_length: int) -> bool:
    return len((scene.content or "").strip()) < min_length


def scene_entities_problem(scene: Scene) -> Optional[str]:
    result = scene.entities
    if result is None:
        return "missing entities - needs entity extraction"
    if result.error:
        return result.error
    if not result.entities:
        return "empty entity list - needs entity extraction"
    return None


def scene_images_problem(scene: Scene) -> Optional[str]:
    if not scene.images:
        return "missing images - needs image generation"
    errors = [img.error or "unknown image error" for img in scene.images if not img.ok]
    if len(errors) == len(scene.images):
        return "; ".join(errors)
    return None


def classify_audio(audio: Optional[Audio], size_floor: int) -> AudioState:
    if audio is None:
        return AudioState.MISSING
    if audio.error:
        return AudioState.ERROR
    if audio.placeholder:
        return AudioState.PLACEHOLDER
    size = _audio_size(audio)
    if not audio.binary_data:
        if not audio.audio_path:
            return AudioState.EMPTY
        if not os.path.isfile(audio.audio_path):
            return AudioState.FILE_ABSENT
    if size < size_floor:
        return AudioState.INCOMPLETE
    return AudioState.COMPLETE


def validate_scenes(story: Story, config: PipelineConfig) -> StageReport:
    report = StageReport(stage="scenes", total=len(story.scenes))
    if not story.scenes:
        report.problems.append(SceneProblem(0, "", story.generation_error or "no scenes generated"))
        return report
    for scene in story.scenes:
        if scene.error:
            report.problems.append(SceneProblem(scene.scene_number, scene.title, scene.error))
        elif is_scene_content_empty(scene, config.min_scene_content_length):
            report.problems.append(SceneProblem(scene.scene_number, scene.title, "empty or too short content"))
        else:
            report.valid_count += 1
    numbers = [s.scene_number for s in story.scenes]
    expected = list(range(1, config.scene_count + 1))
    if numbers != expected:
        report.problems.append(
            SceneProblem(0, "", f"scene numbering {numbers} does not match 1..{config.scene_count}")
        )
    if story.generation_error and not any(s.error for s in story.scenes):
        report.problems.append(SceneProblem(0, "", story.generation_error))
    report.valid = not report.problems
    return report


def stale_entity_counts(story: Story) -> List[int]:
    """Indices of scenes whose stored entity counts disagree with the scene text."""
    stale: List[int] = []
    for idx, scene in enumerate(story.scenes):
        result = scene.entities
        if result is None:
            continue
        if result.source_length != len(scene.content or "") or result.total_count != len(result.entities):
            stale.append(idx)
    return stale


def validate_entities(story: Story) -> StageReport:
    report = StageReport(stage="entities", total=len(story.scenes))
    for scene in story.scenes:
        problem = scene_entities_problem(scene)
        if problem:
            report.problems.append(SceneProblem(scene.scene_number, scene.title, problem))
        else:
            report.valid_count += len(scene.entities.entities)
    report.valid = bool(story.scenes) and not report.problems
    return report


def validate_images(story: Story) -> StageReport:
    report = StageReport(stage="images", total=sum(len(s.images) for s in story.scenes))
    for scene in story.scenes:
        report.valid_count += sum(1 for img in scene.images if img.ok)
        problem = scene_images_problem(scene)
        if problem:
            report.problems.append(SceneProblem(scene.scene_number, scene.title, problem))
    report.valid = bool(story.scenes) and not report.problems
    return report


def validate_audio(story: Story, config: PipelineConfig) -> AudioReport:
    state = classify_audio(story.audio, config.audio_size_floor_bytes)
    report = AudioReport(stage="audio", state=state, total=1)
    if story.audio is not None:
        report.size_bytes = _audio_size(story.audio)
    if state == AudioState.COMPLETE:
        report.valid = True
        report.valid_count = 1
    else:
        reason = story.audio.error if state == AudioState.ERROR and story.audio else state.value
        report.problems.append(SceneProblem(0, "", reason or state.value))
    return report


def validate_story(story: Story, config: PipelineConfig) -> CompletenessReport:
    """Inspect a story without side effects and report every stage."""
    return CompletenessReport(
        story_id=story.story_id,
        scenes=validate_scenes(story, config),
        entities=validate_entities(story),
        images=validate_images(story),
        audio=validate_audio(story, config),
    )


def _audio_size(audio: Audio) -> int:
    if audio.binary_data:
        return len(audio.binary_data)
    if audio.audio_path and os.path.isfile(audio.audio_path):
        return os.path.getsize(audio.audio_path)
    return int(audio.size_bytes or 0)
