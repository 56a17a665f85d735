"""Stage regenerators: each returns a new Story with one stage output replaced."""
from __future__ import annotations

import os
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .audio_utils import (
    AudioAssembler,
    collect_fragment,
    estimate_narration_seconds,
    synthesize_placeholder,
)
from .collaborators import GeneratedScenes
from .config import PipelineConfig
from .errors import CollaboratorError, format_exception
from .models import (
    AudioFragment,
    Character,
    Entity,
    EntityResult,
    ImageResult,
    ReferenceImage,
    Scene,
    Story,
    now_iso,
)
from .validators import CompletenessReport, stale_entity_counts

PLACEHOLDER_SCENE_TITLE = "Error"
PLACEHOLDER_SCENE_CONTENT = "Failed to generate story content."
PROMPT_EXCERPT_CHARS = 300


class SceneWriter(Protocol):
    def generate_scenes(self, character_names: Sequence[str], outline: str, scene_count: int) -> GeneratedScenes:
        ...


class Extractor(Protocol):
    def extract_entities(self, text: str, title: str, known_names: Sequence[str]) -> List[Entity]:
        ...


class ImageGenerator(Protocol):
    def generate_image(self, prompt: str, reference_images: Sequence[ReferenceImage] = ()) -> Tuple[bytes, str]:
        ...


class SpeechSynthesizer(Protocol):
    enabled: bool

    def synthesize(self, text: str, voice: str = "") -> Any:
        ...


class StageLogger(Protocol):
    def log(self, message: str) -> None:
        ...

    def save_step(self, step: str, payload: Dict[str, Any]) -> None:
        ...


@dataclass
class StageContext:
    config: PipelineConfig
    writer: SceneWriter
    extractor: Extractor
    image_client: ImageGenerator
    speech_client: SpeechSynthesizer
    assembler: AudioAssembler
    logger: StageLogger
    force: bool = False


def word_count(scenes: Sequence[Scene]) -> int:
    return sum(len(scene.content.split()) for scene in scenes)


def _targets(story: Story, flagged: Sequence[int], force: bool) -> List[int]:
    """Indices of scenes a per-scene stage should touch."""
    if force:
        return list(range(len(story.scenes)))
    wanted = {n for n in flagged if n > 0}
    return [i for i, scene in enumerate(story.scenes) if scene.scene_number in wanted]


def _run_per_scene(
    indices: Sequence[int],
    worker: Callable[[int], Any],
    max_workers: int,
) -> Dict[int, Any]:
    results: Dict[int, Any] = {}
    if not indices:
        return results
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(indices)))) as executor:
        futures = {executor.submit(worker, idx): idx for idx in indices}
        for fut in as_completed(futures):
            results[futures[fut]] = fut.result()
    return results


def regenerate_scenes(story: Story, report: CompletenessReport, ctx: StageContext) -> Story:
    """Replace the whole scene set; never raises.

    Text drives every later stage, so the new scenes carry no entities or
    images and the story audio is dropped.
    """
    ctx.logger.log(
        f"scenes_regenerate story={story.story_id} flagged={report.scenes.flagged_scenes} force={ctx.force}"
    )
    try:
        generated = ctx.writer.generate_scenes(story.character_names, story.outline, ctx.config.scene_count)
        if len(generated.scenes) != ctx.config.scene_count:
            raise CollaboratorError(
                f"writer returned {len(generated.scenes)} scenes, expected {ctx.config.scene_count}"
            )
        scenes = [_scene_from_raw(raw, idx) for idx, raw in enumerate(generated.scenes)]
        summary = generated.summary
        error: Optional[str] = None
    except Exception as err:
        error = format_exception(err)
        ctx.logger.log(f"scenes_regenerate_failed story={story.story_id} error={error}")
        scenes = [Scene(1, PLACEHOLDER_SCENE_TITLE, PLACEHOLDER_SCENE_CONTENT, error=error)]
        summary = "Story generation failed"
    ctx.logger.save_step("scenes", {"count": len(scenes), "error": error, "at": now_iso()})
    return story.evolve(
        scenes=scenes,
        summary=summary,
        generation_error=error,
        generated_at=now_iso(),
        word_count=word_count(scenes) if error is None else 0,
        entity_metadata={},
        image_metadata={},
        audio=None,
    )


def _scene_from_raw(raw: Dict[str, Any], idx: int) -> Scene:
    return Scene(
        scene_number=idx + 1,
        title=str(raw.get("title") or f"Scene {idx + 1}"),
        content=str(raw.get("content") or ""),
    )


def locate_entity(entity: Entity, content: str) -> Entity:
    """Recompute offsets against ``content``; the extractor's are only hints."""
    start, end = entity.start_offset, entity.end_offset
    if 0 <= start < end <= len(content) and content[start:end] == entity.text:
        return entity
    pos = content.find(entity.text)
    if pos < 0:
        pos = content.lower().find(entity.text.lower())
    if pos >= 0:
        return replace(entity, start_offset=pos, end_offset=pos + len(entity.text))
    start = max(0, min(start, len(content)))
    return replace(entity, start_offset=start, end_offset=max(start, min(end, len(content))))


def extract_for_scene(scene: Scene, known_names: Sequence[str], extractor: Extractor) -> EntityResult:
    content = scene.content or ""
    if not content.strip():
        return EntityResult.failed("scene has no content", len(content))
    try:
        raw = extractor.extract_entities(content, scene.title, list(known_names))
    except Exception as err:
        return EntityResult.failed(format_exception(err), len(content))
    entities = [locate_entity(e, content) for e in raw]
    return EntityResult(entities=entities, total_count=len(entities), source_length=len(content))


def recount_entities(result: EntityResult, content: str) -> EntityResult:
    return replace(result, total_count=len(result.entities), source_length=len(content or ""))


def entity_metadata(scenes: Sequence[Scene]) -> Dict[str, Any]:
    categories: Counter = Counter()
    total = 0
    failed = 0
    for scene in scenes:
        if scene.entities is None:
            continue
        if scene.entities.error:
            failed += 1
        total += len(scene.entities.entities)
        categories.update(e.category for e in scene.entities.entities)
    return {
        "extractedAt": now_iso(),
        "totalEntities": total,
        "scenesWithErrors": failed,
        "categories": dict(sorted(categories.items())),
    }


def regenerate_entities(story: Story, report: CompletenessReport, ctx: StageContext) -> Story:
    targets = _targets(story, report.entities.flagged_scenes, ctx.force)
    names = story.character_names
    ctx.logger.log(f"entities_regenerate story={story.story_id} scenes={[i + 1 for i in targets]}")
    results = _run_per_scene(
        targets,
        lambda idx: extract_for_scene(story.scenes[idx], names, ctx.extractor),
        ctx.config.max_scene_workers,
    )
    for idx in stale_entity_counts(story):
        if idx not in results:
            scene = story.scenes[idx]
            results[idx] = recount_entities(scene.entities, scene.content)
    scenes = [
        replace(scene, entities=results[idx]) if idx in results else scene
        for idx, scene in enumerate(story.scenes)
    ]
    for idx in sorted(results):
        result = results[idx]
        if result.error:
            ctx.logger.log(f"entities_scene_failed scene={idx + 1} error={result.error}")
    meta = entity_metadata(scenes)
    ctx.logger.save_step("entities", {"scenes": len(targets), **meta})
    return story.evolve(scenes=scenes, entity_metadata=meta)


def reference_images(characters: Sequence[Character]) -> List[ReferenceImage]:
    return [c.photo for c in characters if c.photo is not None and c.photo.ok]


def image_prompts(scene: Scene, characters: Sequence[Character]) -> List[Tuple[str, str]]:
    """``(variant, prompt)`` pairs: a wide establishing still and a character focus shot."""
    names = ", ".join(c.name for c in characters if c.name)
    with_photos = [c.name for c in characters if c.photo is not None and c.photo.ok]
    lead = ""
    if with_photos:
        lead = f"Use the provided reference images of {' and '.join(with_photos)} as character likenesses. "
    excerpt = scene.content[:PROMPT_EXCERPT_CHARS]
    return [
        (
            "wide",
            f'{lead}Create a cinematic still from the scene "{scene.title}". Characters: {names}. '
            f"Scene: {excerpt}... Style: photorealistic, dramatic lighting, wide shot. "
            "Maintain character appearance from reference images.",
        ),
        (
            "character",
            f'{lead}Create an artistic interpretation of "{scene.title}". Characters: {names}. '
            f"Focus on the key moment from: {excerpt}... Style: cinematic, detailed, close-up or medium shot. "
            "Keep character faces consistent with reference images.",
        ),
    ]


def images_for_scene(
    scene: Scene,
    characters: Sequence[Character],
    image_client: ImageGenerator,
) -> List[ImageResult]:
    refs = reference_images(characters)
    images: List[ImageResult] = []
    for number, (variant, prompt) in enumerate(image_prompts(scene, characters), start=1):
        try:
            data, mime_type = image_client.generate_image(prompt, refs)
            if not data:
                raise ValueError("image collaborator returned no data")
            images.append(
                ImageResult(
                    image_number=number,
                    variant=variant,
                    prompt=prompt,
                    binary_data=data,
                    mime_type=mime_type,
                    generated_at=now_iso(),
                    reference_count=len(refs),
                )
            )
        except Exception as err:
            images.append(ImageResult.failed(number, variant, format_exception(err), prompt=prompt))
    return images


def image_metadata(scenes: Sequence[Scene], references: int) -> Dict[str, Any]:
    total = sum(len(s.images) for s in scenes)
    ok = sum(1 for s in scenes for img in s.images if img.ok)
    return {
        "generatedAt": now_iso(),
        "totalImages": total,
        "successfulImages": ok,
        "failedImages": total - ok,
        "characterReferences": references,
    }


def regenerate_images(story: Story, report: CompletenessReport, ctx: StageContext) -> Story:
    targets = _targets(story, report.images.flagged_scenes, ctx.force)
    ctx.logger.log(f"images_regenerate story={story.story_id} scenes={[i + 1 for i in targets]}")
    results = _run_per_scene(
        targets,
        lambda idx: images_for_scene(story.scenes[idx], story.characters, ctx.image_client),
        ctx.config.max_scene_workers,
    )
    scenes = [
        replace(scene, images=results[idx]) if idx in results else scene
        for idx, scene in enumerate(story.scenes)
    ]
    meta = image_metadata(scenes, len(reference_images(story.characters)))
    ctx.logger.save_step("images", {"scenes": len(targets), **meta})
    return story.evolve(scenes=scenes, image_metadata=meta)


def narration_text(scene: Scene) -> str:
    return f"{scene.title}.\n\n{scene.content}".strip()


def fragment_for_scene(idx: int, scene: Scene, ctx: StageContext) -> AudioFragment:
    """Speech for one scene, or a silent placeholder when speech is off or fails."""
    if ctx.speech_client.enabled:
        try:
            chunks = ctx.speech_client.synthesize(narration_text(scene), ctx.config.voice_id)
            return collect_fragment(idx, chunks, ctx.config)
        except Exception as err:
            ctx.logger.log(f"audio_scene_speech_failed scene={idx + 1} error={format_exception(err)}")
    seconds = estimate_narration_seconds(scene.content)
    return synthesize_placeholder(idx, seconds, ctx.config.default_sample_rate)


def audio_output_path(config: PipelineConfig, story_id: str) -> str:
    return os.path.join(config.audio_dir, f"story_{story_id}.mp3")


def regenerate_audio(story: Story, report: CompletenessReport, ctx: StageContext) -> Story:
    ctx.logger.log(
        f"audio_regenerate story={story.story_id} state={report.audio.state.value} "
        f"speech={'on' if ctx.speech_client.enabled else 'off'}"
    )
    fragments = [fragment_for_scene(idx, scene, ctx) for idx, scene in enumerate(story.scenes)]
    audio = ctx.assembler.assemble(fragments, audio_output_path(ctx.config, story.story_id))
    ctx.logger.save_step(
        "audio",
        {
            "segments": len(fragments),
            "placeholder_segments": sum(1 for f in fragments if f.placeholder),
            "duration": audio.duration_seconds,
            "size_bytes": audio.size_bytes,
            "error": audio.error,
        },
    )
    return story.evolve(audio=audio)
