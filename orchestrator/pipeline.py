"""Per-story pass: validate, regenerate what is missing, persist after each stage."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audio_utils import AudioAssembler, MediaEncoderLike
from .config import PipelineConfig
from .models import AudioState, Scene, Story
from .run_logger import RunLogger
from .stages import (
    Extractor,
    ImageGenerator,
    SceneWriter,
    SpeechSynthesizer,
    StageContext,
    StageLogger,
    regenerate_audio,
    regenerate_entities,
    regenerate_images,
    regenerate_scenes,
)
from .story_store import StoryStore
from .validators import STAGES, CompletenessReport, stale_entity_counts, validate_story

Regenerator = Callable[[Story, CompletenessReport, StageContext], Story]

PLACEHOLDER_HELD = "placeholder kept: speech disabled"

_REGENERATORS: Dict[str, Regenerator] = {
    "scenes": regenerate_scenes,
    "entities": regenerate_entities,
    "images": regenerate_images,
    "audio": regenerate_audio,
}


@dataclass
class PassResult:
    story_id: str
    has_changes: bool
    playable: bool
    report: CompletenessReport
    stages_run: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)


class StoryPipeline:
    def __init__(
        self,
        store: StoryStore,
        config: PipelineConfig,
        writer: SceneWriter,
        extractor: Extractor,
        image_client: ImageGenerator,
        speech_client: SpeechSynthesizer,
        encoder: MediaEncoderLike,
        logger_factory: Optional[Callable[[str], StageLogger]] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.writer = writer
        self.extractor = extractor
        self.image_client = image_client
        self.speech_client = speech_client
        self.encoder = encoder
        self.logger_factory = logger_factory or (lambda story_id: RunLogger.for_story(config.runs_dir, story_id))

    @classmethod
    def from_env(cls, config: Optional[PipelineConfig] = None) -> "StoryPipeline":
        from .collaborators import EntityExtractor, StoryWriter
        from .mcp_clients import ImageClient, SpeechClient
        from .media import FFmpegEncoder

        config = config or PipelineConfig.from_env()
        return cls(
            store=StoryStore(config.stories_dir),
            config=config,
            writer=StoryWriter(),
            extractor=EntityExtractor(),
            image_client=ImageClient(timeout_sec=config.collaborator_timeout_sec),
            speech_client=SpeechClient(timeout_sec=config.collaborator_timeout_sec),
            encoder=FFmpegEncoder(config),
        )

    def status(self, story_id: str) -> CompletenessReport:
        return self.status_of(self.store.read(story_id))

    def status_of(self, story: Story) -> CompletenessReport:
        return validate_story(story, self.config)

    def process(self, story_id: str, force: bool = False) -> PassResult:
        """Run one pass over a story.

        Stages run in order scenes, entities, images, audio. Each is
        re-validated against the current story just before it runs and
        persisted once right after, so a crash mid-pass keeps earlier
        stages. Store failures propagate as ``StoryStoreError``.
        """
        logger = self.logger_factory(story_id)
        begin = getattr(logger, "begin_pass", None)
        if begin is not None:
            begin()
        story = self.store.read(story_id)
        force = force or story.force_regenerate
        ctx = StageContext(
            config=self.config,
            writer=self.writer,
            extractor=self.extractor,
            image_client=self.image_client,
            speech_client=self.speech_client,
            assembler=AudioAssembler(self.config, self.encoder, log=logger.log),
            logger=logger,
            force=force,
        )
        report = validate_story(story, self.config)
        logger.log(f"pass_start story={story_id} force={force} {json.dumps(report.summary(), sort_keys=True)}")

        stages_run: List[str] = []
        skipped: Dict[str, str] = {}
        force_pending = story.force_regenerate
        for name in STAGES:
            report = validate_story(story, self.config)
            run, reason = self._should_run(name, story, report, force)
            if not run:
                skipped[name] = reason
                continue
            before = story
            story = _REGENERATORS[name](story, report, ctx)
            update = self._stage_update(story_id, name, before, story)
            if name == STAGES[-1] and force_pending:
                update["forceRegenerate"] = False
                force_pending = False
            self.store.write(story_id, update)
            stages_run.append(name)
            logger.log(f"stage_persisted story={story_id} stage={name}")

        if force_pending:
            self.store.write(story_id, {"forceRegenerate": False})
        final = validate_story(story, self.config)
        logger.save_step(
            "pass",
            {
                "stages_run": stages_run,
                "skipped": skipped,
                "held": self.held_stages(story, final),
                "playable": final.playable,
                "report": final.to_dict(),
            },
        )
        logger.log(
            f"pass_done story={story_id} stages={','.join(stages_run) or '-'} "
            f"{json.dumps(final.summary(), sort_keys=True)}"
        )
        return PassResult(
            story_id=story_id,
            has_changes=bool(stages_run),
            playable=final.playable,
            report=final,
            stages_run=stages_run,
            skipped=skipped,
        )

    def _should_run(self, name: str, story: Story, report: CompletenessReport, force: bool) -> Tuple[bool, str]:
        if name != "scenes" and story.generation_error:
            return False, "blocked: scene generation failed"
        if force:
            return True, ""
        if name == "entities" and report.entities.valid and stale_entity_counts(story):
            return True, ""
        if report.stage(name).valid:
            return False, "valid"
        if name == "audio" and self._placeholder_held(report):
            return False, PLACEHOLDER_HELD
        return True, ""

    def _placeholder_held(self, report: CompletenessReport) -> bool:
        # Without speech a rerun could only produce another placeholder.
        return report.audio.state == AudioState.PLACEHOLDER and not self.speech_client.enabled

    def held_stages(self, story: Story, report: CompletenessReport) -> Dict[str, str]:
        """Invalid stages a normal pass would leave alone, with the reason."""
        held: Dict[str, str] = {}
        if story.generation_error:
            for name in STAGES[1:]:
                if not report.stage(name).valid:
                    held[name] = "blocked: scene generation failed"
        elif self._placeholder_held(report):
            held["audio"] = PLACEHOLDER_HELD
        return held

    def _stage_update(self, story_id: str, name: str, before: Story, after: Story) -> Dict[str, Any]:
        generated = after.generated_dict()
        if name == "scenes":
            # Store merges generatedStory keys; a stale error must be cleared explicitly.
            generated.setdefault("error", None)
            return {"generatedStory": generated}
        if name == "audio":
            return {"generatedStory": {"audio": generated["audio"]}}
        meta_key = "entityMetadata" if name == "entities" else "imageMetadata"
        return {
            "generatedStory": {
                "scenes": self._merge_scenes(story_id, name, before, after),
                meta_key: generated[meta_key],
            }
        }

    def _merge_scenes(self, story_id: str, name: str, before: Story, after: Story) -> List[Dict[str, Any]]:
        """Stored scene dicts with only the regenerated scenes' ``name`` value replaced.

        Untouched scenes are copied from the record as stored, so fields this
        pipeline does not model survive a partial repair.
        """
        generated = self.store.read_raw(story_id).get("generatedStory") or {}
        stored = generated.get("scenes") if isinstance(generated, dict) else None
        if not isinstance(stored, list) or len(stored) != len(after.scenes):
            return [scene.to_dict() for scene in after.scenes]
        merged: List[Dict[str, Any]] = []
        for idx, (raw, scene) in enumerate(zip(stored, after.scenes)):
            if not isinstance(raw, dict):
                merged.append(scene.to_dict())
                continue
            old = before.scenes[idx] if idx < len(before.scenes) else None
            if old is not None and scene is old:
                merged.append(raw)
                continue
            raw = dict(raw)
            if name == "images":
                raw["images"] = [img.to_dict() for img in scene.images]
            else:
                raw["entities"] = _entities_value(raw.get("entities"), old, scene)
            merged.append(raw)
        return merged


def _entities_value(stored: Any, old: Optional[Scene], scene: Scene) -> Optional[Dict[str, Any]]:
    result = scene.entities
    if result is None:
        return None
    unchanged = (
        isinstance(stored, dict)
        and old is not None
        and old.entities is not None
        and old.entities.entities == result.entities
        and old.entities.error == result.error
    )
    if not unchanged:
        return result.to_dict()
    # Only the counts were recomputed; keep the stored entity list as written.
    value = dict(stored)
    value["totalEntities"] = result.total_count
    value["sceneLength"] = result.source_length
    return value
