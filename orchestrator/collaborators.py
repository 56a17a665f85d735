"""Text-generation collaborators built on the prompt agents."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from agents.common import LLMClient
from agents.entities import agent as entities_agent
from agents.writer import agent as writer_agent

from .errors import CollaboratorError
from .models import Entity


@dataclass
class GeneratedScenes:
    scenes: List[Dict[str, Any]]
    summary: str = ""


# Transport and parse failures from the LLM client surface as these.
_LLM_ERRORS = (OSError, ValueError, RuntimeError)


class StoryWriter:
    def __init__(self, llm: Optional[LLMClient] = None) -> None:
        self.llm = llm or LLMClient(agent_name="writer")

    def generate_scenes(self, character_names: Sequence[str], outline: str, scene_count: int) -> GeneratedScenes:
        try:
            result = writer_agent.run(
                {"characters": list(character_names), "outline": outline, "scene_count": scene_count},
                llm=self.llm,
            )
        except _LLM_ERRORS as err:
            raise CollaboratorError(f"story writer failed: {type(err).__name__}: {err}") from err
        scenes = result.get("scenes") or []
        if not scenes:
            raise CollaboratorError("Invalid story structure returned by writer")
        return GeneratedScenes(scenes=scenes, summary=result.get("summary", ""))


class EntityExtractor:
    def __init__(self, llm: Optional[LLMClient] = None) -> None:
        self.llm = llm or LLMClient(agent_name="entities")

    def extract_entities(self, text: str, title: str, known_names: Sequence[str]) -> List[Entity]:
        try:
            result = entities_agent.run(
                {"content": text, "title": title, "known_names": list(known_names)},
                llm=self.llm,
            )
        except _LLM_ERRORS as err:
            raise CollaboratorError(f"entity extractor failed: {type(err).__name__}: {err}") from err
        entities: List[Entity] = []
        for item in result.get("entities", []):
            entity = Entity.from_dict(item)
            if entity is not None:
                entities.append(entity)
        return entities
