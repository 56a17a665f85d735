"""Entities agent: extract named entities with positions from one scene."""
from typing import Any, Dict, List

from agents.common import LLMClient


PROMPT = """
You are an expert text analyzer. Extract all important entities from the scene with their exact positions in the text.

Scene title: {title}
Scene content:
{content}
Known characters: {known_names}

Categories:
- CHARACTER: people, beings or named entities (including the known characters)
- LOCATION: places, settings, geographical locations
- OBJECT: important items, tools, weapons, artifacts
- ACTION: key verbs/actions that drive the plot
- EMOTION: feelings, moods, emotional states
- CONCEPT: abstract ideas, themes, magical elements

Return JSON object with exactly keys: entities, totalEntities, sceneLength.
- entities: array of {{text, category, startPos, endPos, description}}.
- text must appear verbatim in the scene content.
- startPos/endPos are 0-based character offsets; endPos is exclusive.
- description: one sentence on the entity's significance.
- No extra keys.
""".strip()


def run(
    input_data: Dict[str, Any],
    llm: LLMClient | None = None,
) -> Dict[str, Any]:
    """Pure function: scene text -> raw entity list (offsets unverified)."""
    llm = llm or LLMClient(agent_name="entities")
    known = input_data.get("known_names") or []
    prompt = PROMPT.format(
        title=str(input_data.get("title") or ""),
        content=str(input_data.get("content") or ""),
        known_names=", ".join(str(n) for n in known) or "(none)",
    )
    raw = llm.complete_json(prompt)
    entities = raw.get("entities") if isinstance(raw, dict) else None
    if not isinstance(entities, list):
        raise ValueError("entity reply has no entities array")
    out: List[Dict[str, Any]] = [e for e in entities if isinstance(e, dict)]
    return {"entities": out}
