"""Writer agent: produce the scene set of a story."""
from typing import Any, Dict, List

from agents.common import LLMClient, as_string_list


PROMPT = """
You are a master storyteller. Write an engaging story divided into exactly {scene_count} scenes.

Input:
{input_json}

Requirements:
- Characters: {characters}
- Story outline: {outline}
- Exactly {scene_count} distinct scenes, each substantial (3-4 paragraphs).
- Develop the characters and advance the plot; clear beginning, middle and end.
- Follow the outline but expand it creatively.

Return JSON object with exactly keys: scenes, summary.
- scenes: array of {{sceneNumber, title, content}}; sceneNumber runs 1..{scene_count} in order.
- summary: brief summary of the complete story.
- No extra keys.
""".strip()


def run(
    input_data: Dict[str, Any],
    llm: LLMClient | None = None,
) -> Dict[str, Any]:
    """Pure function: characters + outline -> {scenes, summary}."""
    llm = llm or LLMClient(agent_name="writer")
    characters = as_string_list(input_data.get("characters", []))
    scene_count = int(input_data.get("scene_count") or 10)
    prompt = PROMPT.format(
        input_json=input_data,
        characters=" and ".join(characters) or "(none given)",
        outline=str(input_data.get("outline") or "").strip(),
        scene_count=scene_count,
    )
    raw = llm.complete_json(prompt)
    return _normalize_story_json(raw)


def _normalize_story_json(story_json: Any) -> Dict[str, Any]:
    raw = story_json if isinstance(story_json, dict) else {}
    scenes_in = raw.get("scenes", [])
    if not isinstance(scenes_in, list):
        scenes_in = []
    scenes_out: List[Dict[str, Any]] = []
    for scene in scenes_in:
        if not isinstance(scene, dict):
            continue
        idx = len(scenes_out) + 1
        title = str(scene.get("title") or "").strip() or f"Scene {idx}"
        content = str(scene.get("content") or "").strip()
        # Numbering is positional; models skip or repeat numbers.
        scenes_out.append({"sceneNumber": idx, "title": title, "content": content})
    return {"scenes": scenes_out, "summary": str(raw.get("summary") or "").strip()}
