import json
import os
import tempfile
from typing import Any, Dict, List, Optional

from .errors import StoryStoreError
from .models import FILE_VERSION, Story, now_iso

STORY_SUFFIX = ".json"


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


class StoryStore:
    """One JSON record per story in a flat directory; the file stem is the story id."""

    def __init__(self, root: str) -> None:
        self.root = root
        _ensure_dir(self.root)

    def path_for(self, story_id: str) -> str:
        return os.path.join(self.root, story_id + STORY_SUFFIX)

    def list_ids(self) -> List[str]:
        try:
            names = sorted(os.listdir(self.root))
        except OSError as exc:
            raise StoryStoreError(f"cannot list stories in {self.root}: {exc}") from exc
        return [
            name[: -len(STORY_SUFFIX)]
            for name in names
            if name.endswith(STORY_SUFFIX) and not name.startswith(".")
        ]

    def read_raw(self, story_id: str) -> Dict[str, Any]:
        path = self.path_for(story_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError as exc:
            raise StoryStoreError(f"story not found: {story_id}") from exc
        except (OSError, ValueError) as exc:
            raise StoryStoreError(f"cannot read story {story_id}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StoryStoreError(f"story {story_id} is not a JSON object")
        return raw

    def read(self, story_id: str) -> Story:
        return Story.from_dict(story_id, self.read_raw(story_id))

    def write(self, story_id: str, update: Dict[str, Any]) -> None:
        """Merge ``update`` into the stored record and replace the file atomically.

        Top-level keys replace their stored values, except ``generatedStory``
        and ``metadata`` whose keys are merged one level deep so a stage can
        write only what it produced.
        """
        raw = self.read_raw(story_id)
        for key, value in update.items():
            if key in ("generatedStory", "metadata") and isinstance(value, dict):
                current = raw.get(key)
                merged = dict(current) if isinstance(current, dict) else {}
                merged.update(value)
                raw[key] = merged
            else:
                raw[key] = value
        metadata = raw.setdefault("metadata", {})
        metadata.setdefault("filename", os.path.basename(self.path_for(story_id)))
        metadata.setdefault("fileVersion", FILE_VERSION)
        metadata["hasGeneratedStory"] = bool((raw.get("generatedStory") or {}).get("scenes"))
        metadata["lastUpdated"] = now_iso()
        self._replace(story_id, raw)

    def create(self, story: Story) -> str:
        path = self.path_for(story.story_id)
        if os.path.exists(path):
            raise StoryStoreError(f"story already exists: {story.story_id}")
        data = story.to_dict()
        metadata = data.setdefault("metadata", {})
        metadata.setdefault("filename", os.path.basename(path))
        metadata.setdefault("fileVersion", FILE_VERSION)
        metadata["characterCount"] = len(story.characters)
        self._replace(story.story_id, data)
        return path

    def set_force_regenerate(self, story_id: str, enabled: bool) -> None:
        self.write(story_id, {"forceRegenerate": bool(enabled)})

    def mtime(self, story_id: str) -> Optional[float]:
        try:
            return os.path.getmtime(self.path_for(story_id))
        except OSError:
            return None

    def _replace(self, story_id: str, data: Dict[str, Any]) -> None:
        path = self.path_for(story_id)
        # Temp files use a dot prefix so list_ids and the watcher skip them.
        fd, tmp_path = tempfile.mkstemp(prefix=".", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=True, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StoryStoreError(f"cannot write story {story_id}: {exc}") from exc
