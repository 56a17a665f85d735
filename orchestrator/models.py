"""Story record types and their on-disk JSON mapping."""
from __future__ import annotations

import base64
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


ENTITY_CATEGORIES = ("CHARACTER", "LOCATION", "OBJECT", "ACTION", "EMOTION", "CONCEPT")

# Older records used the plural category names from the extraction prompt.
_LEGACY_CATEGORIES = {name + "S": name for name in ENTITY_CATEGORIES}

FILE_VERSION = "2.0"


class AudioState(str, Enum):
    MISSING = "missing"
    ERROR = "error"
    EMPTY = "empty"
    FILE_ABSENT = "file-absent"
    INCOMPLETE = "incomplete"
    PLACEHOLDER = "placeholder"
    COMPLETE = "complete"


def normalize_category(value: Any) -> Optional[str]:
    name = str(value or "").strip().upper()
    if name in ENTITY_CATEGORIES:
        return name
    return _LEGACY_CATEGORIES.get(name)


@dataclass
class Entity:
    text: str
    category: str
    start_offset: int
    end_offset: int
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "category": self.category,
            "startPos": self.start_offset,
            "endPos": self.end_offset,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["Entity"]:
        text = str(raw.get("text") or "").strip()
        category = normalize_category(raw.get("category"))
        if not text or category is None:
            return None
        return cls(
            text=text,
            category=category,
            start_offset=_as_int(raw.get("startPos", raw.get("startOffset"))),
            end_offset=_as_int(raw.get("endPos", raw.get("endOffset"))),
            description=str(raw.get("description") or ""),
        )


@dataclass
class EntityResult:
    entities: List[Entity] = field(default_factory=list)
    total_count: int = 0
    source_length: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and len(self.entities) > 0

    @classmethod
    def failed(cls, reason: str, source_length: int) -> "EntityResult":
        return cls(entities=[], total_count=0, source_length=source_length, error=reason)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "entities": [e.to_dict() for e in self.entities],
            "totalEntities": self.total_count,
            "sceneLength": self.source_length,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EntityResult":
        entities: List[Entity] = []
        for item in raw.get("entities") or []:
            if isinstance(item, dict):
                entity = Entity.from_dict(item)
                if entity is not None:
                    entities.append(entity)
        error = raw.get("error")
        return cls(
            entities=entities,
            total_count=_as_int(raw.get("totalEntities", len(entities))),
            source_length=_as_int(raw.get("sceneLength")),
            error=str(error) if error else None,
        )


@dataclass
class ImageResult:
    image_number: int
    variant: str = ""
    prompt: str = ""
    binary_data: bytes = b""
    mime_type: str = ""
    generated_at: str = ""
    reference_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.binary_data)

    @classmethod
    def failed(cls, image_number: int, variant: str, reason: str, prompt: str = "") -> "ImageResult":
        return cls(
            image_number=image_number,
            variant=variant,
            prompt=prompt,
            generated_at=now_iso(),
            error=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "imageNumber": self.image_number,
            "variant": self.variant,
            "prompt": self.prompt,
            "characterReferences": self.reference_count,
            "generatedAt": self.generated_at,
        }
        if self.error is not None:
            data["error"] = self.error
        else:
            data["base64Data"] = _b64encode(self.binary_data)
            data["mimeType"] = self.mime_type
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], index: int = 0) -> "ImageResult":
        error = raw.get("error")
        data = raw.get("base64Data") or raw.get("imageData") or ""
        return cls(
            image_number=_as_int(raw.get("imageNumber"), index + 1),
            variant=str(raw.get("variant") or ""),
            prompt=str(raw.get("prompt") or ""),
            binary_data=_b64decode(data),
            mime_type=str(raw.get("mimeType") or ""),
            generated_at=str(raw.get("generatedAt") or ""),
            reference_count=_as_int(raw.get("characterReferences")),
            error=str(error) if error else None,
        )


@dataclass
class Scene:
    scene_number: int
    title: str
    content: str = ""
    entities: Optional[EntityResult] = None
    images: List[ImageResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "sceneNumber": self.scene_number,
            "title": self.title,
            "content": self.content,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.entities is not None:
            data["entities"] = self.entities.to_dict()
        data["images"] = [img.to_dict() for img in self.images]
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], index: int = 0) -> "Scene":
        entities_raw = raw.get("entities")
        images_raw = raw.get("images")
        images: List[ImageResult] = []
        if isinstance(images_raw, list):
            images = [ImageResult.from_dict(img, i) for i, img in enumerate(images_raw) if isinstance(img, dict)]
        error = raw.get("error")
        return cls(
            scene_number=_as_int(raw.get("sceneNumber"), index + 1),
            title=str(raw.get("title") or f"Scene {index + 1}"),
            content=str(raw.get("content") or ""),
            entities=EntityResult.from_dict(entities_raw) if isinstance(entities_raw, dict) else None,
            images=images,
            error=str(error) if error else None,
        )


@dataclass
class Audio:
    binary_data: bytes = b""
    mime_type: str = "audio/mpeg"
    duration_seconds: float = 0.0
    segment_count: int = 0
    size_bytes: int = 0
    audio_path: Optional[str] = None
    placeholder: bool = False
    placeholder_segments: int = 0
    generated_at: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, reason: str) -> "Audio":
        return cls(mime_type="", generated_at=now_iso(), error=reason)

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"error": self.error, "generatedAt": self.generated_at}
        return {
            "audioBase64": _b64encode(self.binary_data),
            "mimeType": self.mime_type,
            "duration": self.duration_seconds,
            "segmentCount": self.segment_count,
            "sizeBytes": self.size_bytes,
            "audioPath": self.audio_path,
            "placeholder": self.placeholder,
            "placeholderSegments": self.placeholder_segments,
            "generatedAt": self.generated_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Audio":
        error = raw.get("error")
        data = _b64decode(raw.get("audioBase64") or "")
        return cls(
            binary_data=data,
            mime_type=str(raw.get("mimeType") or ""),
            duration_seconds=float(raw.get("duration") or 0.0),
            segment_count=_as_int(raw.get("segmentCount")),
            size_bytes=_as_int(raw.get("sizeBytes"), len(data)),
            audio_path=raw.get("audioPath") or None,
            placeholder=bool(raw.get("placeholder", False)),
            placeholder_segments=_as_int(raw.get("placeholderSegments")),
            generated_at=str(raw.get("generatedAt") or ""),
            error=str(error) if error else None,
        )


@dataclass
class AudioFragment:
    scene_index: int
    raw_bytes: bytes
    mime_type: str
    estimated_duration_seconds: float = 0.0
    placeholder: bool = False


@dataclass
class SpeechChunk:
    data: bytes
    mime_type: str = ""


@dataclass
class ReferenceImage:
    data: bytes = b""
    mime_type: str = "image/jpeg"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.data)


@dataclass
class Character:
    name: str
    photo_url: Optional[str] = None
    photo: Optional[ReferenceImage] = None

    def to_dict(self) -> Dict[str, Any]:
        photo_data: Optional[Dict[str, Any]] = None
        if self.photo is not None:
            if self.photo.error is not None:
                photo_data = {"error": self.photo.error, "originalUrl": self.photo_url}
            else:
                photo_data = {
                    "base64Data": _b64encode(self.photo.data),
                    "mimeType": self.photo.mime_type,
                    "size": len(self.photo.data),
                }
        return {"name": self.name, "photoUrl": self.photo_url, "photoData": photo_data}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Character":
        photo_raw = raw.get("photoData")
        photo: Optional[ReferenceImage] = None
        if isinstance(photo_raw, dict):
            error = photo_raw.get("error")
            photo = ReferenceImage(
                data=_b64decode(photo_raw.get("base64Data") or ""),
                mime_type=str(photo_raw.get("mimeType") or "image/jpeg"),
                error=str(error) if error else None,
            )
        return cls(
            name=str(raw.get("name") or "").strip(),
            photo_url=raw.get("photoUrl") or raw.get("photo") or None,
            photo=photo,
        )


@dataclass
class Story:
    story_id: str
    created_at: str = ""
    characters: List[Character] = field(default_factory=list)
    outline: str = ""
    scenes: List[Scene] = field(default_factory=list)
    summary: str = ""
    audio: Optional[Audio] = None
    entity_metadata: Dict[str, Any] = field(default_factory=dict)
    image_metadata: Dict[str, Any] = field(default_factory=dict)
    generated_at: str = ""
    word_count: int = 0
    generation_error: Optional[str] = None
    force_regenerate: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def character_names(self) -> List[str]:
        return [c.name for c in self.characters if c.name]

    @property
    def display_name(self) -> str:
        return " & ".join(self.character_names) or "Untitled Story"

    def evolve(self, **changes: Any) -> "Story":
        return replace(self, **changes)

    def generated_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "scenes": [s.to_dict() for s in self.scenes],
            "summary": self.summary,
            "generatedAt": self.generated_at,
            "wordCount": self.word_count,
            "entityMetadata": self.entity_metadata,
            "imageMetadata": self.image_metadata,
            "audio": self.audio.to_dict() if self.audio is not None else None,
        }
        if self.generation_error is not None:
            data["error"] = self.generation_error
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.setdefault("id", self.story_id)
        data.update(
            {
                "createdAt": self.created_at,
                "characters": [c.to_dict() for c in self.characters],
                "story": {"outline": self.outline},
                "forceRegenerate": self.force_regenerate,
                "metadata": self.metadata,
            }
        )
        if self.scenes or self.audio is not None or self.generation_error is not None:
            data["generatedStory"] = self.generated_dict()
        return data

    @classmethod
    def from_dict(cls, story_id: str, raw: Dict[str, Any]) -> "Story":
        known = {"createdAt", "characters", "story", "forceRegenerate", "metadata", "generatedStory"}
        generated = raw.get("generatedStory") or {}
        if not isinstance(generated, dict):
            generated = {}
        scenes_raw = generated.get("scenes")
        scenes: List[Scene] = []
        if isinstance(scenes_raw, list):
            scenes = [Scene.from_dict(s, i) for i, s in enumerate(scenes_raw) if isinstance(s, dict)]
        audio_raw = generated.get("audio")
        story_raw = raw.get("story") or {}
        error = generated.get("error")
        return cls(
            story_id=story_id,
            created_at=str(raw.get("createdAt") or ""),
            characters=[Character.from_dict(c) for c in raw.get("characters") or [] if isinstance(c, dict)],
            outline=str(story_raw.get("outline") or "") if isinstance(story_raw, dict) else "",
            scenes=scenes,
            summary=str(generated.get("summary") or ""),
            audio=Audio.from_dict(audio_raw) if isinstance(audio_raw, dict) else None,
            entity_metadata=dict(generated.get("entityMetadata") or {}),
            image_metadata=dict(generated.get("imageMetadata") or {}),
            generated_at=str(generated.get("generatedAt") or ""),
            word_count=_as_int(generated.get("wordCount")),
            generation_error=str(error) if error else None,
            force_regenerate=bool(raw.get("forceRegenerate", False)),
            metadata=dict(raw.get("metadata") or {}),
            extra={k: v for k, v in raw.items() if k not in known},
        )


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii") if data else ""


def _b64decode(value: Any) -> bytes:
    if not value or not isinstance(value, str):
        return b""
    try:
        return base64.b64decode(value)
    except ValueError:
        return b""
