"""Per-story pass logging and stage summaries for observability."""
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict


class RunLogger:
    def __init__(self, run_dir: str, echo: bool = False) -> None:
        self.run_dir = run_dir
        os.makedirs(self.run_dir, exist_ok=True)
        self.log_path = os.path.join(self.run_dir, "run.log")
        self.manifest_path = os.path.join(self.run_dir, "run_manifest.json")
        self.echo = echo
        self.manifest: Dict[str, Any] = {}
        if os.path.exists(self.manifest_path):
            try:
                with open(self.manifest_path, "r", encoding="utf-8") as f:
                    self.manifest = json.load(f)
            except (OSError, ValueError):
                self.manifest = {}
        if not self.manifest:
            self.manifest = {
                "story_id": os.path.basename(run_dir),
                "started_at": _now(),
                "passes": 0,
                "steps": {},
            }
        else:
            self.manifest.setdefault("story_id", os.path.basename(run_dir))
            self.manifest.setdefault("passes", 0)
            self.manifest.setdefault("steps", {})

    @classmethod
    def for_story(cls, runs_dir: str, story_id: str, echo: bool = False) -> "RunLogger":
        return cls(os.path.join(runs_dir, story_id), echo=echo)

    def log(self, message: str) -> None:
        line = f"[{_now()}] {message}"
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
        if self.echo:
            print(line, flush=True)

    def begin_pass(self) -> None:
        self.manifest["passes"] = int(self.manifest.get("passes", 0)) + 1
        self.manifest["last_pass_started_at"] = _now()
        self._flush()

    def save_step(self, step: str, payload: Dict[str, Any]) -> None:
        self.manifest["steps"].setdefault(step, {}).update(payload)
        self._flush()

    def _flush(self) -> None:
        self.manifest["updated_at"] = _now()
        with open(self.manifest_path, "w", encoding="utf-8") as f:
            json.dump(self.manifest, f, ensure_ascii=True, indent=2)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
