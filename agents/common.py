"""Shared helpers for agent functions."""
import json
import os
import re
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


_DEFAULT_TEMPERATURES: Dict[str, float] = {
    "writer": 0.8,
    "entities": 0.1,
}

_FENCE_RE = re.compile(r"```(?:json)?\s*")


def _agent_temp_env_key(agent_name: str) -> str:
    normalized = "".join(ch if ch.isalnum() else "_" for ch in (agent_name or "default"))
    return f"LLM_TEMPERATURE_{normalized.upper()}"


def _resolve_temperature(agent_name: str) -> float:
    # Per-agent override wins (e.g., LLM_TEMPERATURE_WRITER).
    value = os.getenv(_agent_temp_env_key(agent_name))
    if value is not None:
        return float(value)
    return _DEFAULT_TEMPERATURES.get(agent_name, 0.1)


@dataclass
class LLMConfig:
    agent_name: str = "default"
    model: str = os.getenv("LLM_MODEL", "Qwen/Qwen2.5-7B-Instruct")
    base_url: str = os.getenv("VLLM_BASE_URL", "http://localhost:8000/v1")
    api_key: str = os.getenv("VLLM_API_KEY", "EMPTY")
    temperature: Optional[float] = None
    seed: Optional[int] = int(os.getenv("LLM_SEED", "42"))
    max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "8192"))
    json_only: bool = True
    timeout_sec: int = int(os.getenv("LLM_TIMEOUT_SEC", "120"))

    def __post_init__(self) -> None:
        if self.temperature is None:
            self.temperature = _resolve_temperature(self.agent_name)


class LLMClient:
    """vLLM OpenAI-compatible client."""

    system_msg = "You must respond with JSON only. No prose."

    def __init__(self, config: Optional[LLMConfig] = None, agent_name: str = "default") -> None:
        self.config = config or LLMConfig(agent_name=agent_name)
        self.last_raw: Optional[str] = None
        self.last_prompt: Optional[str] = None
        self.last_messages: Optional[List[Dict[str, str]]] = None

    def complete_json(self, prompt: str) -> Dict[str, Any]:
        """Return JSON-only output from vLLM.

        Invalid replies are salvaged (fences stripped, outermost object cut
        out), then sent back for repair, then re-asked with a stricter
        instruction; after three attempts the last parse error is raised.
        """
        self.last_prompt = prompt
        last_err: Optional[Exception] = None
        user_prompt = prompt
        for _attempt in range(3):
            content = self._chat(self.system_msg, user_prompt, self.config.temperature)
            try:
                return ensure_json_only(content)
            except json.JSONDecodeError as err:
                last_err = err
                salvage = _extract_json(content)
                if salvage is not None:
                    return salvage
                repaired = self._repair_json(content)
                if repaired is not None:
                    return repaired
                user_prompt = "Return valid JSON only. Do not include any other text.\n\n" + prompt
        raise last_err or RuntimeError("Failed to parse JSON from LLM")

    def _chat(self, system_msg: str, prompt: str, temperature: Optional[float]) -> str:
        url = self.config.base_url.rstrip("/") + "/chat/completions"
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_msg},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": self.config.max_tokens,
        }
        self.last_messages = list(payload["messages"])
        if self.config.seed is not None:
            payload["seed"] = self.config.seed
        if self.config.json_only:
            payload["response_format"] = {"type": "json_object"}
        data = json.dumps(payload).encode("utf-8")
        req = urllib.request.Request(url, data=data, headers=headers)
        with urllib.request.urlopen(req, timeout=self.config.timeout_sec) as resp:
            raw = resp.read().decode("utf-8")
        self.last_raw = raw
        parsed = json.loads(raw)
        choices = parsed.get("choices", [])
        if not choices:
            raise RuntimeError("LLM returned no choices")
        return choices[0].get("message", {}).get("content", "") or ""

    def _repair_json(self, bad_json: str) -> Optional[Dict[str, Any]]:
        prompt = "Fix the JSON below. Return valid JSON only.\n\n<json>\n" + bad_json + "\n</json>"
        try:
            content = self._chat("You fix invalid JSON. Return only valid JSON. No prose.", prompt, 0.0)
            return ensure_json_only(content)
        except (OSError, ValueError, RuntimeError):
            return None


def ensure_json_only(text: str) -> Dict[str, Any]:
    """Parse a JSON-only response string."""
    return json.loads(text)


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    cleaned = _FENCE_RE.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        value = json.loads(cleaned[start : end + 1])
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def as_string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for item in value:
        if isinstance(item, str):
            v = item.strip()
            if v:
                out.append(v)
    return out
