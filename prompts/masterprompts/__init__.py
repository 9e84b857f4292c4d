"""Utilities for loading the tutor's prompt variants."""
from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

_PROMPT_DIR = Path(__file__).resolve().parent

_TEMPLATE_KEYS = (
    "system_template",
    "diagnostic_template",
    "quiz_template",
    "action_template",
    "chat_template",
)


@dataclass(frozen=True)
class MasterPrompt:
    """A versioned set of templates for every provider request kind."""

    id: str
    variant: str
    prompt_version: str
    label: str
    description: str
    system_template: str
    diagnostic_template: str
    quiz_template: str
    action_template: str
    chat_template: str

    @property
    def normalized_variant(self) -> str:
        return self.variant.lower()

    def render_system(self, **fields: Any) -> str:
        return self.system_template.format(**fields).strip()

    def render_diagnostic(self, **fields: Any) -> str:
        return self.diagnostic_template.format(**fields).strip()

    def render_quiz(self, **fields: Any) -> str:
        return self.quiz_template.format(**fields).strip()

    def render_action(self, **fields: Any) -> str:
        return self.action_template.format(**fields).strip()

    def render_chat(self, **fields: Any) -> str:
        return self.chat_template.format(**fields).strip()


def _load_prompt(path: Path) -> MasterPrompt:
    payload = json.loads(path.read_text(encoding="utf-8"))
    required = {"id", "variant", "prompt_version", "label", "description", *_TEMPLATE_KEYS}
    missing = sorted(required - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    templates = {}
    for key in _TEMPLATE_KEYS:
        value = payload[key]
        # Long templates are stored as line lists to keep the JSON readable.
        templates[key] = "\n".join(value) if isinstance(value, list) else str(value)
    return MasterPrompt(
        id=str(payload["id"]),
        variant=str(payload["variant"]),
        prompt_version=str(payload["prompt_version"]),
        label=str(payload["label"]),
        description=str(payload["description"]),
        **templates,
    )


def _iter_prompt_files(directory: Path) -> Iterable[Path]:
    for path in sorted(directory.glob("*.json")):
        if path.is_file():
            yield path


@lru_cache(maxsize=4)
def load_prompts(directory: Path | None = None) -> Mapping[str, MasterPrompt]:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    prompts: Dict[str, MasterPrompt] = {}
    for file_path in _iter_prompt_files(base_dir):
        prompt = _load_prompt(file_path)
        key = prompt.normalized_variant
        if key in prompts:
            raise ValueError(f"Duplicate master prompt variant detected: {prompt.variant}")
        prompts[key] = prompt
    if not prompts:
        raise RuntimeError(f"No master prompt definitions found in {base_dir}")
    return prompts


def get_prompt(variant: str | None, directory: Path | None = None) -> MasterPrompt:
    prompts = load_prompts(directory)
    if not variant:
        return next(iter(prompts.values()))
    key = str(variant).lower()
    if key not in prompts:
        raise KeyError(f"Unknown master prompt variant '{variant}'. Available: {', '.join(sorted(prompts))}")
    return prompts[key]


__all__ = ["MasterPrompt", "load_prompts", "get_prompt"]
