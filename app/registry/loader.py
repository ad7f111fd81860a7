from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from app.models.recipe import RecipePreset

PRESETS_PATH = Path(__file__).resolve().parent / "presets.yaml"


def _load_yaml_text(raw_text: str) -> dict[str, Any]:
    parsed = yaml.safe_load(raw_text)
    if not isinstance(parsed, dict):
        raise ValueError("presets registry must parse into an object")
    return parsed


def _parse_presets(data: dict[str, Any]) -> list[RecipePreset]:
    presets = data.get("presets")
    if not isinstance(presets, list):
        raise ValueError("presets registry must contain a 'presets' list")

    parsed: list[RecipePreset] = []
    seen_keys: set[str] = set()
    for item in presets:
        preset = RecipePreset(**item)
        if preset.key in seen_keys:
            raise ValueError(f"duplicate preset key: {preset.key}")
        seen_keys.add(preset.key)
        parsed.append(preset)
    return parsed


@lru_cache(maxsize=1)
def _presets() -> tuple[RecipePreset, ...]:
    raw_text = PRESETS_PATH.read_text(encoding="utf-8")
    return tuple(_parse_presets(_load_yaml_text(raw_text)))


def reload_presets() -> None:
    _presets.cache_clear()
    _presets()


def get_all_presets() -> list[RecipePreset]:
    return [preset.model_copy(deep=True) for preset in _presets()]


def get_preset(key: str) -> RecipePreset | None:
    for preset in _presets():
        if preset.key == key:
            return preset.model_copy(deep=True)
    return None
