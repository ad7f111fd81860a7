# app/services/preset_sync.py - Sync built-in recipe presets into the recipes table

from __future__ import annotations

import json
import logging
from typing import Any

from app.models.recipe import Recipe, RecipePreset, RecipeStatus, RecipeStep
from app.registry.loader import get_all_presets
from app.services.execution_store import ExecutionStore

logger = logging.getLogger(__name__)


def normalize_step(step: RecipeStep) -> tuple[int, str, str, str]:
    config = step.config.model_dump(mode="json", exclude_none=True)
    return (step.step_index, step.name, step.type.value, json.dumps(config, sort_keys=True, ensure_ascii=False))


def steps_match(stored: list[RecipeStep], preset: list[RecipeStep]) -> bool:
    if len(stored) != len(preset):
        return False
    stored_by_index = {step.step_index: normalize_step(step) for step in stored}
    return all(stored_by_index.get(step.step_index) == normalize_step(step) for step in preset)


def _create_from_preset(store: ExecutionStore, preset: RecipePreset) -> Recipe:
    row = {
        "name": preset.name,
        "slug": preset.slug,
        "description": preset.description,
        "input_kind": preset.input_kind.value,
        "input_modes": preset.input_modes,
        "default_lang": preset.default_lang,
        "status": RecipeStatus.ACTIVE.value,
        "current_version": 1,
        "preset_key": preset.key,
    }
    return store.create_recipe(row, preset.steps)


def sync_preset(store: ExecutionStore, preset: RecipePreset, *, create_missing: bool = False) -> dict[str, Any]:
    recipe = store.find_recipe_by_preset_key(preset.key)
    if recipe is None:
        if not create_missing:
            return {"preset_key": preset.key, "action": "missing"}
        created = _create_from_preset(store, preset)
        logger.info("created recipe from preset", extra={"preset_key": preset.key, "recipe_id": created.id})
        return {"preset_key": preset.key, "action": "created", "recipe_id": created.id, "version": 1}

    if steps_match(recipe.steps, preset.steps):
        return {"preset_key": preset.key, "action": "unchanged", "recipe_id": recipe.id, "version": recipe.current_version}

    next_version = recipe.current_version + 1
    store.replace_recipe_steps(recipe.id, preset.steps, next_version)
    logger.info(
        "synced recipe steps from preset",
        extra={
            "preset_key": preset.key,
            "recipe_id": recipe.id,
            "from_version": recipe.current_version,
            "to_version": next_version,
            "steps": len(preset.steps),
        },
    )
    return {"preset_key": preset.key, "action": "updated", "recipe_id": recipe.id, "version": next_version}


def sync_all_presets(
    store: ExecutionStore | None = None,
    *,
    presets: list[RecipePreset] | None = None,
    create_missing: bool = False,
) -> list[dict[str, Any]]:
    store = store or ExecutionStore()
    report: list[dict[str, Any]] = []
    for preset in presets if presets is not None else get_all_presets():
        try:
            report.append(sync_preset(store, preset, create_missing=create_missing))
        except Exception as exc:  # noqa: BLE001
            logger.exception("preset sync failed", extra={"preset_key": preset.key})
            report.append({"preset_key": preset.key, "action": "error", "error": str(exc)})
    return report
