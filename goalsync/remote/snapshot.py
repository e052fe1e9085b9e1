"""Parsing of raw snapshot payloads into the domain model."""

import logging
from datetime import date
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from ..domain.models import (
    ITEM_MODELS,
    Collection,
    DailyProgress,
    Objective,
    ObjectiveTree,
    RoutineKind,
    RoutineSettings,
    UserSnapshot,
)

logger = logging.getLogger(__name__)

_routine_adapter = TypeAdapter(RoutineSettings)


class SnapshotParser:
    """
    Builds a UserSnapshot from the store's raw JSON tree.

    Malformed entries are skipped with a warning instead of failing the
    whole load. An objective whose own record is malformed is dropped
    together with its items, so nothing orphaned reaches the interface.

    Raw shape::

        {
            "active_objective_id": "...",
            "objectives": {
                "<id>": {
                    "objective": {...},
                    "tasks": [...], "avoid": [...], "notes": [...], "sessions": [...],
                    "routines": {"<kind>": {...}},
                    "progress": {"<YYYY-MM-DD>": {...}}
                }
            }
        }
    """

    def parse(self, user_id: str, raw: dict) -> UserSnapshot:
        raw_objectives = raw.get("objectives") or {}
        if not isinstance(raw_objectives, dict):
            logger.warning(f"Objectives of {user_id} are not a mapping, ignoring them")
            raw_objectives = {}

        objectives = {}
        for objective_id, raw_tree in raw_objectives.items():
            if not isinstance(raw_tree, dict):
                logger.warning(f"Objective {objective_id} is not an object, skipping")
                continue
            tree = self._parse_tree(objective_id, raw_tree)
            if tree:
                objectives[tree.id] = tree

        active_id = raw.get("active_objective_id")
        if active_id is not None and active_id not in objectives:
            logger.warning(f"Active objective {active_id} is missing, clearing pointer")
            active_id = None

        logger.debug(f"Parsed snapshot for {user_id}: {len(objectives)} objectives")
        return UserSnapshot(
            user_id=user_id,
            active_objective_id=active_id,
            objectives=objectives,
        )

    def _parse_tree(self, objective_id: str, raw_tree: dict) -> Optional[ObjectiveTree]:
        try:
            objective = Objective.model_validate(raw_tree.get("objective") or {})
        except ValidationError as e:
            logger.warning(f"Objective {objective_id} is malformed, skipping: {e}")
            return None

        collections = {
            collection.value: self._parse_items(
                objective_id, collection, raw_tree.get(collection.value) or []
            )
            for collection in ITEM_MODELS
        }

        return ObjectiveTree(
            objective=objective,
            routines=self._parse_routines(objective_id, raw_tree.get("routines") or {}),
            progress=self._parse_progress(objective_id, raw_tree.get("progress") or {}),
            **collections,
        )

    def _parse_items(self, objective_id: str, collection: Collection, raw_items: list) -> tuple:
        model = ITEM_MODELS[collection]
        items = []
        seen = set()
        for raw_item in raw_items:
            try:
                item = model.model_validate(raw_item)
            except ValidationError as e:
                logger.warning(
                    f"Skipping malformed {collection.value} item in {objective_id}: {e}"
                )
                continue
            if item.id in seen:
                logger.warning(f"Duplicate {collection.value} id {item.id} in {objective_id}")
                continue
            seen.add(item.id)
            items.append(item)
        return tuple(items)

    def _parse_routines(self, objective_id: str, raw_routines: dict) -> dict:
        routines = {}
        for raw_kind, raw_settings in raw_routines.items():
            try:
                kind = RoutineKind(raw_kind)
            except ValueError:
                logger.warning(f"Unknown routine kind '{raw_kind}' in {objective_id}")
                continue
            try:
                settings = _routine_adapter.validate_python(raw_settings)
            except ValidationError as e:
                logger.warning(f"Routine '{raw_kind}' in {objective_id} is malformed: {e}")
                continue
            if settings.variant != kind.variant:
                logger.warning(
                    f"Routine '{raw_kind}' in {objective_id} has '{settings.variant}' settings"
                )
                continue
            routines[kind] = settings
        return routines

    def _parse_progress(self, objective_id: str, raw_progress: dict) -> dict:
        progress = {}
        for raw_day, raw_entry in raw_progress.items():
            try:
                entry = DailyProgress.model_validate(raw_entry)
            except ValidationError as e:
                logger.warning(f"Progress for {raw_day} in {objective_id} is malformed: {e}")
                continue
            try:
                key = date.fromisoformat(str(raw_day))
            except ValueError:
                logger.warning(f"Progress key '{raw_day}' in {objective_id} is not a date")
                continue
            if entry.day != key:
                logger.warning(f"Progress key {raw_day} does not match entry date {entry.day}")
                continue
            progress[entry.day] = entry
        return progress
