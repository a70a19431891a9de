"""Character registry: CRUD over character records plus schema migration.

Migration rules, applied to every raw record on load (and on import):
  emotions missing/empty  → sprite keys, else ["neutral"]
  emotions duplicated     → first occurrence kept, order preserved
  indicator missing       → {"name": "Affection", "value": 50}
  indicator value         → clamped to [0, 100]

migrate_character() is pure and idempotent. The registry writes a migrated
record back once, only when migration changed it.
"""

from __future__ import annotations

import copy
import logging
import math
import time
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from visual_novel.errors import StorageError
from visual_novel.models import (
    DEFAULT_INDICATOR_NAME,
    DEFAULT_INDICATOR_VALUE,
    FALLBACK_EMOTION,
    INDICATOR_MAX,
    INDICATOR_MIN,
    Character,
)
from visual_novel.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_EMOTIONS = ["neutral", "happy", "sad", "angry", "surprised", "blush", "thinking", "wink"]


def clamp_indicator(value: float) -> int:
    """Round and clamp a raw indicator value into [0, 100]."""
    if isinstance(value, float) and not math.isfinite(value):
        return INDICATOR_MAX if value == math.inf else INDICATOR_MIN
    return int(max(INDICATOR_MIN, min(INDICATOR_MAX, round(value))))


def migrate_character(record: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a raw character record upgraded to the current shape."""
    migrated = copy.deepcopy(record)

    sprites = migrated.get("sprites")
    if not isinstance(sprites, dict):
        sprites = {}
        migrated["sprites"] = sprites

    emotions = migrated.get("emotions")
    if not isinstance(emotions, list):
        emotions = []
    emotions = list(dict.fromkeys(e for e in emotions if isinstance(e, str) and e))
    if not emotions:
        emotions = list(sprites) or [FALLBACK_EMOTION]
    migrated["emotions"] = emotions

    indicator = migrated.get("indicator")
    if not isinstance(indicator, dict):
        indicator = {"name": DEFAULT_INDICATOR_NAME, "value": DEFAULT_INDICATOR_VALUE}
    else:
        indicator = dict(indicator)
        indicator.setdefault("name", DEFAULT_INDICATOR_NAME)
        value = indicator.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            value = DEFAULT_INDICATOR_VALUE
        indicator["value"] = clamp_indicator(value)
    migrated["indicator"] = indicator

    return migrated


def new_character(name: str, **fields: Any) -> Character:
    """Create a character with a fresh time-based id."""
    character_id = fields.pop("id", None) or str(time.time_ns() // 1_000_000)
    record = migrate_character({"id": character_id, "name": name, **fields})
    return Character.model_validate(record)


class CharacterRegistry:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def _load(self, record: dict[str, Any]) -> Character | None:
        migrated = migrate_character(record)
        try:
            character = Character.model_validate(migrated)
        except PydanticValidationError as e:
            logger.warning("Skipping unreadable character record %r: %s", record.get("id"), e)
            return None
        if migrated != record:
            logger.info("Migrated character %s to current schema", character.id)
            self._storage.save_character(character)
        return character

    def list(self) -> list[Character]:
        """All stored characters, migrated."""
        characters = []
        for record in self._storage.get_character_records():
            character = self._load(record)
            if character is not None:
                characters.append(character)
        return characters

    def get(self, character_id: str) -> Character | None:
        record = self._storage.get_character_record(character_id)
        if record is None:
            return None
        return self._load(record)

    def save(self, character: Character) -> Character:
        """Upsert by id. The stored form is always migrated and clamped."""
        migrated = Character.model_validate(migrate_character(character.to_record()))
        self._storage.save_character(migrated)
        return migrated

    def delete(self, character_id: str) -> bool:
        """Delete a character and its chat history. Returns False if unknown."""
        existed = self._storage.delete_character(character_id)
        try:
            self._storage.delete_chat(character_id)
        except StorageError:
            logger.error("Character %s deleted but its chat history was not", character_id)
            raise
        return existed
