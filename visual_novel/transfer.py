"""Bulk character import/export.

Export produces a JSON-ready list of character records (sprites included as
stored, chat histories never). Import accepts such a list, keeps the records
that have at least an id, a name and a sprites mapping, migrates them like the
registry does on load, and upserts them by id. A batch is rejected only when
none of its records qualify.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from visual_novel.characters import CharacterRegistry, migrate_character
from visual_novel.errors import ValidationError
from visual_novel.models import Character

logger = logging.getLogger(__name__)


def export_filename(today: date | None = None) -> str:
    today = today or date.today()
    return f"ai-vn-characters-export-{today.isoformat()}.json"


def export_characters(registry: CharacterRegistry, character_ids: list[str]) -> list[dict[str, Any]]:
    """Records for the given ids, in the order asked. Unknown ids are skipped."""
    records = []
    for character_id in dict.fromkeys(character_ids):
        character = registry.get(character_id)
        if character is None:
            logger.warning("Export skipped unknown character %r", character_id)
            continue
        records.append(character.to_record())
    return records


def _qualifies(record: Any) -> bool:
    return (
        isinstance(record, dict)
        and bool(record.get("id"))
        and bool(record.get("name"))
        and isinstance(record.get("sprites"), dict)
    )


def import_characters(registry: CharacterRegistry, data: Any) -> list[Character]:
    """Upsert every usable record in data. Returns the imported characters.

    Raises ValidationError if data is not a list or holds no usable record.
    """
    if not isinstance(data, list):
        raise ValidationError("Import data is not a character array")

    characters = []
    for position, record in enumerate(data):
        if not _qualifies(record):
            logger.warning("Import skipped record %d: needs id, name and sprites", position)
            continue
        try:
            character = Character.model_validate(migrate_character(record))
        except PydanticValidationError as e:
            logger.warning("Import skipped record %d (%r): %s", position, record.get("id"), e)
            continue
        characters.append(character)

    if not characters:
        raise ValidationError("No valid character data found")

    return [registry.save(character) for character in characters]
