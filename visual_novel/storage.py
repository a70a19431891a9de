"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory,
one file per key, grouped into three collections. There is no database;
reads and writes go through plain helper methods that load and dump JSON.

Directory layout:

    {base}/
      meta.json                 ← {"version": N}
      settings/{key}.json       ← one setting value per file
      characters/{id}.json      ← one Character record per file
      chats/{id}.json           ← Message list for the character with that id

Keys are percent-encoded into file names, so any id is safe. Every write goes
to a temporary file in the same directory and is moved into place, so a single
key is always either the old or the new value on disk.

Schema versions:
  1  settings + characters
  2  chats (per-character message history)

Opening a directory written by an older version creates the missing
collections and bumps meta.json; existing files are left alone.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote, unquote

from visual_novel.errors import StorageError
from visual_novel.models import Character, Message

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

Collection = Literal["settings", "characters", "chats"]

_COLLECTIONS_BY_VERSION: dict[int, tuple[Collection, ...]] = {
    1: ("settings", "characters"),
    2: ("settings", "characters", "chats"),
}


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self.version = self._open()

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Opening and upgrades
    # ------------------------------------------------------------------

    def _meta_path(self) -> Path:
        return self._base / "meta.json"

    def _open(self) -> int:
        try:
            self._base.mkdir(parents=True, exist_ok=True)
            meta = self._meta_path()
            on_disk = json.loads(meta.read_text())["version"] if meta.is_file() else 0
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Cannot open storage at {self._base}: {e}") from e

        if on_disk > SCHEMA_VERSION:
            raise StorageError(
                f"Storage at {self._base} has version {on_disk}, "
                f"newer than supported version {SCHEMA_VERSION}"
            )
        if on_disk < SCHEMA_VERSION:
            self._upgrade(on_disk)
        return SCHEMA_VERSION

    def _upgrade(self, from_version: int) -> None:
        """Create collections missing for the current version. Idempotent."""
        logger.info("Upgrading storage at %s from v%d to v%d", self._base, from_version, SCHEMA_VERSION)
        try:
            for collection in _COLLECTIONS_BY_VERSION[SCHEMA_VERSION]:
                (self._base / collection).mkdir(exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot upgrade storage at {self._base}: {e}") from e
        self._write_json(self._meta_path(), {"version": SCHEMA_VERSION})

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _key_path(self, collection: Collection, key: str) -> Path:
        if not key:
            raise StorageError(f"Empty key in collection {collection!r}")
        return self._base / collection / f"{quote(key, safe='')}.json"

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Cannot write {path}: {e}") from e

    # ------------------------------------------------------------------
    # Generic keyed access
    # ------------------------------------------------------------------

    def get(self, collection: Collection, key: str) -> Any | None:
        """Return the stored value, or None if the key is absent."""
        path = self._key_path(collection, key)
        if not path.is_file():
            return None
        return self._read_json(path)

    def put(self, collection: Collection, key: str, value: Any) -> None:
        self._write_json(self._key_path(collection, key), value)

    def delete(self, collection: Collection, key: str) -> bool:
        """Remove a key. Returns False if it did not exist."""
        path = self._key_path(collection, key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Cannot delete {path}: {e}") from e
        return True

    def keys(self, collection: Collection) -> list[str]:
        try:
            return sorted(
                unquote(p.stem) for p in (self._base / collection).glob("*.json")
            )
        except OSError as e:
            raise StorageError(f"Cannot list {collection}: {e}") from e

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Any | None:
        return self.get("settings", key)

    def set_setting(self, key: str, value: Any) -> None:
        self.put("settings", key, value)

    def get_settings(self) -> dict[str, Any]:
        return {key: self.get("settings", key) for key in self.keys("settings")}

    # ------------------------------------------------------------------
    # Characters (raw records; migration happens in the registry)
    # ------------------------------------------------------------------

    def get_character_record(self, character_id: str) -> dict[str, Any] | None:
        return self.get("characters", character_id)

    def get_character_records(self) -> list[dict[str, Any]]:
        records = []
        for key in self.keys("characters"):
            record = self.get("characters", key)
            if record is not None:
                records.append(record)
        return records

    def save_character(self, character: Character) -> None:
        """Upsert a character by id."""
        self.put("characters", character.id, character.to_record())

    def delete_character(self, character_id: str) -> bool:
        return self.delete("characters", character_id)

    # ------------------------------------------------------------------
    # Chat histories
    # ------------------------------------------------------------------

    def get_chat(self, character_id: str) -> list[Message] | None:
        """Load a character's message log, or None if no chat exists yet."""
        data = self.get("chats", character_id)
        if data is None:
            return None
        try:
            return [Message.model_validate(m) for m in data]
        except ValueError as e:
            raise StorageError(f"Corrupt chat history for {character_id!r}: {e}") from e

    def save_chat(self, character_id: str, messages: list[Message]) -> None:
        """Replace a character's message log wholesale."""
        self.put("chats", character_id, [m.to_record() for m in messages])

    def delete_chat(self, character_id: str) -> bool:
        return self.delete("chats", character_id)
