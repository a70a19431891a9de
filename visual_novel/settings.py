"""User settings (credential, display name, personality, UI preferences).

Stored one key per file in the settings collection. Recognised keys are
credential, userName and userPersonality; any other key is kept as a free-form
UI preference. The browser version stored the credential as "apiKey"; it is
still read when "credential" is unset.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from visual_novel.storage import Storage

LEGACY_CREDENTIAL_KEY = "apiKey"


class Settings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    credential: str = ""
    user_name: str = "User"
    user_personality: str = ""

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def public(self) -> dict[str, Any]:
        """Settings safe to send to a client: the credential is redacted."""
        data = self.to_record()
        data.pop("credential", None)
        data.pop(LEGACY_CREDENTIAL_KEY, None)
        data["hasCredential"] = bool(self.credential)
        return data


def load_settings(storage: Storage) -> Settings:
    stored = {k: v for k, v in storage.get_settings().items() if v is not None}
    if not stored.get("credential") and stored.get(LEGACY_CREDENTIAL_KEY):
        stored["credential"] = stored[LEGACY_CREDENTIAL_KEY]
    return Settings.model_validate(stored)


def save_settings(storage: Storage, updates: dict[str, Any]) -> Settings:
    """Validate and persist a partial update. Returns the merged settings.

    Raises pydantic.ValidationError before writing anything if a recognised
    key has the wrong type.
    """
    updates = {to_camel(k) if k in Settings.model_fields else k: v for k, v in updates.items()}
    current = load_settings(storage).to_record()
    merged = Settings.model_validate({**current, **updates})
    record = merged.to_record()
    for key in updates:
        storage.set_setting(key, record.get(key))
    return merged
