"""Create demo data for development/testing."""

from visual_novel.characters import DEFAULT_EMOTIONS, CharacterRegistry
from visual_novel.models import Character, Indicator
from visual_novel.storage import Storage

DEMO_CHARACTER = Character(
    id="default-aiko",
    name="Aiko",
    personality=(
        "A cheerful and energetic high school student who is always optimistic. "
        "She loves video games and bubble tea. She can be a bit clumsy sometimes."
    ),
    visual_description=(
        "A teenage girl with long, vibrant pink hair tied in twin tails, and sparkling "
        "emerald green eyes. She wears a stylish modern school uniform with a short pleated skirt."
    ),
    greeting="Oh! Hi there! I was just about to grab some bubble tea. Want to come along?",
    emotions=list(DEFAULT_EMOTIONS),
    indicator=Indicator(name="Affection", value=50),
)


def create_demo_data(storage: Storage) -> Character:
    """Wipe existing characters and chats and store the demo character."""
    registry = CharacterRegistry(storage)
    for character_id in storage.keys("characters"):
        registry.delete(character_id)
    for character_id in storage.keys("chats"):
        storage.delete_chat(character_id)
    return registry.save(DEMO_CHARACTER)
