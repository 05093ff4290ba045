from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from loguru import logger

from .models import CharacterDescriptor, PageMapping, PageRecord

HUMAN_KEYWORDS = ('child', 'boy', 'girl', 'person', 'kid', 'human')
PROMINENT_SIZES = ('large', 'medium')

DEFAULT_CHARACTER = CharacterDescriptor(
    description="main character (forced processing)",
    position="center",
    size="medium",
    emotion="neutral",
    pose="standing",
    is_main_character=True,
    is_human=True,
    is_animal=False,
    replace_with_child=True,
)

# Detector payloads use camelCase; accept snake_case too.
_FIELD_ALIASES = {
    'is_main_character': ('isMainCharacter', 'is_main_character'),
    'is_human': ('isHuman', 'is_human'),
    'is_animal': ('isAnimal', 'is_animal'),
    'replace_with_child': ('replaceWithChild', 'replace_with_child'),
}
_TEXT_FIELDS = ('description', 'position', 'size', 'emotion', 'pose')

CharacterPayload = Union[CharacterDescriptor, Mapping[str, Any]]


def _as_flag(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ('true', 'yes'):
            return True
        if lowered in ('false', 'no'):
            return False
    return None


def to_descriptor(payload: CharacterPayload) -> Optional[CharacterDescriptor]:
    """Convert one detector entry into a CharacterDescriptor (None if unusable)."""
    if isinstance(payload, CharacterDescriptor):
        return payload
    if not isinstance(payload, Mapping):
        return None

    fields = {}
    for name in _TEXT_FIELDS:
        value = payload.get(name)
        fields[name] = str(value) if value is not None else ""
    for name, aliases in _FIELD_ALIASES.items():
        fields[name] = next((_as_flag(payload[a]) for a in aliases if a in payload), None)
    return CharacterDescriptor(**fields)


def _is_replaceable_human(character: CharacterDescriptor) -> bool:
    return (character.is_human is not False
            and character.is_animal is not True
            and character.replace_with_child is not False)


def select_character(characters: Optional[Iterable[CharacterPayload]]) -> CharacterDescriptor:
    """Pick the one character to replace on a page. Never fails.

    Order: flagged main human, human-sounding description, prominent
    non-animal, first non-animal, first of anything, synthesized default.
    """
    candidates: List[CharacterDescriptor] = []
    if characters is not None and not isinstance(characters, (str, bytes, Mapping)):
        try:
            for payload in characters:
                descriptor = to_descriptor(payload)
                if descriptor is not None:
                    candidates.append(descriptor)
        except TypeError:
            candidates = []

    for character in candidates:
        if character.is_main_character and _is_replaceable_human(character):
            return character

    for character in candidates:
        description = character.description.lower()
        if _is_replaceable_human(character) and any(k in description for k in HUMAN_KEYWORDS):
            return character

    for character in candidates:
        if (character.is_animal is not True and character.is_human is not False
                and character.size.strip().lower() in PROMINENT_SIZES):
            return character

    for character in candidates:
        if character.is_animal is not True:
            return character

    if candidates:
        return candidates[0]

    return DEFAULT_CHARACTER


def map_characters(pages: Sequence[PageRecord],
                   detections: Optional[Mapping[int, Any]] = None) -> List[PageMapping]:
    """Build one PageMapping per page; ``detections`` maps page number to character list."""
    detections = detections or {}
    mappings = []
    for page in pages:
        payload = detections.get(page.page_number)
        character = select_character(payload)
        if character is DEFAULT_CHARACTER:
            logger.debug(f"Page {page.page_number}: no usable character detected, forcing default target")
        else:
            logger.debug(f"Page {page.page_number}: replacing '{character.description}'")
        mappings.append(PageMapping(page=page, character=character, replacement_needed=True))

    logger.info(f"Character mapping complete: {len(mappings)} replacements needed")
    return mappings
