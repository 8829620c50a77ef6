"""
Remote character id → local character lookups and mapping management.
"""

import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from backend.models import Character, CharacterMapping

logger = logging.getLogger(__name__)


def resolve_character(db: Session, remote_character_id: str) -> Optional[Character]:
    """
    Find the local character for a remote id.

    The mapping table wins; a mapping that points at a deleted character is
    skipped with a warning and the import link on the character is tried.
    """
    if not remote_character_id:
        return None

    mapping = db.get(CharacterMapping, str(remote_character_id))
    if mapping:
        character = db.get(Character, mapping.character_id)
        if character:
            return character
        logger.warning(
            f"⚠️ Mapping {remote_character_id} → {mapping.character_id} points to a missing character",
            extra={"character_id": mapping.character_id},
        )

    return db.query(Character).filter(
        Character.remote_character_id == str(remote_character_id)
    ).first()


def map_character(db: Session, remote_character_id: str, character_id: str) -> CharacterMapping:
    """Create or replace the mapping of a remote character."""
    if db.get(Character, character_id) is None:
        raise ValueError(f"Character {character_id} not found")

    mapping = db.get(CharacterMapping, str(remote_character_id))
    if mapping:
        mapping.character_id = character_id
    else:
        mapping = CharacterMapping(remote_character_id=str(remote_character_id), character_id=character_id)
        db.add(mapping)
    db.commit()
    db.refresh(mapping)
    logger.info(f"🔗 Mapped remote character {remote_character_id} → {character_id}")
    return mapping


def unmap_character(db: Session, remote_character_id: str) -> bool:
    mapping = db.get(CharacterMapping, str(remote_character_id))
    if not mapping:
        return False
    db.delete(mapping)
    db.commit()
    logger.info(f"Unmapped remote character {remote_character_id}")
    return True


def get_mappings(db: Session) -> Dict[str, str]:
    return {m.remote_character_id: m.character_id for m in db.query(CharacterMapping).all()}
