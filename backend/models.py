# models.py
"""
SQLAlchemy models for the local tabletop session.

Characters are written by the import tooling; the relay only reads them
(plus the resource counters it consumes). Messages are the recorded rolls.
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, JSON, Integer, Boolean, ForeignKey, Text

from backend.db import Base  # ✅ This works from project root


def _uuid() -> str:
    return str(uuid.uuid4())


class Character(Base):
    __tablename__ = "characters"
    __table_args__ = {'extend_existing': True}

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    kind = Column(String, default="pc")  # 'pc' | 'npc'
    owner_id = Column(String, nullable=True, index=True)  # Player user id (None = GM only)
    remote_character_id = Column(String, nullable=True, index=True)  # Link kept by import tooling

    # Rules data
    abilities = Column(JSON, default=dict)  # {"str": 10, "dex": 14, ...}
    proficiency_bonus = Column(Integer, default=2)
    save_proficiencies = Column(JSON, default=list)  # ["dex", "wis"]
    skills = Column(JSON, default=dict)  # {"prc": {"value": 1, "bonus": 0}}
    initiative_bonus = Column(Integer, default=0)
    items = Column(JSON, default=list)  # Weapons, spells, tools with embedded activities
    spell_slots = Column(JSON, default=dict)  # {"1": {"value": 2, "max": 4}}

    created_at = Column(DateTime, default=datetime.utcnow)


class CharacterMapping(Base):
    """Remote character id → local character id."""
    __tablename__ = "character_mappings"
    __table_args__ = {'extend_existing': True}

    remote_character_id = Column(String, primary_key=True)
    character_id = Column(String, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = {'extend_existing': True}

    id = Column(String, primary_key=True, default=_uuid)
    sender_id = Column(String, nullable=True)  # Owning player (or None for GM)
    sender_name = Column(String, nullable=False)
    character_id = Column(String, nullable=True, index=True)
    message_type = Column(String, nullable=False)  # 'save_roll', 'attack_roll', 'roll', ...
    content = Column(Text, default="")
    extra_data = Column(JSON, default=dict)  # Roll breakdown
    flags = Column(JSON, default=dict)  # Origin markers
    created_at = Column(DateTime, default=datetime.utcnow)


class Encounter(Base):
    __tablename__ = "encounters"
    __table_args__ = {'extend_existing': True}

    id = Column(String, primary_key=True, default=_uuid)
    is_active = Column(Boolean, default=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    ended_at = Column(DateTime, nullable=True)


class InitiativeRoll(Base):
    """Turn-order entry of a character in an encounter."""
    __tablename__ = "initiative_rolls"
    __table_args__ = {'extend_existing': True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    encounter_id = Column(String, ForeignKey("encounters.id"), nullable=False, index=True)
    character_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    roll_result = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
