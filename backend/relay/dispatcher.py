"""
Local execution of relayed rolls.

One strategy per CategoryKind. Each strategy builds the roll through the
rules engine (so modifiers are local), evaluates it, overwrites the dice with
the remote faces and records it. Strategies raise on failure; the router
decides what happens next.
"""

import logging
import random
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from backend import rules_engine
from backend.models import Character, Encounter, InitiativeRoll, Message
from backend.relay.dice import inject_remote_faces
from backend.relay.parser import ability_code, activity_for_roll, find_item_by_action
from backend.relay.records import record_roll_message, record_standalone_roll
from backend.relay.schemas import CategoryKind, RollCategory, RollEvent

logger = logging.getLogger(__name__)


class DispatchError(Exception):
    """A category strategy could not produce a record."""


def get_or_create_active_encounter(db: Session) -> Encounter:
    """Get the active encounter, or create one if none exists."""
    encounter = db.query(Encounter).filter(Encounter.is_active == True).first()  # noqa: E712

    if not encounter:
        encounter = Encounter(is_active=True, started_at=datetime.utcnow())
        db.add(encounter)
        db.commit()
        db.refresh(encounter)
        logger.info(f"⚔️ Started encounter {encounter.id} for relayed initiative")

    return encounter


class RollDispatcher:
    """
    Executes one categorized roll for a local character.

    Args:
        rng: random source for the local evaluation (faces are replaced
            afterwards, so it only matters for dice the remote did not send).
        skip_spell_slot: callable read per roll; True leaves spell slots alone.
    """

    def __init__(self, rng=random, skip_spell_slot: Optional[Callable[[], bool]] = None):
        self.rng = rng
        self.skip_spell_slot = skip_spell_slot or (lambda: False)
        self.strategies: Dict[CategoryKind, Callable[[Session, Character, RollEvent, RollCategory], Message]] = {
            CategoryKind.SAVE: self._save,
            CategoryKind.ABILITY_CHECK: self._ability_check,
            CategoryKind.SKILL: self._skill,
            CategoryKind.TOOL: self._tool,
            CategoryKind.INITIATIVE: self._initiative,
            CategoryKind.ATTACK: self._attack,
            CategoryKind.DAMAGE: self._damage,
            CategoryKind.HEAL: self._heal,
            CategoryKind.CUSTOM_CHECK: self._standalone,
            CategoryKind.UNKNOWN: self._standalone,
        }
        missing = set(CategoryKind) - set(self.strategies)
        if missing:
            raise RuntimeError(f"No dispatch strategy for: {sorted(k.value for k in missing)}")

    def execute(self, db: Session, character: Character, event: RollEvent, category: RollCategory) -> Message:
        """Run the strategy for `category` and return the recorded message."""
        strategy = self.strategies[category.kind]
        logger.debug(f"Dispatching {category.kind.value} '{category.action}' for {character.name}",
                     extra={"character_id": character.id})
        return strategy(db, character, event, category)

    # ------------------------------------------------------------------
    # d20 rolls
    # ------------------------------------------------------------------

    def _finish(self, db, character, event, roll, message_type, extra=None) -> Message:
        roll.evaluate(self.rng)
        inject_remote_faces(roll, event.first_roll)
        return record_roll_message(db, event, roll, character, message_type=message_type, extra=extra)

    def _save(self, db, character, event, category):
        ability = category.resolved_key or "str"
        roll = rules_engine.save_roll(character, ability, event.is_advantage, event.is_disadvantage)
        if ability_code(category.action) != ability:
            roll.flavor = f"{category.action} ({roll.flavor})"
        return self._finish(db, character, event, roll, "save_roll", extra={"action": category.action})

    def _ability_check(self, db, character, event, category):
        roll = rules_engine.ability_check_roll(character, category.resolved_key,
                                               event.is_advantage, event.is_disadvantage)
        return self._finish(db, character, event, roll, "ability_check")

    def _skill(self, db, character, event, category):
        roll = rules_engine.skill_roll(character, category.resolved_key,
                                       event.is_advantage, event.is_disadvantage)
        return self._finish(db, character, event, roll, "skill_roll")

    def _tool(self, db, character, event, category):
        tool = rules_engine.find_item(character, category.resolved_key)
        if tool is None:
            raise DispatchError(f"Tool {category.resolved_key} not found on {character.name}")
        roll = rules_engine.tool_roll(character, tool, event.is_advantage, event.is_disadvantage)
        return self._finish(db, character, event, roll, "tool_roll")

    def _initiative(self, db, character, event, category):
        encounter = get_or_create_active_encounter(db)

        entry = db.query(InitiativeRoll).filter(
            InitiativeRoll.encounter_id == encounter.id,
            InitiativeRoll.character_id == character.id,
        ).first()
        if not entry:
            entry = InitiativeRoll(encounter_id=encounter.id, character_id=character.id, name=character.name)
            db.add(entry)
        entry.roll_result = event.total

        roll = rules_engine.initiative_roll(character, event.is_advantage, event.is_disadvantage)
        return self._finish(db, character, event, roll, "initiative_roll",
                            extra={"encounter_id": encounter.id})

    # ------------------------------------------------------------------
    # Item rolls
    # ------------------------------------------------------------------

    def _item_and_activity(self, character, event, category):
        item = find_item_by_action(character, category.resolved_key or category.action)
        activity = activity_for_roll(item, event.roll_type)
        if item is None or activity is None:
            logger.info(f"No item/activity for '{category.action}' on {character.name}; recording remote roll")
        return item, activity

    def _consume(self, character, item, activity):
        return rules_engine.consume_activity(character, item, activity,
                                             spell_slot=not self.skip_spell_slot())

    def _attack(self, db, character, event, category):
        item, activity = self._item_and_activity(character, event, category)
        if activity is None:
            return record_standalone_roll(db, event, character)
        roll = rules_engine.attack_roll(character, item, activity, event.is_advantage, event.is_disadvantage)
        return self._finish(db, character, event, roll, "attack_roll",
                            extra={"item_id": item.get("id"), "activity_id": activity.get("id")})

    def _damage(self, db, character, event, category):
        item, activity = self._item_and_activity(character, event, category)
        if activity is None:
            return record_standalone_roll(db, event, character)
        roll = rules_engine.damage_roll(character, item, activity, critical=event.is_critical)

        extra = {"item_id": item.get("id"), "activity_id": activity.get("id")}
        # Attack activities consume nothing; save-style damage spends uses and slots
        if activity.get("type") != "attack":
            extra["consumed"] = self._consume(character, item, activity)
        return self._finish(db, character, event, roll, "damage_roll", extra=extra)

    def _heal(self, db, character, event, category):
        item, activity = self._item_and_activity(character, event, category)
        if activity is None:
            return record_standalone_roll(db, event, character)
        roll = rules_engine.heal_roll(character, item, activity)
        extra = {
            "item_id": item.get("id"),
            "activity_id": activity.get("id"),
            "consumed": self._consume(character, item, activity),
        }
        return self._finish(db, character, event, roll, "heal_roll", extra=extra)

    def _standalone(self, db, character, event, category):
        return record_standalone_roll(db, event, character)
