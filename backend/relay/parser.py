"""
Normalization and categorization of remote roll events.

Pure functions: no I/O, no state. The only input besides the payload is the
local character (for tool lookups), which is read but never modified.
"""

from typing import Any, Dict, List, Optional

from backend.rules_engine import ABILITIES, SKILLS
from backend.relay.schemas import (
    CategoryKind,
    CharacterKind,
    DiceSet,
    DieResult,
    RemoteRoll,
    RollCategory,
    RollEvent,
    RollKind,
)

ROLL_FULFILLED = "dice/roll/fulfilled"

ATTACK_TYPES = {"to hit", "attack"}
HEAL_TYPES = {"heal", "healing"}

ROLL_TYPE_LABELS = {
    "to hit": "Attack",
    "attack": "Attack",
    "check": "Check",
    "save": "Saving Throw",
    "damage": "Damage",
    "heal": "Healing",
    "healing": "Healing",
    "initiative": "Initiative",
}


class MalformedRollEvent(ValueError):
    """The payload is not a usable dice event."""


# ============================================================================
# EXTRACTION
# ============================================================================

def _parse_dice_set(raw_set: Dict[str, Any]) -> DiceSet:
    faces = tuple(int(die["dieValue"]) for die in raw_set.get("dice") or [])
    return DiceSet(
        die_type=str(raw_set.get("dieType", "")),
        count=int(raw_set.get("count", len(faces))),
        faces=faces,
    )


def _parse_remote_roll(raw_roll: Dict[str, Any]) -> RemoteRoll:
    notation = raw_roll.get("diceNotation") or {}
    result = raw_roll.get("result") or {}
    return RemoteRoll(
        roll_type=raw_roll.get("rollType") or "check",
        roll_kind=RollKind.from_wire(raw_roll.get("rollKind")),
        total=int(result.get("total") or 0),
        sets=tuple(_parse_dice_set(s) for s in notation.get("set") or []),
        constant=int(notation.get("constant") or 0),
    )


def build_formula(roll: Optional[RemoteRoll]) -> str:
    """'2d6 + 1d4 +3' style formula for a remote roll."""
    if roll is None:
        return ""
    formula = " + ".join(f"{s.count}{s.die_type}" for s in roll.sets)
    if roll.constant:
        sign = "+" if roll.constant >= 0 else ""
        formula += f" {sign}{roll.constant}"
    return formula


def _build_event(raw: Dict[str, Any], data: Dict[str, Any], rolls: List[Dict[str, Any]]) -> RollEvent:
    remote_rolls = tuple(_parse_remote_roll(r) for r in rolls)
    first = remote_rolls[0] if remote_rolls else None
    context = data.get("context") or {}
    entity_type = str(raw.get("entityType") or "character").lower()

    return RollEvent(
        action=data.get("action") or "Unknown",
        roll_type=first.roll_type if first else "check",
        roll_kind=first.roll_kind if first else RollKind.NORMAL,
        total=first.total if first else 0,
        formula=build_formula(first),
        dice_results=tuple(
            DieResult(die_type=s.die_type, value=v)
            for s in (first.sets if first else ())
            for v in s.faces
        ),
        character_id=str(raw.get("entityId") or ""),
        character_name=context.get("name") or "Unknown",
        character_kind=CharacterKind.PC if entity_type == "character" else CharacterKind.NPC,
        source=raw.get("source") or "web",
        raw_rolls=remote_rolls,
    )


def extract_roll_info(raw: Dict[str, Any]) -> RollEvent:
    """
    Flatten a raw stream event into a RollEvent (first roll drives the summary).

    Any payload that cannot be turned into an event raises MalformedRollEvent.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
        raise MalformedRollEvent("Roll event has no data object")

    data = raw["data"]
    rolls = data.get("rolls") or []
    if not isinstance(rolls, list):
        raise MalformedRollEvent("Roll event 'rolls' is not a list")

    # ValidationError is a ValueError
    try:
        return _build_event(raw, data, rolls)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedRollEvent(f"Invalid roll event: {e}") from e


# ============================================================================
# CATEGORIZATION
# ============================================================================

def ability_code(value: str) -> Optional[str]:
    value = value.strip().lower()
    for code, label in ABILITIES.items():
        if value == code or value == label.lower():
            return code
    return None


def skill_code(value: str) -> Optional[str]:
    value = value.strip().lower()
    for code, (label, _ability) in SKILLS.items():
        if value == code or value == label.lower():
            return code
    return None


def find_tool_for_action(character, action: str) -> Optional[Dict[str, Any]]:
    """First tool whose name contains the action text, or the other way round."""
    if character is None:
        return None
    action_lower = action.strip().lower()
    if not action_lower:
        return None
    for item in character.items or []:
        if item.get("type") != "tool":
            continue
        name_lower = str(item.get("name", "")).lower()
        if name_lower and (action_lower in name_lower or name_lower in action_lower):
            return item
    return None


def determine_roll_category(action: str, roll_type: str, character=None) -> RollCategory:
    """
    Map an (action, rollType) pair onto a local roll category.

    Initiative, saves, attacks, damage and healing are decided by the roll
    type. Checks try ability names, then skill names, then the character's
    tools, so a tool whose name contains an ability word cannot shadow it.
    """
    action_lower = action.strip().lower()
    roll_type = (roll_type or "").strip().lower()

    if action_lower == "initiative" or roll_type == "initiative":
        return RollCategory(kind=CategoryKind.INITIATIVE, action=action)

    if roll_type == "save":
        # Saves that name no ability (e.g. death saves) roll as Strength
        return RollCategory(kind=CategoryKind.SAVE, action=action, resolved_key=ability_code(action) or "str")

    if roll_type in ATTACK_TYPES:
        return RollCategory(kind=CategoryKind.ATTACK, action=action, resolved_key=action)

    if roll_type == "damage":
        return RollCategory(kind=CategoryKind.DAMAGE, action=action, resolved_key=action)

    if roll_type in HEAL_TYPES:
        return RollCategory(kind=CategoryKind.HEAL, action=action, resolved_key=action)

    if roll_type == "check":
        ability = ability_code(action)
        if ability:
            return RollCategory(kind=CategoryKind.ABILITY_CHECK, action=action, resolved_key=ability)
        skill = skill_code(action)
        if skill:
            return RollCategory(kind=CategoryKind.SKILL, action=action, resolved_key=skill)
        tool = find_tool_for_action(character, action)
        if tool:
            return RollCategory(kind=CategoryKind.TOOL, action=action, resolved_key=tool.get("id"))
        return RollCategory(kind=CategoryKind.CUSTOM_CHECK, action=action)

    return RollCategory(kind=CategoryKind.UNKNOWN, action=action)


# ============================================================================
# LOOKUP HELPERS
# ============================================================================

def roll_type_label(roll_type: Optional[str]) -> str:
    if not roll_type:
        return "Roll"
    return ROLL_TYPE_LABELS.get(roll_type.lower(), roll_type)


def find_item_by_action(character, action_name: str) -> Optional[Dict[str, Any]]:
    if character is None or not action_name:
        return None
    name_lower = action_name.strip().lower()
    for item in character.items or []:
        if str(item.get("name", "")).lower() == name_lower:
            return item
    return None


def _first_of_type(activities: List[Dict[str, Any]], activity_type: str) -> Optional[Dict[str, Any]]:
    for activity in activities:
        if activity.get("type") == activity_type:
            return activity
    return None


def activity_for_roll(item: Optional[Dict[str, Any]], roll_type: str) -> Optional[Dict[str, Any]]:
    """
    Pick the item activity a remote roll type corresponds to.

    Damage follows the item's attack when it has one, otherwise its save,
    otherwise a plain damage activity.
    """
    if not item:
        return None
    activities = item.get("activities") or []
    if not activities:
        return None

    roll_type = (roll_type or "").lower()
    if roll_type in ATTACK_TYPES:
        return _first_of_type(activities, "attack")
    if roll_type in HEAL_TYPES:
        return _first_of_type(activities, "heal")
    if roll_type == "damage":
        return (
            _first_of_type(activities, "attack")
            or _first_of_type(activities, "save")
            or _first_of_type(activities, "damage")
        )
    return activities[0]
