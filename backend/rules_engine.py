# rules_engine.py
"""
Local rules engine.

Builds rolls for a character (saves, checks, skills, tools, initiative,
attacks, damage, healing) and owns the resource bookkeeping. Dice are plain
objects so callers can overwrite faces after evaluation and recompute.
"""

import copy
import math
import random
import re
from typing import Dict, List, Optional


### 📖 Rule Tables ###
ABILITIES = {
    "str": "Strength",
    "dex": "Dexterity",
    "con": "Constitution",
    "int": "Intelligence",
    "wis": "Wisdom",
    "cha": "Charisma",
}

# code → (label, governing ability)
SKILLS = {
    "acr": ("Acrobatics", "dex"),
    "ani": ("Animal Handling", "wis"),
    "arc": ("Arcana", "int"),
    "ath": ("Athletics", "str"),
    "dec": ("Deception", "cha"),
    "his": ("History", "int"),
    "ins": ("Insight", "wis"),
    "itm": ("Intimidation", "cha"),
    "inv": ("Investigation", "int"),
    "med": ("Medicine", "wis"),
    "nat": ("Nature", "int"),
    "prc": ("Perception", "wis"),
    "prf": ("Performance", "cha"),
    "per": ("Persuasion", "cha"),
    "rel": ("Religion", "int"),
    "slt": ("Sleight of Hand", "dex"),
    "ste": ("Stealth", "dex"),
    "sur": ("Survival", "wis"),
}


### 🎲 Dice Terms ###
DIE_PATTERN = re.compile(r"(\d*)d(\d+)(kh|kl)?")


class DieTerm:
    """`number` dice with `faces` sides, optionally keeping highest/lowest."""

    def __init__(self, number: int, faces: int, modifier: Optional[str] = None,
                 results: Optional[List[int]] = None, sign: int = 1):
        self.number = number
        self.faces = faces
        self.modifier = modifier
        self.results = list(results) if results else []
        self.sign = sign

    def roll(self, rng=random):
        self.results = [rng.randint(1, self.faces) for _ in range(self.number)]

    def active(self) -> List[bool]:
        if self.modifier in ("kh", "kl") and self.results:
            pick = max if self.modifier == "kh" else min
            keep = self.results.index(pick(self.results))
            return [i == keep for i in range(len(self.results))]
        return [True] * len(self.results)

    @property
    def total(self) -> int:
        return sum(r for r, keep in zip(self.results, self.active()) if keep)

    @property
    def formula(self) -> str:
        return f"{self.number}d{self.faces}{self.modifier or ''}"


class NumericTerm:
    def __init__(self, value: int, label: str = "", sign: int = 1):
        self.value = abs(int(value))
        self.sign = -1 if int(value) < 0 else sign
        self.label = label

    @property
    def total(self) -> int:
        return self.value

    @property
    def formula(self) -> str:
        return str(self.value)


def parse_formula(formula: str, data: Optional[Dict[str, int]] = None) -> List:
    """
    Parse '2d20kh + 3 - 1' style formulas into terms.

    '@key' placeholders are replaced from `data` (missing keys count as 0).
    """
    data = data or {}
    expr = re.sub(r"@(\w+)", lambda m: str(int(data.get(m.group(1), 0))), formula)
    expr = expr.replace(" ", "")
    expr = expr.replace("+-", "-").replace("-+", "-").replace("--", "+")
    if not expr:
        raise ValueError("Empty formula")
    if expr[0] not in "+-":
        expr = "+" + expr

    chunks = re.findall(r"([+-])([^+-]+)", expr)
    if "".join(sign + body for sign, body in chunks) != expr:
        raise ValueError(f"Invalid formula: {formula}")

    terms = []
    for sign, body in chunks:
        factor = -1 if sign == "-" else 1
        die = DIE_PATTERN.fullmatch(body)
        if die:
            number = int(die.group(1) or 1)
            terms.append(DieTerm(number, int(die.group(2)), die.group(3), sign=factor))
        elif body.isdigit():
            terms.append(NumericTerm(int(body), sign=factor))
        else:
            raise ValueError(f"Invalid formula term '{body}' in {formula}")
    return terms


class Roll:
    """An evaluable list of signed dice and numeric terms."""

    def __init__(self, terms: List, flavor: str = "", total: Optional[int] = None):
        self.terms = terms
        self.flavor = flavor
        self._total = total
        self.evaluated = total is not None

    @classmethod
    def from_formula(cls, formula: str, data: Optional[Dict[str, int]] = None, flavor: str = "") -> "Roll":
        return cls(parse_formula(formula, data), flavor=flavor)

    @property
    def dice(self) -> List[DieTerm]:
        return [t for t in self.terms if isinstance(t, DieTerm)]

    def evaluate(self, rng=random) -> "Roll":
        for die in self.dice:
            die.roll(rng)
        self.evaluated = True
        self.recompute()
        return self

    def recompute(self) -> int:
        self._total = sum(t.sign * t.total for t in self.terms)
        return self._total

    @property
    def total(self) -> Optional[int]:
        return self._total

    @property
    def formula(self) -> str:
        parts = []
        for i, term in enumerate(self.terms):
            if i == 0:
                parts.append(("-" if term.sign < 0 else "") + term.formula)
            else:
                parts.append(("- " if term.sign < 0 else "+ ") + term.formula)
        return " ".join(parts)

    def dice_results(self) -> List[Dict]:
        results = []
        for die in self.dice:
            for value, keep in zip(die.results, die.active()):
                results.append({"faces": die.faces, "result": value, "active": keep})
        return results

    def to_dict(self) -> Dict:
        return {
            "formula": self.formula,
            "total": self.total,
            "flavor": self.flavor,
            "dice": self.dice_results(),
            "modifiers": [
                {"label": t.label, "value": t.sign * t.value}
                for t in self.terms if isinstance(t, NumericTerm)
            ],
        }


### 🧠 Character Math ###
def ability_mod(score) -> int:
    return (int(score) - 10) // 2


def character_mod(character, ability: str) -> int:
    scores = character.abilities or {}
    return ability_mod(scores.get(ability, 10))


def d20_term(advantage=False, disadvantage=False) -> DieTerm:
    # Advantage and disadvantage cancel out
    if advantage and not disadvantage:
        return DieTerm(2, 20, "kh")
    if disadvantage and not advantage:
        return DieTerm(2, 20, "kl")
    return DieTerm(1, 20)


def _d20_roll(bonuses, flavor, advantage=False, disadvantage=False) -> Roll:
    terms = [d20_term(advantage, disadvantage)]
    for label, value in bonuses:
        if value:
            terms.append(NumericTerm(value, label=label))
    return Roll(terms, flavor=flavor)


def _advantage_label(advantage, disadvantage) -> str:
    if advantage and not disadvantage:
        return " (Advantage)"
    if disadvantage and not advantage:
        return " (Disadvantage)"
    return ""


def save_roll(character, ability: str, advantage=False, disadvantage=False) -> Roll:
    proficient = ability in (character.save_proficiencies or [])
    bonuses = [
        (ability, character_mod(character, ability)),
        ("prof", (character.proficiency_bonus or 0) if proficient else 0),
    ]
    flavor = f"{ABILITIES[ability]} Saving Throw" + _advantage_label(advantage, disadvantage)
    return _d20_roll(bonuses, flavor, advantage, disadvantage)


def ability_check_roll(character, ability: str, advantage=False, disadvantage=False) -> Roll:
    bonuses = [(ability, character_mod(character, ability))]
    flavor = f"{ABILITIES[ability]} Ability Check" + _advantage_label(advantage, disadvantage)
    return _d20_roll(bonuses, flavor, advantage, disadvantage)


def skill_roll(character, skill: str, advantage=False, disadvantage=False) -> Roll:
    label, ability = SKILLS[skill]
    entry = (character.skills or {}).get(skill) or {}
    multiplier = float(entry.get("value", 0))
    bonuses = [
        (ability, character_mod(character, ability)),
        ("prof", math.floor((character.proficiency_bonus or 0) * multiplier)),
        ("bonus", int(entry.get("bonus", 0))),
    ]
    flavor = f"{label} Skill Check ({ABILITIES[ability]})" + _advantage_label(advantage, disadvantage)
    return _d20_roll(bonuses, flavor, advantage, disadvantage)


def tool_roll(character, tool: Dict, advantage=False, disadvantage=False) -> Roll:
    ability = tool.get("ability") or "dex"
    multiplier = float(tool.get("proficient", 0))
    bonuses = [
        (ability, character_mod(character, ability)),
        ("prof", math.floor((character.proficiency_bonus or 0) * multiplier)),
        ("bonus", int(tool.get("bonus", 0))),
    ]
    flavor = f"{tool.get('name', 'Tool')} Check" + _advantage_label(advantage, disadvantage)
    return _d20_roll(bonuses, flavor, advantage, disadvantage)


def initiative_roll(character, advantage=False, disadvantage=False) -> Roll:
    bonuses = [
        ("dex", character_mod(character, "dex")),
        ("bonus", character.initiative_bonus or 0),
    ]
    flavor = "Initiative" + _advantage_label(advantage, disadvantage)
    return _d20_roll(bonuses, flavor, advantage, disadvantage)


### ⚔️ Items & Activities ###
def find_item(character, item_id: str) -> Optional[Dict]:
    for item in character.items or []:
        if item.get("id") == item_id:
            return item
    return None


def _item_ability(item: Dict, activity: Dict) -> str:
    return activity.get("ability") or item.get("ability") or "str"


def attack_roll(character, item: Dict, activity: Dict, advantage=False, disadvantage=False) -> Roll:
    ability = _item_ability(item, activity)
    proficient = item.get("proficient", True)
    bonuses = [
        (ability, character_mod(character, ability)),
        ("prof", (character.proficiency_bonus or 0) if proficient else 0),
        ("item", int(activity.get("attack_bonus", 0))),
    ]
    flavor = f"{item.get('name', 'Attack')}: Attack Roll" + _advantage_label(advantage, disadvantage)
    return _d20_roll(bonuses, flavor, advantage, disadvantage)


def _roll_data(character, item: Dict, activity: Dict) -> Dict[str, int]:
    return {
        "mod": character_mod(character, _item_ability(item, activity)),
        "prof": character.proficiency_bonus or 0,
    }


def damage_roll(character, item: Dict, activity: Dict, critical=False) -> Roll:
    """Sum every damage part of the activity; a critical doubles the dice."""
    parts = [p.get("formula", "") for p in activity.get("damage", []) if p.get("formula")]
    if not parts:
        raise ValueError(f"Activity '{activity.get('id')}' on '{item.get('name')}' has no damage parts")
    terms = parse_formula(" + ".join(parts), _roll_data(character, item, activity))
    if critical:
        for die in terms:
            if isinstance(die, DieTerm):
                die.number *= 2
    flavor = f"{item.get('name', 'Damage')}: Damage Roll" + (" (Critical)" if critical else "")
    return Roll(terms, flavor=flavor)


def heal_roll(character, item: Dict, activity: Dict) -> Roll:
    formula = activity.get("healing")
    if not formula:
        raise ValueError(f"Activity '{activity.get('id')}' on '{item.get('name')}' has no healing formula")
    return Roll.from_formula(formula, _roll_data(character, item, activity),
                             flavor=f"{item.get('name', 'Healing')}: Healing")


def consume_activity(character, item: Dict, activity: Dict, spell_slot=True) -> Dict:
    """
    Spend the activity's limited uses and, for leveled spells, one slot.

    Remote results are already final, so running dry is reported rather
    than refused.
    """
    summary = {"uses_remaining": None, "spell_slot_level": None, "exhausted": []}

    items = copy.deepcopy(character.items or [])
    for stored in items:
        if stored.get("id") != item.get("id"):
            continue
        for stored_activity in stored.get("activities", []):
            uses = stored_activity.get("uses")
            if stored_activity.get("id") != activity.get("id") or not uses:
                continue
            if uses.get("value", 0) > 0:
                uses["value"] -= 1
            else:
                summary["exhausted"].append("uses")
            summary["uses_remaining"] = uses["value"]
    character.items = items

    level = int(item.get("level") or 0)
    if spell_slot and item.get("type") == "spell" and level > 0:
        slots = copy.deepcopy(character.spell_slots or {})
        slot = slots.get(str(level))
        if slot and slot.get("value", 0) > 0:
            slot["value"] -= 1
            summary["spell_slot_level"] = level
        else:
            summary["exhausted"].append(f"spell_slot_{level}")
        character.spell_slots = slots

    return summary
