"""
Tests for the local rules engine: formulas, dice, roll builders, resources.
"""

import random
from types import SimpleNamespace

import pytest

from backend import rules_engine
from backend.rules_engine import DieTerm, NumericTerm, Roll, parse_formula
from tests.factories import BURNING_HANDS, CURE_WOUNDS, LONGSWORD, SECOND_WIND, THIEVES_TOOLS, character_data


@pytest.fixture
def mira():
    return SimpleNamespace(**character_data())


def _with_d20(roll, *faces):
    roll.dice[0].results = list(faces)
    roll.evaluated = True
    roll.recompute()
    return roll


# ============================================================================
# FORMULAS & DICE
# ============================================================================

def test_parse_formula_terms():
    terms = parse_formula("2d20kh + 3 - 1")

    assert isinstance(terms[0], DieTerm)
    assert (terms[0].number, terms[0].faces, terms[0].modifier) == (2, 20, "kh")
    assert isinstance(terms[1], NumericTerm) and terms[1].value == 3 and terms[1].sign == 1
    assert isinstance(terms[2], NumericTerm) and terms[2].value == 1 and terms[2].sign == -1
    assert Roll(terms).formula == "2d20kh + 3 - 1"


def test_parse_formula_placeholders():
    assert Roll.from_formula("1d8 + @mod", {"mod": 3}).formula == "1d8 + 3"
    assert Roll.from_formula("1d8 + @mod", {"mod": -1}).formula == "1d8 - 1"
    assert Roll.from_formula("d6 + @missing").formula == "1d6 + 0"


@pytest.mark.parametrize("formula", ["", "abc", "2d", "1d8 + x"])
def test_parse_formula_rejects_invalid(formula):
    with pytest.raises(ValueError):
        parse_formula(formula)


def test_keep_highest_and_lowest():
    high = DieTerm(2, 20, "kh", results=[5, 17])
    low = DieTerm(2, 20, "kl", results=[5, 17])

    assert high.total == 17 and high.active() == [False, True]
    assert low.total == 5 and low.active() == [True, False]


def test_keep_highest_on_tie_keeps_one_die():
    term = DieTerm(2, 20, "kh", results=[7, 7])
    assert term.active() == [True, False]
    assert term.total == 7


def test_evaluate_uses_rng_range():
    roll = Roll.from_formula("4d6 + 2").evaluate(random.Random(7))

    assert roll.evaluated
    assert all(1 <= value <= 6 for value in roll.dice[0].results)
    assert roll.total == sum(roll.dice[0].results) + 2


def test_roll_to_dict():
    roll = _with_d20(Roll([DieTerm(1, 20), NumericTerm(3, label="dex")], flavor="Test"), 12)

    assert roll.to_dict() == {
        "formula": "1d20 + 3",
        "total": 15,
        "flavor": "Test",
        "dice": [{"faces": 20, "result": 12, "active": True}],
        "modifiers": [{"label": "dex", "value": 3}],
    }


# ============================================================================
# D20 ROLL BUILDERS
# ============================================================================

def test_save_roll_with_proficiency(mira):
    roll = _with_d20(rules_engine.save_roll(mira, "dex"), 10)

    assert roll.formula == "1d20 + 3 + 2"
    assert roll.total == 15
    assert roll.flavor == "Dexterity Saving Throw"


def test_save_roll_without_proficiency(mira):
    roll = _with_d20(rules_engine.save_roll(mira, "cha"), 10)

    assert roll.formula == "1d20 - 1"
    assert roll.total == 9


def test_advantage_and_disadvantage(mira):
    advantage = rules_engine.save_roll(mira, "dex", advantage=True)
    disadvantage = rules_engine.save_roll(mira, "dex", disadvantage=True)
    both = rules_engine.save_roll(mira, "dex", advantage=True, disadvantage=True)

    assert advantage.formula.startswith("2d20kh")
    assert advantage.flavor.endswith("(Advantage)")
    assert disadvantage.formula.startswith("2d20kl")
    assert both.formula.startswith("1d20 ")


def test_skill_roll_expertise_and_bonus(mira):
    roll = _with_d20(rules_engine.skill_roll(mira, "ste"), 10)

    assert roll.formula == "1d20 + 3 + 4 + 1"
    assert roll.total == 18
    assert roll.flavor == "Stealth Skill Check (Dexterity)"


def test_skill_roll_untrained(mira):
    assert rules_engine.skill_roll(mira, "arc").formula == "1d20 + 1"


def test_ability_check_roll(mira):
    roll = _with_d20(rules_engine.ability_check_roll(mira, "wis"), 4)
    assert roll.total == 6
    assert roll.flavor == "Wisdom Ability Check"


def test_tool_roll(mira):
    roll = rules_engine.tool_roll(mira, THIEVES_TOOLS)

    assert roll.formula == "1d20 + 3 + 2"
    assert roll.flavor == "Thieves' Tools Check"


def test_initiative_roll(mira):
    assert rules_engine.initiative_roll(mira).formula == "1d20 + 3 + 1"


# ============================================================================
# ITEM ROLLS
# ============================================================================

def test_attack_roll(mira):
    roll = rules_engine.attack_roll(mira, LONGSWORD, LONGSWORD["activities"][0])

    assert roll.formula == "1d20 + 2"
    assert roll.flavor == "Longsword: Attack Roll"


def test_damage_roll_and_critical(mira):
    activity = LONGSWORD["activities"][0]

    assert rules_engine.damage_roll(mira, LONGSWORD, activity).formula == "1d8 + 0"
    critical = rules_engine.damage_roll(mira, LONGSWORD, activity, critical=True)
    assert critical.formula == "2d8 + 0"
    assert critical.flavor.endswith("(Critical)")


def test_damage_roll_requires_parts(mira):
    with pytest.raises(ValueError):
        rules_engine.damage_roll(mira, LONGSWORD, {"id": "empty", "type": "attack"})


def test_heal_roll_uses_item_ability(mira):
    roll = rules_engine.heal_roll(mira, CURE_WOUNDS, CURE_WOUNDS["activities"][0])
    assert roll.formula == "1d8 + 2"


def test_find_item(mira):
    assert rules_engine.find_item(mira, "item-longsword")["name"] == "Longsword"
    assert rules_engine.find_item(mira, "nope") is None


# ============================================================================
# RESOURCES
# ============================================================================

def test_consume_spell_slot(mira):
    summary = rules_engine.consume_activity(mira, BURNING_HANDS, BURNING_HANDS["activities"][0])

    assert summary["spell_slot_level"] == 1
    assert summary["exhausted"] == []
    assert mira.spell_slots["1"]["value"] == 1


def test_consume_without_spell_slot(mira):
    summary = rules_engine.consume_activity(mira, BURNING_HANDS, BURNING_HANDS["activities"][0], spell_slot=False)

    assert summary["spell_slot_level"] is None
    assert mira.spell_slots["1"]["value"] == 2


def test_consume_uses_until_exhausted(mira):
    activity = SECOND_WIND["activities"][0]

    first = rules_engine.consume_activity(mira, SECOND_WIND, activity)
    second = rules_engine.consume_activity(mira, SECOND_WIND, activity)

    assert first["uses_remaining"] == 0 and first["exhausted"] == []
    assert second["uses_remaining"] == 0 and second["exhausted"] == ["uses"]
    # The shared sample item is untouched
    assert SECOND_WIND["activities"][0]["uses"]["value"] == 1


def test_consume_reports_missing_slot(mira):
    mira.spell_slots = {"1": {"value": 0, "max": 2}}

    summary = rules_engine.consume_activity(mira, CURE_WOUNDS, CURE_WOUNDS["activities"][0])

    assert summary["exhausted"] == ["spell_slot_1"]
    assert mira.spell_slots["1"]["value"] == 0
