"""
Tests for putting remote die faces into local rolls.
"""

import random

from backend.relay.dice import build_die_terms, inject_remote_faces, roll_from_remote
from backend.relay.schemas import DiceSet, RemoteRoll, RollKind
from backend.rules_engine import DieTerm, NumericTerm, Roll


def remote(*sets, kind=RollKind.NORMAL, constant=0, total=None):
    dice_sets = tuple(DiceSet(die_type=die_type, count=len(faces), faces=tuple(faces)) for die_type, faces in sets)
    if total is None:
        total = sum(sum(faces) for _, faces in sets) + constant
    return RemoteRoll(roll_kind=kind, total=total, sets=dice_sets, constant=constant)


def test_faces_replaced_in_place():
    roll = Roll([DieTerm(1, 20), NumericTerm(5)]).evaluate(random.Random(1))

    inject_remote_faces(roll, remote(("d20", [14])))

    assert roll.dice[0].results == [14]
    assert roll.total == 19


def test_advantage_keeps_remote_order_and_highest():
    roll = Roll([DieTerm(2, 20, "kh"), NumericTerm(3)]).evaluate(random.Random(1))

    inject_remote_faces(roll, remote(("d20", [4, 18]), kind=RollKind.ADVANTAGE))

    assert roll.dice_results() == [
        {"faces": 20, "result": 4, "active": False},
        {"faces": 20, "result": 18, "active": True},
    ]
    assert roll.total == 21


def test_layout_mismatch_uses_remote_dice_and_local_modifiers():
    roll = Roll([DieTerm(1, 8), NumericTerm(3, label="str")]).evaluate(random.Random(1))

    inject_remote_faces(roll, remote(("d8", [5]), ("d6", [3])))

    assert [(d.faces, d.results) for d in roll.dice] == [(8, [5]), (6, [3])]
    assert [t.value for t in roll.terms if isinstance(t, NumericTerm)] == [3]
    assert roll.total == 11


def test_layout_mismatch_with_advantage_keeps_highest():
    roll = Roll([DieTerm(1, 20), NumericTerm(2)]).evaluate(random.Random(1))

    inject_remote_faces(roll, remote(("d20", [9, 15]), kind=RollKind.ADVANTAGE))

    assert roll.dice[0].modifier == "kh"
    assert roll.total == 17


def test_no_remote_dice_leaves_roll_alone():
    roll = Roll([DieTerm(1, 20)]).evaluate(random.Random(1))
    before = list(roll.dice[0].results)

    assert inject_remote_faces(roll, None) is roll
    inject_remote_faces(roll, remote())
    assert roll.dice[0].results == before


def test_build_die_terms():
    terms = build_die_terms(remote(("d6", [1, 2, 3])))

    assert len(terms) == 1
    assert (terms[0].number, terms[0].faces, terms[0].results) == (3, 6, [1, 2, 3])


def test_roll_from_remote_keeps_total_verbatim():
    roll = roll_from_remote(remote(("d20", [11]), constant=4, total=42), flavor="Odd")

    assert roll.total == 42
    assert roll.formula == "1d20 + 4"
    assert roll.flavor == "Odd"
    assert roll.dice_results() == [{"faces": 20, "result": 11, "active": True}]


def test_roll_from_remote_without_dice():
    assert roll_from_remote(None) is None
    assert roll_from_remote(remote()) is None
